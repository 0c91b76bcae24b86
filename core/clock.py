"""Clock abstraction so time-dependent logic can be tested without sleeping."""
from abc import ABC, abstractmethod
from datetime import datetime, timezone


class Clock(ABC):

    @abstractmethod
    def now(self) -> datetime:
        """Current time as an aware UTC datetime."""
        pass

    def timestamp(self) -> float:
        return self.now().timestamp()


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
