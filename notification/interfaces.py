"""
Interfaces of the collaborators the pipeline consumes.

Concrete implementations live elsewhere: the WebSocket connection manager in
web/backend/realtime.py, the template registry in notification/templates.py.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from notification.models import RenderedMessage


@dataclass
class Presence:
    online: bool
    handles: List[str] = field(default_factory=list)


class RealtimeTransport(ABC):
    """Pushes events to live client connections."""

    @abstractmethod
    def broadcast_to_user(self, user_id: str, event_name: str, payload: Dict[str, Any]) -> int:
        """
        Send an event to every live connection of a user.

        Returns:
            Number of connections the event was written to (0 when offline).
        """
        pass

    @abstractmethod
    def presence_of(self, user_id: str) -> Presence:
        pass


class NullRealtimeTransport(RealtimeTransport):
    """Transport for processes with no socket server (the worker)."""

    def broadcast_to_user(self, user_id: str, event_name: str, payload: Dict[str, Any]) -> int:
        return 0

    def presence_of(self, user_id: str) -> Presence:
        return Presence(online=False)


class TemplateRenderer(ABC):

    @abstractmethod
    def render(
        self,
        template_id: str,
        variables: Dict[str, Any],
        locale: Optional[str] = None
    ) -> Optional[RenderedMessage]:
        """Render a template. Returns None when the template does not exist."""
        pass


class FollowerDirectory(ABC):
    """
    Looks up who follows a user.

    Contract: `followers_of` returns an empty list both when the user has no
    followers and when no directory is wired in. `is_wired` tells the two
    apart.
    """

    is_wired: bool = True

    @abstractmethod
    def followers_of(self, user_id: str) -> List[str]:
        pass


class UnwiredFollowerDirectory(FollowerDirectory):
    """Placeholder used until a social-graph lookup is connected."""

    is_wired = False

    def followers_of(self, user_id: str) -> List[str]:
        return []
