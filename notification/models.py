"""
Notification domain models.

NotificationIntent is a pydantic model because it is persisted in the store
as JSON while it waits in a queue. Decisions and reports are short-lived
dataclasses handed straight back to the caller.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, Field, field_validator


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class NotificationType(str, Enum):
    LIKE = "like"
    COMMENT = "comment"
    FOLLOW = "follow"
    MENTION = "mention"
    TRENDING = "trending"
    SYSTEM = "system"
    PRESENCE = "presence"


class DeliveryStatus(str, Enum):
    QUEUED = "queued"
    DELAYED = "delayed"
    BATCHED = "batched"
    SENT = "sent"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD = "dead"
    FAILED_PERMANENT = "failed_permanent"
    DROPPED = "dropped"
    FILTERED = "filtered"
    CANCELLED = "cancelled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationIntent(BaseModel):
    """A not-yet-delivered request to notify one user."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    template_id: str
    variables: Dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    notification_type: str = NotificationType.SYSTEM.value
    sender_id: Optional[str] = None
    scheduled_for: Optional[datetime] = None  # earliest send time; None means now
    retry_count: int = 0
    max_retries: int = 3
    override_quiet_hours: bool = False
    batchable: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    locale: Optional[str] = None
    batch_member_ids: List[str] = Field(default_factory=list)
    channels: List[str] = Field(default_factory=lambda: ["push"])  # push and/or realtime

    @field_validator("scheduled_for", "created_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def is_due(self, now: datetime) -> bool:
        return self.scheduled_for is None or self.scheduled_for <= now

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str) -> "NotificationIntent":
        return cls.model_validate_json(raw)


@dataclass
class FilteringDecision:
    """Outcome of the filtering engine for one intent. Never persisted."""
    allowed: bool
    score: float
    reason: Optional[str] = None
    suggested_delay: Optional[timedelta] = None
    batch_with_others: bool = False


@dataclass
class SubmitResult:
    """Admission result returned to producers."""
    intent_id: str
    allowed: bool = False
    delayed: bool = False
    batched: bool = False
    skipped: bool = False
    reason: Optional[str] = None
    score: Optional[float] = None
    scheduled_for: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'intent_id': self.intent_id,
            'allowed': self.allowed,
            'delayed': self.delayed,
            'batched': self.batched,
            'skipped': self.skipped,
            'reason': self.reason,
            'score': self.score,
            'scheduled_for': self.scheduled_for.isoformat() if self.scheduled_for else None,
        }


@dataclass
class ScheduleResult:
    """What the scheduler did with an intent."""
    intent_id: str
    status: DeliveryStatus
    reason: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    batch_key: Optional[str] = None


@dataclass
class BulkScheduleResult:
    """What the scheduler did with a list of intents scheduled together."""
    total_scheduled: int = 0
    total_batched: int = 0  # members of groups sent as one summary
    total_skipped: int = 0
    batch_ids: List[str] = field(default_factory=list)
    results: List[ScheduleResult] = field(default_factory=list)


@dataclass
class ProcessResult:
    """Outcome of one send attempt."""
    intent_id: str
    status: DeliveryStatus
    attempts: int
    delivered: int = 0
    failed: int = 0
    error: Optional[str] = None


@dataclass
class DrainResult:
    processed_priority: int = 0
    processed_main: int = 0
    processed_delayed: int = 0
    flushed_batches: int = 0
    skipped: bool = False  # another instance held the drain lock
    order: List[str] = field(default_factory=list)  # intent ids in processing order

    @property
    def total(self) -> int:
        return self.processed_priority + self.processed_main + self.processed_delayed


@dataclass
class RenderedMessage:
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)
    priority: str = Priority.NORMAL.value
    sound: Optional[str] = None
    icon: Optional[str] = None
    category: Optional[str] = None


@dataclass
class DeviceToken:
    token: str
    platform: str  # android, ios, web
    is_active: bool = True


@dataclass
class DeliveryResult:
    destination: str
    success: bool
    error: Optional[str] = None
    invalid_token: bool = False


@dataclass
class DispatchReport:
    results: List[DeliveryResult] = field(default_factory=list)

    @property
    def delivered(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def success(self) -> bool:
        """At least one destination accepted the message."""
        return self.delivered > 0


@dataclass
class BroadcastReport:
    event_id: str
    duplicate: bool = False
    delivered: List[str] = field(default_factory=list)
    offline: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


@dataclass
class ResourceUpdate:
    """An update about a logical resource (post, video, profile)."""
    resource_type: str
    resource_id: str
    timestamp: datetime
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def resource_key(self) -> str:
        return f"{self.resource_type}:{self.resource_id}"
