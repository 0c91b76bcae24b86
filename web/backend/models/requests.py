#!/usr/bin/env python3
"""
Request models for API endpoints.
"""

from datetime import datetime
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from notification.models import NotificationIntent, Priority
from notification.preferences import QuietHours


class NotificationRequest(BaseModel):
    """Request to submit a notification intent."""
    id: Optional[str] = Field(None, description="Intent id; resubmitting the same id is a no-op")
    user_id: str = Field(..., description="Recipient user id")
    template_id: str = Field(..., description="Template to render, e.g. like_notification")
    variables: Dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Field(default=Priority.NORMAL, description="Priority: low, normal, high")
    notification_type: str = Field(default="system", description="like, comment, follow, mention, trending, system")
    sender_id: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    max_retries: Optional[int] = Field(
        default=None, ge=0, le=10,
        description="Retry budget; the scheduler's default_max_retries when omitted"
    )
    override_quiet_hours: bool = False
    batchable: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)
    locale: Optional[str] = None
    channels: List[str] = Field(default_factory=lambda: ["push"])

    def to_intent(self) -> NotificationIntent:
        data = self.model_dump(exclude_none=True)
        return NotificationIntent(**data)


class BulkNotificationRequest(BaseModel):
    """Request to submit several intents at once."""
    notifications: List[NotificationRequest] = Field(..., min_length=1, max_length=500)


class BroadcastRequest(BaseModel):
    """Request to push an event to live connections."""
    event_id: str = Field(..., description="Domain event id; repeats within the dedup window are ignored")
    user_ids: List[str] = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    event_name: str = Field(default="notification")
    active_user_ids: Optional[List[str]] = Field(
        None,
        description="Users that get a high-priority variant first; recently active users when omitted"
    )


class PreferencesUpdate(BaseModel):
    """Request to replace a user's notification preferences."""
    push_enabled: bool = True
    notification_types: Dict[str, bool] = Field(default_factory=dict)
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    locale: str = "en"


class DeviceRegistration(BaseModel):
    """Request to register a push destination."""
    token: str = Field(..., min_length=1)
    platform: str = Field(..., description="android, ios or web")
