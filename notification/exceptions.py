"""Exceptions raised by the notification pipeline."""
from typing import Optional


class NotificationError(Exception):
    """Base exception for notification pipeline errors."""
    pass


class InvalidIntentError(NotificationError):
    """Raised at submit time for a malformed intent (missing user or template)."""
    pass


class TemplateNotFoundError(NotificationError):
    """Raised when an intent names a template that does not exist. Never retried."""

    def __init__(self, template_id: str):
        super().__init__(f"Unknown template: {template_id}")
        self.template_id = template_id


class DeliveryError(NotificationError):
    """Raised by a push provider when a destination send fails."""

    def __init__(self, message: str, invalid_token: bool = False):
        super().__init__(message)
        self.invalid_token = invalid_token


class ProviderRateLimitError(DeliveryError):
    """Raised when a push provider asks us to back off."""

    def __init__(self, platform: str, retry_after: Optional[int] = None):
        self.platform = platform
        self.retry_after = retry_after or 60
        super().__init__(f"Rate limited on {platform}, retry after {self.retry_after}s")
