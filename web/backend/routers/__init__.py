"""API route handlers."""

from .notifications import router as notifications_router
from .realtime import router as realtime_router
from .users import router as users_router
from .health import router as health_router
