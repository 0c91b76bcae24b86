#!/usr/bin/env python3
"""
User endpoints - notification preferences and push destinations.
"""

from fastapi import APIRouter, Depends

from core.app_context import AppContext
from notification.preferences import NotificationPreferences

from ..dependencies import get_context
from ..exceptions import InvalidRequestException
from ..models.requests import DeviceRegistration, PreferencesUpdate
from ..models.responses import DeviceResponse, PreferencesResponse

router = APIRouter(prefix="/api/users", tags=["users"])


@router.put("/{user_id}/preferences", response_model=PreferencesResponse)
def update_preferences(
    user_id: str,
    request: PreferencesUpdate,
    ctx: AppContext = Depends(get_context)
):
    """Replace the user's notification preferences."""
    preferences = NotificationPreferences(user_id=user_id, **request.model_dump())
    ctx.preferences.save(preferences)
    return PreferencesResponse(user_id=user_id, preferences=preferences.model_dump())


@router.post("/{user_id}/devices", response_model=DeviceResponse)
def register_device(
    user_id: str,
    request: DeviceRegistration,
    ctx: AppContext = Depends(get_context)
):
    """Register a push token for one of the user's devices."""
    try:
        device = ctx.tokens.register(user_id, request.token, request.platform)
    except ValueError as e:
        raise InvalidRequestException(str(e))
    return DeviceResponse(
        user_id=user_id,
        token=device.token,
        platform=device.platform,
        is_active=device.is_active
    )
