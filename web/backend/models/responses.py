#!/usr/bin/env python3
"""
Response models for API endpoints.
"""

from pydantic import BaseModel, ConfigDict
from typing import Any, Dict, List, Optional


class SubmitResponse(BaseModel):
    """Admission decision for a submitted intent."""
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "success": True,
                "intent_id": "550e8400-e29b-41d4-a716-446655440000",
                "allowed": False,
                "delayed": True,
                "batched": False,
                "skipped": False,
                "reason": "quiet_hours",
                "score": 0.32,
                "scheduled_for": "2026-02-02T08:00:00+00:00"
            }
        }
    )

    success: bool = True
    intent_id: str
    allowed: bool
    delayed: bool
    batched: bool
    skipped: bool
    reason: Optional[str] = None
    score: Optional[float] = None
    scheduled_for: Optional[str] = None


class BulkSubmitResponse(BaseModel):
    success: bool = True
    total: int
    batched: int
    skipped: int
    results: List[SubmitResponse]


class StatusResponse(BaseModel):
    success: bool = True
    intent_id: str
    status: str
    attempts: int = 0
    error: Optional[str] = None
    updated_at: Optional[str] = None
    metadata: Dict[str, Any] = {}


class CancelResponse(BaseModel):
    success: bool = True
    intent_id: str
    cancelled: bool


class DrainResponse(BaseModel):
    success: bool = True
    skipped: bool
    processed_priority: int
    processed_main: int
    processed_delayed: int
    flushed_batches: int


class QueueStatusResponse(BaseModel):
    """Queue depths, counters and process metrics."""
    success: bool = True
    status: str
    queues: Optional[Dict[str, int]] = None
    counters: Dict[str, int]
    last_drain_at: Optional[str] = None
    running: bool
    store_reachable: bool
    process: Dict[str, float]


class FilteringStatsResponse(BaseModel):
    success: bool = True
    day: str
    stats: Dict[str, Any]
    effectiveness: Dict[str, Any]


class BroadcastResponse(BaseModel):
    success: bool = True
    event_id: str
    duplicate: bool
    delivered: List[str]
    offline: List[str]
    failed: List[str]


class PreferencesResponse(BaseModel):
    success: bool = True
    user_id: str
    preferences: Dict[str, Any]


class DeviceResponse(BaseModel):
    success: bool = True
    user_id: str
    token: str
    platform: str
    is_active: bool


class HealthResponse(BaseModel):
    status: str
    service: str
    store_reachable: bool
    scheduler_running: bool
    connections: int
    queues: Optional[Dict[str, int]] = None
