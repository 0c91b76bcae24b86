#!/usr/bin/env python3
"""
Health endpoint.
"""

from fastapi import APIRouter, Request

from ..models.responses import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def health_check(request: Request):
    """Health check endpoint. Degraded (still 200) when the store is unreachable."""
    context = request.app.state.context
    health = context.scheduler.health()
    return HealthResponse(
        status=health['status'],
        service="social-notify-web",
        store_reachable=health['store_reachable'],
        scheduler_running=health['running'],
        connections=request.app.state.connections.connection_count(),
        queues=health['queues']
    )
