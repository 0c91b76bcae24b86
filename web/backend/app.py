#!/usr/bin/env python3
"""
Notification API - FastAPI Application

Producer-facing HTTP API, realtime websocket endpoint and health surface of
the notification pipeline, with automatic API documentation.

Usage:
    python -m web.backend.app

Then open:
    - http://localhost:8080/docs - API Documentation (Swagger UI)
    - http://localhost:8080/redoc - Alternative API Documentation
    - ws://localhost:8080/ws/notifications/{user_id} - live notifications
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException

from core.app_context import AppContext
from core.cache.store import StoreUnavailableError
from core.config_loader import load_config
from core.logging_setup import configure_logging

from .exceptions import (
    ServiceException,
    service_exception_handler,
    store_unavailable_handler,
    http_exception_handler,
    general_exception_handler
)
from .realtime import WebSocketConnectionManager
from .routers import (
    notifications_router,
    realtime_router,
    users_router,
    health_router
)

logger = logging.getLogger(__name__)


def create_app(
    context: Optional[AppContext] = None,
    connections: Optional[WebSocketConnectionManager] = None
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        context: Pre-wired application context; built from config.yaml at
            startup when omitted
        connections: WebSocket manager; must be the transport the context's
            broadcaster was built with when both are passed
    """
    manager = connections or WebSocketConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager.bind_loop(asyncio.get_running_loop())
        owned = app.state.context is None
        if owned:
            config = load_config()
            configure_logging(config.logging.level)
            app.state.context = AppContext.build(config, transport=manager)

        ctx = app.state.context
        if ctx.config.scheduler.run_in_web:
            ctx.scheduler.start()
        logger.info("Notification API started")

        yield

        ctx.scheduler.stop()
        if owned:
            ctx.dispatcher.close()
        logger.info("Notification API stopped")

    app = FastAPI(
        title="Notification API",
        description="Submit, schedule and broadcast social app notifications",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.context = context
    app.state.connections = manager

    # Register exception handlers
    app.add_exception_handler(ServiceException, service_exception_handler)
    app.add_exception_handler(StoreUnavailableError, store_unavailable_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers
    app.include_router(notifications_router)
    app.include_router(realtime_router)
    app.include_router(users_router)
    app.include_router(health_router)

    return app


app = create_app()


def main():
    """Run the web server."""
    import uvicorn

    config = load_config()
    configure_logging(config.logging.level)

    logger.info(f"Starting Notification API on {config.web.host}:{config.web.port}")
    logger.info(f"API Docs: http://{config.web.host}:{config.web.port}/docs")

    uvicorn.run(
        "web.backend.app:app",
        host=config.web.host,
        port=config.web.port,
        reload=False,
        log_level=config.logging.level.lower()
    )


if __name__ == "__main__":
    main()
