"""
Single-process entry point: the web API with the drain loop running inside it.

For production, run the API (notify-web) and one or more workers
(notify-worker) as separate processes instead.

Usage:
    python main.py
    python main.py --config config.yaml --port 9000
"""
import argparse
import logging

import uvicorn

from core.app_context import AppContext
from core.cache.store import StoreUnavailableError, wait_for_store
from core.config_loader import load_config
from core.logging_setup import configure_logging
from web.backend.app import create_app
from web.backend.realtime import WebSocketConnectionManager

logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description='Notification API with in-process drain loop')
    parser.add_argument('--config', default='config.yaml', help='Path to config file')
    parser.add_argument('--host', default=None)
    parser.add_argument('--port', type=int, default=None)
    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(config.logging.level)
    config.scheduler.run_in_web = True

    connections = WebSocketConnectionManager()
    ctx = AppContext.build(config, transport=connections)
    try:
        wait_for_store(ctx.store, config.redis.connect_attempts, config.redis.connect_wait_seconds)
    except StoreUnavailableError as e:
        logger.error(f"Store unreachable at startup: {e}")
        ctx.close()
        raise SystemExit(1)

    app = create_app(ctx, connections)
    host = args.host or config.web.host
    port = args.port or config.web.port
    logger.info(f"Starting notification service on {host}:{port}")
    try:
        uvicorn.run(app, host=host, port=port, log_level=config.logging.level.lower())
    finally:
        ctx.close()


if __name__ == "__main__":
    main()
