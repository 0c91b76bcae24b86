#!/usr/bin/env python3
"""
Notification Worker - drains the scheduler queues

Any number of workers may run against the same store; the drain lock keeps
their cycles from overlapping and pop semantics hand each intent to exactly
one of them.

Usage:
    python -m notification.worker
    python -m notification.worker --burst
    python -m notification.worker --config config.yaml --verbose
"""

import argparse
import logging
import signal
import sys
import threading

from core.app_context import AppContext
from core.cache.store import StoreUnavailableError, wait_for_store
from core.config_loader import load_config
from core.logging_setup import configure_logging

logger = logging.getLogger(__name__)


def start_worker(config_path: str = "config.yaml", burst: bool = False, verbose: bool = False) -> int:
    """Run one drain cycle (burst) or the drain loop until SIGINT/SIGTERM."""
    config = load_config(config_path)
    configure_logging("DEBUG" if verbose else config.logging.level)

    ctx = AppContext.build(config)
    logger.info("Starting notification worker")
    logger.info(f"Store: {getattr(ctx.store, 'safe_url', type(ctx.store).__name__)}")
    logger.info(f"Burst mode: {burst}")

    try:
        wait_for_store(ctx.store, config.redis.connect_attempts, config.redis.connect_wait_seconds)
    except StoreUnavailableError as e:
        logger.error(f"Store unreachable, giving up: {e}")
        ctx.close()
        return 1
    logger.info("Connected to store")

    if burst:
        result = ctx.scheduler.drain()
        logger.info(f"Burst drain processed {result.total} intents, flushed {result.flushed_batches} batches")
        ctx.close()
        return 0

    stop = threading.Event()

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    ctx.scheduler.start()
    logger.info("Worker started. Press Ctrl+C to stop.")
    stop.wait()
    ctx.close()
    logger.info("Worker stopped")
    return 0


def main():
    parser = argparse.ArgumentParser(description='Notification delivery worker')
    parser.add_argument('--config', default='config.yaml', help='Path to config file')
    parser.add_argument('--burst', action='store_true', help='Run one drain cycle and exit')
    parser.add_argument('--verbose', action='store_true')

    args = parser.parse_args()

    exit_code = start_worker(config_path=args.config, burst=args.burst, verbose=args.verbose)
    sys.exit(exit_code)


if __name__ == '__main__':
    main()
