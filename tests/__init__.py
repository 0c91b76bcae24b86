#!/usr/bin/env python3
"""
Test suite configuration and utilities.

All tests can be run with standard Python tools:

    # Run all tests (unit + Redis if available)
    python -m pytest tests/ -v

    # Run only tests that need no Redis server
    python -m pytest tests/ -v -m "not redis"

    # Using unittest
    python -m unittest discover tests -v

Redis Setup:
    Tests marked `redis` run against TEST_REDIS_URL and are skipped when it
    is not reachable:

    docker run -d -p 6380:6379 redis:7
    export TEST_REDIS_URL="redis://localhost:6380/15"
"""

import os

TEST_REDIS_URL = os.environ.get("TEST_REDIS_URL", "redis://localhost:6380/15")


def check_redis_available() -> bool:
    """Check whether the test Redis server answers a ping."""
    try:
        from redis import Redis
        client = Redis.from_url(TEST_REDIS_URL, socket_connect_timeout=1, socket_timeout=1)
        return bool(client.ping())
    except Exception:
        return False
