"""
Pytest configuration and fixtures.

This file provides pytest-specific configuration and fixtures.
For standard test utilities, see tests/__init__.py
"""

import pytest

from core.app_context import AppContext
from core.config_loader import AppConfig
from tests.mocks.fakes import FrozenClock, InMemoryStore, RecordingProvider, RecordingTransport


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: fast tests with in-memory fakes only"
    )
    config.addinivalue_line(
        "markers", "integration: tests wiring several components together"
    )
    config.addinivalue_line(
        "markers", "redis: marks tests as requiring a Redis server (deselect with '-m \"not redis\"')"
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def app_config():
    config = AppConfig()
    config.dispatcher.dry_run = True
    return config


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def context(app_config, store, clock, transport):
    """AppContext over the in-memory store with a recording provider on every platform."""
    ctx = AppContext.build(app_config, transport=transport, store=store, clock=clock)
    providers = {platform: RecordingProvider(platform) for platform in ('android', 'ios', 'web')}
    ctx.dispatcher.providers = providers
    yield ctx
    ctx.close()
