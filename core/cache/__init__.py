"""Cache Module - shared store adapter."""
from core.cache.store import (
    RateDedupStore,
    RedisStore,
    StoreUnavailableError,
    wait_for_store
)

__all__ = [
    'RateDedupStore',
    'RedisStore',
    'StoreUnavailableError',
    'wait_for_store'
]
