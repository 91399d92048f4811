# storage/__init__.py
# ============================================================================
# MCNATION STORE BACKEND — STORAGE MODULE
# ============================================================================
# Key-value store with expiry, and the typed payment cache on top of it
# ============================================================================

from storage.kv_store import (
    IKeyValueStore,
    InMemoryKeyValueStore,
    RedisKeyValueStore,
    create_store,
)

from storage.payment_cache import (
    CacheKeys,
    PaymentCache,
)

__all__ = [
    "IKeyValueStore",
    "InMemoryKeyValueStore",
    "RedisKeyValueStore",
    "create_store",
    "CacheKeys",
    "PaymentCache",
]
