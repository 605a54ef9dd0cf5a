"""
Persistent client cache with size-bounded partial eviction, stale fallback,
and stale-while-revalidate prefetching.
"""
from .core import CacheEntry, CacheEntryError, CacheError, CacheOptions
from .keys import (
    CACHE_PREFIX,
    CRITICAL_KEY_PATTERNS,
    CacheKeys,
    build_key,
    is_critical_key,
    scoped_key,
)
from .sizing import byte_size, total_size
from .store import (
    MemoryStorage,
    QuotaExceededError,
    SqliteStorage,
    StorageBackend,
    StorageError,
    create_storage,
)
from .eviction import CleanupReport, cleanup
from .manager import (
    PersistentCache,
    get_persistent_cache,
    set_persistent_cache,
    set_cache,
    get_cache,
    has_cache,
    remove_cache,
    clear_cache,
    get_cache_age,
    update_cache_upsert_item,
    update_cache_remove_item,
    prefetch_with_cache,
    initialize_cache_cleanup,
)

__all__ = [
    # Core types
    "CacheEntry",
    "CacheEntryError",
    "CacheError",
    "CacheOptions",
    # Keys
    "CACHE_PREFIX",
    "CRITICAL_KEY_PATTERNS",
    "CacheKeys",
    "build_key",
    "is_critical_key",
    "scoped_key",
    # Sizing
    "byte_size",
    "total_size",
    # Stores
    "MemoryStorage",
    "QuotaExceededError",
    "SqliteStorage",
    "StorageBackend",
    "StorageError",
    "create_storage",
    # Eviction
    "CleanupReport",
    "cleanup",
    # Manager
    "PersistentCache",
    "get_persistent_cache",
    "set_persistent_cache",
    "set_cache",
    "get_cache",
    "has_cache",
    "remove_cache",
    "clear_cache",
    "get_cache_age",
    "update_cache_upsert_item",
    "update_cache_remove_item",
    "prefetch_with_cache",
    "initialize_cache_cleanup",
]
