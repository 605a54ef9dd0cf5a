"""
Main cache orchestration: bounded persistent entries, touch-on-read,
stale fallback, and stale-while-revalidate prefetching.

Nothing here raises into the caller. Store failures, oversized values and
fetch errors all end as a log line and, at worst, a cache miss.
"""
import dataclasses
import threading
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel

from config.settings import Settings, settings as default_settings

from .core import CacheEntry, CacheEntryError, CacheOptions
from .eviction import CleanupReport, cleanup
from .keys import CRITICAL_KEY_PATTERNS, KeyLike, build_key, is_critical_key
from .sizing import byte_size, total_size
from .store import QuotaExceededError, StorageBackend, StorageError, create_storage

logger = logging.getLogger("cache.manager")


def _item_id(item: Any) -> Any:
    """Identifier of a list element: mapping key "id" or attribute id."""
    if isinstance(item, dict):
        return item.get("id")
    return getattr(item, "id", None)


def _as_cacheable(item: Any) -> Any:
    """JSON-ready form of a list element (pydantic models and dataclasses become dicts)."""
    if isinstance(item, BaseModel):
        return item.model_dump(mode="json")
    if dataclasses.is_dataclass(item) and not isinstance(item, type):
        return dataclasses.asdict(item)
    return item


class PersistentCache:
    """
    Size-bounded TTL cache over a persistent string store.

    - Entries are JSON {"data", "timestamp", "expiresAt"} under prefix + key
    - Reads touch the entry's timestamp so eviction sees it as recent
    - Writes over budget trigger a partial cleanup; quota errors get one retry
    - prefetch_with_cache serves cached (even stale) data and refreshes in
      the background
    """

    def __init__(
        self,
        store: Optional[StorageBackend] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
        critical_patterns: Iterable[str] = CRITICAL_KEY_PATTERNS,
        max_revalidation_workers: Optional[int] = None,
    ):
        """
        Args:
            store: Backing store; built from settings when omitted
            settings: Cache configuration; the process settings when omitted
            clock: Returns the current epoch time in seconds
            critical_patterns: Keys exempt from eviction and clear_cache
            max_revalidation_workers: Thread pool size for background refreshes
        """
        self.settings = settings or default_settings
        self.store = store if store is not None else create_storage(self.settings)
        self._clock = clock
        self.critical_patterns = tuple(critical_patterns)

        # Foreground calls and background refresh writes never interleave
        self._lock = threading.RLock()

        workers = max_revalidation_workers or self.settings.cache_revalidation_workers
        self._refresh_pool = ThreadPoolExecutor(
            max_workers=workers,
            thread_name_prefix="cache-refresh",
        )
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
            "writes": 0,
            "rejected_oversize": 0,
            "dropped_writes": 0,
            "evictions": 0,
            "refreshes_ok": 0,
            "refreshes_failed": 0,
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _options(self, options: Optional[CacheOptions]) -> CacheOptions:
        return (options or CacheOptions()).resolve(self.settings)

    @property
    def total_budget(self) -> int:
        return self.settings.cache_max_total_bytes

    @property
    def cleanup_target(self) -> int:
        return int(self.total_budget * self.settings.cache_cleanup_target_ratio)

    def is_critical(self, full_key: str) -> bool:
        return is_critical_key(full_key, self.critical_patterns)

    def _cleanup(self, prefix: str, target_size: Optional[int] = None) -> CleanupReport:
        report = cleanup(
            self.store,
            prefix,
            now_ms=self._now_ms(),
            target_size=target_size,
            recent_window_seconds=self.settings.cache_recent_access_seconds,
            fraction=self.settings.cache_eviction_fraction,
            critical_patterns=self.critical_patterns,
        )
        self._stats["evictions"] += report.removed_count
        return report

    def cleanup(self, prefix: Optional[str] = None, target_size: Optional[int] = None) -> CleanupReport:
        """Run an expiry sweep (and size eviction when target_size is given)."""
        with self._lock:
            return self._cleanup(prefix or self.settings.cache_key_prefix, target_size)

    def total_size(self, prefix: Optional[str] = None) -> int:
        """Bytes stored under prefix (default namespace when omitted)."""
        with self._lock:
            try:
                return total_size(self.store, prefix or self.settings.cache_key_prefix)
            except StorageError as e:
                logger.warning(f"Failed to calculate cache size: {e}")
                return 0

    # =========================================================================
    # Entry API
    # =========================================================================

    def set_cache(self, key: KeyLike, data: Any, options: Optional[CacheOptions] = None) -> bool:
        """
        Store data under key.

        Returns:
            True if the entry was written. Oversized, unserializable and
            quota-dropped writes return False; nothing is raised.
        """
        opts = self._options(options)
        cache_key = build_key(key, opts.key_prefix)

        with self._lock:
            now_ms = self._now_ms()
            try:
                serialized = CacheEntry.create(data, now_ms, opts.ttl).to_json()
            except (TypeError, ValueError) as e:
                logger.warning(f"Cache value for {cache_key} is not serializable: {e}")
                return False

            size = byte_size(serialized)
            if size > opts.max_size:
                self._stats["rejected_oversize"] += 1
                logger.warning(
                    f"Cache entry too large ({size / 1024 / 1024:.2f}MB), "
                    f"not caching. Key: {cache_key}"
                )
                return False

            try:
                if total_size(self.store, opts.key_prefix) + size > self.total_budget:
                    logger.info(f"Cache budget exceeded writing {cache_key}, cleaning up")
                    self._cleanup(opts.key_prefix, self.cleanup_target)
                self.store.set(cache_key, serialized)
            except QuotaExceededError:
                logger.warning("Storage quota exceeded, cleaning up cache (removing oldest entries)")
                self._cleanup(opts.key_prefix, self.cleanup_target)
                return self._retry_write(cache_key, data, opts)
            except StorageError as e:
                self._stats["dropped_writes"] += 1
                logger.warning(f"Failed to set cache {cache_key}: {e}")
                return False

            self._stats["writes"] += 1
            logger.debug(f"CACHE SET: {cache_key} [{size} bytes]")
            return True

    def _retry_write(self, cache_key: str, data: Any, opts: CacheOptions) -> bool:
        """Single post-cleanup attempt, with timestamps taken after the cleanup."""
        serialized = CacheEntry.create(data, self._now_ms(), opts.ttl).to_json()
        try:
            self.store.set(cache_key, serialized)
        except StorageError as e:
            self._stats["dropped_writes"] += 1
            logger.warning(f"Still failed after cleanup, cache not saved: {cache_key} - {e}")
            return False
        self._stats["writes"] += 1
        return True

    def _read_entry(self, cache_key: str) -> Optional[CacheEntry]:
        """Stored entry, or None when absent or unreadable (corrupt ones are removed)."""
        raw = self.store.get(cache_key)
        if raw is None:
            return None
        try:
            return CacheEntry.from_json(raw)
        except CacheEntryError as e:
            logger.warning(f"Discarding unreadable cache entry {cache_key}: {e}")
            if not self.is_critical(cache_key):
                self.store.remove(cache_key)
            return None

    def get_cache(
        self,
        key: KeyLike,
        options: Optional[CacheOptions] = None,
        allow_stale: bool = False,
    ) -> Optional[Any]:
        """
        Read a cached value.

        Fresh hits touch the entry (timestamp = now, same expiry). Expired
        entries are removed and None returned, unless allow_stale is set, in
        which case the stale data is returned and the entry left in place.
        """
        data, _ = self._lookup(key, options, allow_stale)
        return data

    def _lookup(
        self,
        key: KeyLike,
        options: Optional[CacheOptions],
        allow_stale: bool,
    ) -> Tuple[Optional[Any], bool]:
        """(data, is_fresh) for key; data is None on a miss."""
        opts = self._options(options)
        cache_key = build_key(key, opts.key_prefix)

        with self._lock:
            try:
                entry = self._read_entry(cache_key)
            except StorageError as e:
                logger.warning(f"Failed to get cache {cache_key}: {e}")
                return None, False

            if entry is None:
                self._stats["misses"] += 1
                return None, False

            now_ms = self._now_ms()
            if entry.is_expired(now_ms):
                if allow_stale:
                    self._stats["hits_stale"] += 1
                    logger.debug(f"CACHE HIT (stale): {cache_key}")
                    return entry.data, False
                self._stats["misses"] += 1
                logger.debug(f"CACHE EXPIRED: {cache_key}")
                # Critical entries outlive expiry until removed explicitly
                if self.is_critical(cache_key):
                    return None, False
                try:
                    self.store.remove(cache_key)
                except StorageError as e:
                    logger.warning(f"Failed to remove expired cache {cache_key}: {e}")
                return None, False

            try:
                self.store.set(cache_key, entry.touched(now_ms).to_json())
            except StorageError as e:
                logger.debug(f"Touch failed for {cache_key}: {e}")

            self._stats["hits_fresh"] += 1
            logger.debug(f"CACHE HIT (fresh): {cache_key} [age={entry.age_ms(now_ms)}ms]")
            return entry.data, True

    def has_cache(self, key: KeyLike, options: Optional[CacheOptions] = None) -> bool:
        """True if a fresh entry exists. Counts as a read (touches the entry)."""
        return self.get_cache(key, options) is not None

    def remove_cache(self, key: KeyLike, options: Optional[CacheOptions] = None) -> None:
        """Remove one entry. Works on critical keys too."""
        opts = self._options(options)
        cache_key = build_key(key, opts.key_prefix)
        with self._lock:
            try:
                self.store.remove(cache_key)
                logger.debug(f"CACHE REMOVE: {cache_key}")
            except StorageError as e:
                logger.warning(f"Failed to remove cache {cache_key}: {e}")

    def clear_cache(self, prefix: Optional[str] = None) -> int:
        """
        Remove every entry under prefix except critical ones.

        Returns:
            Number of entries removed
        """
        cache_prefix = prefix or self.settings.cache_key_prefix
        with self._lock:
            removed = 0
            try:
                to_remove = [
                    k for k in self.store.keys()
                    if k.startswith(cache_prefix) and not self.is_critical(k)
                ]
                for key in to_remove:
                    self.store.remove(key)
                    removed += 1
            except StorageError as e:
                logger.warning(f"Failed to clear cache after removing {removed} entries: {e}")
                return removed
            logger.info(f"Cleared {removed} cache entries (preserved critical caches)")
            return removed

    def get_cache_age(self, key: KeyLike, options: Optional[CacheOptions] = None) -> Optional[int]:
        """Milliseconds since the entry was last written or touched, or None."""
        opts = self._options(options)
        cache_key = build_key(key, opts.key_prefix)
        with self._lock:
            try:
                raw = self.store.get(cache_key)
                if raw is None:
                    return None
                return CacheEntry.from_json(raw).age_ms(self._now_ms())
            except (StorageError, CacheEntryError):
                return None

    def initialize_cache_cleanup(self) -> CleanupReport:
        """Startup expiry sweep of the default namespace."""
        report = self.cleanup()
        logger.info("Initialized cache cleanup")
        return report

    # =========================================================================
    # Incremental list updates
    # =========================================================================

    def update_cache_upsert_item(
        self,
        key: KeyLike,
        item: Any,
        options: Optional[CacheOptions] = None,
    ) -> None:
        """
        Replace the element with item's id in a cached list, or prepend item.

        Creates [item] when no list is cached. Rewrites the whole entry, so
        its TTL restarts.
        """
        with self._lock:
            cached = self.get_cache(key, options)
            item_id = _item_id(item)
            item = _as_cacheable(item)

            if isinstance(cached, list):
                updated = list(cached)
                for index, existing in enumerate(updated):
                    if _item_id(existing) == item_id:
                        updated[index] = item
                        logger.debug(f"Updated item {item_id} in cache {key}")
                        break
                else:
                    updated.insert(0, item)
                    logger.debug(f"Added item {item_id} to cache {key}")
            else:
                updated = [item]
                logger.debug(f"Created new cache {key} with item {item_id}")

            self.set_cache(key, updated, options)

    def update_cache_remove_item(
        self,
        key: KeyLike,
        item_id: Any,
        options: Optional[CacheOptions] = None,
    ) -> None:
        """Drop the element with item_id from a cached list. No-op when nothing is cached."""
        with self._lock:
            cached = self.get_cache(key, options)
            if not isinstance(cached, list):
                return
            updated = [item for item in cached if _item_id(item) != item_id]
            self.set_cache(key, updated, options)
            logger.debug(f"Removed item {item_id} from cache {key}, kept {len(updated)} items")

    # =========================================================================
    # Stale-while-revalidate
    # =========================================================================

    def prefetch_with_cache(
        self,
        key: KeyLike,
        fetch_fn: Callable[[], Any],
        options: Optional[CacheOptions] = None,
        fallback: Callable[[], Any] = list,
    ) -> Any:
        """
        Return cached data immediately and refresh it in the background.

        - Fresh hit: return it, refresh in background
        - Stale hit: return the stale value, refresh in background
        - Miss: call fetch_fn inline, cache and return its result; on failure
          return fallback() instead of raising

        Concurrent callers are not deduplicated; each miss calls fetch_fn.
        """
        # One read that keeps an expired entry, so the stale fallback survives
        cached, is_fresh = self._lookup(key, options, allow_stale=True)
        if cached is not None:
            if not is_fresh:
                logger.info(f"Using stale cache for {key} while fetching fresh data")
            self._trigger_background_refresh(key, fetch_fn, options)
            return cached

        try:
            fresh = fetch_fn()
        except Exception as e:
            logger.error(f"Failed to fetch data for {key}: {e}")
            return fallback()

        self.set_cache(key, fresh, options)
        return fresh

    def _trigger_background_refresh(
        self,
        key: KeyLike,
        fetch_fn: Callable[[], Any],
        options: Optional[CacheOptions],
    ) -> Optional[Future]:
        """Schedule fetch_fn without blocking; a success overwrites the entry."""

        def do_refresh():
            try:
                data = fetch_fn()
            except Exception as e:
                self._stats["refreshes_failed"] += 1
                logger.warning(f"Background refresh failed for {key}, keeping cached data: {e}")
                return
            if self.set_cache(key, data, options):
                self._stats["refreshes_ok"] += 1
                logger.debug(f"Background refresh complete: {key}")
            else:
                self._stats["refreshes_failed"] += 1
                logger.warning(f"Background refresh for {key} fetched data that could not be cached")

        try:
            future = self._refresh_pool.submit(do_refresh)
        except RuntimeError as e:
            # Pool already shut down; the cached value still stands
            logger.warning(f"Background refresh for {key} not scheduled: {e}")
            return None
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget_future)
        return future

    def _forget_future(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def wait_for_refreshes(self, timeout: Optional[float] = None) -> bool:
        """
        Block until scheduled background refreshes finish.

        Returns:
            True if all of them completed within timeout
        """
        with self._pending_lock:
            pending: List[Future] = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_refreshes: bool = True) -> None:
        """Stop the background refresh pool."""
        self._refresh_pool.shutdown(wait=wait_for_refreshes)

    # =========================================================================
    # Stats
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics for the default namespace."""
        prefix = self.settings.cache_key_prefix
        with self._lock:
            try:
                entries = sum(1 for k in self.store.keys() if k.startswith(prefix))
                size = total_size(self.store, prefix)
            except StorageError as e:
                logger.warning(f"Failed to collect cache stats: {e}")
                entries, size = 0, 0

            total_hits = self._stats["hits_fresh"] + self._stats["hits_stale"]
            total_requests = total_hits + self._stats["misses"]
            hit_rate = (total_hits / total_requests * 100) if total_requests > 0 else 0

            with self._pending_lock:
                pending = len(self._pending)

            return {
                "prefix": prefix,
                "entries": entries,
                "total_bytes": size,
                "budget_bytes": self.total_budget,
                **self._stats,
                "hit_rate_percent": round(hit_rate, 1),
                "pending_refreshes": pending,
            }


# Global cache instance
_persistent_cache: Optional[PersistentCache] = None
_persistent_cache_lock = threading.Lock()


def get_persistent_cache() -> PersistentCache:
    """Get or create the global persistent cache."""
    global _persistent_cache
    with _persistent_cache_lock:
        if _persistent_cache is None:
            _persistent_cache = PersistentCache()
        return _persistent_cache


def set_persistent_cache(cache: Optional[PersistentCache]) -> None:
    """Replace the global cache (None resets it to lazy creation)."""
    global _persistent_cache
    with _persistent_cache_lock:
        _persistent_cache = cache


# =============================================================================
# Module-level API bound to the global cache
# =============================================================================

def set_cache(key: KeyLike, data: Any, options: Optional[CacheOptions] = None) -> bool:
    return get_persistent_cache().set_cache(key, data, options)


def get_cache(key: KeyLike, options: Optional[CacheOptions] = None, allow_stale: bool = False) -> Optional[Any]:
    return get_persistent_cache().get_cache(key, options, allow_stale)


def has_cache(key: KeyLike, options: Optional[CacheOptions] = None) -> bool:
    return get_persistent_cache().has_cache(key, options)


def remove_cache(key: KeyLike, options: Optional[CacheOptions] = None) -> None:
    get_persistent_cache().remove_cache(key, options)


def clear_cache(prefix: Optional[str] = None) -> int:
    return get_persistent_cache().clear_cache(prefix)


def get_cache_age(key: KeyLike, options: Optional[CacheOptions] = None) -> Optional[int]:
    return get_persistent_cache().get_cache_age(key, options)


def update_cache_upsert_item(key: KeyLike, item: Any, options: Optional[CacheOptions] = None) -> None:
    get_persistent_cache().update_cache_upsert_item(key, item, options)


def update_cache_remove_item(key: KeyLike, item_id: Any, options: Optional[CacheOptions] = None) -> None:
    get_persistent_cache().update_cache_remove_item(key, item_id, options)


def prefetch_with_cache(
    key: KeyLike,
    fetch_fn: Callable[[], Any],
    options: Optional[CacheOptions] = None,
    fallback: Callable[[], Any] = list,
) -> Any:
    return get_persistent_cache().prefetch_with_cache(key, fetch_fn, options, fallback)


def initialize_cache_cleanup() -> CleanupReport:
    return get_persistent_cache().initialize_cache_cleanup()
