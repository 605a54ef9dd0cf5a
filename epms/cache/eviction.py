"""
Expiry sweep and partial size-based eviction.

A full flush under pressure makes every screen refetch at once. Instead each
pass drops expired and corrupt entries, then at most the oldest fraction of
what is left, skipping critical keys and anything touched recently.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .core import CacheEntry, CacheEntryError
from .keys import CRITICAL_KEY_PATTERNS, is_critical_key
from .sizing import byte_size
from .store import StorageBackend, StorageError

logger = logging.getLogger("cache.eviction")

RECENT_ACCESS_WINDOW_SECONDS = 120.0
EVICTION_FRACTION = 0.2


@dataclass
class _Candidate:
    key: str
    size: int
    timestamp: int


@dataclass
class CleanupReport:
    """Outcome of one cleanup pass."""
    expired: List[str] = field(default_factory=list)
    corrupt: List[str] = field(default_factory=list)
    evicted: List[str] = field(default_factory=list)
    kept: int = 0
    remaining_bytes: int = 0

    @property
    def removed_count(self) -> int:
        return len(self.expired) + len(self.corrupt) + len(self.evicted)


def eviction_quota(entry_count: int, fraction: float = EVICTION_FRACTION) -> int:
    """How many entries one pass may evict: at least 1, at most the fraction."""
    return max(1, int(entry_count * fraction))


def cleanup(
    store: StorageBackend,
    prefix: str,
    now_ms: int,
    target_size: Optional[int] = None,
    recent_window_seconds: float = RECENT_ACCESS_WINDOW_SECONDS,
    fraction: float = EVICTION_FRACTION,
    critical_patterns: Iterable[str] = CRITICAL_KEY_PATTERNS,
) -> CleanupReport:
    """
    Remove expired/corrupt entries under prefix, then shed the oldest entries
    if the survivors still exceed target_size.

    Args:
        store: Store to clean
        prefix: Only keys starting with this prefix are considered
        now_ms: Current time (epoch milliseconds)
        target_size: Byte budget for surviving entries; None skips eviction
        recent_window_seconds: Entries touched within this window are kept
        fraction: Share of surviving entries one pass may evict
        critical_patterns: Keys matching these are never touched

    Returns:
        CleanupReport. Store failures are logged and end the pass early.
    """
    report = CleanupReport()
    critical_patterns = tuple(critical_patterns)

    try:
        candidates = _sweep_expired(store, prefix, now_ms, critical_patterns, report)
        report.remaining_bytes = sum(c.size for c in candidates)

        if target_size is not None and report.remaining_bytes > target_size:
            _evict_oldest(
                store, candidates, now_ms, recent_window_seconds,
                fraction, critical_patterns, report,
            )
    except StorageError as e:
        logger.warning(f"Cache cleanup for {prefix} aborted: {e}")

    report.kept = max(0, report.kept - len(report.evicted))
    if report.removed_count:
        logger.info(
            f"Cache cleanup {prefix}: removed {len(report.expired)} expired, "
            f"{len(report.corrupt)} corrupt, {len(report.evicted)} evicted; "
            f"kept {report.kept}"
        )
    return report


def _sweep_expired(
    store: StorageBackend,
    prefix: str,
    now_ms: int,
    critical_patterns: tuple,
    report: CleanupReport,
) -> List[_Candidate]:
    """First pass: drop expired and unreadable entries, collect the rest."""
    candidates: List[_Candidate] = []
    to_remove: List[str] = []

    for key in store.keys():
        if not key.startswith(prefix):
            continue
        # Critical entries are not even parsed; a corrupt one stays in place
        if is_critical_key(key, critical_patterns):
            continue

        raw = store.get(key)
        if raw is None:
            continue
        try:
            entry = CacheEntry.from_json(raw)
        except CacheEntryError:
            report.corrupt.append(key)
            to_remove.append(key)
            continue

        if entry.is_expired(now_ms):
            report.expired.append(key)
            to_remove.append(key)
        else:
            candidates.append(_Candidate(key=key, size=byte_size(raw), timestamp=entry.timestamp))

    for key in to_remove:
        store.remove(key)

    report.kept = len(candidates)
    return candidates


def _evict_oldest(
    store: StorageBackend,
    candidates: List[_Candidate],
    now_ms: int,
    recent_window_seconds: float,
    fraction: float,
    critical_patterns: tuple,
    report: CleanupReport,
) -> None:
    """Second pass: remove up to the oldest fraction by last touch."""
    candidates.sort(key=lambda c: c.timestamp)
    quota = eviction_quota(len(candidates), fraction)
    recent_window_ms = int(recent_window_seconds * 1000)

    for candidate in candidates:
        if len(report.evicted) >= quota:
            break
        if is_critical_key(candidate.key, critical_patterns):
            continue
        if now_ms - candidate.timestamp < recent_window_ms:
            continue
        store.remove(candidate.key)
        report.evicted.append(candidate.key)
        report.remaining_bytes -= candidate.size
