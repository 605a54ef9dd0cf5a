"""
Cache key namespaces and the critical-key allow-list.
"""
from enum import Enum
from typing import Iterable, Optional, Tuple, Union

from config.settings import settings


# Default namespace for every key written without an explicit key_prefix
CACHE_PREFIX = settings.cache_key_prefix


class CacheKeys(Enum):
    """Logical cache names used by the dashboard."""
    SUMMARY_STATS = "summary_stats"         # Active projects count, total equipment count
    PROJECT_CARDS = "project_cards"         # Project card metadata for the overview page
    EQUIPMENT = "equipment"                 # Per-project equipment, suffixed with the project id
    TAB_COUNTERS = "tab_counters"           # Projects / standalone equipment / certificates counts
    FIRM_LOGO = "firm_logo"                 # Company logo URL, loaded first
    COMPANY_HIGHLIGHTS_PRODUCTION_KEY_PROGRESS = "company_highlights_production_key_progress"
    COMPANY_HIGHLIGHTS_PRODUCTION_ALL_UPDATES = "company_highlights_production_all_updates"
    COMPANY_HIGHLIGHTS_DOCUMENTATION = "company_highlights_documentation"
    COMPANY_HIGHLIGHTS_TIMELINE = "company_highlights_timeline"
    COMPANY_HIGHLIGHTS_MILESTONE = "company_highlights_milestone"


KeyLike = Union[str, CacheKeys]


def key_name(key: KeyLike) -> str:
    """Logical name for a CacheKeys member or plain string."""
    return key.value if isinstance(key, CacheKeys) else key


def scoped_key(key: KeyLike, scope: Union[str, int]) -> str:
    """
    Name for one instance of a keyed namespace.

    Example:
        scoped_key(CacheKeys.EQUIPMENT, "standalone") -> "equipment_standalone"
    """
    return f"{key_name(key)}_{scope}"


# Never evicted, never bulk-cleared. Only an explicit remove deletes these.
CRITICAL_KEY_PATTERNS: Tuple[str, ...] = (
    CacheKeys.SUMMARY_STATS.value,
    CacheKeys.TAB_COUNTERS.value,
    CacheKeys.FIRM_LOGO.value,
    scoped_key(CacheKeys.EQUIPMENT, "standalone"),
    CacheKeys.COMPANY_HIGHLIGHTS_PRODUCTION_KEY_PROGRESS.value,
    CacheKeys.COMPANY_HIGHLIGHTS_PRODUCTION_ALL_UPDATES.value,
    CacheKeys.COMPANY_HIGHLIGHTS_DOCUMENTATION.value,
    CacheKeys.COMPANY_HIGHLIGHTS_TIMELINE.value,
    CacheKeys.COMPANY_HIGHLIGHTS_MILESTONE.value,
)


def build_key(key: KeyLike, prefix: Optional[str] = None) -> str:
    """Fully qualified store key: namespace prefix + logical name."""
    return f"{prefix or CACHE_PREFIX}{key_name(key)}"


def is_critical_key(
    full_key: str,
    patterns: Iterable[str] = CRITICAL_KEY_PATTERNS,
) -> bool:
    """
    Check a fully qualified key against the critical allow-list.

    A key is critical when it equals a pattern under the default prefix, or
    contains the pattern anywhere (covers custom prefixes and suffixed keys).
    """
    for pattern in patterns:
        if full_key == build_key(pattern) or pattern in full_key:
            return True
    return False
