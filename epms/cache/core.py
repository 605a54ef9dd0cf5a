"""
Core cache data structures.
"""
import json
import math
from dataclasses import dataclass
from typing import Any, Optional


class CacheError(Exception):
    """Base class for errors raised inside the cache package."""


class CacheEntryError(CacheError):
    """A stored value could not be decoded into a CacheEntry."""


@dataclass
class CacheEntry:
    """
    A cached value with its write/touch time and fixed expiry.

    Times are epoch milliseconds. ``timestamp`` moves forward on every write
    or read touch; ``expires_at`` is set once when the entry is written.
    """
    data: Any
    timestamp: int
    expires_at: int

    @classmethod
    def create(cls, data: Any, now_ms: int, ttl_seconds: float) -> "CacheEntry":
        return cls(
            data=data,
            timestamp=now_ms,
            expires_at=now_ms + int(ttl_seconds * 1000),
        )

    def is_expired(self, now_ms: int) -> bool:
        return now_ms > self.expires_at

    def touched(self, now_ms: int) -> "CacheEntry":
        """Copy with timestamp moved to now and the same expiry."""
        return CacheEntry(data=self.data, timestamp=now_ms, expires_at=self.expires_at)

    def age_ms(self, now_ms: int) -> int:
        return now_ms - self.timestamp

    def to_json(self) -> str:
        """
        Serialize for the store.

        Raises:
            TypeError/ValueError: If data is not JSON serializable
        """
        return json.dumps(
            {"data": self.data, "timestamp": self.timestamp, "expiresAt": self.expires_at},
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        """
        Decode a stored value.

        Raises:
            CacheEntryError: If raw is not a valid serialized entry
        """
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise CacheEntryError(f"Invalid cache entry JSON: {e}") from e

        if not isinstance(payload, dict) or "data" not in payload:
            raise CacheEntryError("Cache entry is missing its data field")

        timestamp = payload.get("timestamp")
        expires_at = payload.get("expiresAt")
        for name, value in (("timestamp", timestamp), ("expiresAt", expires_at)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise CacheEntryError(f"Cache entry has invalid {name}: {value!r}")
            if not math.isfinite(value):
                raise CacheEntryError(f"Cache entry has non-finite {name}: {value!r}")

        return cls(data=payload["data"], timestamp=int(timestamp), expires_at=int(expires_at))


@dataclass
class CacheOptions:
    """
    Per-call cache options. Unset fields fall back to settings.

    ttl is in seconds; max_size is the byte limit for this single entry.
    """
    ttl: Optional[float] = None
    key_prefix: Optional[str] = None
    max_size: Optional[int] = None

    def resolve(self, settings) -> "CacheOptions":
        """Return a copy with every field filled from settings defaults."""
        return CacheOptions(
            ttl=self.ttl if self.ttl is not None else settings.cache_default_ttl_seconds,
            key_prefix=self.key_prefix or settings.cache_key_prefix,
            max_size=self.max_size if self.max_size is not None else settings.cache_max_entry_bytes,
        )
