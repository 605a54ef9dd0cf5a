"""
Unit tests for the persistent store adapters.
"""
import pytest

from config.settings import Settings
from epms.cache import (
    MemoryStorage,
    QuotaExceededError,
    SqliteStorage,
    byte_size,
    create_storage,
)


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    """Each store implementation, with a 64-byte quota."""
    if request.param == "memory":
        return MemoryStorage(quota_bytes=64)
    return SqliteStorage(tmp_path / "cache.db", quota_bytes=64)


class TestStorageContract:
    """Behavior shared by every StorageBackend."""

    def test_get_set_remove(self, backend):
        assert backend.get("a") is None
        backend.set("a", "1")
        backend.set("a", "2")
        assert backend.get("a") == "2"
        assert "a" in backend

        backend.remove("a")
        backend.remove("a")  # missing key is fine
        assert backend.get("a") is None

    def test_keys_snapshot(self, backend):
        backend.set("p_one", "1")
        backend.set("p_two", "2")
        backend.set("other", "3")
        assert sorted(backend.keys()) == ["other", "p_one", "p_two"]
        assert len(backend) == 3

    def test_usage_counts_utf8_bytes(self, backend):
        backend.set("k", "é€")
        assert backend.usage_bytes() == byte_size("k") + byte_size("é€")

    def test_quota_rejects_write_and_keeps_state(self, backend):
        backend.set("a", "x" * 40)
        with pytest.raises(QuotaExceededError):
            backend.set("b", "y" * 40)
        assert backend.get("a") == "x" * 40
        assert backend.get("b") is None

    def test_replacing_value_frees_old_bytes(self, backend):
        backend.set("a", "x" * 60)
        # Replacement is measured without the old value
        backend.set("a", "z" * 60)
        assert backend.get("a") == "z" * 60


class TestSqliteStorage:
    """SQLite-specific behavior."""

    def test_values_persist_across_instances(self, tmp_path):
        path = tmp_path / "nested" / "cache.db"
        SqliteStorage(path).set("epms_cache_k", '{"data":1}')

        reopened = SqliteStorage(path)
        assert reopened.get("epms_cache_k") == '{"data":1}'

    def test_no_quota_by_default(self, tmp_path):
        store = SqliteStorage(tmp_path / "cache.db")
        store.set("k", "x" * 10_000)
        assert store.usage_bytes() == 10_001


class TestCreateStorage:
    """Backend selection from settings."""

    def test_memory_backend(self):
        store = create_storage(Settings(cache_backend="memory", cache_quota_bytes=100))
        assert isinstance(store, MemoryStorage)
        assert store.quota_bytes == 100

    def test_sqlite_backend(self, tmp_path):
        store = create_storage(Settings(cache_backend="sqlite", cache_directory=tmp_path))
        assert isinstance(store, SqliteStorage)
        assert store.db_path == tmp_path / "epms_cache.db"

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_storage(Settings(cache_backend="redis"))
