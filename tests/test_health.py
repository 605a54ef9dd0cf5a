"""
Admin API tests: health, version and cache management endpoints.
"""
import pytest
from fastapi.testclient import TestClient

from config.settings import Settings
from epms.cache import (
    CacheKeys,
    MemoryStorage,
    PersistentCache,
    set_persistent_cache,
)
from epms.cache import manager
from epms.main import app

client = TestClient(app)


@pytest.fixture(autouse=True)
def memory_cache():
    """Route the global cache to an in-memory store for each test."""
    cache = PersistentCache(
        store=MemoryStorage(),
        settings=Settings(cache_backend="memory"),
    )
    set_persistent_cache(cache)
    yield cache
    set_persistent_cache(None)
    cache.shutdown()


def test_health_endpoint_returns_200():
    """Test that /health returns HTTP 200"""
    response = client.get("/health")
    assert response.status_code == 200


def test_health_endpoint_returns_ok_status():
    """Test that /health returns status: ok"""
    response = client.get("/health")
    data = response.json()
    assert data["status"] == "ok"


def test_version_endpoint():
    response = client.get("/version")
    assert response.status_code == 200
    assert response.json()["name"] == "EPMS Cache"


def test_cache_stats_reports_entries(memory_cache):
    memory_cache.set_cache("projects", [{"id": "p1"}])
    data = client.get("/cache/stats").json()
    assert data["entries"] == 1
    assert data["total_bytes"] > 0


def test_cache_age(memory_cache):
    memory_cache.set_cache("projects", [])
    response = client.get("/cache/age/projects")
    assert response.status_code == 200
    assert response.json()["ageMs"] >= 0


def test_cache_age_missing_returns_404():
    response = client.get("/cache/age/nothing")
    assert response.status_code == 404


def test_clear_preserves_critical(memory_cache):
    memory_cache.set_cache("projects", [])
    memory_cache.set_cache(CacheKeys.SUMMARY_STATS, {"active": 1})

    response = client.delete("/cache")

    assert response.json() == {"removed": 1}
    assert memory_cache.get_cache(CacheKeys.SUMMARY_STATS) == {"active": 1}


def test_remove_single_key(memory_cache):
    memory_cache.set_cache(CacheKeys.FIRM_LOGO, "logo.png")

    client.delete("/cache/firm_logo")

    assert memory_cache.get_cache(CacheKeys.FIRM_LOGO) is None


def test_lifespan_releases_shut_down_cache(memory_cache):
    with TestClient(app) as lifespan_client:
        assert lifespan_client.get("/health").status_code == 200

    # The stopped cache is no longer handed out to later callers
    assert manager._persistent_cache is None
    memory_cache.set_cache("projects", [1])
    assert memory_cache.prefetch_with_cache("projects", lambda: [2]) == [1]
