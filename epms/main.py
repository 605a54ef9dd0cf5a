"""
EPMS Cache Service - FastAPI admin surface over the persistent cache.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query

from epms.cache import CacheOptions, get_persistent_cache, set_persistent_cache

# Version tracking
APP_VERSION = "v0.1.0"
APP_NAME = "EPMS Cache"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Drop whatever expired while the service was down
    get_persistent_cache().initialize_cache_cleanup()
    yield
    get_persistent_cache().shutdown(wait_for_refreshes=False)
    # Next startup builds a fresh cache with a live refresh pool
    set_persistent_cache(None)


app = FastAPI(
    title=APP_NAME,
    description="Persistent dashboard cache administration",
    version=APP_VERSION,
    lifespan=lifespan,
)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "full": f"{APP_NAME} {APP_VERSION}",
    }


@app.get("/cache/stats")
def cache_stats():
    """Get cache statistics."""
    return get_persistent_cache().get_stats()


@app.get("/cache/age/{key}")
def cache_age(
    key: str,
    prefix: Optional[str] = Query(default=None, description="Namespace prefix (default namespace if omitted)"),
):
    """Milliseconds since the entry was last written or read."""
    age = get_persistent_cache().get_cache_age(key, CacheOptions(key_prefix=prefix))
    if age is None:
        raise HTTPException(status_code=404, detail=f"No cache entry for {key}")
    return {"key": key, "ageMs": age}


@app.delete("/cache")
def cache_clear(
    prefix: Optional[str] = Query(default=None, description="Namespace prefix (default namespace if omitted)"),
):
    """Clear all non-critical entries under the prefix."""
    removed = get_persistent_cache().clear_cache(prefix)
    return {"removed": removed}


@app.delete("/cache/{key}")
def cache_remove(
    key: str,
    prefix: Optional[str] = Query(default=None, description="Namespace prefix (default namespace if omitted)"),
):
    """Remove a single entry, including critical ones."""
    get_persistent_cache().remove_cache(key, CacheOptions(key_prefix=prefix))
    return {"removed": key}
