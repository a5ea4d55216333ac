"""Offline asset cache.

Provides SQLite-backed cache generations and a worker that pre-populates
them, garbage-collects stale generations and serves requests with
cache-first or network-only strategies.
"""

from .cache import AssetResponse, Cache, CacheStorage
from .worker import AssetCacheWorker, AssetRequest, WorkerState

__all__ = [
    "AssetCacheWorker",
    "AssetRequest",
    "AssetResponse",
    "Cache",
    "CacheStorage",
    "WorkerState",
]
