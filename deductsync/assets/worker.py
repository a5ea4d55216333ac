"""Offline asset cache worker.

Mirrors the lifecycle of a browser service worker: install pre-populates
the cache generations, activate removes stale generations, and fetch serves
requests stale-while-revalidate (or plain cache-first), with database
hosts kept network-only and offline fallbacks for everything else.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urljoin, urlsplit

import httpx

from ..config import AssetCacheConfig
from ..errors import AssetFetchError
from ..events import WORKER_MESSAGE, EventBus
from .cache import AssetResponse, Cache, CacheStorage

logger = logging.getLogger(__name__)

BACKGROUND_SYNC_TAG = "background-sync"
OFFLINE_MESSAGE = "App is running offline"
CONNECTION_RESTORED_MESSAGE = "Connection restored"

# Headers that no longer describe a decoded, stored body
_UNSTORABLE_HEADERS = {"content-encoding", "content-length", "transfer-encoding", "connection"}


class WorkerState(Enum):
    """Lifecycle state of the worker."""

    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"  # Waiting for activation
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    REDUNDANT = "redundant"  # Install failed


@dataclass
class AssetRequest:
    """A request intercepted by the worker."""

    url: str
    method: str = "GET"
    destination: str = ""  # "document", "script", "style", "image", ...
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None


class AssetCacheWorker:
    """Serves assets from two cache generations with network fallbacks."""

    def __init__(
        self,
        config: AssetCacheConfig,
        storage: CacheStorage,
        bus: EventBus | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the worker.

        Args:
            config: Asset cache configuration.
            storage: Cache storage holding the generations.
            bus: Event bus used to reach connected clients.
            client: Optional preconfigured HTTP client.
        """
        self.config = config
        self.storage = storage
        self.bus = bus or EventBus()
        self._client = client
        self._owns_client = client is None
        self.state = WorkerState.PARSED
        self._skip_waiting = False
        self._revalidations: set[asyncio.Task] = set()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.fetch_timeout,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        """Cancel background work and close the HTTP client."""
        for task in list(self._revalidations):
            task.cancel()
        self._revalidations.clear()
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    def resolve(self, url: str) -> str:
        """Resolve a possibly relative asset URL against the app origin."""
        return urljoin(self.config.origin.rstrip("/") + "/", url)

    @property
    def static_cache(self) -> Cache:
        return self.storage.open(self.config.static_cache_name)

    @property
    def dynamic_cache(self) -> Cache:
        return self.storage.open(self.config.dynamic_cache_name)

    # ==================== Network ====================

    async def _network_fetch(self, request: AssetRequest) -> AssetResponse:
        """Fetch from the network. Raises httpx.HTTPError on failure."""
        client = await self._get_client()
        response = await client.request(
            request.method,
            request.url,
            headers=request.headers,
            content=request.body,
        )
        headers = {
            key: value
            for key, value in response.headers.items()
            if key.lower() not in _UNSTORABLE_HEADERS
        }
        return AssetResponse(
            status=response.status_code,
            body=response.content,
            headers=headers,
            status_text=response.reason_phrase,
            url=str(response.url),
        )

    async def _add_all(self, cache: Cache, urls: list[str]) -> None:
        """Fetch and store every URL, or store nothing if any fetch fails."""
        results = await asyncio.gather(
            *(self._network_fetch(AssetRequest(url=url)) for url in urls),
            return_exceptions=True,
        )

        failed = [
            url
            for url, result in zip(urls, results)
            if isinstance(result, BaseException) or not result.ok
        ]
        if failed:
            raise AssetFetchError(f"Failed to cache {len(failed)} asset(s): {', '.join(failed)}")

        for url, response in zip(urls, results):
            cache.put(url, response)

    def _is_same_origin(self, url: str) -> bool:
        origin = urlsplit(self.config.origin)
        target = urlsplit(url)
        return (target.scheme, target.netloc) == (origin.scheme, origin.netloc)

    def _is_network_only(self, url: str) -> bool:
        host = urlsplit(url).hostname or ""
        return any(marker in host for marker in self.config.network_only_hosts)

    # ==================== Lifecycle ====================

    async def install(self) -> None:
        """Pre-populate the static and dynamic cache generations.

        Static assets are all-or-nothing and a failure propagates. External
        assets are best-effort.

        Raises:
            AssetFetchError: If any static asset could not be cached.
        """
        logger.info("Asset worker installing")
        self.state = WorkerState.INSTALLING

        static_urls = [self.resolve(url) for url in self.config.static_assets]
        external_urls = list(self.config.external_assets)

        async def cache_external() -> None:
            try:
                await self._add_all(self.dynamic_cache, external_urls)
            except AssetFetchError as e:
                logger.warning(f"Some external assets failed to cache: {e}")

        try:
            logger.info("Caching static files")
            await asyncio.gather(
                self._add_all(self.static_cache, static_urls),
                cache_external(),
            )
        except AssetFetchError:
            self.state = WorkerState.REDUNDANT
            raise

        self.state = WorkerState.INSTALLED
        if self.config.skip_waiting_on_install or self._skip_waiting:
            await self.activate()

    async def activate(self) -> list[str]:
        """Delete stale cache generations and start controlling clients.

        Returns:
            Names of the deleted caches.
        """
        logger.info("Asset worker activating")
        self.state = WorkerState.ACTIVATING

        current = {self.config.static_cache_name, self.config.dynamic_cache_name}
        deleted = []
        for name in self.storage.keys():
            if name not in current:
                logger.info(f"Deleting old cache: {name}")
                self.storage.delete(name)
                deleted.append(name)

        self.state = WorkerState.ACTIVATED
        return deleted

    async def skip_waiting(self) -> None:
        """Activate a waiting worker without waiting for clients to close."""
        self._skip_waiting = True
        if self.state == WorkerState.INSTALLED:
            await self.activate()

    async def handle_message(self, data: dict[str, Any]) -> bool:
        """Handle a control message from a client.

        Returns:
            True if the message was understood.
        """
        if data and data.get("type") == "SKIP_WAITING":
            await self.skip_waiting()
            return True
        logger.debug(f"Ignoring worker message: {data}")
        return False

    async def background_sync(self, tag: str) -> int:
        """Notify connected clients that connectivity is back.

        Returns:
            Number of clients notified.
        """
        logger.info(f"Background sync triggered: {tag}")
        if tag != BACKGROUND_SYNC_TAG:
            return 0

        return self.bus.emit(
            WORKER_MESSAGE,
            {"type": "BACKGROUND_SYNC", "message": CONNECTION_RESTORED_MESSAGE},
        )

    # ==================== Fetch ====================

    async def fetch(self, request: AssetRequest) -> AssetResponse:
        """Serve a request according to the configured strategy."""
        if self.state != WorkerState.ACTIVATED or request.method != "GET":
            return await self._network_or_offline(request)

        if self._is_network_only(request.url):
            return await self._network_only(request)

        if self.config.strategy == "cache_first":
            return await self._cache_first(request)
        return await self._stale_while_revalidate(request)

    async def _network_only(self, request: AssetRequest) -> AssetResponse:
        try:
            return await self._network_fetch(request)
        except httpx.HTTPError as e:
            logger.info(f"Database host unreachable ({e}), serving offline response")
            return AssetResponse(
                status=200,
                body=json.dumps(
                    {"error": "offline", "message": OFFLINE_MESSAGE}
                ).encode(),
                headers={"Content-Type": "application/json"},
                url=request.url,
            )

    async def _network_or_offline(self, request: AssetRequest) -> AssetResponse:
        try:
            return await self._network_fetch(request)
        except httpx.HTTPError:
            return self._offline_fallback(request)

    async def _cache_first(self, request: AssetRequest) -> AssetResponse:
        cached = self.storage.match(request.url)
        if cached is not None:
            return cached
        return await self._network_or_offline(request)

    async def _stale_while_revalidate(self, request: AssetRequest) -> AssetResponse:
        cached = self.storage.match(request.url)
        if cached is not None:
            self._schedule_revalidation(request)
            return cached

        try:
            response = await self._network_fetch(request)
        except httpx.HTTPError as e:
            logger.debug(f"Network failed for {request.url}: {e}")
            return self._offline_fallback(request)

        if response.ok and self._is_same_origin(request.url):
            self.dynamic_cache.put(request.url, response)
        return response

    def _schedule_revalidation(self, request: AssetRequest) -> None:
        task = asyncio.create_task(self._revalidate(request))
        self._revalidations.add(task)
        task.add_done_callback(self._revalidations.discard)

    async def _revalidate(self, request: AssetRequest) -> None:
        try:
            response = await self._network_fetch(request)
        except httpx.HTTPError:
            return  # Cached copy already served
        if response.ok:
            self.dynamic_cache.put(request.url, response)

    async def wait_for_revalidations(self) -> None:
        """Wait for pending background cache refreshes."""
        if self._revalidations:
            await asyncio.gather(*self._revalidations, return_exceptions=True)

    def _offline_fallback(self, request: AssetRequest) -> AssetResponse:
        if request.destination == "document":
            page = self.storage.match(self.resolve(self.config.offline_page))
            if page is not None:
                return page
        return AssetResponse(
            status=503,
            body=b"Offline",
            headers={"Content-Type": "text/plain"},
            status_text="Service Unavailable",
            url=request.url,
        )

    def get_status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "strategy": self.config.strategy,
            "caches": self.storage.get_stats(),
            "pending_revalidations": len(self._revalidations),
        }
