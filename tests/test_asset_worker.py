"""Tests for the offline asset cache worker."""

import json

import httpx
import pytest

from deductsync.assets import (
    AssetCacheWorker,
    AssetRequest,
    AssetResponse,
    CacheStorage,
    WorkerState,
)
from deductsync.config import AssetCacheConfig
from deductsync.errors import AssetFetchError
from deductsync.events import WORKER_MESSAGE, EventBus

ORIGIN = "https://app.test"
CDN_URL = "https://cdn.test/lib.css"


class FakeNetwork:
    """MockTransport handler serving configured URLs."""

    def __init__(self):
        self.responses: dict[str, tuple[int, bytes]] = {
            f"{ORIGIN}/": (200, b"<html>root</html>"),
            f"{ORIGIN}/index.html": (200, b"<html>index</html>"),
            f"{ORIGIN}/app.js": (200, b"console.log(1)"),
            CDN_URL: (200, b"body{}"),
        }
        self.offline = False
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.offline:
            raise httpx.ConnectError("network down", request=request)
        status, body = self.responses.get(str(request.url), (404, b"not found"))
        return httpx.Response(status, content=body, headers={"Content-Type": "text/plain"})


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def config():
    """Create an asset config for the fake origin."""
    return AssetCacheConfig(
        db_path=":memory:",
        origin=ORIGIN,
        static_cache_name="static-v2",
        dynamic_cache_name="dynamic-v2",
        static_assets=["./", "./index.html", "./app.js"],
        external_assets=[CDN_URL],
    )


@pytest.fixture
def storage():
    """Create in-memory cache storage."""
    storage = CacheStorage(":memory:")
    storage.connect()
    yield storage
    storage.close()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def worker(config, storage, bus, network):
    """Create a worker using the fake network."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(network))
    return AssetCacheWorker(config, storage, bus, client=client)


class TestInstall:
    """Tests for the install phase."""

    @pytest.mark.asyncio
    async def test_install_populates_caches(self, worker):
        """Test static and external assets land in their caches."""
        await worker.install()

        assert sorted(worker.static_cache.keys()) == [
            f"{ORIGIN}/",
            f"{ORIGIN}/app.js",
            f"{ORIGIN}/index.html",
        ]
        assert worker.dynamic_cache.keys() == [CDN_URL]
        assert worker.state == WorkerState.ACTIVATED

    @pytest.mark.asyncio
    async def test_static_failure_aborts_install(self, worker, network):
        """Test one failing static asset caches nothing."""
        del network.responses[f"{ORIGIN}/app.js"]

        with pytest.raises(AssetFetchError) as exc:
            await worker.install()

        assert "app.js" in str(exc.value)
        assert worker.state == WorkerState.REDUNDANT
        assert worker.static_cache.keys() == []

    @pytest.mark.asyncio
    async def test_external_failure_is_tolerated(self, worker, network):
        """Test external assets are best-effort."""
        del network.responses[CDN_URL]

        await worker.install()

        assert len(worker.static_cache.keys()) == 3
        assert worker.dynamic_cache.keys() == []

    @pytest.mark.asyncio
    async def test_waiting_until_skip_waiting(self, config, storage, bus, network):
        """Test a worker without skip-waiting stays installed until told."""
        config.skip_waiting_on_install = False
        client = httpx.AsyncClient(transport=httpx.MockTransport(network))
        worker = AssetCacheWorker(config, storage, bus, client=client)

        await worker.install()
        assert worker.state == WorkerState.INSTALLED

        handled = await worker.handle_message({"type": "SKIP_WAITING"})

        assert handled is True
        assert worker.state == WorkerState.ACTIVATED

    @pytest.mark.asyncio
    async def test_unknown_message(self, worker):
        """Test unrecognized messages are ignored."""
        assert await worker.handle_message({"type": "PING"}) is False
        assert await worker.handle_message({}) is False


class TestActivate:
    """Tests for the activate phase."""

    @pytest.mark.asyncio
    async def test_old_caches_deleted(self, worker, storage):
        """Test caches from previous versions are removed."""
        storage.open("static-v1").put(f"{ORIGIN}/index.html", AssetResponse(200, b"old"))
        storage.open("dynamic-v2")

        deleted = await worker.activate()

        assert deleted == ["static-v1"]
        assert storage.keys() == ["dynamic-v2"]
        assert worker.state == WorkerState.ACTIVATED


class TestFetch:
    """Tests for request handling."""

    @pytest.mark.asyncio
    async def test_cache_hit_served_and_revalidated(self, worker, network):
        """Test cached responses are served and refreshed in the background."""
        await worker.install()
        network.responses[f"{ORIGIN}/app.js"] = (200, b"console.log(2)")

        response = await worker.fetch(AssetRequest(url=f"{ORIGIN}/app.js"))
        await worker.wait_for_revalidations()

        assert response.body == b"console.log(1)"
        assert worker.dynamic_cache.match(f"{ORIGIN}/app.js").body == b"console.log(2)"

    @pytest.mark.asyncio
    async def test_cache_hit_offline(self, worker, network):
        """Test cached responses are served without a network."""
        await worker.install()
        network.offline = True

        response = await worker.fetch(AssetRequest(url=f"{ORIGIN}/index.html"))
        await worker.wait_for_revalidations()

        assert response.status == 200
        assert response.body == b"<html>index</html>"

    @pytest.mark.asyncio
    async def test_miss_same_origin_cached(self, worker, network):
        """Test same-origin network responses are stored."""
        await worker.install()
        network.responses[f"{ORIGIN}/extra.css"] = (200, b"p{}")

        response = await worker.fetch(AssetRequest(url=f"{ORIGIN}/extra.css"))

        assert response.body == b"p{}"
        assert worker.dynamic_cache.match(f"{ORIGIN}/extra.css") is not None

    @pytest.mark.asyncio
    async def test_miss_cross_origin_not_cached(self, worker, network):
        """Test cross-origin responses are passed through only."""
        await worker.install()
        network.responses["https://other.test/x.js"] = (200, b"x")

        response = await worker.fetch(AssetRequest(url="https://other.test/x.js"))

        assert response.status == 200
        assert worker.dynamic_cache.match("https://other.test/x.js") is None

    @pytest.mark.asyncio
    async def test_error_responses_not_cached(self, worker):
        """Test non-200 responses are not stored."""
        await worker.install()

        response = await worker.fetch(AssetRequest(url=f"{ORIGIN}/missing.png"))

        assert response.status == 404
        assert worker.dynamic_cache.match(f"{ORIGIN}/missing.png") is None

    @pytest.mark.asyncio
    async def test_offline_document_falls_back_to_index(self, worker, network):
        """Test offline navigations get the cached app shell."""
        await worker.install()
        network.offline = True

        response = await worker.fetch(
            AssetRequest(url=f"{ORIGIN}/cases/42", destination="document")
        )

        assert response.status == 200
        assert response.body == b"<html>index</html>"

    @pytest.mark.asyncio
    async def test_offline_other_requests_get_503(self, worker, network):
        """Test offline subresource requests get a plain 503."""
        await worker.install()
        network.offline = True

        response = await worker.fetch(AssetRequest(url=f"{ORIGIN}/logo.png", destination="image"))

        assert response.status == 503
        assert response.body == b"Offline"
        assert response.status_text == "Service Unavailable"

    @pytest.mark.asyncio
    async def test_database_hosts_are_network_only(self, worker, network):
        """Test database traffic bypasses the cache."""
        await worker.install()
        url = "https://proj.firebaseio.com/legal_data.json"
        network.responses[url] = (200, b"{}")

        response = await worker.fetch(AssetRequest(url=url))

        assert response.body == b"{}"
        assert worker.dynamic_cache.match(url) is None

    @pytest.mark.asyncio
    async def test_database_hosts_offline_json(self, worker, network):
        """Test offline database requests get a JSON offline marker."""
        await worker.install()
        network.offline = True

        response = await worker.fetch(
            AssetRequest(url="https://proj.firebaseio.com/legal_data.json")
        )

        assert response.status == 200
        assert response.headers["Content-Type"] == "application/json"
        assert json.loads(response.body) == {
            "error": "offline",
            "message": "App is running offline",
        }

    @pytest.mark.asyncio
    async def test_non_get_passes_through(self, worker, network):
        """Test non-GET requests always go to the network."""
        await worker.install()
        network.responses[f"{ORIGIN}/index.html"] = (200, b"posted")

        response = await worker.fetch(
            AssetRequest(url=f"{ORIGIN}/index.html", method="POST", body=b"x")
        )

        assert response.body == b"posted"
        assert network.requests[-1].method == "POST"

    @pytest.mark.asyncio
    async def test_cache_first_does_not_store(self, config, storage, bus, network):
        """Test the legacy strategy never writes back."""
        config.strategy = "cache_first"
        client = httpx.AsyncClient(transport=httpx.MockTransport(network))
        worker = AssetCacheWorker(config, storage, bus, client=client)
        await worker.install()
        network.responses[f"{ORIGIN}/extra.css"] = (200, b"p{}")

        response = await worker.fetch(AssetRequest(url=f"{ORIGIN}/extra.css"))

        assert response.body == b"p{}"
        assert storage.match(f"{ORIGIN}/extra.css") is None

    @pytest.mark.asyncio
    async def test_uninstalled_worker_uses_network(self, worker, network):
        """Test a worker that is not active does not serve from cache."""
        response = await worker.fetch(AssetRequest(url=f"{ORIGIN}/index.html"))

        assert response.body == b"<html>index</html>"
        assert worker.storage.keys() == []


class TestBackgroundSync:
    """Tests for background sync notifications."""

    @pytest.mark.asyncio
    async def test_clients_notified(self, worker, bus):
        """Test the sync tag notifies every client."""
        received = []
        bus.subscribe(WORKER_MESSAGE, received.append)

        notified = await worker.background_sync("background-sync")

        assert notified == 1
        assert received[0].payload == {
            "type": "BACKGROUND_SYNC",
            "message": "Connection restored",
        }

    @pytest.mark.asyncio
    async def test_other_tags_ignored(self, worker, bus):
        """Test unrelated sync tags do nothing."""
        received = []
        bus.subscribe(WORKER_MESSAGE, received.append)

        assert await worker.background_sync("other") == 0
        assert received == []


class TestHelpers:
    """Tests for URL handling and status."""

    def test_resolve_relative_urls(self, worker):
        """Test relative asset paths resolve against the origin."""
        assert worker.resolve("./") == f"{ORIGIN}/"
        assert worker.resolve("./icons/icon-72x72.png") == f"{ORIGIN}/icons/icon-72x72.png"
        assert worker.resolve(CDN_URL) == CDN_URL

    @pytest.mark.asyncio
    async def test_status(self, worker):
        """Test status reporting."""
        await worker.install()

        status = worker.get_status()

        assert status["state"] == "activated"
        assert status["caches"] == {"static-v2": 3, "dynamic-v2": 1}
