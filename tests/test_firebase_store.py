"""Tests for the Firebase REST backend."""

import asyncio
import json

import httpx
import pytest

from deductsync.errors import RemoteStoreError
from deductsync.store import ChangeKind, FirebaseStore
from deductsync.store.base import Subscription
from deductsync.store.firebase import ChildMirror, _CollectionStream

BASE_URL = "https://test-project.firebaseio.com"


class FakeDatabase:
    """MockTransport handler recording requests."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], httpx.Response] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key in self.routes:
            return self.routes[key]
        return null_response()


def null_response(**headers) -> httpx.Response:
    """Firebase answers reads of empty paths with a literal null body."""
    return httpx.Response(
        200, content=b"null", headers={"Content-Type": "application/json", **headers}
    )


@pytest.fixture
def database():
    return FakeDatabase()


@pytest.fixture
def store(database):
    """Create a store backed by the fake database."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(database))
    return FirebaseStore(BASE_URL, client=client)


class TestChildMirror:
    """Tests for deriving child events from stream updates."""

    def test_initial_put_adds_children(self):
        """Test the root snapshot reports every child as added."""
        mirror = ChildMirror()

        events = mirror.apply("put", {"path": "/", "data": {"a": {"v": 1}, "b": {"v": 2}}})

        assert {(e.kind, e.key) for e in events} == {
            (ChangeKind.ADDED, "a"),
            (ChangeKind.ADDED, "b"),
        }
        assert mirror.synced is True

    def test_put_on_child_field_changes_child(self):
        """Test a nested put reports the child as changed."""
        mirror = ChildMirror()
        mirror.apply("put", {"path": "/", "data": {"a": {"v": 1}}})

        events = mirror.apply("put", {"path": "/a/v", "data": 5})

        assert len(events) == 1
        assert events[0].kind == ChangeKind.CHANGED
        assert events[0].value == {"v": 5}

    def test_put_null_removes_child(self):
        """Test writing null at a child reports removal."""
        mirror = ChildMirror()
        mirror.apply("put", {"path": "/", "data": {"a": {"v": 1}}})

        events = mirror.apply("put", {"path": "/a", "data": None})

        assert [(e.kind, e.key) for e in events] == [(ChangeKind.REMOVED, "a")]
        assert mirror.children == {}

    def test_patch_applies_each_field(self):
        """Test a patch can add and change several children."""
        mirror = ChildMirror()
        mirror.apply("put", {"path": "/", "data": {"a": {"v": 1}}})

        events = mirror.apply("patch", {"path": "/", "data": {"a": {"v": 2}, "b": {"v": 3}}})

        assert {(e.kind, e.key) for e in events} == {
            (ChangeKind.CHANGED, "a"),
            (ChangeKind.ADDED, "b"),
        }

    def test_unknown_event_ignored(self):
        """Test non-data events produce nothing."""
        assert ChildMirror().apply("keep-alive", {}) == []


class TestCollectionStream:
    """Tests for SSE parsing and dispatch."""

    @pytest.mark.asyncio
    async def test_consume_dispatches_by_kind(self, store):
        """Test stream events reach matching subscriptions only."""
        stream = _CollectionStream(store, "items")
        added, removed = [], []
        sub_a = Subscription("items", ChangeKind.ADDED, added.append)
        sub_r = Subscription("items", ChangeKind.REMOVED, removed.append)
        stream.subscriptions[sub_a.id] = sub_a
        stream.subscriptions[sub_r.id] = sub_r

        body = (
            'event: put\ndata: {"path": "/", "data": {"a": {"v": 1}}}\n\n'
            "event: keep-alive\ndata: null\n\n"
            'event: put\ndata: {"path": "/a", "data": null}\n\n'
        )
        await stream.consume(httpx.Response(200, content=body.encode()))

        assert [e.key for e in added] == ["a"]
        assert [e.key for e in removed] == ["a"]

    def test_malformed_event_ignored(self, store):
        """Test invalid JSON payloads are skipped."""
        stream = _CollectionStream(store, "items")

        stream.handle("put", "{not json")

        assert stream.mirror.children == {}


class TestFirebaseStoreRequests:
    """Tests for REST reads and writes."""

    @pytest.mark.asyncio
    async def test_get(self, store, database):
        """Test reads hit the .json endpoint."""
        database.routes[("GET", "/items/a.json")] = httpx.Response(200, json={"v": 1})

        assert await store.get("items/a") == {"v": 1}
        assert str(database.requests[0].url) == f"{BASE_URL}/items/a.json"

    @pytest.mark.asyncio
    async def test_update_sends_patch(self, store, database):
        """Test update issues a PATCH with the fields."""
        await store.update("items/a", {"v": 2})

        request = database.requests[0]
        assert request.method == "PATCH"
        assert json.loads(request.content) == {"v": 2}

    @pytest.mark.asyncio
    async def test_remove_sends_delete(self, store, database):
        """Test remove issues a DELETE."""
        await store.remove("items/a")

        assert database.requests[0].method == "DELETE"

    @pytest.mark.asyncio
    async def test_error_status_raises(self, store, database):
        """Test HTTP errors become RemoteStoreError."""
        database.routes[("GET", "/items.json")] = httpx.Response(401, text="Permission denied")

        with pytest.raises(RemoteStoreError) as exc:
            await store.get("items")

        assert "401" in str(exc.value)

    @pytest.mark.asyncio
    async def test_non_json_body_raises(self, store, database):
        """Test an HTML page answered with 200 becomes RemoteStoreError."""
        database.routes[("GET", "/items.json")] = httpx.Response(
            200, text="<html>Sign in to continue</html>"
        )

        with pytest.raises(RemoteStoreError) as exc:
            await store.get("items")

        assert "non-JSON" in str(exc.value)

    @pytest.mark.asyncio
    async def test_create_with_non_json_body_raises(self, store, database):
        """Test the create-if-absent read rejects non-JSON bodies too."""
        database.routes[("GET", "/items/a.json")] = httpx.Response(200, text="<html></html>")

        with pytest.raises(RemoteStoreError):
            await store.create("items/a", {"v": 1})

        assert len(database.requests) == 1

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        """Test connection failures become RemoteStoreError."""
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(unreachable))
        store = FirebaseStore(BASE_URL, client=client)

        with pytest.raises(RemoteStoreError):
            await store.set("items/a", {"v": 1})


class TestConditionalCreate:
    """Tests for create-if-absent."""

    @pytest.mark.asyncio
    async def test_create_when_absent(self, store, database):
        """Test an empty path is written with the ETag precondition."""
        database.routes[("GET", "/items/a.json")] = null_response(ETag="null-etag")

        assert await store.create("items/a", {"v": 1}) is True

        get_request, put_request = database.requests
        assert get_request.headers["X-Firebase-ETag"] == "true"
        assert put_request.method == "PUT"
        assert put_request.headers["if-match"] == "null-etag"

    @pytest.mark.asyncio
    async def test_create_when_present(self, store, database):
        """Test an occupied path is not overwritten."""
        database.routes[("GET", "/items/a.json")] = httpx.Response(200, json={"v": 0})

        assert await store.create("items/a", {"v": 1}) is False
        assert len(database.requests) == 1

    @pytest.mark.asyncio
    async def test_create_loses_race(self, store, database):
        """Test a failed precondition reports the path as taken."""
        database.routes[("GET", "/items/a.json")] = null_response(ETag="null-etag")
        database.routes[("PUT", "/items/a.json")] = httpx.Response(412, json={"v": 9})

        assert await store.create("items/a", {"v": 1}) is False


class TestFirebaseStoreSubscriptions:
    """Tests for streamed subscriptions."""

    @pytest.mark.asyncio
    async def test_subscribe_streams_children(self):
        """Test a subscription receives children from the event stream."""
        def handler(request):
            if request.headers.get("Accept") == "text/event-stream":
                body = 'event: put\ndata: {"path": "/", "data": {"a": {"v": 1}}}\n\n'
                return httpx.Response(200, content=body.encode())
            return null_response()

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = FirebaseStore(BASE_URL, client=client)
        events = []

        store.subscribe("items", ChangeKind.ADDED, events.append)
        for _ in range(50):
            if events:
                break
            await asyncio.sleep(0.01)

        late = []
        store.subscribe("items", ChangeKind.ADDED, late.append)
        await store.close()

        assert [e.key for e in events] == ["a"]
        assert [e.key for e in late] == ["a"]

    @pytest.mark.asyncio
    async def test_streams_shared_per_path(self, store):
        """Test subscriptions on one path share a stream."""
        first = store.subscribe("items", ChangeKind.ADDED, lambda e: None)
        second = store.subscribe("items", ChangeKind.REMOVED, lambda e: None)

        assert len(store._streams) == 1

        store.unsubscribe(first)
        assert "items" in store._streams
        store.unsubscribe(second)
        assert "items" not in store._streams
        await asyncio.sleep(0.01)

        await store.close()

    @pytest.mark.asyncio
    async def test_close_waits_for_released_streams(self, store):
        """Test streams stopped by unsubscribe are awaited on close."""
        subscription = store.subscribe("items", ChangeKind.ADDED, lambda e: None)
        stream = store._streams["items"]
        await asyncio.sleep(0.01)

        store.unsubscribe(subscription)
        stopping = set(store._stopping)
        assert len(stopping) == 1

        await store.close()

        assert all(task.done() for task in stopping)
        assert stream._task is None
        assert not store._stopping
