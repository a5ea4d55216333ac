"""Firebase Realtime Database backend over the REST API.

Reads and writes use the ``.json`` REST endpoints. Child subscriptions are
served from one server-sent-event stream per collection path; ``put`` and
``patch`` events are applied to a local mirror of the collection and
translated into ADDED/CHANGED/REMOVED child events.
"""

import asyncio
import json
import logging
from typing import Any

import httpx

from ..errors import RemoteStoreError
from .base import (
    ChangeCallback,
    ChangeEvent,
    ChangeKind,
    RemoteStore,
    Subscription,
    diff_children,
    join_path,
    split_path,
    write_in,
)

logger = logging.getLogger(__name__)


class ChildMirror:
    """Local copy of a streamed collection used to derive child events."""

    def __init__(self) -> None:
        self.children: dict[str, Any] = {}
        self.synced = False  # True once the initial snapshot arrived

    def apply(self, event: str, payload: dict[str, Any]) -> list[ChangeEvent]:
        """Apply one stream event and return the resulting child events.

        Args:
            event: SSE event name ("put" or "patch").
            payload: Decoded ``{"path": ..., "data": ...}`` body.

        Returns:
            Child events caused by the update.
        """
        parts = split_path(payload.get("path", "/"))
        data = payload.get("data")
        before = self.children

        if event == "put":
            after = write_in(before, parts, data)
        elif event == "patch":
            after = before
            for key, value in (data or {}).items():
                after = write_in(after, parts + split_path(key), value)
        else:
            return []

        self.children = after if isinstance(after, dict) else {}
        if not parts:
            self.synced = True
        return diff_children(before, self.children)


class _CollectionStream:
    """One SSE connection feeding every subscription on a collection path."""

    def __init__(self, store: "FirebaseStore", path: str):
        self.store = store
        self.path = path
        self.mirror = ChildMirror()
        self.subscriptions: dict[int, Subscription] = {}
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def dispatch(self, events: list[ChangeEvent]) -> None:
        for event in events:
            for sub in list(self.subscriptions.values()):
                if sub.kind == event.kind:
                    try:
                        sub.callback(event)
                    except Exception as e:
                        logger.error(f"Subscription callback failed for {self.path}: {e}")

    async def consume(self, response: httpx.Response) -> None:
        """Read SSE lines from a streaming response until it ends."""
        event_name: str | None = None
        data_lines: list[str] = []

        async for line in response.aiter_lines():
            if line.startswith("event:"):
                event_name = line[len("event:"):].strip()
            elif line.startswith("data:"):
                data_lines.append(line[len("data:"):].strip())
            elif line == "" and event_name:
                self.handle(event_name, "\n".join(data_lines))
                event_name = None
                data_lines = []

        if event_name:
            self.handle(event_name, "\n".join(data_lines))

    def handle(self, event_name: str, raw: str) -> None:
        if event_name in ("put", "patch"):
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"Malformed {event_name} event on {self.path}: {raw[:100]}")
                return
            self.dispatch(self.mirror.apply(event_name, payload))
        elif event_name == "keep-alive":
            logger.debug(f"Keep-alive on {self.path}")
        elif event_name in ("cancel", "auth_revoked"):
            logger.warning(f"Stream {event_name} on {self.path}: {raw}")
        else:
            logger.debug(f"Ignoring stream event {event_name} on {self.path}")

    async def _run(self) -> None:
        """Keep the stream open, reconnecting with exponential backoff."""
        backoff = 1.0
        client = await self.store._get_client()

        while True:
            try:
                async with client.stream(
                    "GET",
                    self.store._url(self.path),
                    headers={"Accept": "text/event-stream"},
                    timeout=None,
                ) as response:
                    if response.status_code != 200:
                        logger.warning(
                            f"Stream on {self.path} returned HTTP {response.status_code}"
                        )
                    else:
                        backoff = 1.0
                        await self.consume(response)
            except asyncio.CancelledError:
                raise
            except httpx.HTTPError as e:
                logger.warning(f"Stream on {self.path} failed: {e}")

            logger.debug(f"Reconnecting stream on {self.path} in {backoff}s")
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self.store.max_backoff)


class FirebaseStore(RemoteStore):
    """RemoteStore backed by the Firebase Realtime Database REST API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        max_backoff: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the store.

        Args:
            base_url: Database URL, e.g. "https://my-project.firebaseio.com".
            timeout: Request timeout in seconds.
            max_backoff: Upper bound for stream reconnect delays.
            client: Optional preconfigured HTTP client.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_backoff = max_backoff
        self._client = client
        self._streams: dict[str, _CollectionStream] = {}
        self._stopping: set[asyncio.Task] = set()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
            )
        return self._client

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{join_path(path)}.json"

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(
                method, self._url(path), json=json_data, headers=headers
            )
        except httpx.HTTPError as e:
            raise RemoteStoreError(f"{method} {path} failed: {e}") from e
        return response

    @staticmethod
    def _check(response: httpx.Response, method: str, path: str) -> None:
        if response.status_code >= 400:
            raise RemoteStoreError(
                f"{method} {path} returned HTTP {response.status_code}: {response.text}"
            )

    @staticmethod
    def _decode(response: httpx.Response, method: str, path: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise RemoteStoreError(
                f"{method} {path} returned a non-JSON body: {response.text[:100]}"
            ) from e

    async def get(self, path: str) -> Any:
        response = await self._request("GET", path)
        self._check(response, "GET", path)
        return self._decode(response, "GET", path)

    async def set(self, path: str, value: Any) -> None:
        response = await self._request("PUT", path, value)
        self._check(response, "PUT", path)

    async def create(self, path: str, value: Any) -> bool:
        """Create-if-absent using an ETag conditional write."""
        response = await self._request("GET", path, headers={"X-Firebase-ETag": "true"})
        self._check(response, "GET", path)
        if self._decode(response, "GET", path) is not None:
            return False

        etag = response.headers.get("ETag", "")
        response = await self._request("PUT", path, value, headers={"if-match": etag})
        if response.status_code == 412:
            logger.info(f"Conditional create lost race at {path}")
            return False
        self._check(response, "PUT", path)
        return True

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        response = await self._request("PATCH", path, fields)
        self._check(response, "PATCH", path)

    async def remove(self, path: str) -> None:
        response = await self._request("DELETE", path)
        self._check(response, "DELETE", path)

    def subscribe(
        self, path: str, kind: ChangeKind, callback: ChangeCallback
    ) -> Subscription:
        path = join_path(path)
        subscription = Subscription(path=path, kind=kind, callback=callback)

        stream = self._streams.get(path)
        if stream is None:
            stream = _CollectionStream(self, path)
            self._streams[path] = stream
        stream.subscriptions[subscription.id] = subscription

        # Late ADDED subscribers see children the stream already mirrored
        if kind == ChangeKind.ADDED and stream.mirror.synced:
            for event in diff_children(None, stream.mirror.children):
                callback(event)

        stream.start()
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        stream = self._streams.get(subscription.path)
        if stream is None:
            return
        stream.subscriptions.pop(subscription.id, None)
        if not stream.subscriptions:
            del self._streams[subscription.path]
            task = asyncio.create_task(stream.stop())
            self._stopping.add(task)
            task.add_done_callback(self._stopping.discard)

    async def close(self) -> None:
        """Stop all streams and close the HTTP client."""
        for stream in list(self._streams.values()):
            await stream.stop()
        self._streams.clear()
        if self._stopping:
            await asyncio.gather(*self._stopping)
        if self._client:
            await self._client.aclose()
            self._client = None
