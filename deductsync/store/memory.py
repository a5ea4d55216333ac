"""In-process realtime store for tests and local-only runs."""

import copy
import logging
from typing import Any

from .base import (
    ChangeCallback,
    ChangeEvent,
    ChangeKind,
    RemoteStore,
    Subscription,
    diff_children,
    join_path,
    read_in,
    split_path,
    write_in,
)

logger = logging.getLogger(__name__)


class MemoryStore(RemoteStore):
    """Nested-dict store with realtime-database style child notifications.

    Values are deep-copied on the way in and out so callers never share
    state with the store.
    """

    def __init__(self, initial: dict[str, Any] | None = None):
        self._root: dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._subscriptions: dict[int, Subscription] = {}

    def _read(self, path: str) -> Any:
        return read_in(self._root, split_path(path))

    def _mutate(self, path: str, value: Any) -> None:
        """Apply a write and notify subscriptions on affected collections."""
        watched = {sub.path for sub in self._subscriptions.values()}
        before = {p: self._read(p) for p in watched}

        self._root = write_in(self._root, split_path(path), copy.deepcopy(value)) or {}

        for watched_path, snapshot in before.items():
            for event in diff_children(snapshot, self._read(watched_path)):
                self._dispatch(watched_path, event)

    def _dispatch(self, path: str, event: ChangeEvent) -> None:
        for sub in list(self._subscriptions.values()):
            if sub.path == path and sub.kind == event.kind:
                try:
                    sub.callback(event)
                except Exception as e:
                    logger.error(f"Subscription callback failed for {path}: {e}")

    # ==================== RemoteStore API ====================

    async def get(self, path: str) -> Any:
        return copy.deepcopy(self._read(path))

    async def set(self, path: str, value: Any) -> None:
        self._mutate(path, value)

    async def create(self, path: str, value: Any) -> bool:
        if self._read(path) is not None:
            return False
        self._mutate(path, value)
        return True

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        current = self._read(path)
        merged = dict(current) if isinstance(current, dict) else {}
        for key, value in fields.items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        self._mutate(path, merged or None)

    async def remove(self, path: str) -> None:
        self._mutate(path, None)

    def subscribe(
        self, path: str, kind: ChangeKind, callback: ChangeCallback
    ) -> Subscription:
        path = join_path(path)
        subscription = Subscription(path=path, kind=kind, callback=callback)
        self._subscriptions[subscription.id] = subscription

        if kind == ChangeKind.ADDED:
            for event in diff_children(None, self._read(path)):
                callback(event)

        logger.debug(f"Subscribed {kind.value} on {path}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)
