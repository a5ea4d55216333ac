"""Base classes for remote realtime stores."""

import copy
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable


class ChangeKind(Enum):
    """Kind of child change reported by a store subscription."""

    ADDED = "child_added"
    CHANGED = "child_changed"
    REMOVED = "child_removed"


@dataclass
class ChangeEvent:
    """A tagged change to one child of a subscribed collection."""

    kind: ChangeKind
    key: str  # Child key under the collection path
    value: Any  # New value, or the removed value for REMOVED


ChangeCallback = Callable[[ChangeEvent], None]

_subscription_ids = itertools.count(1)


@dataclass
class Subscription:
    """Handle for a standing subscription, used to detach it."""

    path: str
    kind: ChangeKind
    callback: ChangeCallback
    id: int = field(default_factory=lambda: next(_subscription_ids))


def split_path(path: str) -> list[str]:
    """Split a slash-separated path into its non-empty segments."""
    return [part for part in path.strip("/").split("/") if part]


def join_path(*parts: str) -> str:
    """Join path fragments, normalizing slashes."""
    segments: list[str] = []
    for part in parts:
        segments.extend(split_path(part))
    return "/".join(segments)


def read_in(tree: Any, parts: list[str]) -> Any:
    """Read the value at path segments inside a nested dict, or None."""
    node = tree
    for part in parts:
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def write_in(tree: Any, parts: list[str], value: Any) -> Any:
    """Return a copy of ``tree`` with ``value`` written at path segments.

    Writing None deletes the location; parents left empty are pruned, the
    way realtime databases never store empty nodes.
    """
    if not parts:
        return value

    node = dict(tree) if isinstance(tree, dict) else {}
    child = write_in(node.get(parts[0]), parts[1:], value)
    if child is None or child == {}:
        node.pop(parts[0], None)
    else:
        node[parts[0]] = child
    return node


def diff_children(
    before: dict[str, Any] | None, after: dict[str, Any] | None
) -> list[ChangeEvent]:
    """Compute child events between two snapshots of a collection.

    Args:
        before: Previous children mapping (None for empty).
        after: New children mapping (None for empty).

    Returns:
        ChangeEvents for added, changed and removed children.
    """
    before = before if isinstance(before, dict) else {}
    after = after if isinstance(after, dict) else {}
    events = []

    for key, value in before.items():
        if key not in after:
            events.append(ChangeEvent(ChangeKind.REMOVED, key, copy.deepcopy(value)))

    for key, value in after.items():
        if key not in before:
            events.append(ChangeEvent(ChangeKind.ADDED, key, copy.deepcopy(value)))
        elif before[key] != value:
            events.append(ChangeEvent(ChangeKind.CHANGED, key, copy.deepcopy(value)))

    return events


class RemoteStore(ABC):
    """Abstract hierarchical key-value store with child change subscriptions."""

    @abstractmethod
    async def get(self, path: str) -> Any:
        """Read the value at a path, or None if absent."""
        pass

    @abstractmethod
    async def set(self, path: str, value: Any) -> None:
        """Overwrite the value at a path."""
        pass

    @abstractmethod
    async def create(self, path: str, value: Any) -> bool:
        """Write a value only if the path is currently empty.

        Returns:
            True if written, False if the path already held a value.
        """
        pass

    @abstractmethod
    async def update(self, path: str, fields: dict[str, Any]) -> None:
        """Merge the given fields into the value at a path."""
        pass

    @abstractmethod
    async def remove(self, path: str) -> None:
        """Delete the value at a path."""
        pass

    @abstractmethod
    def subscribe(
        self, path: str, kind: ChangeKind, callback: ChangeCallback
    ) -> Subscription:
        """Attach a standing child-change subscription to a collection path.

        ADDED subscriptions first receive every existing child.
        """
        pass

    @abstractmethod
    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a subscription. Unknown subscriptions are ignored."""
        pass

    async def close(self) -> None:
        """Release any network resources."""
        return None
