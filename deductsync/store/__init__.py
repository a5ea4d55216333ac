"""Remote realtime stores.

Provides a small async interface over a hierarchical key-value store with
child change subscriptions, plus in-memory and Firebase REST backends.
"""

from .base import ChangeEvent, ChangeKind, RemoteStore, Subscription
from .firebase import FirebaseStore
from .memory import MemoryStore

__all__ = [
    "ChangeEvent",
    "ChangeKind",
    "FirebaseStore",
    "MemoryStore",
    "RemoteStore",
    "Subscription",
]
