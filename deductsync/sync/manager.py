"""Sync cache manager for deduction records.

Keeps a duplicate-free in-memory mirror of the remote deductions collection,
keyed by identity key, and republishes the full record set to the local
snapshot slot and the event bus after every change.
"""

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable

from ..errors import DeductSyncError, RecordNotFoundError, RemoteStoreError
from ..events import DEDUCTIONS_UPDATED, EventBus
from ..records import DeductionRecord, build_record, identity_key, to_wire_fields
from ..storage import LocalSlotStore
from ..store import ChangeEvent, ChangeKind, RemoteStore, Subscription
from ..store.base import join_path
from .cases import CaseAggregator
from .results import MutationResult

logger = logging.getLogger(__name__)

DEFAULT_DEDUCTIONS_PATH = "legal_data/deductions/payments"
DEFAULT_CASES_PATH = "legal_data/cases/active"
DEFAULT_SNAPSHOT_KEY = "deductionsData"


def generate_deduction_id() -> int:
    """Millisecond timestamp plus a small random offset."""
    return int(time.time() * 1000) + random.randint(0, 999)


@dataclass
class CacheEntry:
    """A cached record and the remote key it is stored under."""

    remote_key: str
    record: DeductionRecord


class DeductionsSyncManager:
    """Duplicate-suppressing mirror of the remote deductions collection.

    All cache mutations, from CRUD calls and from the change dispatch loop,
    run under one lock, so remote change events are applied between
    operations and never in the middle of one.
    """

    def __init__(
        self,
        store: RemoteStore,
        slot: LocalSlotStore,
        bus: EventBus,
        deductions_path: str = DEFAULT_DEDUCTIONS_PATH,
        cases_path: str = DEFAULT_CASES_PATH,
        snapshot_key: str = DEFAULT_SNAPSHOT_KEY,
        id_factory: Callable[[], int] = generate_deduction_id,
        max_id_attempts: int = 5,
    ):
        """Initialize the manager.

        Args:
            store: Remote realtime store.
            slot: Local persistent slot store for snapshots.
            bus: Event bus notified after every change.
            deductions_path: Remote collection holding deduction records.
            cases_path: Remote collection holding case aggregates.
            snapshot_key: Slot name for the published snapshot.
            id_factory: Generator for new numeric record identifiers.
            max_id_attempts: Identifier regenerations before giving up.
        """
        self.store = store
        self.slot = slot
        self.bus = bus
        self.deductions_path = deductions_path
        self.snapshot_key = snapshot_key
        self.cases = CaseAggregator(store, cases_path)
        self._id_factory = id_factory
        self._max_id_attempts = max_id_attempts

        self._entries: dict[str, CacheEntry] = {}
        self._ids: dict[str, str] = {}  # record id -> identity key
        self._remote_keys: dict[str, str] = {}  # remote key -> identity key

        self._subscriptions: list[Subscription] = []
        self._events: asyncio.Queue[ChangeEvent] | None = None
        self._dispatch_task: asyncio.Task | None = None
        self._write_lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()
        self._initialized = False

    # ==================== Lifecycle ====================

    async def initialize(self) -> None:
        """Load the collection once and attach the standing subscriptions.

        A second call is a no-op. A fetch failure propagates and leaves the
        manager uninitialized.
        """
        async with self._init_lock:
            if self._initialized:
                logger.warning("Sync manager already initialized")
                return

            try:
                await self._load_existing()
                self._attach_listeners()
            except Exception as e:
                logger.error(f"Sync manager initialization failed: {e}")
                await self._detach_listeners()
                raise

            self._initialized = True
            logger.info(
                f"Sync manager initialized with {len(self._entries)} deduction(s)"
            )

    async def _load_existing(self) -> None:
        payloads = await self.store.get(self.deductions_path)

        self._entries.clear()
        self._ids.clear()
        self._remote_keys.clear()

        if isinstance(payloads, dict):
            for remote_key, payload in payloads.items():
                if not isinstance(payload, dict):
                    continue
                record = DeductionRecord.from_dict(payload)
                self._put_entry(record.identity_key, CacheEntry(remote_key, record))

        logger.info(f"Loaded {len(self._entries)} deduction(s) from remote store")

    def _attach_listeners(self) -> None:
        self._events = asyncio.Queue()
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())

        for kind in (ChangeKind.ADDED, ChangeKind.CHANGED, ChangeKind.REMOVED):
            self._subscriptions.append(
                self.store.subscribe(self.deductions_path, kind, self._enqueue)
            )

    async def _detach_listeners(self) -> None:
        for subscription in self._subscriptions:
            self.store.unsubscribe(subscription)
        self._subscriptions = []

        if self._dispatch_task:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
            self._dispatch_task = None
        self._events = None

    async def cleanup(self) -> None:
        """Detach all subscriptions and stop dispatching. Safe to repeat.

        Cached records stay readable; the next initialize reloads them.
        """
        await self._detach_listeners()
        self._initialized = False
        logger.info("Sync listeners cleaned up")

    async def drain(self) -> None:
        """Wait until every queued change event has been applied."""
        if self._events is not None:
            await self._events.join()

    # ==================== Change dispatch ====================

    def _enqueue(self, event: ChangeEvent) -> None:
        if self._events is not None:
            self._events.put_nowait(event)

    async def _dispatch_loop(self) -> None:
        """Apply change events one at a time."""
        while True:
            event = await self._events.get()
            try:
                async with self._write_lock:
                    self.apply_change(event)
            except Exception as e:
                logger.error(f"Failed to apply {event.kind.value} for {event.key}: {e}")
            finally:
                self._events.task_done()

    def apply_change(self, event: ChangeEvent) -> bool:
        """Apply one remote change to the cache.

        Args:
            event: Tagged change from a subscription.

        Returns:
            True if the snapshot was republished.
        """
        if event.kind == ChangeKind.REMOVED:
            key = self._remote_keys.get(event.key)
            if key is None and isinstance(event.value, dict):
                key = identity_key(event.value)
            if key is not None:
                self._drop_entry(key)
            logger.info(f"Deduction removed: {event.key}")
            self._publish()
            return True

        if not isinstance(event.value, dict):
            logger.debug(f"Ignoring non-record payload at {event.key}")
            return False

        record = DeductionRecord.from_dict(event.value)
        key = record.identity_key

        if event.kind == ChangeKind.ADDED:
            # Late echoes of our own writes arrive after later updates
            if key in self._entries or event.key in self._remote_keys:
                return False
            self._put_entry(key, CacheEntry(event.key, record))
            logger.info(f"Deduction added: {event.key}")
        else:
            self._put_entry(key, CacheEntry(event.key, record))
            logger.info(f"Deduction changed: {event.key}")

        self._publish()
        return True

    # ==================== Cache bookkeeping ====================

    def _put_entry(self, key: str, entry: CacheEntry) -> None:
        """Insert an entry, dropping stale entries for the same remote key."""
        previous = self._remote_keys.get(entry.remote_key)
        if previous is not None and previous != key:
            self._drop_entry(previous)

        displaced = self._entries.get(key)
        if displaced is not None:
            self._unindex(key, displaced)

        self._entries[key] = entry
        self._remote_keys[entry.remote_key] = key
        if entry.record.id is not None:
            self._ids[str(entry.record.id)] = key

    def _drop_entry(self, key: str) -> CacheEntry | None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._unindex(key, entry)
        return entry

    def _unindex(self, key: str, entry: CacheEntry) -> None:
        if self._remote_keys.get(entry.remote_key) == key:
            del self._remote_keys[entry.remote_key]
        record_id = str(entry.record.id)
        if entry.record.id is not None and self._ids.get(record_id) == key:
            del self._ids[record_id]

    def _record_path(self, remote_key: str) -> str:
        return join_path(self.deductions_path, remote_key)

    # ==================== Mutations ====================

    async def add_deduction(self, data: dict[str, Any]) -> MutationResult:
        """Create a record unless an identical one is already cached.

        Args:
            data: Submitted fields; caseNumber, amount and date are required.

        Returns:
            MutationResult with the created record, or a duplicate result
            carrying the existing record.

        Raises:
            ValidationError: If required fields are missing.
            RemoteStoreError: If the remote write fails.
        """
        record = build_record(data)
        key = record.identity_key

        async with self._write_lock:
            existing = self._entries.get(key)
            if existing is not None:
                logger.warning(f"Deduction already exists: {key}")
                return MutationResult(
                    success=False,
                    duplicate=True,
                    existing=existing.record.copy(),
                    message="Deduction already exists",
                )

            remote_key = await self._persist_new(record)
            self._put_entry(key, CacheEntry(remote_key, record))

            await self.cases.update_case_deductions(
                record.case_number, self.get_case_deductions(record.case_number)
            )

            logger.info(f"Deduction added: {remote_key}")
            self._publish()

        return MutationResult(success=True, deduction=record.copy(), remote_key=remote_key)

    async def _persist_new(self, record: DeductionRecord) -> str:
        """Assign a fresh identifier and create the record remotely."""
        for _ in range(self._max_id_attempts):
            deduction_id = self._id_factory()
            if str(deduction_id) in self._ids:
                continue

            remote_key = f"deduction_{deduction_id}"
            record.id = deduction_id
            if await self.store.create(self._record_path(remote_key), record.to_dict()):
                return remote_key
            logger.warning(f"Remote key {remote_key} already taken, regenerating id")

        raise RemoteStoreError(
            f"Could not allocate a unique deduction id after {self._max_id_attempts} attempts"
        )

    async def update_deduction(
        self, deduction_id: Any, updates: dict[str, Any]
    ) -> MutationResult:
        """Apply a partial update to a cached record.

        Only the changed fields are written remotely. The entry is re-keyed
        under the identity key of the merged record and the old key dropped.

        Raises:
            RecordNotFoundError: If no cached record has the identifier.
            RemoteStoreError: If the remote write fails.
        """
        async with self._write_lock:
            key = self._ids.get(str(deduction_id))
            if key is None:
                logger.error(f"Deduction not in cache: {deduction_id}")
                raise RecordNotFoundError(deduction_id)

            entry = self._entries[key]
            wire_updates = to_wire_fields(updates)
            wire_updates.pop("id", None)

            updated = entry.record.merged(wire_updates)
            if "amount" in wire_updates:
                wire_updates["amount"] = updated.amount

            await self.store.update(self._record_path(entry.remote_key), wire_updates)

            self._drop_entry(key)
            self._put_entry(updated.identity_key, CacheEntry(entry.remote_key, updated))

            case_numbers = {updated.case_number, entry.record.case_number}
            for case_number in case_numbers:
                await self.cases.update_case_deductions(
                    case_number, self.get_case_deductions(case_number)
                )

            logger.info(f"Deduction updated: {entry.remote_key}")
            self._publish()

        return MutationResult(success=True, deduction=updated.copy())

    async def delete_deduction(self, deduction_id: Any) -> MutationResult:
        """Delete a cached record remotely and locally.

        Raises:
            RecordNotFoundError: If no cached record has the identifier.
            RemoteStoreError: If the remote delete fails.
        """
        logger.info(f"Deleting deduction {deduction_id}")

        async with self._write_lock:
            key = self._ids.get(str(deduction_id))
            if key is None:
                logger.error(f"Deduction not in cache: {deduction_id}")
                raise RecordNotFoundError(deduction_id)

            entry = self._entries[key]
            await self.store.remove(self._record_path(entry.remote_key))
            self._drop_entry(key)

            await self.cases.update_case_deductions(
                entry.record.case_number,
                amount_change=-float(entry.record.amount or 0),
            )

            logger.info(f"Deduction deleted: {entry.remote_key}")
            self._publish()

        return MutationResult(success=True)

    # ==================== Reads ====================

    def get_all_deductions(self) -> list[DeductionRecord]:
        return [entry.record.copy() for entry in self._entries.values()]

    def get_case_deductions(self, case_number: str) -> list[DeductionRecord]:
        return [
            entry.record.copy()
            for entry in self._entries.values()
            if str(entry.record.case_number) == str(case_number)
        ]

    def get_deduction(self, deduction_id: Any) -> DeductionRecord | None:
        key = self._ids.get(str(deduction_id))
        return self._entries[key].record.copy() if key else None

    def find_by_identity(self, key: str) -> DeductionRecord | None:
        entry = self._entries.get(key)
        return entry.record.copy() if entry else None

    def remote_key_for(self, deduction_id: Any) -> str | None:
        key = self._ids.get(str(deduction_id))
        return self._entries[key].remote_key if key else None

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def cache_size(self) -> int:
        return len(self._entries)

    def get_status(self) -> dict[str, Any]:
        """Get manager status for health reporting."""
        return {
            "initialized": self._initialized,
            "cached_deductions": len(self._entries),
            "subscriptions": len(self._subscriptions),
            "pending_events": self._events.qsize() if self._events else 0,
            "deductions_path": self.deductions_path,
        }

    # ==================== Publishing & reconciliation ====================

    def _publish(self) -> None:
        """Write the snapshot slot and broadcast the full record set."""
        try:
            deductions = [entry.record.to_dict() for entry in self._entries.values()]
            self.slot.set_item(self.snapshot_key, json.dumps(deductions, ensure_ascii=False))
            self.bus.emit(DEDUCTIONS_UPDATED, {"deductions": deductions})
        except Exception as e:
            logger.error(f"Failed to publish deductions snapshot: {e}")

    async def sync_local_to_remote(self) -> int:
        """Push records from the local snapshot that the cache does not know.

        Records are matched by identity key only; a record that changed
        shape while offline is pushed as a new record.

        Returns:
            Number of records created.
        """
        logger.info("Syncing local snapshot to remote store")

        raw = self.slot.get_item(self.snapshot_key)
        if not raw:
            logger.info("No local snapshot to sync")
            return 0

        try:
            local_deductions = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Local snapshot is not valid JSON: {e}")
            return 0

        added = 0
        for item in local_deductions:
            if not isinstance(item, dict) or identity_key(item) in self._entries:
                continue

            try:
                result = await self.add_deduction(item)
            except DeductSyncError as e:
                logger.error(f"Failed to push local deduction: {e}")
                continue

            if result.success:
                added += 1

        logger.info(f"Local sync complete: {added} deduction(s) added")
        return added
