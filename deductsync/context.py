"""Application context wiring the sync components together."""

import asyncio
import logging
from dataclasses import dataclass, field

from .assets import AssetCacheWorker, CacheStorage
from .config import Config
from .errors import AssetFetchError
from .events import EventBus
from .mqtt_client import MQTTBridge
from .storage import LocalSlotStore
from .store import FirebaseStore, MemoryStore, RemoteStore
from .sync import DeductionsSyncManager

logger = logging.getLogger(__name__)


def create_remote_store(config: Config) -> RemoteStore:
    """Create the remote store selected by configuration.

    Raises:
        ValueError: If the backend is unknown or firebase has no URL.
    """
    backend = config.remote.backend.lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "firebase":
        if not config.remote.url:
            raise ValueError("remote.url is required for the firebase backend")
        return FirebaseStore(
            config.remote.url,
            timeout=config.remote.timeout,
            max_backoff=config.remote.stream_max_backoff_seconds,
        )
    raise ValueError(f"Unknown remote backend: {config.remote.backend}")


@dataclass
class AppContext:
    """Components shared by the CLI, the HTTP API and the MQTT bridge."""

    config: Config
    store: RemoteStore
    slot: LocalSlotStore
    bus: EventBus
    manager: DeductionsSyncManager
    cache_storage: CacheStorage | None = None
    worker: AssetCacheWorker | None = None
    mqtt: MQTTBridge | None = None
    _tasks: list[asyncio.Task] = field(default_factory=list)

    async def start(self, install_assets: bool = True) -> None:
        """Initialize the manager, the asset worker and the MQTT bridge.

        Args:
            install_assets: Install and activate the asset worker.

        Raises:
            DeductSyncError: If the initial remote load fails.
        """
        await self.manager.initialize()

        if install_assets and self.worker:
            try:
                await self.worker.install()
            except AssetFetchError as e:
                logger.warning(f"Asset worker install failed, serving from network: {e}")

        if self.mqtt:
            if await self.mqtt.connect():
                self.mqtt.bridge(self.bus)
                if self.worker:
                    self._tasks.append(
                        asyncio.create_task(
                            self.mqtt.run_control_loop(self.worker.handle_message)
                        )
                    )
            else:
                logger.warning("MQTT bridge unavailable, continuing without it")

    async def close(self) -> None:
        """Release every component. Safe to call more than once."""
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        await self.manager.cleanup()
        if self.mqtt:
            await self.mqtt.disconnect()
        if self.worker:
            await self.worker.close()
        await self.store.close()
        self.slot.close()
        if self.cache_storage:
            self.cache_storage.close()


def build_context(config: Config, store: RemoteStore | None = None) -> AppContext:
    """Build an application context from configuration.

    Args:
        config: Application configuration.
        store: Optional remote store overriding the configured backend.

    Returns:
        An unstarted AppContext.
    """
    store = store or create_remote_store(config)
    slot = LocalSlotStore(config.storage.db_path)
    bus = EventBus()

    manager = DeductionsSyncManager(
        store,
        slot,
        bus,
        deductions_path=config.remote.deductions_path,
        cases_path=config.remote.cases_path,
        snapshot_key=config.storage.snapshot_key,
    )

    cache_storage = None
    worker = None
    if config.assets.enabled:
        cache_storage = CacheStorage(config.assets.db_path)
        worker = AssetCacheWorker(config.assets, cache_storage, bus)

    mqtt = MQTTBridge(config.mqtt) if config.mqtt.enabled else None

    return AppContext(
        config=config,
        store=store,
        slot=slot,
        bus=bus,
        manager=manager,
        cache_storage=cache_storage,
        worker=worker,
        mqtt=mqtt,
    )
