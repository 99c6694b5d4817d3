from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from core.log import get_logger
from core.settings import OFFLINE_SYNC, INVALIDATION, OfflineSyncSettings
from datetime_utils import to_rfc3339_utc
from services.connectivity import ConnectivityMonitor, StatusListener, Subscription
from services.invalidation import InvalidationCoalescer, RefreshFn, Scheduler
from services.offline_queue import PersistentQueue, QueuedOperation
from services.remote import PlateMateApi
from services.sync_engine import RETRYABLE_ERRORS, SyncEngine, SyncResult
from storage.kv_store import KeyValueStore


logger = get_logger("offline")


@dataclass(frozen=True)
class WriteOutcome:
    synced: bool
    queued_id: Optional[str] = None

    @property
    def queued(self) -> bool:
        return self.queued_id is not None


def _log_refresh(resource: Any) -> None:
    logger.debug("Refresh requested for %s", resource)


class OfflineSyncService:
    """Offline durability and replay for diary writes and analysis uploads.

    Build one at application start, call :meth:`init`, and :meth:`dispose`
    (or ``await aclose()``) on shutdown. Tests create as many isolated
    instances as they like.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        api: Optional[PlateMateApi] = None,
        *,
        refresh: Optional[RefreshFn] = None,
        scheduler: Optional[Scheduler] = None,
        initial_status: bool = True,
        settings: OfflineSyncSettings = OFFLINE_SYNC,
        on_dead_letter: Optional[Callable[[QueuedOperation], None]] = None,
    ) -> None:
        self.store = store or KeyValueStore()
        self.api = api or PlateMateApi()
        self.settings = settings
        self._refresh = refresh or _log_refresh
        self._scheduler = scheduler
        self._initial_status = initial_status
        self._on_dead_letter = on_dead_letter
        self._queue: Optional[PersistentQueue] = None
        self._monitor: Optional[ConnectivityMonitor] = None
        self._engine: Optional[SyncEngine] = None
        self._coalescer: Optional[InvalidationCoalescer] = None

    # ------------------------------------------------------------------
    # Lifecycle
    def init(self) -> "OfflineSyncService":
        if self._engine is not None:
            return self
        self._queue = PersistentQueue(
            self.store,
            storage_key=self.settings.queue_storage_key,
            max_retries=self.settings.max_retries,
            on_dead_letter=self._on_dead_letter,
        )
        self._monitor = ConnectivityMonitor(
            self._initial_status,
            max_listeners=self.settings.max_listeners,
            on_reconnect=self.force_sync,
        )
        self._coalescer = InvalidationCoalescer(
            self._refresh,
            delay=INVALIDATION.batch_delay_sec,
            scheduler=self._scheduler,
        )
        self._engine = SyncEngine(
            self._queue,
            self._monitor,
            self.api,
            coalescer=self._coalescer,
            resource_families=self.settings.resource_families,
        )
        logger.info("Offline sync initialised with %d queued entries", self._queue.size())
        return self

    def dispose(self) -> None:
        if self._engine is None:
            return
        self._monitor.dispose()
        self._coalescer.dispose()
        self._queue = None
        self._monitor = None
        self._engine = None
        self._coalescer = None

    async def aclose(self) -> None:
        """Dispose, let any running drain finish, then close the HTTP client."""
        monitor = self._monitor
        self.dispose()
        if monitor is not None:
            await monitor.wait_idle()
        await self.api.aclose()

    @property
    def initialized(self) -> bool:
        return self._engine is not None

    def _require(self) -> None:
        if self._engine is None:
            raise RuntimeError("OfflineSyncService not initialized. Call init() first.")

    @property
    def queue(self) -> PersistentQueue:
        self._require()
        return self._queue

    @property
    def monitor(self) -> ConnectivityMonitor:
        self._require()
        return self._monitor

    @property
    def engine(self) -> SyncEngine:
        self._require()
        return self._engine

    @property
    def coalescer(self) -> InvalidationCoalescer:
        self._require()
        return self._coalescer

    # ------------------------------------------------------------------
    # Public API
    def add_to_queue(self, kind: str, data: Any) -> str:
        return self.queue.enqueue(kind, data)

    def on_status_change(self, callback: StatusListener) -> Subscription:
        return self.monitor.subscribe(callback)

    def set_online(self, online: bool, *, sync_on_reconnect: bool = True) -> None:
        self.monitor.set_status(online, sync_on_reconnect=sync_on_reconnect)

    def get_online_status(self) -> bool:
        return self.monitor.get_status()

    def get_queue_count(self) -> int:
        return self.queue.size()

    def get_queue(self) -> Tuple[QueuedOperation, ...]:
        return self.queue.snapshot()

    def clear_queue(self) -> None:
        self.queue.clear()

    async def force_sync(self) -> SyncResult:
        return await self.engine.drain()

    async def write(self, kind: str, data: Any) -> WriteOutcome:
        """Send now when online; otherwise (or on failure) keep it for replay."""
        engine = self.engine
        if self.monitor.get_status():
            try:
                await engine.send(kind, data)
            except RETRYABLE_ERRORS as exc:
                logger.warning("Direct %s write failed, queueing: %s", kind, exc)
            except Exception:
                logger.exception("Direct %s write crashed, queueing", kind)
            else:
                family = engine.resource_for(kind)
                if family:
                    self.coalescer.invalidate(family)
                return WriteOutcome(synced=True)
        return WriteOutcome(synced=False, queued_id=self.add_to_queue(kind, data))

    def status(self) -> Dict[str, Any]:
        engine = self.engine
        last = engine.last_result
        return {
            "online": self.monitor.get_status(),
            "queueCount": self.queue.size(),
            "syncing": engine.is_draining,
            "lastResult": last.as_dict() if last else None,
            "lastSyncAt": to_rfc3339_utc(engine.last_drain_at),
        }


__all__ = ["OfflineSyncService", "WriteOutcome"]
