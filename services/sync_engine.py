from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx

from core.log import get_logger
from core.settings import OFFLINE_SYNC
from datetime_utils import utc_now
from services.connectivity import ConnectivityMonitor
from services.invalidation import InvalidationCoalescer
from services.offline_queue import PersistentQueue, QueuedOperation
from services.remote import PlateMateApi, RemoteWriteError


logger = get_logger("sync")


class UnsupportedOperationError(Exception):
    pass


# transport errors, non-success answers and unreplayable payloads all count
# as one failed attempt against the retry budget
RETRYABLE_ERRORS = (RemoteWriteError, httpx.HTTPError, UnsupportedOperationError, ValueError, TypeError)


@dataclass(frozen=True)
class SyncResult:
    succeeded: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {"succeeded": self.succeeded, "failed": self.failed}


class SyncEngine:
    def __init__(
        self,
        queue: PersistentQueue,
        monitor: ConnectivityMonitor,
        api: PlateMateApi,
        *,
        coalescer: Optional[InvalidationCoalescer] = None,
        resource_families: Mapping[str, str] = OFFLINE_SYNC.resource_families,
    ) -> None:
        self.queue = queue
        self.monitor = monitor
        self.api = api
        self.coalescer = coalescer
        self.resource_families = dict(resource_families)
        self.last_result: Optional[SyncResult] = None
        self.last_drain_at: Optional[datetime] = None
        self._in_progress = False
        self._handlers: Dict[str, Callable[[Any], Awaitable[Any]]] = {
            "diary": self.api.create_diary_entry,
            "analysis": self.api.submit_analysis,
        }

    @property
    def is_draining(self) -> bool:
        return self._in_progress

    async def drain(self) -> SyncResult:
        # the flag is taken before the first await so overlapping triggers drop out
        if self._in_progress or not self.monitor.get_status() or self.queue.size() == 0:
            return SyncResult()

        self._in_progress = True
        succeeded = failed = 0
        try:
            entries = self.queue.snapshot()
            logger.info("Syncing %d queued entries...", len(entries))
            for entry in entries:
                try:
                    await self._dispatch(entry)
                except RETRYABLE_ERRORS as exc:
                    failed += 1
                    dead = self.queue.increment_retry(entry.id)
                    logger.warning(
                        "Failed to sync entry %s (attempt %d%s): %s",
                        entry.id,
                        entry.retry_count + 1,
                        ", dropped" if dead else "",
                        exc,
                    )
                    continue
                except Exception as exc:
                    failed += 1
                    self.queue.increment_retry(entry.id)
                    logger.error("Sync of entry %s crashed: %s", entry.id, exc)
                    continue

                self.queue.remove(entry.id)
                succeeded += 1
                logger.info("Synced entry %s", entry.id)
                self._report(entry)
        finally:
            self._in_progress = False

        result = SyncResult(succeeded=succeeded, failed=failed)
        self.last_result = result
        self.last_drain_at = utc_now()
        logger.info("Sync complete: %d succeeded, %d failed", succeeded, failed)
        return result

    async def send(self, kind: str, data: Any) -> Any:
        """Perform the remote write for ``kind`` directly, bypassing the queue."""
        handler = self._handlers.get(kind)
        if handler is None:
            raise UnsupportedOperationError(f"No replay handler for {kind!r}")
        return await handler(data)

    def resource_for(self, kind: str) -> Optional[str]:
        return self.resource_families.get(kind)

    async def _dispatch(self, entry: QueuedOperation) -> None:
        await self.send(entry.kind, entry.data)

    def _report(self, entry: QueuedOperation) -> None:
        if self.coalescer is None:
            return
        family = self.resource_for(entry.kind)
        if not family:
            return
        try:
            self.coalescer.invalidate(family, entry.id)
        except Exception:
            logger.exception("Invalidation of %s after syncing %s failed", family, entry.id)


__all__ = ["SyncEngine", "SyncResult", "UnsupportedOperationError", "RETRYABLE_ERRORS"]
