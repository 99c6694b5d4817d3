"""Debounced cache invalidation.

Bursts of local writes and synced queue entries would otherwise each ask the
read layer to refetch. Requests are collected per resource key and released
together once a single shared timer expires without any new request.
Because every request re-arms that one timer, a steady stream of requests
keeps postponing the flush; callers that cannot tolerate stale data use
:meth:`InvalidationCoalescer.invalidate_immediately`.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, List, Optional, Protocol, Set

from core.log import get_logger
from core.settings import INVALIDATION


RefreshFn = Callable[[Any], Any]

logger = get_logger("invalidation")


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...

    def time(self) -> float: ...


class LoopScheduler:
    """Schedules on ``loop``, or on whichever loop is running at call time."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is not None:
            return self._loop
        return asyncio.get_running_loop()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self._get_loop().call_later(delay, callback)

    def time(self) -> float:
        return self._get_loop().time()


@dataclass
class InvalidationBatch:
    resource_key: str
    requests: Set[Hashable] = field(default_factory=set)
    last_touched_at: float = 0.0


class InvalidationCoalescer:
    def __init__(
        self,
        refresh: RefreshFn,
        *,
        delay: float = INVALIDATION.batch_delay_sec,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.refresh = refresh
        self.delay = delay
        self.scheduler: Scheduler = scheduler or LoopScheduler()
        self._batches: Dict[str, InvalidationBatch] = {}
        self._timer: Optional[TimerHandle] = None

    @property
    def is_pending(self) -> bool:
        return self._timer is not None

    def pending_keys(self) -> List[str]:
        return list(self._batches)

    def batch(self, resource_key: str) -> Optional[InvalidationBatch]:
        return self._batches.get(resource_key)

    def invalidate(self, resource_key: str, hint: Optional[Hashable] = None) -> None:
        now = self.scheduler.time()
        batch = self._batches.get(resource_key)
        if batch is None:
            batch = self._batches[resource_key] = InvalidationBatch(resource_key)
        batch.requests.add(resource_key if hint is None else hint)
        batch.last_touched_at = now

        if self._timer is not None:
            self._timer.cancel()
        self._timer = self.scheduler.call_later(self.delay, self._on_timer)

    def invalidate_selectively(
        self,
        resource_key: str,
        hint: Optional[Hashable] = None,
        condition: Optional[Callable[[], bool]] = None,
    ) -> bool:
        if condition is not None and not condition():
            logger.debug("Skipped invalidation for %s - condition not met", resource_key)
            return False
        self.invalidate(resource_key, hint)
        return True

    def invalidate_immediately(self, hint: Any) -> None:
        logger.debug("Immediate invalidation for %s", hint)
        self._refresh(hint)

    def flush(self) -> None:
        """Release every pending batch now instead of waiting for the timer."""
        if self._timer is not None:
            self._timer.cancel()
        self._on_timer()

    def dispose(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._batches.clear()

    # ------------------------------------------------------------------
    def _on_timer(self) -> None:
        self._timer = None
        batches, self._batches = self._batches, {}
        if not batches:
            return
        logger.info("Processing %d batched invalidations", len(batches))
        for key, batch in batches.items():
            if not batch.requests:
                continue
            self._refresh(key)
            logger.debug("Invalidated %s (%d requests batched)", key, len(batch.requests))

    def _refresh(self, target: Any) -> None:
        try:
            self.refresh(target)
        except Exception:
            logger.exception("Refresh for %s failed", target)


__all__ = [
    "InvalidationBatch",
    "InvalidationCoalescer",
    "LoopScheduler",
    "Scheduler",
]
