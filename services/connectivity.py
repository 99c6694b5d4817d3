"""Network reachability state shared by the offline layer."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, Optional, Set

from core.log import get_logger
from core.settings import OFFLINE_SYNC


StatusListener = Callable[[bool], None]

logger = get_logger("connectivity")


class ListenerLimitError(RuntimeError):
    pass


class Subscription:
    """Handle returned by :meth:`ConnectivityMonitor.subscribe`.

    Calling it (or ``unsubscribe()``) more than once is harmless.
    """

    def __init__(self, monitor: "ConnectivityMonitor", token: int) -> None:
        self._monitor: Optional[ConnectivityMonitor] = monitor
        self._token = token

    @property
    def active(self) -> bool:
        return self._monitor is not None

    def unsubscribe(self) -> None:
        monitor, self._monitor = self._monitor, None
        if monitor is not None:
            monitor._release(self._token)

    def __call__(self) -> None:
        self.unsubscribe()


class ConnectivityMonitor:
    def __init__(
        self,
        initial_status: bool = True,
        *,
        max_listeners: int = OFFLINE_SYNC.max_listeners,
        on_reconnect: Optional[Callable[[], Awaitable[object]]] = None,
    ) -> None:
        self._online = bool(initial_status)
        self._listeners: Dict[int, StatusListener] = {}
        self._next_token = 0
        self._max_listeners = max_listeners
        self._pending: Set[asyncio.Task] = set()
        self.on_reconnect = on_reconnect

    def get_status(self) -> bool:
        return self._online

    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: StatusListener) -> Subscription:
        if len(self._listeners) >= self._max_listeners:
            raise ListenerLimitError(
                f"Connectivity listener limit reached ({self._max_listeners})"
            )
        token = self._next_token
        self._next_token += 1
        self._listeners[token] = listener
        self._call(listener, self._online)
        return Subscription(self, token)

    def set_status(self, online: bool, *, sync_on_reconnect: bool = True) -> None:
        """Record a reachability change and notify listeners.

        With ``sync_on_reconnect=False`` an offline to online transition does
        not start a drain, e.g. when only reporting the current state.
        """
        online = bool(online)
        if online == self._online:
            return
        self._online = online
        if online:
            logger.info("Device back online")
        else:
            logger.info("Device offline - queueing enabled")

        for listener in list(self._listeners.values()):
            self._call(listener, online)

        if online and sync_on_reconnect:
            self._trigger_reconnect()

    def dispose(self) -> None:
        """Drop listeners and stop triggering drains.

        Drains already started keep running to completion; await
        :meth:`wait_idle` to know when they are done.
        """
        self._listeners.clear()
        self.on_reconnect = None

    async def wait_idle(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    def _release(self, token: int) -> None:
        self._listeners.pop(token, None)

    def _call(self, listener: StatusListener, online: bool) -> None:
        try:
            listener(online)
        except Exception:
            logger.exception("Connectivity listener %r failed", listener)

    def _trigger_reconnect(self) -> None:
        if self.on_reconnect is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, skipping sync on reconnect")
            return
        try:
            task = loop.create_task(self.on_reconnect())
        except Exception:
            logger.exception("Sync trigger on reconnect failed")
            return
        self._pending.add(task)
        task.add_done_callback(self._reconnect_done)

    def _reconnect_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Sync triggered by reconnect failed: %s", exc)


__all__ = ["ConnectivityMonitor", "ListenerLimitError", "StatusListener", "Subscription"]
