"""Feeds the connectivity monitor by probing the backend."""
from __future__ import annotations

import asyncio

import httpx

from core.log import get_logger
from core.settings import API, OFFLINE_SYNC
from services.connectivity import ConnectivityMonitor
from services.remote import PlateMateApi


logger = get_logger("reachability")


class ReachabilityProbe:
    def __init__(self, api: PlateMateApi, path: str = API.health_path) -> None:
        self.api = api
        self.path = path

    async def check(self) -> bool:
        # any HTTP answer means the network path works, even a 404 or 5xx
        try:
            await self.api.head(self.path)
        except httpx.TransportError as exc:
            logger.debug("Backend unreachable: %s", exc)
            return False
        return True


async def watch(
    monitor: ConnectivityMonitor,
    probe: ReachabilityProbe,
    interval: float = OFFLINE_SYNC.reachability_interval_sec,
) -> None:
    """Probe forever, reporting every result to ``monitor``; stop by cancelling."""
    while True:
        monitor.set_status(await probe.check())
        await asyncio.sleep(interval)


__all__ = ["ReachabilityProbe", "watch"]
