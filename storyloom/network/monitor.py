"""
Connectivity tracking.

NetworkMonitor holds the current connectivity flag and notifies listeners
on reconnect edges. ProbingNetworkMonitor feeds it from a periodic HTTP
probe scheduled with APScheduler.
"""

from typing import Awaitable, Callable, List, Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from storyloom.config import config
from storyloom.utils.logging import network_logger

ReconnectListener = Callable[[], Awaitable[None]]


class NetworkMonitor:
    """
    Connectivity state with reconnect-edge notifications.

    Listeners are awaited only when the state flips from disconnected to
    connected; repeated "connected" updates do not fire them again.
    """

    def __init__(self, connected: bool = True):
        self._connected = connected
        self._listeners: List[ReconnectListener] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    def add_reconnect_listener(self, listener: ReconnectListener):
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_reconnect_listener(self, listener: ReconnectListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def update(self, connected: bool):
        """Record the latest connectivity reading and fire reconnect listeners on an edge."""
        was_connected = self._connected
        self._connected = connected

        if was_connected == connected:
            return

        if not connected:
            network_logger.warning("Connectivity lost")
            return

        network_logger.info("Connectivity restored", listeners=len(self._listeners))
        for listener in list(self._listeners):
            try:
                await listener()
            except Exception as e:
                network_logger.error(
                    "Reconnect listener failed",
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(e),
                )


class ProbingNetworkMonitor(NetworkMonitor):
    """
    NetworkMonitor that probes a URL on an interval.

    Any HTTP response (whatever its status) counts as connected; transport
    errors and timeouts count as disconnected.
    """

    def __init__(
        self,
        probe_url: Optional[str] = None,
        interval_seconds: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        connected: bool = True
    ):
        super().__init__(connected=connected)
        self.probe_url = probe_url or config.connectivity_probe_url
        self.interval = interval_seconds or config.CONNECTIVITY_PROBE_INTERVAL_SECONDS

        self._client = http_client
        self._owns_client = http_client is None
        self.scheduler = AsyncIOScheduler()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(5.0))
        return self._client

    async def probe(self) -> bool:
        try:
            await self.client.get(self.probe_url)
        except httpx.HTTPError as e:
            network_logger.debug("Connectivity probe failed", url=self.probe_url, error=str(e))
            return False
        return True

    async def check(self):
        """Probe once and record the result"""
        await self.update(await self.probe())

    def start(self):
        """Start periodic probing"""
        self.scheduler.add_job(
            self.check,
            trigger=IntervalTrigger(seconds=self.interval),
            id="connectivity_probe",
            name="Probe narrative engine connectivity",
            replace_existing=True,
            max_instances=1  # Prevent overlapping probes
        )

        self.scheduler.start()
        network_logger.info(
            "Connectivity probe started",
            url=self.probe_url,
            interval_seconds=self.interval,
        )

    async def shutdown(self):
        """Stop probing and release the HTTP client"""
        if self.scheduler.running:
            self.scheduler.remove_all_jobs()
            self.scheduler.shutdown(wait=False)
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
