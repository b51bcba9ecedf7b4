"""
Connectivity check for the field client
"""

import asyncio
import logging
from typing import Optional

import httpx

from firefund.client.offline_queue import OfflineQueueManager


logger = logging.getLogger(__name__)

HEALTH_PATH = "/health"


class ConnectivityMonitor:
    """Feeds the queue manager's connectivity flag from server health checks"""

    def __init__(self, manager: OfflineQueueManager, base_url: str,
                 check_interval: float = 15.0, timeout: float = 5.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.manager = manager
        self.base_url = base_url.rstrip('/')
        self.check_interval = check_interval
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._task: Optional[asyncio.Task] = None

    async def is_reachable(self) -> bool:
        """True when the server answers its health check with 200"""
        try:
            response = await self._client.get(f"{self.base_url}{HEALTH_PATH}")
        except httpx.HTTPError as e:
            logger.debug(f"Health check failed: {e}")
            return False
        return response.status_code == 200

    async def check(self) -> bool:
        online = await self.is_reachable()
        self.manager.set_online_status(online)
        return online

    async def _run(self):
        while True:
            await self.check()
            await asyncio.sleep(self.check_interval)

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._owns_client:
            await self._client.aclose()
