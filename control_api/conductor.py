"""
Conductor - wires discovery, health checks, broadcasting and management together
and owns the background loops.
"""

import asyncio
import traceback
from typing import List, Optional
from loguru import logger
from fastapi import Request
from control_api.discovery import Discovery
from control_api.health import HealthProber
from control_api.server.manager import ServerManager
from control_api.status.broadcaster import Broadcaster
import control_api.endpoints as endpoints


class Conductor:
    def __init__(self, connector=None):
        """
        Constructor.
        """
        self.discovery = Discovery(on_refresh=self.sync_endpoints)
        self.broadcaster = Broadcaster()
        prober_kwargs = {"connector": connector} if connector else {}
        self.prober = HealthProber(self.discovery, on_update=self.broadcaster.publish, **prober_kwargs)
        self.manager = ServerManager(self.discovery)
        self._stop: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []

    async def sync_endpoints(self, snapshot) -> None:
        """
        Keep the endpoints configmap aligned with what discovery sees.
        """
        try:
            await endpoints.rebuild(snapshot)
        except Exception as exc:
            logger.warning(f"Failed to rebuild endpoints configmap: {exc}")

    async def start(self) -> None:
        """
        Initial discovery, then start the discovery and health check loops.
        """
        self._stop = asyncio.Event()
        try:
            await self.discovery.refresh()
        except Exception as exc:
            logger.error(f"Initial discovery failed, starting with an empty snapshot: {exc}\n{traceback.format_exc()}")
        self._tasks = [
            asyncio.create_task(self.discovery.run(self._stop), name="discovery"),
            asyncio.create_task(self.prober.run(self._stop), name="health-prober"),
        ]
        logger.success("Control plane background loops started")

    async def stop(self) -> None:
        if self._stop:
            self._stop.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Control plane background loops stopped")


def get_conductor(request: Request) -> Conductor:
    return request.app.state.conductor
