"""
Health prober: TCP connectivity checks of every discovered server on a fixed tick.
"""

import asyncio
import socket
import time
import traceback
from typing import Awaitable, Callable, Optional, Tuple
from loguru import logger
from control_api.config import settings
from control_api.discovery import Discovery
from control_api.server.schemas import ServerDescriptor, ServerStatus, ServerStatusUpdate

Connector = Callable[[str, int], Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class HealthProber:
    """
    Probes the discovery snapshot with bounded concurrency; each probe has its own
    timeout so a cycle takes at most ceil(n / concurrency) * timeout. Only one cycle
    runs at a time, ticks missed by a slow cycle are skipped and counted.
    """

    def __init__(
        self,
        discovery: Discovery,
        on_update: Optional[Callable[[ServerStatusUpdate], None]] = None,
        connector: Connector = asyncio.open_connection,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
        concurrency: Optional[int] = None,
    ):
        self.discovery = discovery
        self.interval = interval or settings.health_interval
        self.timeout = timeout or settings.health_probe_timeout
        self._semaphore = asyncio.Semaphore(concurrency or settings.health_concurrency)
        self._connector = connector
        self._on_update = on_update
        self.latest: Optional[ServerStatusUpdate] = None
        self.cycles = 0
        self.skipped_ticks = 0

    async def probe(self, server: ServerDescriptor) -> ServerStatus:
        if server.pod_phase == "Stopped":
            return ServerStatus.from_descriptor(server, is_healthy=False, health_message="Server stopped")
        if not server.pod_ready:
            return ServerStatus.from_descriptor(
                server, is_healthy=False, health_message=f"Pod not ready: {server.pod_phase}"
            )
        if not server.cluster_address or not server.port:
            return ServerStatus.from_descriptor(
                server, is_healthy=False, health_message="unreachable: no service endpoint"
            )
        async with self._semaphore:
            started = time.perf_counter()
            try:
                _, writer = await asyncio.wait_for(
                    self._connector(server.cluster_address, server.port), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                message = f"timeout: no connection within {self.timeout}s"
            except ConnectionRefusedError:
                message = "refused: connection refused"
            except socket.gaierror as exc:
                message = f"unresolved: {server.cluster_address} ({exc})"
            except OSError as exc:
                message = f"unreachable: {exc}"
            else:
                latency_ms = int((time.perf_counter() - started) * 1000)
                writer.close()
                try:
                    await asyncio.wait_for(writer.wait_closed(), timeout=self.timeout)
                except (OSError, asyncio.TimeoutError):
                    logger.debug(f"Connection to {server.name} did not close cleanly")
                return ServerStatus.from_descriptor(server, is_healthy=True, latency_ms=latency_ms)
        logger.debug(f"Health check failed for {server.name} ({server.cluster_address}:{server.port}): {message}")
        return ServerStatus.from_descriptor(server, is_healthy=False, health_message=message)

    async def run_cycle(self) -> ServerStatusUpdate:
        """
        Probe the current snapshot once and publish the result.
        """
        snapshot = self.discovery.snapshot
        results = await asyncio.gather(*[self.probe(server) for server in snapshot], return_exceptions=True)
        statuses = []
        for server, result in zip(snapshot, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error(f"Unexpected error probing {server.name}: {result}")
                result = ServerStatus.from_descriptor(
                    server, is_healthy=False, health_message=f"unreachable: {result}"
                )
            statuses.append(result)
        update = ServerStatusUpdate(servers=tuple(statuses))
        self.latest = update
        self.cycles += 1
        logger.info(f"Health check complete: {update.healthy_servers}/{update.total_servers} servers healthy")
        if self._on_update:
            self._on_update(update)
        return update

    async def run(self, stop: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while not stop.is_set():
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Health check cycle failed: {exc}\n{traceback.format_exc()}")
            now = loop.time()
            next_tick += self.interval
            if now > next_tick:
                missed = int((now - next_tick) // self.interval) + 1
                self.skipped_ticks += missed
                next_tick += missed * self.interval
                logger.warning(f"Health check cycle overran, skipping {missed} tick(s)")
            try:
                await asyncio.wait_for(stop.wait(), timeout=max(next_tick - now, 0))
            except asyncio.TimeoutError:
                pass
