"""Main orchestrator: wires storage, plugins, ingestion, the executor,
the scheduler and the control server together."""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from typing import Any

from aiohttp import web

from omnidesk.automation.executor import WorkflowExecutor
from omnidesk.automation.scheduler import ResumptionScheduler
from omnidesk.automation.triggers import TriggerMatcher
from omnidesk.config import get_settings
from omnidesk.http_server import start_http_server
from omnidesk.ingest.poller import IngestionManager
from omnidesk.logger import logger, set_level
from omnidesk.plugin import get_plugin_manager
from omnidesk.state import close_database, init_database
from omnidesk.transport import TransportRegistry
from omnidesk.utils import create_background_task

# Seconds to wait for in-flight workflow runs on shutdown
_DRAIN_TIMEOUT = 10.0
# Hard-exit watchdog if graceful shutdown hangs
_FORCE_EXIT_AFTER = 15.0


class OmnideskApp:
    def __init__(self, *, channel_id: int | None = None) -> None:
        self._only_channel = channel_id
        self.pm = get_plugin_manager()
        self.transports = TransportRegistry(self.pm)
        self.executor = WorkflowExecutor(self.transports)
        self.matcher = TriggerMatcher(self.executor)
        self.ingestion = IngestionManager(self.pm, self.transports, self.matcher.handle_event)
        self.scheduler = ResumptionScheduler(self.executor)
        self._scheduler_task: asyncio.Task[None] | None = None
        self._http_runner: web.AppRunner | None = None
        self._stopped = asyncio.Event()
        self._shutting_down = False

    # ------------------------------------------------------------------
    # HttpDeps
    # ------------------------------------------------------------------

    def ingestion_status(self) -> list[dict[str, Any]]:
        return self.ingestion.status()

    async def start_ingestion(self, channel_id: int | None) -> list[int]:
        return await self.ingestion.start(channel_id)

    async def stop_ingestion(self, channel_id: int | None) -> list[int]:
        return await self.ingestion.stop(channel_id)

    def executor_in_flight(self) -> int:
        return self.executor.in_flight

    async def change_client_tags(
        self, chat_id: int, *, add: list[str], remove: list[str]
    ) -> list[int] | None:
        return await self.matcher.change_client_tags(chat_id, add=add, remove=remove)

    async def change_chat_status(self, chat_id: int, status: str) -> list[int] | None:
        return await self.matcher.change_chat_status(chat_id, status)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        s = get_settings()
        set_level(s.logging.level)
        await init_database()
        logger.info("Database initialized", path=str(s.database_path))

        await self.scheduler.recover_interrupted()
        self._scheduler_task = create_background_task(self.scheduler.run(), name="scheduler")
        await self.ingestion.start(self._only_channel)

        if s.server.enabled:
            self._http_runner = await start_http_server(self)

    async def shutdown(self) -> None:
        """Stop new work, drain in-flight runs, then release resources."""
        await self.ingestion.stop()
        self.scheduler.stop()
        if self._scheduler_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._scheduler_task
            self._scheduler_task = None
        if self._http_runner is not None:
            await self._http_runner.cleanup()
            self._http_runner = None

        self.executor.close()
        if not await self.executor.drain(_DRAIN_TIMEOUT):
            logger.warning("Shutting down with workflow runs still in flight")
        await self.transports.close_all()
        await close_database()
        self._stopped.set()
        logger.info("Shutdown complete")

    async def _shutdown(self, sig_name: str) -> None:
        """Graceful shutdown handler. Second signal force-exits."""
        if self._shutting_down:
            logger.info("Force shutdown")
            os._exit(1)
        self._shutting_down = True
        logger.info("Shutdown signal received", signal=sig_name)

        loop = asyncio.get_running_loop()
        loop.call_later(_FORCE_EXIT_AFTER, lambda: os._exit(1))
        await self.shutdown()

    async def run(self) -> None:
        """Main entry point: start everything and block until a signal arrives."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: create_background_task(self._shutdown(s.name), name="shutdown"),
            )
        await self.start()
        logger.info("omnidesk running")
        await self._stopped.wait()
