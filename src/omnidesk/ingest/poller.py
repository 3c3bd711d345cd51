"""Long-polling ingestion: one cancellable task per channel.

Each update is normalized, handed to the event handler and only then is
the channel cursor advanced past it. A crash between hand-off and cursor
write replays the update on restart; the handler recognizes the replay
by its stored message id, so nothing runs twice. Stopping a poller never
interrupts a hand-off: only the long poll and idle waits are cancelled.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import pluggy

from omnidesk.config import get_settings
from omnidesk.errors import NormalizationError, PersistenceError, TransportError
from omnidesk.ingest.normalizer import Normalizer
from omnidesk.logger import logger
from omnidesk.plugin import pollable_kinds
from omnidesk.state import advance_cursor, get_active_channels, get_cursor
from omnidesk.transport import ChannelTransport, TransportRegistry
from omnidesk.types import Channel, InboundEvent, RawUpdate
from omnidesk.utils import backoff_delay, create_background_task, to_iso, utc_now

EventHandler = Callable[[InboundEvent], Awaitable[Any]]


@dataclass
class PollerHealth:
    channel_id: int
    channel_name: str
    kind: str
    running: bool = False
    cursor: int = 0
    last_success_at: str | None = None
    consecutive_failures: int = 0
    last_error: str | None = None
    updates_processed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "name": self.channel_name,
            "kind": self.kind,
            "running": self.running,
            "cursor": self.cursor,
            "last_success_at": self.last_success_at,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "updates_processed": self.updates_processed,
        }


class ChannelPoller:
    """Polls one channel until stopped. Failures never escape the loop."""

    def __init__(
        self,
        channel: Channel,
        transport: ChannelTransport,
        normalizer: Normalizer,
        handler: EventHandler,
    ) -> None:
        self.channel = channel
        self.transport = transport
        self._normalizer = normalizer
        self._handler = handler
        self._stopping = asyncio.Event()
        self._handing_off = False
        self._task: asyncio.Task[None] | None = None
        self.health = PollerHealth(
            channel_id=channel.id, channel_name=channel.name, kind=channel.type
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = create_background_task(self.run(), name=f"poller-{self.channel.id}")

    async def stop(self) -> None:
        """Stop polling.

        An in-flight long poll or idle wait is cancelled. An update already
        being handed off is finished and its cursor written first.
        """
        self._stopping.set()
        if self._task is not None:
            if not self._handing_off:
                self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self.health.running = False

    async def run(self) -> None:
        self.health.running = True
        log = logger.bind(channel_id=self.channel.id)
        log.info("Channel poller started", kind=self.channel.type)
        try:
            await self._disable_webhook()
            while not self._stopping.is_set():
                try:
                    processed = await self.poll_once()
                except TransportError as exc:
                    self._record_failure(exc)
                    log.warning(
                        "Transport error while polling",
                        err=str(exc),
                        failures=self.health.consecutive_failures,
                    )
                    await self._backoff()
                    continue
                except PersistenceError as exc:
                    self._record_failure(exc)
                    log.error("Storage error during hand-off, cursor kept", err=str(exc))
                    await self._backoff()
                    continue
                except Exception as exc:
                    self._record_failure(exc)
                    log.exception("Unexpected error in channel poller")
                    await self._backoff()
                    continue

                self._record_success()
                if processed == 0:
                    await asyncio.sleep(get_settings().ingestion.idle_sleep)
        finally:
            self.health.running = False
            log.info("Channel poller stopped")

    async def poll_once(self) -> int:
        """Fetch one batch and process it. Returns the number of updates seen."""
        cursor = await get_cursor(self.channel.id)
        self.health.cursor = cursor
        updates = await self.transport.fetch_updates(
            cursor, get_settings().ingestion.poll_timeout
        )
        for update in updates:
            if self._stopping.is_set():
                break
            if update.id < cursor:
                # Provider resent something already behind the cursor
                continue
            self._handing_off = True
            try:
                await self._process(update)
                cursor = await advance_cursor(self.channel.id, update.id + 1)
            finally:
                self._handing_off = False
            self.health.cursor = cursor
            self.health.updates_processed += 1
        return len(updates)

    async def _process(self, update: RawUpdate) -> None:
        try:
            event = self._normalizer(update, self.channel.id)
        except NormalizationError as exc:
            logger.warning(
                "Skipping malformed update",
                channel_id=self.channel.id,
                update_id=update.id,
                err=str(exc),
            )
            return
        if event is None:
            logger.debug("Ignoring update kind", channel_id=self.channel.id, update_id=update.id)
            return
        await self._handler(event)

    async def _disable_webhook(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.transport.delete_webhook()
                return
            except TransportError as exc:
                self._record_failure(exc)
                logger.warning(
                    "Failed to disable webhook, retrying",
                    channel_id=self.channel.id,
                    err=str(exc),
                )
                await self._backoff()

    async def _backoff(self) -> None:
        cfg = get_settings().ingestion
        delay = backoff_delay(self.health.consecutive_failures, cfg.backoff_base, cfg.backoff_max)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)

    def _record_failure(self, exc: Exception) -> None:
        self.health.consecutive_failures += 1
        self.health.last_error = f"{exc.__class__.__name__}: {exc}"

    def _record_success(self) -> None:
        self.health.consecutive_failures = 0
        self.health.last_success_at = to_iso(utc_now())


class IngestionManager:
    """Starts and stops one ChannelPoller per active pollable channel."""

    def __init__(
        self,
        pm: pluggy.PluginManager,
        transports: TransportRegistry,
        handler: EventHandler,
    ) -> None:
        self._pm = pm
        self._transports = transports
        self._handler = handler
        self._pollers: dict[int, ChannelPoller] = {}

    async def start(self, channel_id: int | None = None) -> list[int]:
        """Start polling one channel, or every active pollable channel.

        Returns the ids of channels whose poller was started by this call.
        """
        kinds = pollable_kinds(self._pm)
        channels = await get_active_channels(kinds)
        if channel_id is not None:
            channels = [c for c in channels if c.id == channel_id]
        if not channels:
            logger.info("No active pollable channels to start", channel_id=channel_id)
            return []

        started: list[int] = []
        for channel in channels:
            existing = self._pollers.get(channel.id)
            if existing is not None and existing.running:
                continue
            normalizer = self._pm.hook.omnidesk_update_normalizer(kind=channel.type)
            if normalizer is None:
                logger.warning("No normalizer for channel kind", channel_id=channel.id)
                continue
            try:
                transport = self._transports.get(channel)
            except TransportError as exc:
                logger.warning("Cannot create transport", channel_id=channel.id, err=str(exc))
                continue
            poller = ChannelPoller(channel, transport, normalizer, self._handler)
            self._pollers[channel.id] = poller
            poller.start()
            started.append(channel.id)
        if started:
            logger.info("Ingestion started", channels=started)
        return started

    async def stop(self, channel_id: int | None = None) -> list[int]:
        """Stop one poller, or all of them. Returns the ids that were stopped."""
        stopped: list[int] = []
        for cid, poller in list(self._pollers.items()):
            if channel_id is not None and cid != channel_id:
                continue
            if not poller.running:
                continue
            await poller.stop()
            stopped.append(cid)
        if stopped:
            logger.info("Ingestion stopped", channels=stopped)
        return stopped

    def status(self) -> list[dict[str, Any]]:
        return [p.health.to_dict() for p in self._pollers.values()]

    def get_poller(self, channel_id: int) -> ChannelPoller | None:
        return self._pollers.get(channel_id)
