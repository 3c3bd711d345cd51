"""Resumption scheduler: the time-driven half of the automation engine.

Every ``scheduler.poll_interval`` seconds one tick:

- resumes waiting logs whose ``next_run_at`` has passed,
- retries logs whose last run hit a storage error, and ``running`` logs
  left idle longer than ``workflow.stale_running_after``,
- starts ``no_response`` automations for chats whose last client message
  has gone unanswered longer than the automation's ``delay_seconds``,
- starts ``scheduled`` automations whose cron expression came due.

Every item runs isolated: one failing log or automation never blocks the
rest of the tick. Runs go through the executor in the background, so a
slow send never delays the next tick.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable
from datetime import datetime, timedelta
from typing import Any

from omnidesk.automation.executor import WorkflowExecutor
from omnidesk.config import get_settings
from omnidesk.logger import logger
from omnidesk.state import (
    create_log,
    get_active_automations,
    get_channel,
    get_chats_by_status,
    get_due_logs,
    get_next_fire,
    get_running_logs,
    get_stale_running_logs,
    get_unanswered_chats,
    log_exists_since,
    set_next_fire,
)
from omnidesk.types import Automation, Chat, InboundEvent
from omnidesk.utils import compute_next_fire, parse_iso, to_iso, utc_now

DEFAULT_SCHEDULED_STATUSES = ["new", "open", "pending"]


class ResumptionScheduler:
    def __init__(self, executor: WorkflowExecutor) -> None:
        self._executor = executor
        self._stopping = asyncio.Event()
        self._running = False

    async def run(self) -> None:
        """Tick until stop() is called."""
        if self._running:
            logger.debug("Scheduler loop already running, skipping duplicate start")
            return
        self._running = True
        self._stopping.clear()
        logger.info("Scheduler loop started")
        try:
            while not self._stopping.is_set():
                try:
                    await self.tick()
                except Exception as exc:
                    logger.error("Error in scheduler loop", err=str(exc))
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._stopping.wait(), timeout=get_settings().scheduler.poll_interval
                    )
        finally:
            self._running = False
            logger.info("Scheduler loop stopped")

    def stop(self) -> None:
        self._stopping.set()

    async def recover_interrupted(self) -> int:
        """Re-enter logs left ``running`` by a crash or hard shutdown."""
        logs = await get_running_logs()
        if logs:
            logger.info("Recovering interrupted automation runs", count=len(logs))
            await self._gather([self._executor.run(log.id) for log in logs], "recover")
        return len(logs)

    async def tick(self, now: datetime | None = None) -> dict[str, int]:
        """Submit due, retried and newly triggered logs to the executor.

        Runs happen in the background; the tick does not wait for them.
        """
        now = now or utc_now()
        due = [
            log.id for log in await get_due_logs(to_iso(now)) if not self._executor.is_busy(log.id)
        ]
        retried = await self._retryable()
        due = [log_id for log_id in due if log_id not in retried]
        new_ids: list[int] = []

        for automation in await get_active_automations("no_response"):
            try:
                log_ids = await self._start_no_response(automation, now)
            except Exception:
                logger.exception("no_response trigger failed", automation_id=automation.id)
                continue
            new_ids.extend(log_ids)

        for automation in await get_active_automations("scheduled"):
            try:
                log_ids = await self._start_scheduled(automation, now)
            except Exception:
                logger.exception("scheduled trigger failed", automation_id=automation.id)
                continue
            new_ids.extend(log_ids)

        if due or retried or new_ids:
            logger.info(
                "Scheduler tick", resumed=len(due), retried=len(retried), started=len(new_ids)
            )
        for log_id in due:
            self._executor.submit(log_id, now=now)
        for log_id, event in retried.items():
            self._executor.submit(log_id, event, now=now)
        for log_id in new_ids:
            self._executor.submit(log_id, now=now)
        return {"resumed": len(due), "retried": len(retried), "started": len(new_ids)}

    async def _retryable(self) -> dict[int, InboundEvent | None]:
        """Logs to re-enter after a storage failure, keyed to the event they carried.

        Covers runs that failed in this process and ``running`` logs nothing
        has touched for ``workflow.stale_running_after`` seconds. Logs with a
        run queued or executing here are left alone.
        """
        retried = self._executor.take_failed()
        grace = timedelta(seconds=get_settings().workflow.stale_running_after)
        # updated_at is wall-clock time, not tick time
        for log in await get_stale_running_logs(to_iso(utc_now() - grace)):
            retried.setdefault(log.id, None)
        return {
            log_id: event
            for log_id, event in retried.items()
            if not self._executor.is_busy(log_id)
        }

    # ------------------------------------------------------------------
    # Time-based triggers
    # ------------------------------------------------------------------

    async def _start_no_response(self, automation: Automation, now: datetime) -> list[int]:
        try:
            threshold = float(automation.trigger_config.get("delay_seconds") or 0)
        except (TypeError, ValueError):
            threshold = 0
        if threshold <= 0:
            logger.warning("no_response automation has no delay_seconds", automation_id=automation.id)
            return []

        cutoff = to_iso(now - timedelta(seconds=threshold))
        chats = await get_unanswered_chats(cutoff, channel_id=automation.channel_id)
        log_ids: list[int] = []
        for chat in await self._enabled(chats):
            since = chat.last_incoming_at or cutoff
            if await log_exists_since(automation.id, chat.id, since):
                continue
            log = await create_log(
                automation.id,
                chat.id,
                chat.client_id,
                context={"trigger": {"source": "no_response", "last_incoming_at": since}},
            )
            log_ids.append(log.id)
        return log_ids

    async def _start_scheduled(self, automation: Automation, now: datetime) -> list[int]:
        config = automation.trigger_config
        cron = str(config.get("cron") or "")
        timezone = str(config.get("timezone") or get_settings().timezone)
        try:
            following = compute_next_fire(cron, timezone, after=now)
        except (ValueError, KeyError) as exc:
            logger.warning(
                "Invalid schedule on automation", automation_id=automation.id, err=str(exc)
            )
            return []

        next_fire = await get_next_fire(automation.id)
        if next_fire is None:
            # First sighting: arm the schedule without firing
            await set_next_fire(automation.id, following)
            return []
        if parse_iso(next_fire) > now:
            return []

        # Persist the next slot before fan-out so a crash can't fire twice
        await set_next_fire(automation.id, following)
        statuses = config.get("chat_statuses") or DEFAULT_SCHEDULED_STATUSES
        chats = await get_chats_by_status(list(statuses), channel_id=automation.channel_id)
        log_ids: list[int] = []
        for chat in await self._enabled(chats):
            log = await create_log(
                automation.id,
                chat.id,
                chat.client_id,
                context={"trigger": {"source": "scheduled", "fired_at": next_fire}},
            )
            log_ids.append(log.id)
        logger.info("Scheduled automation fired", automation_id=automation.id, chats=len(log_ids))
        return log_ids

    async def _enabled(self, chats: list[Chat]) -> list[Chat]:
        """Drop chats on channels that are inactive or have automations disabled."""
        allowed: dict[int, bool] = {}
        result: list[Chat] = []
        for chat in chats:
            if chat.channel_id not in allowed:
                channel = await get_channel(chat.channel_id)
                allowed[chat.channel_id] = (
                    channel is not None and channel.is_active and not channel.automations_disabled
                )
            if allowed[chat.channel_id]:
                result.append(chat)
        return result

    async def _gather(self, runs: list[Awaitable[Any]], label: str) -> None:
        if not runs:
            return
        results = await asyncio.gather(*runs, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                logger.error(
                    "Automation run failed in scheduler",
                    phase=label,
                    err=f"{result.__class__.__name__}: {result}",
                )
