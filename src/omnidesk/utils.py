"""Timestamp, cron and backoff helpers plus fire-and-forget task creation."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from datetime import UTC, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from croniter import croniter

from omnidesk.logger import logger


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(dt: datetime) -> str:
    """Format *dt* as a fixed-width UTC ISO string.

    Fixed width keeps SQLite's lexicographic comparison of stored
    timestamps (``next_run_at <= ?``) equivalent to chronological order.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def iso_after(seconds: float, *, now: datetime | None = None) -> str:
    base = now or utc_now()
    return to_iso(base + timedelta(seconds=seconds))


def compute_next_fire(schedule: str, timezone: str, *, after: datetime | None = None) -> str:
    """Next match of *schedule* in *timezone* after *after*, returned as UTC ISO.

    Raises ValueError when croniter rejects the expression.
    """
    if not croniter.is_valid(schedule):
        raise ValueError(f"Invalid cron expression: {schedule}")
    tz = ZoneInfo(timezone)
    base = (after or utc_now()).astimezone(tz)
    cron = croniter(schedule, base)
    return to_iso(cron.get_next(datetime))


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... capped at *cap*."""
    if attempt <= 0:
        return 0.0
    return min(cap, base * (2 ** (attempt - 1)))


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """``asyncio.create_task`` whose failure is written to the log.

    For tasks nobody awaits; otherwise an exception would only surface as
    "Task exception was never retrieved" at garbage collection.
    """
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # no active exception in a done callback; pass it explicitly
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )
