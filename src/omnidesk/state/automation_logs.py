"""Automation log persistence.

A log is the durable cursor of one automation run over one chat. Logs are
never deleted; terminal logs stay for audit.
"""

from __future__ import annotations

from typing import Any

import aiosqlite

from omnidesk.state.connection import atomic_write, dump_json, fetch_all, fetch_one, load_json
from omnidesk.types import AutomationLog
from omnidesk.utils import to_iso, utc_now


def _row_to_log(row) -> AutomationLog:
    return AutomationLog(
        id=row["id"],
        automation_id=row["automation_id"],
        chat_id=row["chat_id"],
        client_id=row["client_id"],
        status=row["status"],
        current_step_id=row["current_step_id"],
        context=load_json(row["context"]),
        error=row["error"],
        next_run_at=row["next_run_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


async def insert_log(
    db: aiosqlite.Connection,
    automation_id: int,
    chat_id: int,
    client_id: int,
    *,
    context: dict[str, Any] | None = None,
    current_step_id: str | None = None,
) -> AutomationLog:
    """Insert a ``running`` log inside the caller's ``atomic_write`` block."""
    now = to_iso(utc_now())
    ctx = context or {}
    cursor = await db.execute(
        "INSERT INTO automation_logs"
        " (automation_id, chat_id, client_id, current_step_id, status, context,"
        "  created_at, updated_at)"
        " VALUES (?, ?, ?, ?, 'running', ?, ?, ?)",
        (automation_id, chat_id, client_id, current_step_id, dump_json(ctx), now, now),
    )
    return AutomationLog(
        id=cursor.lastrowid,
        automation_id=automation_id,
        chat_id=chat_id,
        client_id=client_id,
        status="running",
        current_step_id=current_step_id,
        context=ctx,
        created_at=now,
        updated_at=now,
    )


async def create_log(
    automation_id: int,
    chat_id: int,
    client_id: int,
    *,
    context: dict[str, Any] | None = None,
    current_step_id: str | None = None,
) -> AutomationLog:
    """Insert a new ``running`` log. Execution starts from the entry step."""
    async with atomic_write() as db:
        return await insert_log(
            db,
            automation_id,
            chat_id,
            client_id,
            context=context,
            current_step_id=current_step_id,
        )



async def get_log(log_id: int) -> AutomationLog | None:
    row = await fetch_one("SELECT * FROM automation_logs WHERE id = ?", (log_id,))
    return _row_to_log(row) if row else None


async def save_log_state(log: AutomationLog) -> None:
    """Persist cursor, status, context and schedule of *log* in one write."""
    log.updated_at = to_iso(utc_now())
    async with atomic_write() as db:
        await db.execute(
            "UPDATE automation_logs SET"
            " current_step_id = ?, status = ?, context = ?, error = ?,"
            " next_run_at = ?, updated_at = ?"
            " WHERE id = ?",
            (
                log.current_step_id,
                log.status,
                dump_json(log.context),
                log.error,
                log.next_run_at,
                log.updated_at,
                log.id,
            ),
        )


async def get_due_logs(now_iso: str, *, limit: int = 500) -> list[AutomationLog]:
    """Waiting logs whose ``next_run_at`` has passed."""
    rows = await fetch_all(
        "SELECT * FROM automation_logs"
        " WHERE status = 'waiting' AND next_run_at IS NOT NULL AND next_run_at <= ?"
        " ORDER BY next_run_at, id LIMIT ?",
        (now_iso, limit),
    )
    return [_row_to_log(row) for row in rows]


async def get_running_logs() -> list[AutomationLog]:
    rows = await fetch_all(
        "SELECT * FROM automation_logs WHERE status = 'running' ORDER BY id",
    )
    return [_row_to_log(row) for row in rows]


async def get_stale_running_logs(updated_before_iso: str) -> list[AutomationLog]:
    """Running logs nobody has saved since *updated_before_iso*."""
    rows = await fetch_all(
        "SELECT * FROM automation_logs"
        " WHERE status = 'running' AND updated_at <= ?"
        " ORDER BY updated_at, id",
        (updated_before_iso,),
    )
    return [_row_to_log(row) for row in rows]


async def get_awaiting_reply_logs(chat_id: int) -> list[AutomationLog]:
    """Waiting logs of *chat_id* suspended until the client replies."""
    rows = await fetch_all(
        "SELECT * FROM automation_logs WHERE chat_id = ? AND status = 'waiting' ORDER BY id",
        (chat_id,),
    )
    return [log for log in map(_row_to_log, rows) if log.awaiting_reply]


async def get_logs_for_chat(chat_id: int) -> list[AutomationLog]:
    rows = await fetch_all(
        "SELECT * FROM automation_logs WHERE chat_id = ? ORDER BY id",
        (chat_id,),
    )
    return [_row_to_log(row) for row in rows]


async def chat_has_logs(chat_id: int) -> bool:
    row = await fetch_one(
        "SELECT 1 FROM automation_logs WHERE chat_id = ? LIMIT 1",
        (chat_id,),
    )
    return row is not None


async def log_exists_since(automation_id: int, chat_id: int, since_iso: str) -> bool:
    """True if *automation_id* started a log on *chat_id* at or after *since_iso*."""
    row = await fetch_one(
        "SELECT 1 FROM automation_logs"
        " WHERE automation_id = ? AND chat_id = ? AND created_at >= ? LIMIT 1",
        (automation_id, chat_id, since_iso),
    )
    return row is not None
