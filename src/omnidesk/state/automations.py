"""Automation definitions and their step graphs.

Steps are keyed by ``step_id`` within an automation; edges between steps
are plain id references, so cycles are representable and an edit may leave
an edge dangling. The executor reports dangling edges, not this module.
"""

from __future__ import annotations

from typing import Any

from omnidesk.state.connection import atomic_write, dump_json, fetch_all, fetch_one, load_json
from omnidesk.types import Automation, AutomationStep


def _row_to_automation(row) -> Automation:
    return Automation(
        id=row["id"],
        name=row["name"],
        trigger=row["trigger_kind"],
        channel_id=row["channel_id"],
        trigger_config=load_json(row["trigger_config"]),
        is_active=bool(row["is_active"]),
        entry_step_id=row["entry_step_id"],
    )


def _row_to_step(row) -> AutomationStep:
    return AutomationStep(
        automation_id=row["automation_id"],
        step_id=row["step_id"],
        type=row["type"],
        config=load_json(row["config"]),
        position=row["position"],
        next_step_id=row["next_step_id"],
        condition_true_step_id=row["condition_true_step_id"],
        condition_false_step_id=row["condition_false_step_id"],
    )


async def create_automation(
    name: str,
    trigger: str,
    *,
    channel_id: int | None = None,
    trigger_config: dict[str, Any] | None = None,
    is_active: bool = True,
    entry_step_id: str | None = None,
) -> Automation:
    async with atomic_write() as db:
        cursor = await db.execute(
            "INSERT INTO automations"
            " (name, channel_id, trigger_kind, trigger_config, is_active, entry_step_id)"
            " VALUES (?, ?, ?, ?, ?, ?)",
            (
                name,
                channel_id,
                trigger,
                dump_json(trigger_config or {}),
                int(is_active),
                entry_step_id,
            ),
        )
        automation_id = cursor.lastrowid
    return Automation(
        id=automation_id,
        name=name,
        trigger=trigger,  # type: ignore[arg-type]
        channel_id=channel_id,
        trigger_config=trigger_config or {},
        is_active=is_active,
        entry_step_id=entry_step_id,
    )


async def add_step(
    automation_id: int,
    step_id: str,
    type: str,
    *,
    config: dict[str, Any] | None = None,
    position: int = 0,
    next_step_id: str | None = None,
    condition_true_step_id: str | None = None,
    condition_false_step_id: str | None = None,
) -> AutomationStep:
    """Insert or replace one step of an automation."""
    async with atomic_write() as db:
        await db.execute(
            "INSERT OR REPLACE INTO automation_steps"
            " (automation_id, step_id, type, config, position,"
            "  next_step_id, condition_true_step_id, condition_false_step_id)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                automation_id,
                step_id,
                type,
                dump_json(config or {}),
                position,
                next_step_id,
                condition_true_step_id,
                condition_false_step_id,
            ),
        )
    return AutomationStep(
        automation_id=automation_id,
        step_id=step_id,
        type=type,  # type: ignore[arg-type]
        config=config or {},
        position=position,
        next_step_id=next_step_id,
        condition_true_step_id=condition_true_step_id,
        condition_false_step_id=condition_false_step_id,
    )


async def delete_step(automation_id: int, step_id: str) -> None:
    async with atomic_write() as db:
        await db.execute(
            "DELETE FROM automation_steps WHERE automation_id = ? AND step_id = ?",
            (automation_id, step_id),
        )


async def set_automation_active(automation_id: int, is_active: bool) -> None:
    async with atomic_write() as db:
        await db.execute(
            "UPDATE automations SET is_active = ? WHERE id = ?",
            (int(is_active), automation_id),
        )


async def get_automation(automation_id: int) -> Automation | None:
    row = await fetch_one("SELECT * FROM automations WHERE id = ?", (automation_id,))
    return _row_to_automation(row) if row else None


async def get_active_automations(
    trigger: str,
    *,
    channel_id: int | None = None,
) -> list[Automation]:
    """Active automations of one trigger kind.

    With *channel_id*, only automations scoped to that channel or to all
    channels are returned.
    """
    if channel_id is None:
        rows = await fetch_all(
            "SELECT * FROM automations WHERE trigger_kind = ? AND is_active = 1 ORDER BY id",
            (trigger,),
        )
    else:
        rows = await fetch_all(
            "SELECT * FROM automations"
            " WHERE trigger_kind = ? AND is_active = 1"
            " AND (channel_id IS NULL OR channel_id = ?)"
            " ORDER BY id",
            (trigger, channel_id),
        )
    return [_row_to_automation(row) for row in rows]


async def get_steps(automation_id: int) -> dict[str, AutomationStep]:
    """All steps of an automation keyed by step_id."""
    rows = await fetch_all(
        "SELECT * FROM automation_steps WHERE automation_id = ? ORDER BY position, step_id",
        (automation_id,),
    )
    return {row["step_id"]: _row_to_step(row) for row in rows}
