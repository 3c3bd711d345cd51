"""Next fire times for ``scheduled`` automations."""

from __future__ import annotations

from omnidesk.state.connection import atomic_write, fetch_one


async def get_next_fire(automation_id: int) -> str | None:
    row = await fetch_one(
        "SELECT next_fire_at FROM trigger_schedules WHERE automation_id = ?",
        (automation_id,),
    )
    return row["next_fire_at"] if row else None


async def set_next_fire(automation_id: int, next_fire_at: str) -> None:
    async with atomic_write() as db:
        await db.execute(
            "INSERT INTO trigger_schedules (automation_id, next_fire_at) VALUES (?, ?)"
            " ON CONFLICT(automation_id) DO UPDATE SET next_fire_at = excluded.next_fire_at",
            (automation_id, next_fire_at),
        )
