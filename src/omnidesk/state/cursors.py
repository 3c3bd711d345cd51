"""Per-channel ingestion cursor.

One row per channel holding the next update id to request. The row is the
only source of truth: a restarted poller resumes from it.
"""

from __future__ import annotations

from omnidesk.state.connection import atomic_write, fetch_one
from omnidesk.utils import to_iso, utc_now


async def get_cursor(channel_id: int) -> int:
    """Return the stored cursor, or 0 if the channel has never been polled."""
    row = await fetch_one(
        "SELECT cursor_value FROM channel_cursors WHERE channel_id = ?",
        (channel_id,),
    )
    return int(row["cursor_value"]) if row else 0


async def advance_cursor(channel_id: int, value: int) -> int:
    """Move the cursor to *value* and return the stored cursor.

    Forward-only: if the stored cursor is already ahead of *value*, the
    stored value is kept.
    """
    async with atomic_write() as db:
        await db.execute(
            "INSERT INTO channel_cursors (channel_id, cursor_value, updated_at)"
            " VALUES (?, ?, ?)"
            " ON CONFLICT(channel_id) DO UPDATE SET"
            "   cursor_value = MAX(excluded.cursor_value, channel_cursors.cursor_value),"
            "   updated_at = excluded.updated_at",
            (channel_id, value, to_iso(utc_now())),
        )
        cursor = await db.execute(
            "SELECT cursor_value FROM channel_cursors WHERE channel_id = ?",
            (channel_id,),
        )
        row = await cursor.fetchone()
    return int(row["cursor_value"])
