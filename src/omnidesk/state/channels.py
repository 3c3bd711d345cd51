"""Channel rows. Read-only to the core; upsert exists for admin tooling and tests."""

from __future__ import annotations

from typing import Any

from omnidesk.state.connection import atomic_write, dump_json, fetch_all, fetch_one, load_json
from omnidesk.types import Channel


def _row_to_channel(row) -> Channel:
    return Channel(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        is_active=bool(row["is_active"]),
        credentials=load_json(row["credentials"]),
        settings=load_json(row["settings"]),
    )


async def upsert_channel(
    name: str,
    type: str,
    *,
    credentials: dict[str, Any] | None = None,
    settings: dict[str, Any] | None = None,
    is_active: bool = True,
    channel_id: int | None = None,
) -> Channel:
    """Create a channel, or overwrite the one with *channel_id*."""
    async with atomic_write() as db:
        if channel_id is None:
            cursor = await db.execute(
                "INSERT INTO channels (name, type, is_active, credentials, settings)"
                " VALUES (?, ?, ?, ?, ?)",
                (name, type, int(is_active), dump_json(credentials or {}), dump_json(settings or {})),
            )
            channel_id = cursor.lastrowid
        else:
            await db.execute(
                "INSERT OR REPLACE INTO channels (id, name, type, is_active, credentials, settings)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                (
                    channel_id,
                    name,
                    type,
                    int(is_active),
                    dump_json(credentials or {}),
                    dump_json(settings or {}),
                ),
            )
    return Channel(
        id=channel_id,
        name=name,
        type=type,
        is_active=is_active,
        credentials=credentials or {},
        settings=settings or {},
    )


async def get_channel(channel_id: int) -> Channel | None:
    row = await fetch_one("SELECT * FROM channels WHERE id = ?", (channel_id,))
    return _row_to_channel(row) if row else None


async def get_active_channels(kinds: set[str] | None = None) -> list[Channel]:
    """Active channels, optionally restricted to the given transport kinds."""
    rows = await fetch_all("SELECT * FROM channels WHERE is_active = 1 ORDER BY id")
    channels = [_row_to_channel(row) for row in rows]
    if kinds is not None:
        channels = [c for c in channels if c.type in kinds]
    return channels


async def get_all_channels() -> list[Channel]:
    rows = await fetch_all("SELECT * FROM channels ORDER BY id")
    return [_row_to_channel(row) for row in rows]
