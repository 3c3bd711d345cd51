"""Minimal chat/client store.

Clients are identified by a provider-prefixed external id (``tg_42``);
a chat is the (channel, client) pair. Messages carry a direction and the
provider's message id, which is unique per chat and direction so replayed
updates are recognized.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import aiosqlite

from omnidesk.errors import PersistenceError
from omnidesk.state.automation_logs import insert_log
from omnidesk.state.connection import atomic_write, dump_json, fetch_all, fetch_one, load_json
from omnidesk.types import Chat, Client, InboundEvent
from omnidesk.utils import to_iso, utc_now

# Statuses an inbound message reopens.
_REOPEN_STATUSES = ("resolved",)


@dataclass
class StoredMessage:
    id: int
    chat_id: int
    direction: str
    external_id: str | None
    content: str
    message_type: str
    created_at: str
    attachments: list[dict[str, Any]]
    sent_by: str | None = None

    def to_context(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "content": self.content,
            "type": self.message_type,
            "direction": self.direction,
            "created_at": self.created_at,
        }


@dataclass
class ChatUpsert:
    client: Client
    chat: Chat
    client_created: bool
    chat_created: bool
    reopened: bool = False


@dataclass
class InboundRecord:
    upsert: ChatUpsert
    message: StoredMessage | None  # None for a replayed update
    log_ids: list[int] = field(default_factory=list)


LogPlanner = Callable[[ChatUpsert, StoredMessage], Awaitable[list[tuple[int, dict[str, Any]]]]]


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _row_to_chat(row) -> Chat:
    return Chat(
        id=row["id"],
        channel_id=row["channel_id"],
        client_id=row["client_id"],
        external_chat_id=row["external_chat_id"],
        status=row["status"],
        priority=row["priority"],
        operator_id=row["operator_id"],
        last_message_at=row["last_message_at"],
        last_incoming_at=row["last_incoming_at"],
        last_outgoing_at=row["last_outgoing_at"],
        unread_count=row["unread_count"],
        metadata=load_json(row["metadata"]),
        created_at=row["created_at"],
    )


def _row_to_message(row) -> StoredMessage:
    return StoredMessage(
        id=row["id"],
        chat_id=row["chat_id"],
        direction=row["direction"],
        external_id=row["external_id"],
        content=row["content"] or "",
        message_type=row["message_type"],
        created_at=row["created_at"],
        attachments=load_json(row["attachments"], default=[]),
        sent_by=row["sent_by"],
    )


async def _client_tags(client_id: int) -> list[str]:
    rows = await fetch_all(
        "SELECT tag FROM client_tags WHERE client_id = ? ORDER BY tag",
        (client_id,),
    )
    return [row["tag"] for row in rows]


async def _row_to_client(row) -> Client:
    return Client(
        id=row["id"],
        external_id=row["external_id"],
        name=row["name"] or "",
        username=row["username"],
        phone=row["phone"],
        email=row["email"],
        tags=await _client_tags(row["id"]),
        metadata=load_json(row["metadata"]),
    )


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------


async def _upsert_client_and_chat(
    db: aiosqlite.Connection, event: InboundEvent, now: str
) -> tuple[int, bool, bool, bool]:
    """Returns (client_id, client_created, chat_created, reopened)."""
    sender = event.sender
    client_created = chat_created = reopened = False
    cursor = await db.execute(
        "SELECT id, name FROM clients WHERE external_id = ?", (sender.external_id,)
    )
    row = await cursor.fetchone()
    if row is None:
        metadata = {"username": sender.username, "language": sender.language}
        cursor = await db.execute(
            "INSERT INTO clients (external_id, name, username, metadata, created_at)"
            " VALUES (?, ?, ?, ?, ?)",
            (sender.external_id, sender.name, sender.username, dump_json(metadata), now),
        )
        client_id = cursor.lastrowid
        client_created = True
    else:
        client_id = row["id"]
        if sender.name and sender.name != row["name"]:
            await db.execute("UPDATE clients SET name = ? WHERE id = ?", (sender.name, client_id))

    cursor = await db.execute(
        "SELECT id, status FROM chats WHERE channel_id = ? AND client_id = ?",
        (event.channel_id, client_id),
    )
    row = await cursor.fetchone()
    if row is None:
        await db.execute(
            "INSERT INTO chats"
            " (channel_id, client_id, external_chat_id, status, priority, metadata,"
            "  created_at)"
            " VALUES (?, ?, ?, 'new', 'normal', ?, ?)",
            (
                event.channel_id,
                client_id,
                event.external_chat_id,
                dump_json({"external_chat_id": event.external_chat_id}),
                now,
            ),
        )
        chat_created = True
    elif row["status"] in _REOPEN_STATUSES:
        await db.execute("UPDATE chats SET status = 'open' WHERE id = ?", (row["id"],))
        reopened = True
    return client_id, client_created, chat_created, reopened


async def _load_upsert(
    event: InboundEvent, client_created: bool, chat_created: bool, reopened: bool
) -> ChatUpsert:
    client = await get_client_by_external_id(event.sender.external_id)
    chat = None if client is None else await get_chat_by_pair(event.channel_id, client.id)
    if client is None or chat is None:
        raise PersistenceError(f"chat upsert for {event.sender.external_id} did not persist")
    return ChatUpsert(
        client=client,
        chat=chat,
        client_created=client_created,
        chat_created=chat_created,
        reopened=reopened,
    )


async def _insert_inbound(
    db: aiosqlite.Connection, chat_id: int, event: InboundEvent, now: str
) -> StoredMessage | None:
    cursor = await db.execute(
        "SELECT id FROM messages"
        " WHERE chat_id = ? AND direction = 'incoming' AND external_id = ?",
        (chat_id, event.external_message_id),
    )
    existing = await cursor.fetchone()
    if existing is not None:
        if event.kind == "edited_message":
            await db.execute(
                "UPDATE messages SET content = ? WHERE id = ?",
                (event.content, existing["id"]),
            )
        return None

    cursor = await db.execute(
        "INSERT INTO messages"
        " (chat_id, direction, external_id, content, message_type, attachments, created_at)"
        " VALUES (?, 'incoming', ?, ?, ?, ?, ?)",
        (
            chat_id,
            event.external_message_id,
            event.content,
            event.message_type,
            dump_json(event.attachments),
            now,
        ),
    )
    message_id = cursor.lastrowid
    await db.execute(
        "UPDATE chats SET last_message_at = ?, last_incoming_at = ?,"
        " unread_count = unread_count + 1 WHERE id = ?",
        (now, now, chat_id),
    )
    return StoredMessage(
        id=message_id,
        chat_id=chat_id,
        direction="incoming",
        external_id=event.external_message_id,
        content=event.content,
        message_type=event.message_type,
        created_at=now,
        attachments=list(event.attachments),
    )


async def upsert_chat_for_event(event: InboundEvent) -> ChatUpsert:
    """Find or create the client and chat an inbound event belongs to.

    A known client whose display name changed is renamed. A resolved chat
    is reopened.
    """
    async with atomic_write() as db:
        _, *flags = await _upsert_client_and_chat(db, event, to_iso(utc_now()))
    return await _load_upsert(event, *flags)


async def store_inbound_message(chat_id: int, event: InboundEvent) -> StoredMessage | None:
    """Store the event's message on *chat_id*.

    Returns None if the message was already stored (a replayed update). An
    edit of a stored message updates its content and also returns None.
    """
    async with atomic_write() as db:
        return await _insert_inbound(db, chat_id, event, to_iso(utc_now()))


async def record_inbound_event(event: InboundEvent, plan: LogPlanner) -> InboundRecord:
    """Upsert the chat, store the message and start logs as one transaction.

    *plan* runs inside the transaction, after the message is stored, and
    returns ``(automation_id, context)`` pairs to start. It may read through
    the state helpers but must not write. If anything fails, nothing is
    kept: a replay of the same update then starts over from scratch. A
    replay of an already recorded update calls no *plan* and starts nothing.
    """
    now = to_iso(utc_now())
    log_ids: list[int] = []
    async with atomic_write() as db:
        client_id, *flags = await _upsert_client_and_chat(db, event, now)
        upsert = await _load_upsert(event, *flags)
        message = await _insert_inbound(db, upsert.chat.id, event, now)
        if message is not None:
            for automation_id, context in await plan(upsert, message):
                log = await insert_log(
                    db, automation_id, upsert.chat.id, client_id, context=context
                )
                log_ids.append(log.id)
    return InboundRecord(upsert=upsert, message=message, log_ids=log_ids)


async def record_outgoing_message(
    chat_id: int,
    content: str,
    *,
    external_id: str | None = None,
    message_type: str = "text",
    attachments: list[dict[str, Any]] | None = None,
    sent_by: str = "automation",
) -> StoredMessage:
    now = to_iso(utc_now())
    async with atomic_write() as db:
        cursor = await db.execute(
            "INSERT INTO messages"
            " (chat_id, direction, external_id, content, message_type, attachments, sent_by,"
            "  created_at)"
            " VALUES (?, 'outgoing', ?, ?, ?, ?, ?, ?)",
            (
                chat_id,
                external_id,
                content,
                message_type,
                dump_json(attachments or []),
                sent_by,
                now,
            ),
        )
        message_id = cursor.lastrowid
        await db.execute(
            "UPDATE chats SET last_message_at = ?, last_outgoing_at = ? WHERE id = ?",
            (now, now, chat_id),
        )
    return StoredMessage(
        id=message_id,
        chat_id=chat_id,
        direction="outgoing",
        external_id=external_id,
        content=content,
        message_type=message_type,
        created_at=now,
        attachments=attachments or [],
        sent_by=sent_by,
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_chat(chat_id: int) -> Chat | None:
    row = await fetch_one("SELECT * FROM chats WHERE id = ?", (chat_id,))
    return _row_to_chat(row) if row else None


async def get_chat_by_pair(channel_id: int, client_id: int) -> Chat | None:
    row = await fetch_one(
        "SELECT * FROM chats WHERE channel_id = ? AND client_id = ?",
        (channel_id, client_id),
    )
    return _row_to_chat(row) if row else None


async def get_client(client_id: int) -> Client | None:
    row = await fetch_one("SELECT * FROM clients WHERE id = ?", (client_id,))
    return await _row_to_client(row) if row else None


async def get_client_by_external_id(external_id: str) -> Client | None:
    row = await fetch_one("SELECT * FROM clients WHERE external_id = ?", (external_id,))
    return await _row_to_client(row) if row else None


async def client_chat_count(client_id: int) -> int:
    row = await fetch_one("SELECT COUNT(*) AS n FROM chats WHERE client_id = ?", (client_id,))
    return int(row["n"]) if row else 0


async def get_last_incoming_message(chat_id: int) -> StoredMessage | None:
    row = await fetch_one(
        "SELECT * FROM messages WHERE chat_id = ? AND direction = 'incoming'"
        " ORDER BY created_at DESC, id DESC LIMIT 1",
        (chat_id,),
    )
    return _row_to_message(row) if row else None


async def get_messages(chat_id: int) -> list[StoredMessage]:
    rows = await fetch_all(
        "SELECT * FROM messages WHERE chat_id = ? ORDER BY created_at, id",
        (chat_id,),
    )
    return [_row_to_message(row) for row in rows]


async def get_unanswered_chats(
    older_than_iso: str,
    *,
    channel_id: int | None = None,
) -> list[Chat]:
    """Open chats whose last client message predates *older_than_iso*
    and has not been answered since."""
    sql = (
        "SELECT * FROM chats"
        " WHERE status != 'closed'"
        " AND last_incoming_at IS NOT NULL AND last_incoming_at <= ?"
        " AND (last_outgoing_at IS NULL OR last_outgoing_at < last_incoming_at)"
    )
    params: list[Any] = [older_than_iso]
    if channel_id is not None:
        sql += " AND channel_id = ?"
        params.append(channel_id)
    rows = await fetch_all(sql + " ORDER BY id", params)
    return [_row_to_chat(row) for row in rows]


async def get_chats_by_status(
    statuses: list[str],
    *,
    channel_id: int | None = None,
) -> list[Chat]:
    if not statuses:
        return []
    placeholders = ",".join("?" for _ in statuses)
    sql = f"SELECT * FROM chats WHERE status IN ({placeholders})"
    params: list[Any] = list(statuses)
    if channel_id is not None:
        sql += " AND channel_id = ?"
        params.append(channel_id)
    rows = await fetch_all(sql + " ORDER BY id", params)
    return [_row_to_chat(row) for row in rows]


# ---------------------------------------------------------------------------
# Mutations used by workflow steps
# ---------------------------------------------------------------------------


async def add_client_tags(client_id: int, tags: list[str]) -> list[str]:
    """Attach *tags*; returns the ones that were not already present."""
    existing = set(await _client_tags(client_id))
    added = [t for t in dict.fromkeys(tags) if t not in existing]
    if added:
        async with atomic_write() as db:
            await db.executemany(
                "INSERT OR IGNORE INTO client_tags (client_id, tag) VALUES (?, ?)",
                [(client_id, t) for t in added],
            )
    return added


async def remove_client_tags(client_id: int, tags: list[str]) -> list[str]:
    """Detach *tags*; returns the ones that were actually present."""
    existing = set(await _client_tags(client_id))
    removed = [t for t in dict.fromkeys(tags) if t in existing]
    if removed:
        async with atomic_write() as db:
            await db.executemany(
                "DELETE FROM client_tags WHERE client_id = ? AND tag = ?",
                [(client_id, t) for t in removed],
            )
    return removed


async def assign_operator(chat_id: int, operator_id: int | None) -> None:
    async with atomic_write() as db:
        await db.execute(
            "UPDATE chats SET operator_id = ?,"
            " status = CASE WHEN status = 'new' THEN 'open' ELSE status END"
            " WHERE id = ?",
            (operator_id, chat_id),
        )


async def set_chat_status(chat_id: int, status: str) -> None:
    async with atomic_write() as db:
        await db.execute("UPDATE chats SET status = ? WHERE id = ?", (status, chat_id))


async def set_chat_priority(chat_id: int, priority: str) -> None:
    async with atomic_write() as db:
        await db.execute("UPDATE chats SET priority = ? WHERE id = ?", (priority, chat_id))


async def close_chat(chat_id: int) -> None:
    await set_chat_status(chat_id, "closed")
