"""Table definitions and the additive migration that keeps old files current.

New databases get everything from ``_SCHEMA`` via ``IF NOT EXISTS``. For a
file created by an earlier release, ``_ensure_columns`` compares each table
against ``_SCHEMA`` and adds whatever columns are missing. Columns are only
ever added, never renamed or dropped.
"""

from __future__ import annotations

import re

import aiosqlite

from omnidesk.logger import logger

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS channels (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    credentials TEXT,
    settings TEXT
);
CREATE INDEX IF NOT EXISTS idx_channels_active ON channels(type, is_active);

CREATE TABLE IF NOT EXISTS channel_cursors (
    channel_id INTEGER PRIMARY KEY,
    cursor_value INTEGER NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (channel_id) REFERENCES channels(id)
);

CREATE TABLE IF NOT EXISTS clients (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id TEXT NOT NULL UNIQUE,
    name TEXT,
    username TEXT,
    phone TEXT,
    email TEXT,
    metadata TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS client_tags (
    client_id INTEGER NOT NULL,
    tag TEXT NOT NULL,
    PRIMARY KEY (client_id, tag),
    FOREIGN KEY (client_id) REFERENCES clients(id)
);

CREATE TABLE IF NOT EXISTS chats (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    channel_id INTEGER NOT NULL,
    client_id INTEGER NOT NULL,
    external_chat_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'new',
    priority TEXT NOT NULL DEFAULT 'normal',
    operator_id INTEGER,
    last_message_at TEXT,
    last_incoming_at TEXT,
    last_outgoing_at TEXT,
    unread_count INTEGER NOT NULL DEFAULT 0,
    metadata TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (channel_id, client_id),
    FOREIGN KEY (channel_id) REFERENCES channels(id),
    FOREIGN KEY (client_id) REFERENCES clients(id)
);
CREATE INDEX IF NOT EXISTS idx_chats_channel_status ON chats(channel_id, status);
CREATE INDEX IF NOT EXISTS idx_chats_last_incoming ON chats(last_incoming_at);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    chat_id INTEGER NOT NULL,
    direction TEXT NOT NULL,
    external_id TEXT,
    content TEXT,
    message_type TEXT NOT NULL DEFAULT 'text',
    attachments TEXT,
    sent_by TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (chat_id) REFERENCES chats(id)
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_external
    ON messages(chat_id, direction, external_id) WHERE external_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_messages_by_chat ON messages(chat_id, created_at);

CREATE TABLE IF NOT EXISTS automations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    channel_id INTEGER,
    trigger_kind TEXT NOT NULL DEFAULT 'new_chat',
    trigger_config TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    entry_step_id TEXT,
    FOREIGN KEY (channel_id) REFERENCES channels(id)
);
CREATE INDEX IF NOT EXISTS idx_automations_trigger ON automations(trigger_kind, is_active);

CREATE TABLE IF NOT EXISTS automation_steps (
    automation_id INTEGER NOT NULL,
    step_id TEXT NOT NULL,
    type TEXT NOT NULL,
    config TEXT,
    position INTEGER NOT NULL DEFAULT 0,
    next_step_id TEXT,
    condition_true_step_id TEXT,
    condition_false_step_id TEXT,
    PRIMARY KEY (automation_id, step_id),
    FOREIGN KEY (automation_id) REFERENCES automations(id)
);

CREATE TABLE IF NOT EXISTS automation_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    automation_id INTEGER NOT NULL,
    chat_id INTEGER NOT NULL,
    client_id INTEGER NOT NULL,
    current_step_id TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    context TEXT,
    error TEXT,
    next_run_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (automation_id) REFERENCES automations(id),
    FOREIGN KEY (chat_id) REFERENCES chats(id)
);
CREATE INDEX IF NOT EXISTS idx_logs_due ON automation_logs(status, next_run_at);
CREATE INDEX IF NOT EXISTS idx_logs_chat ON automation_logs(chat_id, automation_id);

CREATE TABLE IF NOT EXISTS trigger_schedules (
    automation_id INTEGER PRIMARY KEY,
    next_fire_at TEXT NOT NULL,
    FOREIGN KEY (automation_id) REFERENCES automations(id)
);
"""


_TABLE_RE = re.compile(r"CREATE TABLE IF NOT EXISTS (\w+)\s*\((.*?)\);", re.DOTALL)
_CONSTRAINT_PREFIXES = ("PRIMARY", "FOREIGN", "UNIQUE", "CHECK")


def _declared_columns(schema: str) -> dict[str, list[tuple[str, str]]]:
    """Map each table in *schema* to its (name, definition) column pairs."""
    declared: dict[str, list[tuple[str, str]]] = {}
    for table, body in _TABLE_RE.findall(schema):
        columns = []
        for raw in body.splitlines():
            definition = raw.strip().rstrip(",")
            if not definition or definition.upper().startswith(_CONSTRAINT_PREFIXES):
                continue
            name, _, rest = definition.partition(" ")
            if rest:
                columns.append((name, definition))
        declared[table] = columns
    return declared


async def _ensure_columns(database: aiosqlite.Connection) -> None:
    for table, columns in _declared_columns(_SCHEMA).items():
        cursor = await database.execute(f"PRAGMA table_info({table})")
        present = {row[1] for row in await cursor.fetchall()}
        if not present:
            continue
        for name, definition in columns:
            if name in present:
                continue
            await database.execute(f"ALTER TABLE {table} ADD COLUMN {definition}")
            logger.info("Schema column added", table=table, column=name)
    await database.commit()


async def create_schema(database: aiosqlite.Connection) -> None:
    """Create missing tables and indexes, then backfill new columns."""
    await database.executescript(_SCHEMA)
    await _ensure_columns(database)
