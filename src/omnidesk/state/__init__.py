"""SQLite database layer.

All functions are async using aiosqlite.
Module-level connection, initialized by init_database().

This package is split into domain-specific submodules:
  schema           : DDL and column migrations
  connection       : connection lifecycle, write utilities
  channels         : channel rows (read-mostly)
  cursors          : per-channel ingestion cursor
  chats            : clients, chats, messages and tags
  automations      : automation definitions and step graphs
  automation_logs  : workflow run state
  schedules        : next fire times of scheduled automations
"""

# Re-export every public symbol so that `from omnidesk.state import X` keeps working.

from omnidesk.state.automation_logs import (
    chat_has_logs,
    create_log,
    get_awaiting_reply_logs,
    get_due_logs,
    get_log,
    get_logs_for_chat,
    get_running_logs,
    get_stale_running_logs,
    insert_log,
    log_exists_since,
    save_log_state,
)
from omnidesk.state.automations import (
    add_step,
    create_automation,
    delete_step,
    get_active_automations,
    get_automation,
    get_steps,
    set_automation_active,
)
from omnidesk.state.channels import (
    get_active_channels,
    get_all_channels,
    get_channel,
    upsert_channel,
)
from omnidesk.state.chats import (
    ChatUpsert,
    InboundRecord,
    LogPlanner,
    StoredMessage,
    add_client_tags,
    assign_operator,
    client_chat_count,
    close_chat,
    get_chat,
    get_chat_by_pair,
    get_chats_by_status,
    get_client,
    get_client_by_external_id,
    get_last_incoming_message,
    get_messages,
    get_unanswered_chats,
    record_inbound_event,
    record_outgoing_message,
    remove_client_tags,
    set_chat_priority,
    set_chat_status,
    store_inbound_message,
    upsert_chat_for_event,
)
from omnidesk.state.connection import (
    _get_db,
    _init_test_database,
    atomic_write,
    close_database,
    init_database,
)
from omnidesk.state.cursors import advance_cursor, get_cursor
from omnidesk.state.schedules import get_next_fire, set_next_fire

__all__ = [
    "ChatUpsert",
    "InboundRecord",
    "LogPlanner",
    "StoredMessage",
    "_get_db",
    "_init_test_database",
    "add_client_tags",
    "add_step",
    "advance_cursor",
    "assign_operator",
    "atomic_write",
    "chat_has_logs",
    "client_chat_count",
    "close_chat",
    "close_database",
    "create_automation",
    "create_log",
    "delete_step",
    "get_active_automations",
    "get_active_channels",
    "get_all_channels",
    "get_automation",
    "get_awaiting_reply_logs",
    "get_channel",
    "get_chat",
    "get_chat_by_pair",
    "get_chats_by_status",
    "get_client",
    "get_client_by_external_id",
    "get_cursor",
    "get_due_logs",
    "get_last_incoming_message",
    "get_log",
    "get_logs_for_chat",
    "get_messages",
    "get_next_fire",
    "get_running_logs",
    "get_stale_running_logs",
    "get_steps",
    "get_unanswered_chats",
    "init_database",
    "insert_log",
    "log_exists_since",
    "record_inbound_event",
    "record_outgoing_message",
    "remove_client_tags",
    "save_log_state",
    "set_automation_active",
    "set_chat_priority",
    "set_chat_status",
    "set_next_fire",
    "store_inbound_message",
    "upsert_channel",
    "upsert_chat_for_event",
]
