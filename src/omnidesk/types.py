"""Data models for omnidesk."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

TriggerKind = Literal[
    "new_chat",
    "keyword",
    "incoming_message",
    "no_response",
    "scheduled",
    "tag_added",
    "tag_removed",
    "chat_opened",
    "chat_closed",
]

StepType = Literal[
    "send_text",
    "send_text_with_buttons",
    "send_image",
    "send_video",
    "send_file",
    "delay",
    "condition",
    "assign_operator",
    "add_tag",
    "remove_tag",
    "close_chat",
]

LogStatus = Literal["running", "waiting", "completed", "failed"]

ChatStatus = Literal["new", "open", "pending", "resolved", "closed"]

SEND_STEP_TYPES: frozenset[str] = frozenset(
    {"send_text", "send_text_with_buttons", "send_image", "send_video", "send_file"}
)
MUTATION_STEP_TYPES: frozenset[str] = frozenset(
    {"assign_operator", "add_tag", "remove_tag", "close_chat"}
)
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})
CHAT_STATUSES: frozenset[str] = frozenset({"new", "open", "pending", "resolved", "closed"})
# Tag changes made by these automations fire no further tag triggers
TAG_TRIGGERS: frozenset[str] = frozenset({"tag_added", "tag_removed"})


@dataclass
class Channel:
    id: int
    name: str
    type: str  # transport kind, e.g. "telegram"
    is_active: bool = True
    credentials: dict[str, Any] = field(default_factory=dict)
    settings: dict[str, Any] = field(default_factory=dict)

    @property
    def automations_disabled(self) -> bool:
        return bool(self.settings.get("disable_automations", False))


@dataclass
class RawUpdate:
    """One entry of a channel's update stream, as returned by the transport."""

    id: int
    payload: dict[str, Any]
    timestamp: str | None = None


@dataclass
class SenderIdentity:
    external_id: str
    name: str = ""
    username: str | None = None
    language: str | None = None


@dataclass
class InboundEvent:
    """A provider update normalized into a channel-independent message."""

    channel_id: int
    update_id: int
    external_chat_id: str
    external_message_id: str
    sender: SenderIdentity
    content: str
    timestamp: str
    message_type: str = "text"
    kind: Literal["message", "edited_message", "button"] = "message"
    attachments: list[dict[str, Any]] = field(default_factory=list)

    def to_trigger_dict(self) -> dict[str, Any]:
        """Compact form stored in AutomationLog.context["trigger"]."""
        return {
            "update_id": self.update_id,
            "message_id": self.external_message_id,
            "content": self.content,
            "kind": self.kind,
            "timestamp": self.timestamp,
        }


@dataclass
class OutboundMessage:
    text: str = ""
    media_type: Literal["image", "video", "file"] | None = None
    media_url: str | None = None
    buttons: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class DeliveryResult:
    external_message_id: str | None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class Client:
    id: int
    external_id: str
    name: str = ""
    username: str | None = None
    phone: str | None = None
    email: str | None = None
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def first_name(self) -> str:
        return self.name.split(" ")[0] if self.name else ""

    def to_context(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "name": self.name,
            "username": self.username,
            "phone": self.phone,
            "email": self.email,
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
        }


@dataclass
class Chat:
    id: int
    channel_id: int
    client_id: int
    external_chat_id: str
    status: ChatStatus = "new"
    priority: str = "normal"
    operator_id: int | None = None
    last_message_at: str | None = None
    last_incoming_at: str | None = None
    last_outgoing_at: str | None = None
    unread_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""

    def to_context(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "client_id": self.client_id,
            "status": self.status,
            "priority": self.priority,
            "operator_id": self.operator_id,
            "unread_count": self.unread_count,
            "last_message_at": self.last_message_at,
            "metadata": dict(self.metadata),
        }


@dataclass
class Automation:
    id: int
    name: str
    trigger: TriggerKind
    channel_id: int | None = None  # None = all channels
    trigger_config: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    entry_step_id: str | None = None

    def keywords(self) -> list[str]:
        """Configured keywords, lower-cased, blanks dropped.

        Accepts either a list or a comma-separated string.
        """
        raw = self.trigger_config.get("keywords") or []
        if isinstance(raw, str):
            raw = raw.split(",")
        elif not isinstance(raw, list | tuple):
            raw = [raw]
        keywords = (str(k).strip().casefold() for k in raw if k is not None)
        return [k for k in keywords if k]


@dataclass
class AutomationStep:
    automation_id: int
    step_id: str
    type: StepType
    config: dict[str, Any] = field(default_factory=dict)
    position: int = 0  # display order only
    next_step_id: str | None = None
    condition_true_step_id: str | None = None
    condition_false_step_id: str | None = None


@dataclass
class AutomationLog:
    id: int
    automation_id: int
    chat_id: int
    client_id: int
    status: LogStatus = "running"
    current_step_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    next_run_at: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def awaiting_reply(self) -> bool:
        return self.status == "waiting" and bool(self.context.get("awaiting_reply"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "automation_id": self.automation_id,
            "chat_id": self.chat_id,
            "client_id": self.client_id,
            "status": self.status,
            "current_step_id": self.current_step_id,
            "context": self.context,
            "error": self.error,
            "next_run_at": self.next_run_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
