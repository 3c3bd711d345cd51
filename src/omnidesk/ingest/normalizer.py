"""Provider update -> InboundEvent.

A normalizer returns None for update kinds the core does not handle and
raises NormalizationError for updates it should handle but cannot read.
The poller skips both, but only the latter is logged as a problem.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from omnidesk.errors import NormalizationError
from omnidesk.types import InboundEvent, RawUpdate, SenderIdentity
from omnidesk.utils import to_iso, utc_now

Normalizer = Callable[[RawUpdate, int], InboundEvent | None]

# Placeholder text for messages without text or caption, in priority order.
_PLACEHOLDERS: list[tuple[str, str]] = [
    ("photo", "📷 Photo"),
    ("video", "🎬 Video"),
    ("voice", "🎤 Voice message"),
    ("audio", "🎵 Audio"),
    ("location", "📍 Location"),
]

_MESSAGE_TYPES: list[tuple[str, str]] = [
    ("text", "text"),
    ("photo", "image"),
    ("video", "video"),
    ("voice", "audio"),
    ("audio", "audio"),
    ("document", "file"),
    ("sticker", "sticker"),
    ("location", "location"),
    ("contact", "contact"),
]


def telegram_content(message: dict[str, Any]) -> str:
    if message.get("text"):
        return str(message["text"])
    if message.get("caption"):
        return str(message["caption"])
    if "sticker" in message:
        return (message["sticker"] or {}).get("emoji") or "🎭 Sticker"
    if "document" in message:
        return "📎 " + ((message["document"] or {}).get("file_name") or "Document")
    if "contact" in message:
        return "👤 Contact: " + ((message["contact"] or {}).get("first_name") or "Contact")
    for key, placeholder in _PLACEHOLDERS:
        if key in message:
            return placeholder
    return ""


def telegram_message_type(message: dict[str, Any]) -> str:
    for key, message_type in _MESSAGE_TYPES:
        if key in message:
            return message_type
    return "text"


def telegram_attachments(message: dict[str, Any]) -> list[dict[str, Any]]:
    """File references for media; nothing is downloaded here."""
    attachments: list[dict[str, Any]] = []
    if message.get("photo"):
        largest = message["photo"][-1]
        attachments.append(
            {
                "type": "image",
                "file_id": largest.get("file_id"),
                "width": largest.get("width"),
                "height": largest.get("height"),
            }
        )
    for key, kind in (("video", "video"), ("voice", "voice"), ("audio", "audio")):
        if message.get(key):
            media = message[key]
            attachments.append(
                {"type": kind, "file_id": media.get("file_id"), "duration": media.get("duration")}
            )
    if message.get("document"):
        doc = message["document"]
        attachments.append(
            {
                "type": "document",
                "file_id": doc.get("file_id"),
                "file_name": doc.get("file_name"),
                "mime_type": doc.get("mime_type"),
            }
        )
    if message.get("sticker"):
        sticker = message["sticker"]
        attachments.append(
            {"type": "sticker", "file_id": sticker.get("file_id"), "emoji": sticker.get("emoji")}
        )
    if message.get("location"):
        loc = message["location"]
        attachments.append(
            {"type": "location", "latitude": loc.get("latitude"), "longitude": loc.get("longitude")}
        )
    if message.get("contact"):
        contact = message["contact"]
        attachments.append(
            {
                "type": "contact",
                "phone_number": contact.get("phone_number"),
                "first_name": contact.get("first_name"),
                "last_name": contact.get("last_name"),
            }
        )
    return attachments


def _telegram_sender(user: Any, update_id: int) -> SenderIdentity:
    if not isinstance(user, dict) or "id" not in user:
        raise NormalizationError("update has no sender", update_id=update_id)
    name = " ".join(p for p in (user.get("first_name"), user.get("last_name")) if p).strip()
    return SenderIdentity(
        external_id=f"tg_{user['id']}",
        name=name,
        username=user.get("username"),
        language=user.get("language_code"),
    )


def _timestamp(unix: Any) -> str:
    if isinstance(unix, int | float):
        return to_iso(datetime.fromtimestamp(unix, UTC))
    return to_iso(utc_now())


def normalize_telegram_update(update: RawUpdate, channel_id: int) -> InboundEvent | None:
    payload = update.payload
    if "callback_query" in payload:
        return _normalize_callback(update, channel_id)

    for key in ("message", "edited_message"):
        if key in payload:
            message = payload[key]
            break
    else:
        return None

    if not isinstance(message, dict):
        raise NormalizationError(f"{key} is not an object", update_id=update.id)
    chat = message.get("chat")
    if not isinstance(chat, dict) or "id" not in chat:
        raise NormalizationError("message has no chat id", update_id=update.id)
    if "message_id" not in message:
        raise NormalizationError("message has no message_id", update_id=update.id)

    return InboundEvent(
        channel_id=channel_id,
        update_id=update.id,
        external_chat_id=str(chat["id"]),
        external_message_id=str(message["message_id"]),
        sender=_telegram_sender(message.get("from"), update.id),
        content=telegram_content(message),
        timestamp=_timestamp(message.get("date")),
        message_type=telegram_message_type(message),
        kind=key,  # type: ignore[arg-type]
        attachments=telegram_attachments(message),
    )


def _normalize_callback(update: RawUpdate, channel_id: int) -> InboundEvent:
    query = update.payload["callback_query"]
    if not isinstance(query, dict) or "id" not in query:
        raise NormalizationError("callback_query has no id", update_id=update.id)
    message = query.get("message") or {}
    chat = message.get("chat") or {}
    data = query.get("data")
    if "id" not in chat or not data:
        raise NormalizationError("callback_query has no chat or data", update_id=update.id)
    return InboundEvent(
        channel_id=channel_id,
        update_id=update.id,
        external_chat_id=str(chat["id"]),
        external_message_id=f"cb:{query['id']}",
        sender=_telegram_sender(query.get("from"), update.id),
        content=str(data),
        timestamp=to_iso(utc_now()),
        message_type="button",
        kind="button",
        attachments=[{"type": "button", "data": str(data)}],
    )
