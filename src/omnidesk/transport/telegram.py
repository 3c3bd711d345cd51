"""Telegram Bot API transport.

Long polling via ``getUpdates``; replies via ``sendMessage`` and the media
send methods. Text goes out in HTML parse mode, so it is escaped first.
Credentials come from the channel row: ``credentials["bot_token"]``.
"""

from __future__ import annotations

import asyncio
import hashlib
import html
import json
from typing import Any

import aiohttp

from omnidesk.config import get_settings
from omnidesk.errors import TransportError
from omnidesk.logger import logger
from omnidesk.types import Channel, DeliveryResult, OutboundMessage, RawUpdate

# Telegram rejects callback_data longer than 64 bytes.
_CALLBACK_DATA_LIMIT = 64
_CALLBACK_DATA_SOFT_LIMIT = 60

_MEDIA_METHODS: dict[str, tuple[str, str]] = {
    "image": ("sendPhoto", "photo"),
    "video": ("sendVideo", "video"),
    "file": ("sendDocument", "document"),
}


def encode_callback_data(step_id: str, index: int) -> str:
    """Encode a button press as ``{step_id}:{index}``.

    Long step ids are replaced by a short hash so the payload fits
    Telegram's limit.
    """
    data = f"{step_id}:{index}"
    if len(data.encode()) > _CALLBACK_DATA_SOFT_LIMIT:
        digest = hashlib.md5(f"{step_id}_{index}".encode()).hexdigest()[:16]
        data = f"b{digest}_{index}"
    return data.encode()[:_CALLBACK_DATA_LIMIT].decode(errors="ignore")


def build_inline_keyboard(buttons: list[dict[str, Any]]) -> list[list[dict[str, str]]]:
    """One button per row. Buttons without text or target are dropped."""
    rows: list[list[dict[str, str]]] = []
    for i, button in enumerate(buttons):
        text = str(button.get("text") or "").strip()
        if not text:
            continue
        if button.get("url"):
            rows.append([{"text": text, "url": str(button["url"])}])
        elif button.get("action"):
            index = int(button.get("index", i))
            data = encode_callback_data(str(button.get("step_id") or ""), index)
            rows.append([{"text": text, "callback_data": data}])
    return rows


def _is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


class TelegramTransport:
    """Telegram transport bound to one channel."""

    kind = "telegram"

    def __init__(self, channel: Channel, *, session: aiohttp.ClientSession | None = None) -> None:
        self.channel_id = channel.id
        self._token = str(channel.credentials.get("bot_token") or "")
        s = get_settings()
        self._api_base = s.telegram.api_base.rstrip("/")
        self._timeout_slack = s.telegram.request_timeout_slack
        self._media_base_url = s.telegram.media_base_url
        self._allowed_updates = list(s.ingestion.allowed_kinds)
        self._session = session
        self._owns_session = session is None

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _call(
        self,
        method: str,
        payload: dict[str, Any] | None = None,
        *,
        timeout: float = 30.0,
    ) -> Any:
        if not self._token:
            raise TransportError(
                f"Channel {self.channel_id} has no bot_token", retryable=False
            )
        url = f"{self._api_base}/bot{self._token}/{method}"
        session = self._get_session()
        try:
            async with session.post(
                url,
                json=payload or {},
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                try:
                    body = await resp.json(content_type=None)
                except (json.JSONDecodeError, aiohttp.ContentTypeError):
                    body = None
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"{method} failed: {exc.__class__.__name__}: {exc}") from exc

        if not isinstance(body, dict):
            raise TransportError(
                f"{method} returned a non-JSON response",
                retryable=_is_retryable_status(status),
                status=status,
            )
        if status >= 400 or not body.get("ok"):
            code = int(body.get("error_code") or status)
            description = body.get("description") or "unknown error"
            raise TransportError(
                f"{method} failed: {description}",
                retryable=_is_retryable_status(code),
                status=code,
            )
        return body.get("result")

    # ------------------------------------------------------------------
    # ChannelTransport
    # ------------------------------------------------------------------

    async def fetch_updates(self, cursor: int, timeout_seconds: int) -> list[RawUpdate]:
        result = await self._call(
            "getUpdates",
            {
                "offset": cursor,
                "timeout": timeout_seconds,
                "allowed_updates": self._allowed_updates,
            },
            timeout=timeout_seconds + self._timeout_slack,
        )
        updates: list[RawUpdate] = []
        for item in result or []:
            update_id = item.get("update_id") if isinstance(item, dict) else None
            if not isinstance(update_id, int):
                logger.warning(
                    "Dropping Telegram update without update_id", channel_id=self.channel_id
                )
                continue
            updates.append(RawUpdate(id=update_id, payload=item))
        updates.sort(key=lambda u: u.id)
        return updates

    async def delete_webhook(self) -> None:
        await self._call("deleteWebhook", {"drop_pending_updates": False})

    async def send_message(self, chat_ref: str, message: OutboundMessage) -> DeliveryResult:
        keyboard = build_inline_keyboard(message.buttons)
        reply_markup = {"inline_keyboard": keyboard} if keyboard else None
        text = html.escape(message.text, quote=False)

        if message.media_type:
            method, field_name = _MEDIA_METHODS[message.media_type]
            payload: dict[str, Any] = {
                "chat_id": chat_ref,
                field_name: self._media_url(message.media_url or ""),
            }
            if text:
                payload["caption"] = text
                payload["parse_mode"] = "HTML"
        else:
            method = "sendMessage"
            payload = {"chat_id": chat_ref, "text": text, "parse_mode": "HTML"}
        if reply_markup:
            payload["reply_markup"] = reply_markup

        result = await self._call(method, payload)
        message_id = result.get("message_id") if isinstance(result, dict) else None
        return DeliveryResult(
            external_message_id=str(message_id) if message_id is not None else None,
            raw=result if isinstance(result, dict) else {},
        )

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _media_url(self, url: str) -> str:
        if url.startswith(("http://", "https://")) or not self._media_base_url:
            return url
        return f"{self._media_base_url.rstrip('/')}/{url.lstrip('/')}"
