"""Tests for the Telegram Bot API transport."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock

import aiohttp
import pytest
from conftest import make_settings

from omnidesk.config import TelegramConfig
from omnidesk.errors import TransportError
from omnidesk.transport.telegram import (
    TelegramTransport,
    build_inline_keyboard,
    encode_callback_data,
)
from omnidesk.types import Channel, OutboundMessage


class _FakeResponse:
    def __init__(self, status: int, body: Any) -> None:
        self.status = status
        self._body = body

    async def json(self, content_type=None):
        if isinstance(self._body, str):
            raise json.JSONDecodeError("bad", self._body, 0)
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class _FakeSession:
    """Just enough of aiohttp.ClientSession for TelegramTransport._call."""

    def __init__(self, responses: list[Any]) -> None:
        self._responses = list(responses)
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    def post(self, url, *, json=None, timeout=None):
        self.calls.append((url, json))
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        self.closed = True


def _transport(*responses: Any, token: str = "123:abc") -> tuple[TelegramTransport, _FakeSession]:
    session = _FakeSession(list(responses))
    channel = Channel(id=1, name="bot", type="telegram", credentials={"bot_token": token})
    return TelegramTransport(channel, session=session), session  # type: ignore[arg-type]


class TestCallbackEncoding:
    def test_short_step_id_kept(self):
        assert encode_callback_data("s1", 2) == "s1:2"

    def test_long_step_id_hashed(self):
        data = encode_callback_data("x" * 80, 3)
        assert data.startswith("b")
        assert data.endswith("_3")
        assert len(data.encode()) <= 64

    def test_hash_is_stable(self):
        assert encode_callback_data("y" * 70, 0) == encode_callback_data("y" * 70, 0)


class TestInlineKeyboard:
    def test_url_and_action_buttons(self):
        rows = build_inline_keyboard(
            [
                {"text": "Site", "url": "https://example.com"},
                {"text": "Yes", "action": "next", "step_id": "ask", "index": 1},
                {"text": "", "action": "next"},
                {"text": "Nothing"},
            ]
        )
        assert rows == [
            [{"text": "Site", "url": "https://example.com"}],
            [{"text": "Yes", "callback_data": "ask:1"}],
        ]


class TestCall:
    @pytest.mark.asyncio
    async def test_fetch_updates_sorted_and_offset_sent(self):
        transport, session = _transport(
            _FakeResponse(
                200,
                {
                    "ok": True,
                    "result": [
                        {"update_id": 103, "message": {}},
                        {"update_id": 101, "message": {}},
                        {"message": {}},
                    ],
                },
            )
        )

        updates = await transport.fetch_updates(101, 30)

        assert [u.id for u in updates] == [101, 103]
        url, payload = session.calls[0]
        assert url == "https://api.telegram.org/bot123:abc/getUpdates"
        assert payload["offset"] == 101
        assert payload["timeout"] == 30
        assert "callback_query" in payload["allowed_updates"]

    @pytest.mark.asyncio
    async def test_network_error_is_retryable(self):
        transport, _ = _transport(aiohttp.ClientConnectionError("reset"))

        with pytest.raises(TransportError) as exc_info:
            await transport.fetch_updates(0, 30)
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_rate_limit_is_retryable(self):
        transport, _ = _transport(
            _FakeResponse(429, {"ok": False, "error_code": 429, "description": "Too Many"})
        )

        with pytest.raises(TransportError) as exc_info:
            await transport.delete_webhook()
        assert exc_info.value.retryable
        assert exc_info.value.status == 429

    @pytest.mark.asyncio
    async def test_bad_request_is_not_retryable(self):
        transport, _ = _transport(
            _FakeResponse(400, {"ok": False, "error_code": 400, "description": "chat not found"})
        )

        with pytest.raises(TransportError) as exc_info:
            await transport.send_message("42", OutboundMessage(text="hi"))
        assert not exc_info.value.retryable
        assert "chat not found" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_non_json_gateway_error_is_retryable(self):
        transport, _ = _transport(_FakeResponse(502, "<html>Bad Gateway</html>"))

        with pytest.raises(TransportError) as exc_info:
            await transport.fetch_updates(0, 30)
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_missing_token_fails_without_request(self):
        transport, session = _transport(token="")

        with pytest.raises(TransportError) as exc_info:
            await transport.fetch_updates(0, 30)
        assert not exc_info.value.retryable
        assert session.calls == []


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_text_is_html_escaped(self):
        transport, session = _transport(
            _FakeResponse(200, {"ok": True, "result": {"message_id": 55}})
        )

        result = await transport.send_message("42", OutboundMessage(text="a < b & c"))

        assert result.external_message_id == "55"
        url, payload = session.calls[0]
        assert url.endswith("/sendMessage")
        assert payload == {"chat_id": "42", "text": "a &lt; b &amp; c", "parse_mode": "HTML"}

    @pytest.mark.asyncio
    async def test_image_with_buttons(self):
        transport, session = _transport(
            _FakeResponse(200, {"ok": True, "result": {"message_id": 56}})
        )
        message = OutboundMessage(
            text="Pick one",
            media_type="image",
            media_url="https://cdn.example.com/a.png",
            buttons=[{"text": "A", "action": "x", "step_id": "s", "index": 0}],
        )

        await transport.send_message("42", message)

        url, payload = session.calls[0]
        assert url.endswith("/sendPhoto")
        assert payload["photo"] == "https://cdn.example.com/a.png"
        assert payload["caption"] == "Pick one"
        assert payload["reply_markup"] == {
            "inline_keyboard": [[{"text": "A", "callback_data": "s:0"}]]
        }

    @pytest.mark.asyncio
    async def test_relative_media_url_prefixed(self, monkeypatch):
        monkeypatch.setattr(
            "omnidesk.config._settings",
            make_settings(telegram=TelegramConfig(media_base_url="https://files.example.com/")),
        )
        transport, session = _transport(_FakeResponse(200, {"ok": True, "result": {}}))

        result = await transport.send_message(
            "42", OutboundMessage(media_type="file", media_url="/docs/price.pdf")
        )

        _, payload = session.calls[0]
        assert payload["document"] == "https://files.example.com/docs/price.pdf"
        assert "caption" not in payload
        assert result.external_message_id is None


class TestClose:
    @pytest.mark.asyncio
    async def test_injected_session_is_not_closed(self):
        transport, session = _transport()
        await transport.close()
        assert not session.closed

    @pytest.mark.asyncio
    async def test_call_is_patchable(self):
        transport, _ = _transport()
        transport._call = AsyncMock(return_value=[])  # type: ignore[method-assign]

        assert await transport.fetch_updates(7, 0) == []
        transport._call.assert_awaited_once()
