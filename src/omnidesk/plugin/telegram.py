"""Built-in Telegram channel plugin.

Activation: add a channel row with ``type = "telegram"`` and
``credentials = {"bot_token": ...}``. Disable with
``[plugins.telegram] enabled = false`` in config.toml.
"""

from __future__ import annotations

from typing import Any

import pluggy

from omnidesk.ingest.normalizer import normalize_telegram_update
from omnidesk.transport.telegram import TelegramTransport

hookimpl = pluggy.HookimplMarker("omnidesk")

KIND = "telegram"


class TelegramTransportPlugin:
    @hookimpl
    def omnidesk_pollable_kinds(self) -> list[str]:
        return [KIND]

    @hookimpl
    def omnidesk_create_transport(self, channel: Any) -> TelegramTransport | None:
        if channel.type != KIND:
            return None
        return TelegramTransport(channel)

    @hookimpl
    def omnidesk_update_normalizer(self, kind: str) -> Any | None:
        if kind != KIND:
            return None
        return normalize_telegram_update
