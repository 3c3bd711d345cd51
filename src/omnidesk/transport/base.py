"""Channel transport protocol.

A transport is created once per channel by the ``omnidesk_create_transport``
plugin hook. It owns the provider's network session and converts every
provider failure into :class:`~omnidesk.errors.TransportError`.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from omnidesk.types import DeliveryResult, OutboundMessage, RawUpdate


@runtime_checkable
class ChannelTransport(Protocol):
    kind: str

    async def fetch_updates(self, cursor: int, timeout_seconds: int) -> list[RawUpdate]:
        """Long-poll for updates with id >= *cursor*.

        Returns updates in ascending id order; an empty list means the poll
        timed out with nothing new. The next cursor is ``updates[-1].id + 1``.
        """
        ...

    async def send_message(self, chat_ref: str, message: OutboundMessage) -> DeliveryResult: ...

    async def delete_webhook(self) -> None:
        """Disable push delivery so long polling receives every update."""
        ...

    async def close(self) -> None: ...
