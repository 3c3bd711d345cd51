"""Per-channel transport cache.

Pollers and the workflow executor share one transport per channel, so a
channel has one HTTP session regardless of how many components talk to it.
"""

from __future__ import annotations

import pluggy

from omnidesk.errors import TransportError
from omnidesk.logger import logger
from omnidesk.state import get_channel
from omnidesk.transport.base import ChannelTransport
from omnidesk.types import Channel


class TransportRegistry:
    def __init__(self, pm: pluggy.PluginManager) -> None:
        self._pm = pm
        self._transports: dict[int, ChannelTransport] = {}

    def get(self, channel: Channel) -> ChannelTransport:
        """Return the cached transport for *channel*, creating it on first use.

        Raises TransportError (not retryable) when no plugin handles the
        channel's kind.
        """
        transport = self._transports.get(channel.id)
        if transport is None:
            transport = self._pm.hook.omnidesk_create_transport(channel=channel)
            if transport is None:
                raise TransportError(
                    f"No transport plugin for channel kind {channel.type!r}", retryable=False
                )
            self._transports[channel.id] = transport
        return transport

    async def get_by_id(self, channel_id: int) -> tuple[Channel, ChannelTransport]:
        channel = await get_channel(channel_id)
        if channel is None:
            raise TransportError(f"Channel {channel_id} does not exist", retryable=False)
        return channel, self.get(channel)

    def put(self, channel_id: int, transport: ChannelTransport) -> None:
        self._transports[channel_id] = transport

    async def close_all(self) -> None:
        for channel_id, transport in list(self._transports.items()):
            try:
                await transport.close()
            except Exception:
                logger.exception("Failed to close transport", channel_id=channel_id)
        self._transports.clear()
