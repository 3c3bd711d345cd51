"""Channel transports: the boundary between omnidesk and provider APIs."""

from omnidesk.transport.base import ChannelTransport
from omnidesk.transport.registry import TransportRegistry

__all__ = ["ChannelTransport", "TransportRegistry"]
