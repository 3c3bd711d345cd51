"""Pluggy hook specifications for omnidesk plugins.

This module defines the hook interface that plugins implement to add
channel kinds to omnidesk. All hooks use the "omnidesk" namespace and are
validated by pluggy at registration time.
"""

from __future__ import annotations

from typing import Any

import pluggy

hookspec = pluggy.HookspecMarker("omnidesk")


class OmnideskSpec:
    """Hook specifications for omnidesk plugins.

    A channel plugin usually implements all three hooks for the one
    transport kind it provides.
    """

    @hookspec
    def omnidesk_pollable_kinds(self) -> list[str]:
        """Transport kinds this plugin can long-poll (e.g. ``["telegram"]``).

        Channels of other kinds are never started by the ingestion manager.
        """

    @hookspec(firstresult=True)
    def omnidesk_create_transport(self, channel: Any) -> Any | None:
        """Create the transport for one channel.

        Args:
            channel: the :class:`~omnidesk.types.Channel` row

        Returns:
            An object implementing
            :class:`~omnidesk.transport.base.ChannelTransport`, or None if
            this plugin does not handle ``channel.type``. The first non-None
            result wins.
        """

    @hookspec(firstresult=True)
    def omnidesk_update_normalizer(self, kind: str) -> Any | None:
        """Return the normalizer for raw updates of transport *kind*.

        Returns:
            A callable ``(RawUpdate, channel_id) -> InboundEvent | None``, or
            None if this plugin does not handle *kind*.
        """
