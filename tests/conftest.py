"""Shared test fixtures for omnidesk."""

from __future__ import annotations

from collections import deque
from typing import Any

import pluggy
import pytest

from omnidesk.errors import NormalizationError, TransportError
from omnidesk.types import (
    Channel,
    DeliveryResult,
    InboundEvent,
    OutboundMessage,
    RawUpdate,
    SenderIdentity,
)

# ---------------------------------------------------------------------------
# Builders imported directly by test modules
# ---------------------------------------------------------------------------

# cached_property values; model_construct ignores them, so they go in __dict__
_CACHED_PROPERTY_NAMES = frozenset({"project_root", "database_path", "timezone"})


def make_settings(**overrides):
    """Create a Settings object with fast, test-friendly defaults.

    Accepts both model fields (ingestion, workflow, etc.) and cached property
    overrides (timezone, database_path).

    Usage::

        s = make_settings(workflow=WorkflowConfig(max_steps_per_run=5))
        s = make_settings(timezone="Europe/Berlin")
    """
    from omnidesk.config import (
        DatabaseConfig,
        IngestionConfig,
        LoggingConfig,
        SchedulerConfig,
        ServerConfig,
        Settings,
        TelegramConfig,
        WorkflowConfig,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}
    cached.setdefault("timezone", "UTC")

    defaults = {
        "database": DatabaseConfig(),
        "ingestion": IngestionConfig(
            poll_timeout=0, idle_sleep=0.01, backoff_base=0.01, backoff_max=0.05
        ),
        "workflow": WorkflowConfig(send_retry_base=0.0),
        "scheduler": SchedulerConfig(poll_interval=0.01),
        "server": ServerConfig(enabled=False),
        "logging": LoggingConfig(),
        "telegram": TelegramConfig(),
        "plugins": {},
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def make_event(
    *,
    channel_id: int = 1,
    update_id: int = 1,
    chat_ref: str = "100",
    message_id: str | None = None,
    sender_id: str = "tg_100",
    sender_name: str = "Alice Smith",
    content: str = "hello",
    kind: str = "message",
) -> InboundEvent:
    return InboundEvent(
        channel_id=channel_id,
        update_id=update_id,
        external_chat_id=chat_ref,
        external_message_id=message_id or str(update_id),
        sender=SenderIdentity(external_id=sender_id, name=sender_name),
        content=content,
        timestamp="2024-01-01T00:00:00.000000+00:00",
        message_type="button" if kind == "button" else "text",
        kind=kind,  # type: ignore[arg-type]
    )


class FakeTransport:
    """In-memory ChannelTransport.

    ``batches`` is consumed one entry per fetch; an entry may be a list of
    RawUpdates or an exception to raise. An exhausted queue returns [].
    """

    kind = "fake"

    def __init__(self) -> None:
        self.batches: deque[list[RawUpdate] | Exception] = deque()
        self.fetches: list[int] = []
        self.sent: list[tuple[str, OutboundMessage]] = []
        self.fail_sends = 0
        self.send_error: TransportError | None = None
        self.webhook_deleted = 0
        self.webhook_failures = 0
        self.closed = False

    def queue(self, *update_ids: int, **payload: Any) -> None:
        self.batches.append([RawUpdate(id=i, payload={"n": i, **payload}) for i in update_ids])

    async def fetch_updates(self, cursor: int, timeout_seconds: int) -> list[RawUpdate]:
        self.fetches.append(cursor)
        if not self.batches:
            return []
        batch = self.batches.popleft()
        if isinstance(batch, Exception):
            raise batch
        return batch

    async def send_message(self, chat_ref: str, message: OutboundMessage) -> DeliveryResult:
        if self.fail_sends > 0:
            self.fail_sends -= 1
            raise self.send_error or TransportError("fake send failed")
        self.sent.append((chat_ref, message))
        return DeliveryResult(external_message_id=f"out-{len(self.sent)}")

    async def delete_webhook(self) -> None:
        if self.webhook_failures > 0:
            self.webhook_failures -= 1
            raise TransportError("webhook busy")
        self.webhook_deleted += 1

    async def close(self) -> None:
        self.closed = True


def fake_normalizer(update: RawUpdate, channel_id: int) -> InboundEvent | None:
    """Turns ``{"n": 7}`` payloads into events; ``malformed`` raises, ``ignored`` drops."""
    if update.payload.get("malformed"):
        raise NormalizationError("bad payload", update_id=update.id)
    if update.payload.get("ignored"):
        return None
    return make_event(
        channel_id=channel_id,
        update_id=update.id,
        content=str(update.payload.get("text", f"msg {update.id}")),
    )


hookimpl = pluggy.HookimplMarker("omnidesk")


class FakeChannelPlugin:
    """Provides the ``fake`` kind, handing out one FakeTransport per channel id."""

    def __init__(self) -> None:
        self.transports: dict[int, FakeTransport] = {}

    @hookimpl
    def omnidesk_pollable_kinds(self) -> list[str]:
        return ["fake"]

    @hookimpl
    def omnidesk_create_transport(self, channel: Channel) -> FakeTransport | None:
        if channel.type != "fake":
            return None
        return self.transports.setdefault(channel.id, FakeTransport())

    @hookimpl
    def omnidesk_update_normalizer(self, kind: str):
        if kind != "fake":
            return None
        return fake_normalizer


def make_plugin_manager(*plugins: Any) -> pluggy.PluginManager:
    from omnidesk.plugin.hookspecs import OmnideskSpec

    pm = pluggy.PluginManager("omnidesk")
    pm.add_hookspecs(OmnideskSpec)
    for plugin in plugins:
        pm.register(plugin)
    return pm


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Every test sees default Settings, never the developer's config.toml or .env."""
    monkeypatch.setattr("omnidesk.config._settings", make_settings())


@pytest.fixture(autouse=True, scope="session")
def _close_test_database():
    """Shut down whatever connection the last database test left open.

    Its worker thread belongs to a loop that is already closed, so this
    stops the thread directly instead of awaiting close().
    """
    yield
    from omnidesk.state import connection

    leftover = connection._db
    if leftover is not None:
        leftover.stop()
        if leftover._thread is not None and leftover._thread.is_alive():
            leftover._thread.join(timeout=2)
        connection._db = None


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_plugin() -> FakeChannelPlugin:
    return FakeChannelPlugin()


@pytest.fixture
def pm(fake_plugin):
    return make_plugin_manager(fake_plugin)
