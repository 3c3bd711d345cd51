"""Integration test: app wiring from ingestion to delivered reply."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest
from conftest import FakeChannelPlugin, FakeTransport, make_plugin_manager, make_settings

from omnidesk.app import OmnideskApp
from omnidesk.config import ServerConfig
from omnidesk.state import add_step, create_automation, get_cursor, upsert_channel


async def _wait_for(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_update_flows_to_reply_and_cursor(tmp_path, monkeypatch):
    monkeypatch.setattr(
        "omnidesk.config._settings",
        make_settings(
            database_path=tmp_path / "omnidesk.db",
            server=ServerConfig(enabled=False),
        ),
    )
    plugin = FakeChannelPlugin()
    with patch("omnidesk.app.get_plugin_manager", return_value=make_plugin_manager(plugin)):
        app = OmnideskApp()

    await app.start()
    try:
        channel = await upsert_channel("support", "fake")
        automation = await create_automation("greet", "new_chat")
        await add_step(automation.id, "hi", "send_text", config={"text": "Welcome!"})
        transport = plugin.transports.setdefault(channel.id, FakeTransport())
        transport.queue(7, text="hello")

        assert await app.start_ingestion(channel.id) == [channel.id]
        await _wait_for(lambda: bool(transport.sent))

        assert transport.sent[0][1].text == "Welcome!"
        for _ in range(100):
            if await get_cursor(channel.id) == 8:
                break
            await asyncio.sleep(0.01)
        assert await get_cursor(channel.id) == 8
        [status] = app.ingestion_status()
        assert status["running"] is True
    finally:
        await app.shutdown()

    assert transport.closed
    assert app.executor_in_flight() == 0
