"""Tests for channel, chat, automation and log persistence."""

from __future__ import annotations

import pytest
from conftest import make_event

from omnidesk.state import (
    add_client_tags,
    add_step,
    assign_operator,
    chat_has_logs,
    client_chat_count,
    create_automation,
    create_log,
    delete_step,
    get_active_automations,
    get_active_channels,
    get_awaiting_reply_logs,
    get_chat,
    get_chats_by_status,
    get_client,
    get_due_logs,
    get_last_incoming_message,
    get_log,
    get_messages,
    get_next_fire,
    get_running_logs,
    get_stale_running_logs,
    get_steps,
    get_unanswered_chats,
    log_exists_since,
    record_inbound_event,
    record_outgoing_message,
    remove_client_tags,
    save_log_state,
    set_automation_active,
    set_chat_status,
    set_next_fire,
    store_inbound_message,
    upsert_channel,
    upsert_chat_for_event,
)
from omnidesk.state.connection import _init_test_database


@pytest.fixture()
async def _db():
    await _init_test_database()


@pytest.mark.usefixtures("_db")
class TestChannels:
    @pytest.mark.asyncio
    async def test_active_channels_filtered_by_kind(self):
        tg = await upsert_channel("support", "telegram", credentials={"bot_token": "x"})
        await upsert_channel("mail", "email")
        await upsert_channel("old", "telegram", is_active=False)

        channels = await get_active_channels({"telegram"})

        assert [c.id for c in channels] == [tg.id]
        assert channels[0].credentials == {"bot_token": "x"}

    @pytest.mark.asyncio
    async def test_upsert_with_id_overwrites(self):
        ch = await upsert_channel("a", "fake")
        await upsert_channel("b", "fake", channel_id=ch.id, settings={"disable_automations": True})

        [stored] = await get_active_channels()
        assert stored.name == "b"
        assert stored.automations_disabled


@pytest.mark.usefixtures("_db")
class TestChatUpsert:
    @pytest.mark.asyncio
    async def test_creates_client_and_chat(self):
        result = await upsert_chat_for_event(make_event())

        assert result.client_created and result.chat_created
        assert result.client.external_id == "tg_100"
        assert result.chat.status == "new"
        assert result.chat.priority == "normal"
        assert result.chat.metadata == {"external_chat_id": "100"}

    @pytest.mark.asyncio
    async def test_second_event_reuses_rows(self):
        first = await upsert_chat_for_event(make_event(update_id=1))
        second = await upsert_chat_for_event(make_event(update_id=2))

        assert second.chat.id == first.chat.id
        assert not second.client_created and not second.chat_created

    @pytest.mark.asyncio
    async def test_renames_client_when_name_changes(self):
        await upsert_chat_for_event(make_event(sender_name="Alice"))
        result = await upsert_chat_for_event(make_event(sender_name="Alice Cooper"))

        assert result.client.name == "Alice Cooper"

    @pytest.mark.asyncio
    async def test_reopens_resolved_chat(self):
        first = await upsert_chat_for_event(make_event())
        await set_chat_status(first.chat.id, "resolved")

        result = await upsert_chat_for_event(make_event(update_id=2))

        assert not first.reopened
        assert result.reopened
        assert result.chat.status == "open"

    @pytest.mark.asyncio
    async def test_same_client_on_two_channels_gets_two_chats(self):
        a = await upsert_chat_for_event(make_event(channel_id=1))
        b = await upsert_chat_for_event(make_event(channel_id=2))

        assert a.chat.id != b.chat.id
        assert await client_chat_count(a.client.id) == 2


@pytest.mark.usefixtures("_db")
class TestMessages:
    @pytest.mark.asyncio
    async def test_store_inbound_updates_chat(self):
        chat = (await upsert_chat_for_event(make_event())).chat

        stored = await store_inbound_message(chat.id, make_event(content="hi there"))

        assert stored is not None
        refreshed = await get_chat(chat.id)
        assert refreshed.unread_count == 1
        assert refreshed.last_incoming_at == stored.created_at
        last = await get_last_incoming_message(chat.id)
        assert last.content == "hi there"

    @pytest.mark.asyncio
    async def test_duplicate_message_returns_none(self):
        chat = (await upsert_chat_for_event(make_event())).chat
        await store_inbound_message(chat.id, make_event(message_id="m1"))

        assert await store_inbound_message(chat.id, make_event(message_id="m1")) is None
        assert len(await get_messages(chat.id)) == 1
        assert (await get_chat(chat.id)).unread_count == 1

    @pytest.mark.asyncio
    async def test_edit_updates_stored_content(self):
        chat = (await upsert_chat_for_event(make_event())).chat
        await store_inbound_message(chat.id, make_event(message_id="m1", content="helo"))

        edit = make_event(message_id="m1", content="hello", kind="edited_message")
        assert await store_inbound_message(chat.id, edit) is None

        [message] = await get_messages(chat.id)
        assert message.content == "hello"

    @pytest.mark.asyncio
    async def test_outgoing_marks_chat_answered(self):
        chat = (await upsert_chat_for_event(make_event())).chat
        await store_inbound_message(chat.id, make_event())
        assert [c.id for c in await get_unanswered_chats("9999")] == [chat.id]

        await record_outgoing_message(chat.id, "we are on it", external_id="out-1")

        assert await get_unanswered_chats("9999") == []
        messages = await get_messages(chat.id)
        assert [m.direction for m in messages] == ["incoming", "outgoing"]
        assert messages[1].sent_by == "automation"

    @pytest.mark.asyncio
    async def test_unanswered_respects_cutoff_and_closed(self):
        chat = (await upsert_chat_for_event(make_event())).chat
        await store_inbound_message(chat.id, make_event())

        assert await get_unanswered_chats("2000-01-01") == []
        await set_chat_status(chat.id, "closed")
        assert await get_unanswered_chats("9999") == []


@pytest.mark.usefixtures("_db")
class TestInboundRecord:
    @pytest.mark.asyncio
    async def test_message_and_planned_logs_commit_together(self):
        seen = []

        async def plan(upsert, message):
            seen.append((upsert.chat_created, message.content))
            return [(7, {"trigger": {"source": "new_chat"}})]

        record = await record_inbound_event(make_event(content="hi"), plan)

        assert seen == [(True, "hi")]
        [log_id] = record.log_ids
        log = await get_log(log_id)
        assert (log.automation_id, log.chat_id, log.status) == (7, record.upsert.chat.id, "running")
        assert len(await get_messages(record.upsert.chat.id)) == 1

    @pytest.mark.asyncio
    async def test_planner_failure_rolls_everything_back(self):
        async def plan(upsert, message):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await record_inbound_event(make_event(), plan)

        assert await get_chat(1) is None
        assert await get_running_logs() == []

    @pytest.mark.asyncio
    async def test_duplicate_skips_planner(self):
        calls = []

        async def plan(upsert, message):
            calls.append(message.id)
            return []

        event = make_event(message_id="m1")
        await record_inbound_event(event, plan)
        again = await record_inbound_event(event, plan)

        assert again.message is None
        assert again.log_ids == []
        assert len(calls) == 1


@pytest.mark.usefixtures("_db")
class TestClientAndChatMutations:
    @pytest.mark.asyncio
    async def test_add_and_remove_tags(self):
        client = (await upsert_chat_for_event(make_event())).client

        assert await add_client_tags(client.id, ["vip", "lead"]) == ["vip", "lead"]
        assert await add_client_tags(client.id, ["vip"]) == []
        assert await remove_client_tags(client.id, ["lead", "gone"]) == ["lead"]

        assert (await get_client(client.id)).tags == ["vip"]

    @pytest.mark.asyncio
    async def test_assign_operator_opens_new_chat(self):
        chat = (await upsert_chat_for_event(make_event())).chat

        await assign_operator(chat.id, 7)

        refreshed = await get_chat(chat.id)
        assert refreshed.operator_id == 7
        assert refreshed.status == "open"

    @pytest.mark.asyncio
    async def test_chats_by_status(self):
        a = (await upsert_chat_for_event(make_event(channel_id=1))).chat
        b = (await upsert_chat_for_event(make_event(channel_id=2))).chat
        await set_chat_status(b.id, "closed")

        assert [c.id for c in await get_chats_by_status(["new", "open"])] == [a.id]
        assert await get_chats_by_status(["new"], channel_id=2) == []
        assert await get_chats_by_status([]) == []


@pytest.mark.usefixtures("_db")
class TestAutomations:
    @pytest.mark.asyncio
    async def test_channel_scoping(self):
        everywhere = await create_automation("greet all", "new_chat")
        scoped = await create_automation("greet 1", "new_chat", channel_id=1)
        await create_automation("greet 2", "new_chat", channel_id=2)
        await create_automation("kw", "keyword")

        found = await get_active_automations("new_chat", channel_id=1)

        assert [a.id for a in found] == [everywhere.id, scoped.id]

    @pytest.mark.asyncio
    async def test_inactive_excluded(self):
        automation = await create_automation("greet", "new_chat")
        await set_automation_active(automation.id, False)

        assert await get_active_automations("new_chat") == []

    @pytest.mark.asyncio
    async def test_steps_keyed_by_id(self):
        automation = await create_automation("flow", "new_chat")
        await add_step(automation.id, "s1", "send_text", config={"text": "hi"}, next_step_id="s2")
        await add_step(automation.id, "s2", "close_chat", position=1)

        steps = await get_steps(automation.id)

        assert list(steps) == ["s1", "s2"]
        assert steps["s1"].config == {"text": "hi"}
        assert steps["s1"].next_step_id == "s2"

    @pytest.mark.asyncio
    async def test_add_step_replaces_and_delete_removes(self):
        automation = await create_automation("flow", "new_chat")
        await add_step(automation.id, "s1", "send_text", config={"text": "a"})
        await add_step(automation.id, "s1", "send_text", config={"text": "b"})
        await add_step(automation.id, "s2", "delay")
        await delete_step(automation.id, "s2")

        steps = await get_steps(automation.id)
        assert list(steps) == ["s1"]
        assert steps["s1"].config == {"text": "b"}


@pytest.mark.usefixtures("_db")
class TestAutomationLogs:
    @pytest.mark.asyncio
    async def test_create_and_save(self):
        log = await create_log(1, 2, 3, context={"trigger": {"source": "new_chat"}})
        assert log.status == "running"
        assert await chat_has_logs(2)

        log.status = "waiting"
        log.current_step_id = "d"
        log.next_run_at = "2024-01-01T00:05:00.000000+00:00"
        await save_log_state(log)

        stored = await get_log(log.id)
        assert stored.status == "waiting"
        assert stored.current_step_id == "d"
        assert stored.context == {"trigger": {"source": "new_chat"}}
        assert await get_running_logs() == []

    @pytest.mark.asyncio
    async def test_due_logs(self):
        early = await create_log(1, 1, 1)
        late = await create_log(1, 2, 2)
        for log, when in ((early, "2024-01-01T00:00:00"), (late, "2024-01-02T00:00:00")):
            log.status = "waiting"
            log.next_run_at = when
            await save_log_state(log)

        due = await get_due_logs("2024-01-01T12:00:00")

        assert [log.id for log in due] == [early.id]

    @pytest.mark.asyncio
    async def test_awaiting_reply_logs(self):
        waiting = await create_log(1, 5, 1)
        waiting.status = "waiting"
        waiting.context["awaiting_reply"] = True
        await save_log_state(waiting)
        delayed = await create_log(2, 5, 1)
        delayed.status = "waiting"
        await save_log_state(delayed)

        assert [log.id for log in await get_awaiting_reply_logs(5)] == [waiting.id]

    @pytest.mark.asyncio
    async def test_log_exists_since(self):
        log = await create_log(1, 5, 1)

        assert await log_exists_since(1, 5, "2000-01-01")
        assert not await log_exists_since(1, 5, "9999-01-01")
        assert not await log_exists_since(2, 5, "2000-01-01")
        assert log.created_at

    @pytest.mark.asyncio
    async def test_stale_running_logs(self):
        running = await create_log(1, 5, 1)
        finished = await create_log(1, 6, 1)
        finished.status = "completed"
        await save_log_state(finished)

        assert [log.id for log in await get_stale_running_logs("9999-01-01")] == [running.id]
        assert await get_stale_running_logs("2000-01-01") == []


@pytest.mark.usefixtures("_db")
class TestSchedules:
    @pytest.mark.asyncio
    async def test_next_fire_roundtrip(self):
        assert await get_next_fire(1) is None
        await set_next_fire(1, "2024-01-01T09:00:00.000000+00:00")
        await set_next_fire(1, "2024-01-02T09:00:00.000000+00:00")

        assert await get_next_fire(1) == "2024-01-02T09:00:00.000000+00:00"
