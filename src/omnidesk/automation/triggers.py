"""Inbound event -> chat bookkeeping, reply resumption and trigger matching.

``handle_event`` is the poller's hand-off point. The message and the logs
of every automation it triggers are written in one transaction, and the
call returns only after that commit, so the poller may advance its cursor
as soon as it returns. A failure anywhere rolls the whole event back and
the replayed update starts from scratch. Execution itself happens in
background executor runs.

State triggers (tag_added, tag_removed, chat_opened, chat_closed) fire on
changes made by automation steps or through the admin surface. A tag
change made by a tag-triggered automation does not fire further tag
triggers.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from omnidesk.config import get_settings
from omnidesk.logger import logger
from omnidesk.state import (
    ChatUpsert,
    StoredMessage,
    add_client_tags,
    chat_has_logs,
    create_log,
    get_active_automations,
    get_awaiting_reply_logs,
    get_channel,
    get_chat,
    log_exists_since,
    record_inbound_event,
    remove_client_tags,
    set_chat_status,
)
from omnidesk.types import CHAT_STATUSES, TAG_TRIGGERS, Automation, Chat, InboundEvent
from omnidesk.utils import to_iso, utc_now

if TYPE_CHECKING:
    from omnidesk.automation.executor import WorkflowExecutor


def keyword_matches(automation: Automation, content: str) -> bool:
    """Case-insensitive substring match against any configured keyword."""
    text = content.casefold()
    return any(keyword in text for keyword in automation.keywords())


def tag_filter(automation: Automation) -> set[str]:
    """Tags a tag trigger is limited to. Empty means any tag."""
    raw = automation.trigger_config.get("tags") or automation.trigger_config.get("tag") or []
    if isinstance(raw, str):
        raw = raw.split(",")
    elif not isinstance(raw, list | tuple):
        raw = [raw]
    return {str(t).strip() for t in raw if t is not None and str(t).strip()}


async def start_state_triggers(
    kind: str,
    chat: Chat,
    *,
    tags: Iterable[str] = (),
    source: str | None = None,
    now: datetime | None = None,
) -> list[int]:
    """Create logs for active *kind* automations on *chat*.

    *source* is the trigger of the automation that made the change, if
    any. Returns the new log ids; the caller submits them.
    """
    tags = list(tags)
    if kind in TAG_TRIGGERS:
        if not tags:
            return []
        if source in TAG_TRIGGERS:
            logger.debug("Tag trigger skipped inside tag automation", chat_id=chat.id, kind=kind)
            return []

    channel = await get_channel(chat.channel_id)
    if channel is not None and channel.automations_disabled:
        return []

    now = now or utc_now()
    window = timedelta(seconds=get_settings().workflow.tag_trigger_window)
    started: list[int] = []
    for automation in await get_active_automations(kind, channel_id=chat.channel_id):
        if kind in TAG_TRIGGERS:
            wanted = tag_filter(automation)
            if wanted and wanted.isdisjoint(tags):
                continue
            if await log_exists_since(automation.id, chat.id, to_iso(now - window)):
                logger.debug(
                    "Repeated tag trigger dropped", automation_id=automation.id, chat_id=chat.id
                )
                continue
        log = await create_log(
            automation.id,
            chat.id,
            chat.client_id,
            context={"trigger": {"source": kind, "chat_id": chat.id, "tags": tags}},
        )
        started.append(log.id)
        logger.info(
            "Automation triggered",
            automation_id=automation.id,
            trigger=kind,
            chat_id=chat.id,
            log_id=log.id,
        )
    return started


class TriggerMatcher:
    def __init__(self, executor: WorkflowExecutor) -> None:
        self._executor = executor

    async def handle_event(self, event: InboundEvent) -> list[int]:
        """Store *event* and start matching automations.

        Returns the ids of the logs started. A replayed event (same chat and
        provider message id) is a no-op.
        """
        resumes: list[int] = []
        matched: list[Automation] = []

        async def plan(
            upsert: ChatUpsert, message: StoredMessage
        ) -> list[tuple[int, dict[str, Any]]]:
            # A reply first resumes conditions waiting on it
            resumes.extend(log.id for log in await get_awaiting_reply_logs(upsert.chat.id))
            channel = await get_channel(event.channel_id)
            if channel is not None and channel.automations_disabled:
                logger.debug("Automations disabled for channel", channel_id=event.channel_id)
                return []
            matched.extend(await self._match(event, upsert))
            trigger = event.to_trigger_dict()
            return [(a.id, {"trigger": {**trigger, "source": a.trigger}}) for a in matched]

        record = await record_inbound_event(event, plan)
        if record.message is None:
            logger.debug(
                "Duplicate inbound message ignored",
                chat_id=record.upsert.chat.id,
                message_id=event.external_message_id,
            )
            return []

        for log_id in resumes:
            self._executor.submit(log_id, event)
        for automation, log_id in zip(matched, record.log_ids, strict=True):
            logger.info(
                "Automation triggered",
                automation_id=automation.id,
                trigger=automation.trigger,
                chat_id=record.upsert.chat.id,
                log_id=log_id,
            )
            self._executor.submit(log_id)
        return record.log_ids

    async def _match(self, event: InboundEvent, upsert: ChatUpsert) -> list[Automation]:
        chat = upsert.chat
        channel_id = event.channel_id
        matched: list[Automation] = []
        if event.kind != "button" and not await chat_has_logs(chat.id):
            matched.extend(await get_active_automations("new_chat", channel_id=channel_id))
        if event.content:
            for automation in await get_active_automations("keyword", channel_id=channel_id):
                if keyword_matches(automation, event.content):
                    matched.append(automation)
        if event.kind != "button":
            matched.extend(await get_active_automations("incoming_message", channel_id=channel_id))
        if upsert.reopened:
            matched.extend(await get_active_automations("chat_opened", channel_id=channel_id))
        return matched

    # ------------------------------------------------------------------
    # Admin surface
    # ------------------------------------------------------------------

    async def change_client_tags(
        self,
        chat_id: int,
        *,
        add: Iterable[str] = (),
        remove: Iterable[str] = (),
    ) -> list[int] | None:
        """Tag or untag the chat's client. Returns started log ids, None if the chat is unknown."""
        chat = await get_chat(chat_id)
        if chat is None:
            return None
        added = await add_client_tags(chat.client_id, list(add))
        removed = await remove_client_tags(chat.client_id, list(remove))
        started = await start_state_triggers("tag_added", chat, tags=added)
        started += await start_state_triggers("tag_removed", chat, tags=removed)
        for log_id in started:
            self._executor.submit(log_id)
        return started

    async def change_chat_status(self, chat_id: int, status: str) -> list[int] | None:
        """Set the chat's status. Returns started log ids, None if the chat is unknown."""
        if status not in CHAT_STATUSES:
            raise ValueError(f"Unknown chat status: {status!r}")
        chat = await get_chat(chat_id)
        if chat is None:
            return None
        previous = chat.status
        await set_chat_status(chat_id, status)
        chat.status = status  # type: ignore[assignment]
        started = await fire_status_triggers(chat, previous)
        for log_id in started:
            self._executor.submit(log_id)
        return started


async def fire_status_triggers(
    chat: Chat, previous: str, *, source: str | None = None
) -> list[int]:
    """chat_opened / chat_closed logs for a status change from *previous*."""
    if chat.status == previous:
        return []
    if chat.status == "open":
        return await start_state_triggers("chat_opened", chat, source=source)
    if chat.status == "closed":
        return await start_state_triggers("chat_closed", chat, source=source)
    return []
