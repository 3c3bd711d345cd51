"""Side-effecting step handlers: outbound sends and chat/client mutations."""

from __future__ import annotations

from typing import Any

from omnidesk.errors import WorkflowConfigError
from omnidesk.logger import logger
from omnidesk.state import (
    add_client_tags,
    assign_operator,
    close_chat,
    record_outgoing_message,
    remove_client_tags,
)
from omnidesk.transport.base import ChannelTransport
from omnidesk.types import AutomationStep, Channel, Chat, Client, DeliveryResult, OutboundMessage

_MEDIA_STEPS: dict[str, str] = {
    "send_image": "image",
    "send_video": "video",
    "send_file": "file",
}


def replace_variables(text: str, *, chat: Chat, client: Client, channel: Channel | None) -> str:
    """Substitute ``{client_name}``-style placeholders in *text*."""
    name = client.name or "Client"
    variables = {
        "{client_name}": name,
        "{client_first_name}": name.split(" ")[0],
        "{client_phone}": client.phone or "",
        "{client_email}": client.email or "",
        "{chat_id}": str(chat.id),
        "{channel_name}": channel.name if channel else "",
    }
    for key, value in variables.items():
        text = text.replace(key, value)
    return text


def build_outbound(
    step: AutomationStep,
    *,
    chat: Chat,
    client: Client,
    channel: Channel | None,
) -> OutboundMessage:
    config = step.config
    text = replace_variables(
        str(config.get("text") or config.get("caption") or ""),
        chat=chat,
        client=client,
        channel=channel,
    )
    url = str(config.get("url") or "")

    if step.type == "send_text":
        if not text:
            raise WorkflowConfigError("send_text step has no text", step_id=step.step_id)
        return OutboundMessage(text=text)

    if step.type == "send_text_with_buttons":
        if not text and not url:
            raise WorkflowConfigError(
                "send_text_with_buttons step has neither text nor url", step_id=step.step_id
            )
        buttons = [
            {**button, "step_id": step.step_id, "index": i}
            for i, button in enumerate(config.get("buttons") or [])
            if isinstance(button, dict)
        ]
        return OutboundMessage(
            text=text,
            media_type="image" if url else None,
            media_url=url or None,
            buttons=buttons,
        )

    media_type = _MEDIA_STEPS.get(step.type)
    if media_type is None:
        raise WorkflowConfigError(f"{step.type} is not a send step", step_id=step.step_id)
    if not url:
        raise WorkflowConfigError(f"{step.type} step has no url", step_id=step.step_id)
    return OutboundMessage(text=text, media_type=media_type, media_url=url)  # type: ignore[arg-type]


async def send_step(
    step: AutomationStep,
    transport: ChannelTransport,
    outbound: OutboundMessage,
    *,
    chat: Chat,
) -> DeliveryResult:
    """Deliver *outbound* once and record it on the chat.

    Raises TransportError on failure; retry policy belongs to the caller.
    """
    result = await transport.send_message(chat.external_chat_id, outbound)
    attachments = (
        [{"type": outbound.media_type, "url": outbound.media_url}] if outbound.media_type else []
    )
    await record_outgoing_message(
        chat.id,
        outbound.text,
        external_id=result.external_message_id,
        message_type=outbound.media_type or "text",
        attachments=attachments,
    )
    return result


def _tags_from_config(step: AutomationStep) -> list[str]:
    config = step.config
    raw: Any = config.get("tags") or config.get("tag_ids")
    if raw is None:
        single = config.get("tag") or config.get("tag_id") or config.get("tag_name")
        raw = [single] if single not in (None, "") else []
    if isinstance(raw, str):
        raw = raw.split(",")
    tags = [str(t).strip() for t in raw if str(t).strip()]
    if not tags:
        raise WorkflowConfigError(f"{step.type} step names no tags", step_id=step.step_id)
    return tags


async def apply_mutation(step: AutomationStep, *, chat: Chat, client: Client) -> dict[str, Any]:
    """Apply a chat/client mutation step. Returns a summary for the log history."""
    if step.type == "add_tag":
        tags = _tags_from_config(step)
        added = await add_client_tags(client.id, tags)
        logger.info("Tags added to client", client_id=client.id, tags=added)
        return {"tags": tags, "added": added}

    if step.type == "remove_tag":
        tags = _tags_from_config(step)
        removed = await remove_client_tags(client.id, tags)
        return {"tags": tags, "removed": removed}

    if step.type == "assign_operator":
        operator_id = step.config.get("operator_id")
        if operator_id in (None, ""):
            raise WorkflowConfigError("assign_operator step has no operator_id", step_id=step.step_id)
        try:
            operator = int(operator_id)
        except (TypeError, ValueError) as exc:
            raise WorkflowConfigError(
                f"operator_id {operator_id!r} is not an integer", step_id=step.step_id
            ) from exc
        await assign_operator(chat.id, operator)
        logger.info("Operator assigned to chat", chat_id=chat.id, operator_id=operator)
        return {"operator_id": operator}

    if step.type == "close_chat":
        await close_chat(chat.id)
        logger.info("Chat closed by automation", chat_id=chat.id)
        return {}

    raise WorkflowConfigError(f"{step.type} is not a mutation step", step_id=step.step_id)
