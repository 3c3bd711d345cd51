"""Condition step predicates.

``condition_type`` selects the predicate; ``condition_value`` is its
argument. The ``field`` predicate compares a dotted path over the
evaluation scope (``chat``, ``client``, ``context``, ``message``) with
``value`` using ``operator``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from omnidesk.errors import WorkflowConfigError
from omnidesk.state import client_chat_count, get_last_incoming_message
from omnidesk.types import Chat, Client

_MISSING = object()


@dataclass
class ConditionScope:
    chat: Chat
    client: Client
    context: dict[str, Any]
    # The inbound message the condition looks at: a reply that resumed an
    # awaiting condition, or the event that started the log. None when
    # evaluated from a timer.
    message: dict[str, Any] | None = None
    step_id: str | None = None

    def as_mapping(self) -> dict[str, Any]:
        return {
            "chat": self.chat.to_context(),
            "client": self.client.to_context(),
            "context": self.context,
            "message": self.message or {},
        }


def _condition_value(config: dict[str, Any]) -> Any:
    for key in ("condition_value", "value", "tag", "tag_id"):
        if config.get(key) not in (None, ""):
            return config[key]
    return None


async def _has_tag(config: dict[str, Any], scope: ConditionScope) -> bool:
    tag = _condition_value(config)
    if tag is None:
        return False
    return str(tag) in scope.client.tags


async def _message_contains(config: dict[str, Any], scope: ConditionScope) -> bool:
    needle = _condition_value(config)
    if not needle:
        return False
    if scope.message is not None:
        content = str(scope.message.get("content") or "")
    else:
        last = await get_last_incoming_message(scope.chat.id)
        if last is None:
            return False
        content = last.content
    return str(needle).casefold() in content.casefold()


async def _any_message(config: dict[str, Any], scope: ConditionScope) -> bool:
    return scope.message is not None


async def _is_new_client(config: dict[str, Any], scope: ConditionScope) -> bool:
    return await client_chat_count(scope.client.id) == 1


def resolve_path(data: Any, path: str) -> Any:
    """Walk a dotted *path* through nested mappings. Missing keys give _MISSING."""
    current = data
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "exists":
        return left is not _MISSING and left is not None
    if left is _MISSING:
        left = None
    if op == "eq":
        return left == right
    if op == "ne":
        return left != right
    if op == "contains":
        if isinstance(left, str):
            return str(right).casefold() in left.casefold()
        if isinstance(left, list | tuple | set):
            return right in left
        return False
    if op in ("in", "not_in"):
        options = right if isinstance(right, list | tuple | set) else [right]
        return (left in options) == (op == "in")
    if op in ("gt", "gte", "lt", "lte"):
        a, b = _as_number(left), _as_number(right)
        if a is None or b is None:
            return False
        return {"gt": a > b, "gte": a >= b, "lt": a < b, "lte": a <= b}[op]
    raise WorkflowConfigError(f"Unknown field operator: {op!r}")


async def _field(config: dict[str, Any], scope: ConditionScope) -> bool:
    path = config.get("field")
    if not path:
        raise WorkflowConfigError("field condition has no 'field'", step_id=scope.step_id)
    op = str(config.get("operator") or "eq")
    try:
        return _compare(op, resolve_path(scope.as_mapping(), str(path)), config.get("value"))
    except WorkflowConfigError as exc:
        exc.step_id = scope.step_id
        raise


_PREDICATES: dict[str, Callable[[dict[str, Any], ConditionScope], Awaitable[bool]]] = {
    "has_tag": _has_tag,
    "message_contains": _message_contains,
    "any_message": _any_message,
    "is_new_client": _is_new_client,
    "field": _field,
}


def is_known_predicate(condition_type: str) -> bool:
    return condition_type in _PREDICATES


async def evaluate_condition(config: dict[str, Any], scope: ConditionScope) -> bool:
    condition_type = str(config.get("condition_type") or "")
    predicate = _PREDICATES.get(condition_type)
    if predicate is None:
        raise WorkflowConfigError(
            f"Unknown condition type: {condition_type!r}", step_id=scope.step_id
        )
    return await predicate(config, scope)
