"""Workflow executor: walks an automation's step graph for one log.

Steps live in a table keyed by ``step_id`` and edges are id references, so
the graph may loop. An invocation runs steps until the log waits, completes
or fails, or until ``workflow.max_steps_per_run`` steps have run, after
which the next step fails the log instead of executing.

State is saved after every step. A crash between a send and the following
save re-sends that message on recovery: deliveries are at-least-once.
Mutation steps are the same: the change and the state save are separate
writes, so a failed save re-applies the mutation when the log is retried.
The mutations are idempotent, but state triggers the first attempt started
are not started again, since the replayed change is no longer a change.

A run that hits a PersistenceError is remembered with its event and
handed back through ``take_failed`` so the scheduler can retry it.

Invocations for the same log id are serialized; different logs run
concurrently.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from omnidesk.automation.actions import apply_mutation, build_outbound, send_step
from omnidesk.automation.conditions import ConditionScope, evaluate_condition, is_known_predicate
from omnidesk.automation.locks import KeyedLock
from omnidesk.automation.triggers import fire_status_triggers, start_state_triggers
from omnidesk.config import get_settings
from omnidesk.errors import (
    ExecutionGuardError,
    PersistenceError,
    TransportError,
    WorkflowConfigError,
)
from omnidesk.logger import logger
from omnidesk.state import (
    get_automation,
    get_channel,
    get_chat,
    get_client,
    get_log,
    get_steps,
    save_log_state,
)
from omnidesk.transport import ChannelTransport, TransportRegistry
from omnidesk.types import (
    MUTATION_STEP_TYPES,
    SEND_STEP_TYPES,
    Automation,
    AutomationLog,
    AutomationStep,
    Channel,
    Chat,
    Client,
    DeliveryResult,
    InboundEvent,
    OutboundMessage,
)
from omnidesk.utils import (
    backoff_delay,
    create_background_task,
    iso_after,
    parse_iso,
    to_iso,
    utc_now,
)

_DELAY_UNITS = (("delay_seconds", 1), ("seconds", 1), ("minutes", 60), ("hours", 3600))


@dataclass
class _Run:
    """Everything one invocation needs, loaded once up front."""

    log: AutomationLog
    automation: Automation
    steps: dict[str, AutomationStep]
    chat: Chat
    client: Client
    channel: Channel | None
    now: datetime
    message: dict[str, Any] | None
    count: int = 0


@dataclass
class _Outcome:
    next_step_id: str | None = None
    wait_until: str | None = None
    suspend: bool = False


def delay_seconds(config: dict[str, Any]) -> float:
    total = 0.0
    for key, factor in _DELAY_UNITS:
        value = config.get(key)
        if value in (None, ""):
            continue
        try:
            total += float(value) * factor
        except (TypeError, ValueError) as exc:
            raise WorkflowConfigError(f"delay {key}={value!r} is not a number") from exc
    return total


def entry_step_id(automation: Automation, steps: dict[str, AutomationStep]) -> str | None:
    """The designated entry step, or the step with the lowest position."""
    if automation.entry_step_id:
        return automation.entry_step_id
    if not steps:
        return None
    return min(steps.values(), key=lambda s: (s.position, s.step_id)).step_id


class WorkflowExecutor:
    def __init__(self, transports: TransportRegistry) -> None:
        self._transports = transports
        self._locks = KeyedLock()
        self._tasks: set[asyncio.Task[Any]] = set()
        # Submitted runs per log id that have not finished yet
        self._pending: dict[int, int] = {}
        self._failed: dict[int, InboundEvent | None] = {}
        self._closed = False

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def submit(
        self,
        log_id: int,
        event: InboundEvent | None = None,
        *,
        now: datetime | None = None,
    ) -> asyncio.Task[Any] | None:
        """Run *log_id* in the background. Returns None once shut down."""
        if self._closed:
            logger.debug("Executor closed, not submitting", log_id=log_id)
            return None
        task = create_background_task(self.run(log_id, event, now=now), name=f"log-{log_id}")
        self._tasks.add(task)
        self._pending[log_id] = self._pending.get(log_id, 0) + 1
        task.add_done_callback(lambda t: self._settle(log_id, t))
        return task

    def _settle(self, log_id: int, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        left = self._pending.get(log_id, 0) - 1
        if left > 0:
            self._pending[log_id] = left
        else:
            self._pending.pop(log_id, None)

    def is_busy(self, log_id: int) -> bool:
        """True while a run of *log_id* is queued or executing in this process."""
        return log_id in self._pending or self._locks.locked(log_id)

    def take_failed(self) -> dict[int, InboundEvent | None]:
        """Logs whose last run hit a PersistenceError, with the event it carried."""
        failed, self._failed = self._failed, {}
        return failed

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight runs. Returns False if some were still running at *timeout*."""
        if not self._tasks:
            return True
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("Executor runs still in flight after drain", count=len(pending))
        return not pending

    def close(self) -> None:
        self._closed = True

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def run(
        self,
        log_id: int,
        event: InboundEvent | None = None,
        *,
        now: datetime | None = None,
    ) -> AutomationLog | None:
        """Advance one log as far as it can go.

        Terminal logs are returned untouched, as are waiting logs that are
        neither due nor receiving the reply they wait for. PersistenceError
        propagates so the caller can retry the whole invocation.
        """
        async with self._locks.hold(log_id):
            try:
                return await self._run_locked(log_id, event, now)
            except PersistenceError:
                self._failed[log_id] = event or self._failed.get(log_id)
                raise

    async def _run_locked(
        self, log_id: int, event: InboundEvent | None, now: datetime | None
    ) -> AutomationLog | None:
        log = await get_log(log_id)
        if log is None:
            logger.warning("Automation log not found", log_id=log_id)
            return None
        if log.is_terminal:
            return log
        now = now or utc_now()
        if log.status == "waiting" and not _is_eligible(log, event, now):
            return log

        try:
            await self._advance(log, event, now)
        except PersistenceError:
            raise
        except (WorkflowConfigError, ExecutionGuardError, TransportError) as exc:
            await self._fail(log, exc)
        except Exception as exc:
            logger.exception("Unexpected error in workflow run", log_id=log.id)
            await self._fail(log, exc)
        return log

    # ------------------------------------------------------------------
    # Graph walk
    # ------------------------------------------------------------------

    async def _advance(self, log: AutomationLog, event: InboundEvent | None, now: datetime) -> None:
        automation = await get_automation(log.automation_id)
        if automation is None:
            raise WorkflowConfigError(f"Automation {log.automation_id} no longer exists")
        chat = await get_chat(log.chat_id)
        client = await get_client(log.client_id)
        if chat is None or client is None:
            raise WorkflowConfigError(f"Chat {log.chat_id} or its client no longer exists")

        if event is not None:
            message = event.to_trigger_dict()
            log.context["last_message"] = message
        elif log.status == "running":
            message = log.context.get("trigger")
        else:
            message = None

        run = _Run(
            log=log,
            automation=automation,
            steps=await get_steps(automation.id),
            chat=chat,
            client=client,
            channel=await get_channel(chat.channel_id),
            now=now,
            message=message,
        )

        resuming = log.status == "waiting"
        step_id = log.current_step_id or entry_step_id(automation, run.steps)
        if step_id is None:
            await self._complete(log, reason="no steps")
            return

        log.status = "running"
        log.next_run_at = None
        while True:
            step = run.steps.get(step_id)
            if step is None:
                raise WorkflowConfigError(
                    f"Step {step_id!r} does not exist in automation {automation.id}",
                    step_id=step_id,
                )

            if resuming:
                resuming = False
                outcome = await self._resume_step(run, step)
            else:
                outcome = await self._execute_step(run, step)

            if outcome.suspend:
                log.status = "waiting"
                log.current_step_id = step.step_id
                log.next_run_at = outcome.wait_until
                await save_log_state(log)
                logger.info(
                    "Automation waiting",
                    log_id=log.id,
                    step_id=step.step_id,
                    next_run_at=outcome.wait_until,
                )
                return

            next_id = outcome.next_step_id
            if next_id is None:
                log.current_step_id = step.step_id
                await self._complete(log)
                return
            if next_id not in run.steps:
                log.current_step_id = step.step_id
                raise WorkflowConfigError(
                    f"Step {step.step_id!r} points to missing step {next_id!r}",
                    step_id=step.step_id,
                )
            log.current_step_id = next_id
            await save_log_state(log)
            step_id = next_id

    def _guard(self, run: _Run, step: AutomationStep) -> None:
        limit = get_settings().workflow.max_steps_per_run
        if run.count >= limit:
            raise ExecutionGuardError(limit, step_id=step.step_id)
        run.count += 1
        run.log.context["steps_run"] = int(run.log.context.get("steps_run", 0)) + 1

    async def _execute_step(self, run: _Run, step: AutomationStep) -> _Outcome:
        self._guard(run, step)
        log = run.log
        logger.debug("Executing step", log_id=log.id, step_id=step.step_id, type=step.type)

        if step.type in SEND_STEP_TYPES:
            return await self._send(run, step)

        if step.type == "delay":
            seconds = delay_seconds(step.config)
            self._record(run, step, {"delay_seconds": seconds})
            return _Outcome(suspend=True, wait_until=iso_after(seconds, now=run.now))

        if step.type == "condition":
            condition_type = str(step.config.get("condition_type") or "")
            if not is_known_predicate(condition_type):
                raise WorkflowConfigError(
                    f"Unknown condition type: {condition_type!r}", step_id=step.step_id
                )
            if step.config.get("await_reply"):
                log.context["awaiting_reply"] = True
                timeout = step.config.get("timeout_seconds")
                self._record(run, step, {"awaiting_reply": True})
                return _Outcome(
                    suspend=True,
                    wait_until=iso_after(float(timeout), now=run.now) if timeout else None,
                )
            return await self._branch(run, step, run.message)

        if step.type in MUTATION_STEP_TYPES:
            previous_status = run.chat.status
            detail = await apply_mutation(step, chat=run.chat, client=run.client)
            # Later conditions must see the mutation
            run.chat = await get_chat(run.chat.id) or run.chat
            run.client = await get_client(run.client.id) or run.client
            self._record(run, step, detail)
            await self._start_state_triggers(run, detail, previous_status)
            return _Outcome(next_step_id=step.next_step_id)

        raise WorkflowConfigError(f"Unknown step type: {step.type!r}", step_id=step.step_id)

    async def _start_state_triggers(
        self, run: _Run, detail: dict[str, Any], previous_status: str
    ) -> None:
        source = (run.log.context.get("trigger") or {}).get("source")
        chat = run.chat
        started = await start_state_triggers(
            "tag_added", chat, tags=detail.get("added", ()), source=source
        )
        started += await start_state_triggers(
            "tag_removed", chat, tags=detail.get("removed", ()), source=source
        )
        started += await fire_status_triggers(chat, previous_status, source=source)
        for log_id in started:
            self.submit(log_id)

    async def _resume_step(self, run: _Run, step: AutomationStep) -> _Outcome:
        """Continue from the step a waiting log was suspended on."""
        log = run.log
        if step.type == "delay":
            return _Outcome(next_step_id=step.next_step_id)
        if step.type == "condition" and log.context.pop("awaiting_reply", False):
            self._guard(run, step)
            return await self._branch(run, step, run.message)
        # Deferred send, or a step that changed type under a live edit
        return await self._execute_step(run, step)

    async def _branch(
        self,
        run: _Run,
        step: AutomationStep,
        message: dict[str, Any] | None,
    ) -> _Outcome:
        scope = ConditionScope(
            chat=run.chat,
            client=run.client,
            context=run.log.context,
            message=message,
            step_id=step.step_id,
        )
        result = await evaluate_condition(step.config, scope)
        run.log.context.setdefault("branches", {})[step.step_id] = result
        self._record(run, step, {"result": result})
        target = step.condition_true_step_id if result else step.condition_false_step_id
        return _Outcome(next_step_id=target)

    async def _send(self, run: _Run, step: AutomationStep) -> _Outcome:
        cfg = get_settings().workflow
        log = run.log
        outbound = build_outbound(step, chat=run.chat, client=run.client, channel=run.channel)
        failures: dict[str, int] = log.context.setdefault("send_failures", {})

        try:
            if run.channel is None:
                raise TransportError(f"Channel {run.chat.channel_id} does not exist", retryable=False)
            transport = self._transports.get(run.channel)
            result = await self._send_with_retries(step, transport, outbound, run.chat)
        except TransportError as exc:
            count = failures.get(step.step_id, 0) + 1
            failures[step.step_id] = count
            if not exc.retryable or count >= cfg.max_send_failures:
                raise TransportError(
                    f"Send failed permanently after {count} attempt(s): {exc}",
                    retryable=False,
                    status=exc.status,
                ) from exc
            logger.warning(
                "Send deferred",
                log_id=log.id,
                step_id=step.step_id,
                failures=count,
                err=str(exc),
            )
            self._record(run, step, {"deferred": True, "err": str(exc)})
            return _Outcome(suspend=True, wait_until=iso_after(cfg.send_retry_delay, now=run.now))

        failures.pop(step.step_id, None)
        self._record(run, step, {"message_id": result.external_message_id})
        return _Outcome(next_step_id=step.next_step_id)

    async def _send_with_retries(
        self,
        step: AutomationStep,
        transport: ChannelTransport,
        outbound: OutboundMessage,
        chat: Chat,
    ) -> DeliveryResult:
        cfg = get_settings().workflow
        attempt = 0
        while True:
            try:
                return await send_step(step, transport, outbound, chat=chat)
            except TransportError as exc:
                attempt += 1
                if not exc.retryable or attempt > cfg.send_retries:
                    raise
                delay = backoff_delay(attempt, cfg.send_retry_base, cfg.send_retry_delay)
                logger.debug("Retrying send", step_id=step.step_id, attempt=attempt, delay=delay)
                await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _record(self, run: _Run, step: AutomationStep, detail: dict[str, Any] | None = None) -> None:
        entry: dict[str, Any] = {"step_id": step.step_id, "type": step.type, "at": to_iso(run.now)}
        if detail:
            entry.update(detail)
        history: list[dict[str, Any]] = run.log.context.setdefault("history", [])
        history.append(entry)
        limit = get_settings().workflow.history_limit
        if len(history) > limit:
            del history[: len(history) - limit]

    async def _complete(self, log: AutomationLog, *, reason: str | None = None) -> None:
        log.status = "completed"
        log.next_run_at = None
        log.context.pop("awaiting_reply", None)
        await save_log_state(log)
        logger.info("Automation completed", log_id=log.id, reason=reason)

    async def _fail(self, log: AutomationLog, exc: Exception) -> None:
        log.status = "failed"
        log.next_run_at = None
        log.error = str(exc) or exc.__class__.__name__
        log.context.pop("awaiting_reply", None)
        await save_log_state(log)
        logger.warning(
            "Automation failed",
            log_id=log.id,
            step_id=getattr(exc, "step_id", None) or log.current_step_id,
            err=log.error,
        )


def _is_eligible(log: AutomationLog, event: InboundEvent | None, now: datetime) -> bool:
    if event is not None and log.awaiting_reply:
        return True
    if log.next_run_at is None:
        return False
    return parse_iso(log.next_run_at) <= now
