"""Error taxonomy for ingestion and workflow execution.

Each class maps to one recovery policy:

- ``TransportError``: transient; retry with backoff, never advance a cursor.
- ``NormalizationError``: malformed update; skip it and advance the cursor.
- ``WorkflowConfigError``: broken automation definition; the log fails.
- ``ExecutionGuardError``: step cap exceeded; the log fails.
- ``PersistenceError``: storage unavailable; retry the whole invocation.
"""

from __future__ import annotations


class OmnideskError(Exception):
    """Base class for all omnidesk errors."""


class TransportError(OmnideskError):
    """A channel transport call failed (network, auth, provider error)."""

    def __init__(self, message: str, *, retryable: bool = True, status: int | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.status = status


class NormalizationError(OmnideskError):
    """A provider update could not be converted to an InboundEvent."""

    def __init__(self, message: str, *, update_id: int | None = None):
        super().__init__(message)
        self.update_id = update_id


class WorkflowConfigError(OmnideskError):
    """An automation references a missing step or has an invalid step config."""

    def __init__(self, message: str, *, step_id: str | None = None):
        super().__init__(message)
        self.step_id = step_id


class ExecutionGuardError(OmnideskError):
    """Too many steps executed synchronously in one invocation."""

    def __init__(self, limit: int, *, step_id: str | None = None):
        super().__init__(f"Possible infinite loop: exceeded {limit} steps in one run")
        self.limit = limit
        self.step_id = step_id


class PersistenceError(OmnideskError):
    """The database rejected or could not complete a write."""
