# src/shared_todo/tasks/errors.py

from __future__ import annotations


class SyncError(Exception):
    """Base class for everything the task core raises."""


class ValidationError(SyncError):
    """Rejected input. Raised before any state change."""


class InvalidDependency(ValidationError):
    def __init__(self, task_id: str, target_id: str | None, reason: str) -> None:
        super().__init__(f"task {task_id} cannot wait on {target_id}: {reason}")
        self.task_id = task_id
        self.target_id = target_id
        self.reason = reason


class TransportError(SyncError):
    """The backing store failed a write. Local optimistic state is kept."""


class NotFound(SyncError):
    """A record id is unknown or was deleted."""
