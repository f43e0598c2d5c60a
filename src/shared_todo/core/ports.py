# src/shared_todo/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The engine depends on Protocols instead of concrete implementations.
This keeps the backing store and the change feed swappable and makes testing easier.
"""

from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from ..tasks.change_feed import ChangeEvent
    from ..tasks.task_models import Task

Record = dict[str, Any]
# Flat wire record: {"id": ..., "title": ..., "updated_at": "2024-01-01T00:00:00+00:00", ...}

Clock = Callable[[], datetime]


class StoreWriter(Protocol):
    """
    Row-level write API of the backing store.

    entity_kind is "tasks" or "users". Every call may fail; failures are
    surfaced to the caller and never retried here.
    """

    async def insert(self, entity_kind: str, fields: Record) -> Record: ...

    async def update(self, entity_kind: str, record_id: str, patch: Record) -> Record: ...

    async def delete(self, entity_kind: str, record_id: str) -> None: ...


class ChangeFeed(Protocol):
    """
    Subscription per entity kind.

    Events arrive in any order, at least once, possibly duplicated.
    """

    def subscribe(self, entity_kind: str) -> AsyncIterator[ChangeEvent]: ...


class CelebrationSink(Protocol):
    """Presentation-side hook fired once when a task is moved to Done locally."""

    def celebrate(self, task: Task) -> None: ...
