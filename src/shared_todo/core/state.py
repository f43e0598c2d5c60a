# src/shared_todo/core/state.py

from __future__ import annotations

from dataclasses import dataclass, field

from ..tasks.projector import SortDirective
from ..tasks.sync_engine import SyncEngine
from ..tasks.task_models import User
from ..tasks.task_store import TaskStore
from .ports import StoreWriter


@dataclass(slots=True)
class SessionContext:
    """
    Who is using this session and how they look at the list.

    Passed explicitly to the engine and projector calls that need it.
    """

    user: User | None = None
    directive: SortDirective = field(default_factory=SortDirective)
    # Task moved to WaitingOn without a target; the next /wait completes it.
    awaiting_target_for: str | None = None

    @property
    def user_id(self) -> str | None:
        return self.user.id if self.user else None


@dataclass
class AppState:
    # Store Settings on the state for easy access in other modules later.
    settings: object

    engine: SyncEngine
    store: TaskStore
    writer: StoreWriter

    session: SessionContext = field(default_factory=SessionContext)
