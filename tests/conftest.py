# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from shared_todo.cli.bootstrap import create_initial_state
from shared_todo.core.state import AppState
from shared_todo.tasks.sync_engine import SyncEngine
from shared_todo.tasks.task_models import User
from shared_todo.tasks.task_store import TaskStore

from .fakes import T0, FakeCelebrations, FakeClock


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with the composition root.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="shared-todo-test",
        log_level="DEBUG",
        data_dir=tmp_path,
        db_path=tmp_path / "todo.sqlite3",
        table_prefix="aisws_",
        console_enabled=False,
        current_user="",
        default_task_title="New task",
        avatar_url_template="https://i.pravatar.cc/64?u={name}",
        sort_key="status",
        sort_descending=False,
        poll_interval_seconds=0.01,
        dispatch_interval_seconds=0.01,
    )


@pytest.fixture()
def alice() -> User:
    return User(id="u-alice", name="Alice", profile_pic_url="", created_at=T0)


@pytest.fixture()
def bob() -> User:
    return User(id="u-bob", name="Bob", profile_pic_url="", created_at=T0)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def celebrations() -> FakeCelebrations:
    return FakeCelebrations()


@pytest.fixture()
def engine(alice: User, bob: User, clock: FakeClock, celebrations: FakeCelebrations) -> SyncEngine:
    return SyncEngine(users=[alice, bob], clock=clock, celebrations=celebrations)


@pytest.fixture()
def store(tmp_path: Path) -> TaskStore:
    return TaskStore(tmp_path / "store.sqlite3")


@pytest.fixture()
def state(settings: SimpleNamespace, celebrations: FakeCelebrations) -> AppState:
    """
    AppState wired against a real SQLite store in tmp_path.

    NOTE: the store is real because its round trip with the engine is part of
    what we want to test.
    """
    return create_initial_state(settings=settings, celebrations=celebrations)
