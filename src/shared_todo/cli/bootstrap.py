# src/shared_todo/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires the SQLite store, the async writer and the sync engine into AppState,
- loads the current list and resolves the session user.
"""

from __future__ import annotations

import logging
from urllib.parse import quote

from ..config import get_settings
from ..core.ports import CelebrationSink
from ..core.state import AppState, SessionContext
from ..tasks.errors import ValidationError
from ..tasks.projector import SortDirective
from ..tasks.sync_engine import SyncEngine
from ..tasks.task_models import User
from ..tasks.task_store import SqliteStoreWriter, TaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)


def directive_from_settings(settings) -> SortDirective:
    key = getattr(settings, "sort_key", "status")
    direction = "desc" if getattr(settings, "sort_descending", False) else "asc"
    try:
        return SortDirective.parse(key, direction)
    except ValidationError:
        logger.warning("Invalid sort settings key=%r; using status ascending", key)
        return SortDirective()


def avatar_url_for(settings, name: str) -> str:
    template = str(getattr(settings, "avatar_url_template", "") or "")
    if not template:
        return ""
    return template.replace("{name}", quote(name, safe=""))


def create_initial_state(*, settings=None, celebrations: CelebrationSink | None = None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    store = TaskStore(settings.db_path, table_prefix=getattr(settings, "table_prefix", "aisws_"))
    directive = directive_from_settings(settings)
    engine = SyncEngine(celebrations=celebrations, directive=directive)
    engine.load(store.list_records("tasks"), store.list_records("users"))

    state = AppState(
        settings=settings,
        engine=engine,
        store=store,
        writer=SqliteStoreWriter(store),
        session=SessionContext(directive=directive),
    )

    name = str(getattr(settings, "current_user", "") or "").strip()
    if name:
        user = engine.find_user_by_name(name)
        if user is None:
            logger.info("Configured user %r not found; use /adduser or /login", name)
        state.session.user = user

    return state


def login_or_create(state: AppState, name: str, *, create: bool) -> User:
    """Pick an existing user by name, or create a new one (duplicate names are rejected)."""
    if create:
        user = state.engine.add_user(name, avatar_url_for(state.settings, name.strip()))
    else:
        user = state.engine.find_user_by_name(name)
        if user is None:
            raise ValidationError(f"no such user: {name}")
    state.session.user = user
    state.session.awaiting_target_for = None
    logger.info("Session user is now %s (%s)", user.name, user.id)
    return user
