# src/shared_todo/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time.
- Injected into the composition root; tests build their own.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "TODO"

load_dotenv(override=False)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    db_path: Path
    table_prefix: str

    # ---- Console session ----
    console_enabled: bool
    current_user: str
    default_task_title: str
    avatar_url_template: str

    # ---- View ----
    sort_key: str
    sort_descending: bool

    # ---- Sync loops ----
    poll_interval_seconds: float
    dispatch_interval_seconds: float

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "shared-todo") or "shared-todo"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/shared_todo"))
        db_path = _env_path(_k("DB_PATH"), data_dir / "todo.sqlite3")
        table_prefix = _env(_k("TABLE_PREFIX"), "aisws_").strip()

        console_enabled = _env_bool(_k("CONSOLE_ENABLED"), True)
        current_user = _env(_k("USER"), "").strip()
        default_task_title = _env(_k("DEFAULT_TASK_TITLE"), "New task").strip() or "New task"
        avatar_url_template = _env(_k("AVATAR_URL_TEMPLATE"), "https://i.pravatar.cc/64?u={name}")

        sort_key = _env(_k("SORT_KEY"), "status").strip().lower() or "status"
        sort_descending = _env_bool(_k("SORT_DESCENDING"), False)

        poll_interval_seconds = _env_float(_k("POLL_INTERVAL_SECONDS"), 1.0)
        dispatch_interval_seconds = _env_float(_k("DISPATCH_INTERVAL_SECONDS"), 0.2)

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            db_path=db_path,
            table_prefix=table_prefix,
            console_enabled=console_enabled,
            current_user=current_user,
            default_task_title=default_task_title,
            avatar_url_template=avatar_url_template,
            sort_key=sort_key,
            sort_descending=sort_descending,
            poll_interval_seconds=poll_interval_seconds,
            dispatch_interval_seconds=dispatch_interval_seconds,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
