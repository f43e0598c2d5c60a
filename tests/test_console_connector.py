# tests/test_console_connector.py

from __future__ import annotations

from pathlib import Path

import pytest

from shared_todo.cli.bootstrap import avatar_url_for, directive_from_settings
from shared_todo.config import Settings
from shared_todo.connectors.console_connector import ConsoleCelebrations, run_console_loop
from shared_todo.tasks.projector import SortDirective, SortKey

from .fakes import make_task


@pytest.mark.asyncio
async def test_console_loop_runs_commands_until_exit(state, monkeypatch, capsys) -> None:
    lines = iter(["/adduser Alice", "", "Water the plants", "/list", "/exit", "/never-reached"])
    monkeypatch.setattr("builtins.input", lambda prompt="": next(lines))

    await run_console_loop(state)

    out = capsys.readouterr().out
    assert "Welcome, Alice!" in out
    assert "Water the plants" in out
    assert [t.title for t in state.engine.tasks.values()] == ["Water the plants"]


@pytest.mark.asyncio
async def test_console_loop_stops_on_eof(state, monkeypatch, capsys) -> None:
    def _eof(prompt: str = "") -> str:
        raise EOFError

    monkeypatch.setattr("builtins.input", _eof)
    await run_console_loop(state)
    assert "No user selected" in capsys.readouterr().out


def test_console_celebration_prints(capsys) -> None:
    ConsoleCelebrations().celebrate(make_task("a", title="Taxes"))
    assert "'Taxes' is done" in capsys.readouterr().out


def test_settings_from_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TODO_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("TODO_USER", " Alice ")
    monkeypatch.setenv("TODO_SORT_KEY", "Updated")
    monkeypatch.setenv("TODO_SORT_DESCENDING", "yes")
    monkeypatch.setenv("TODO_POLL_INTERVAL_SECONDS", "not-a-number")
    monkeypatch.delenv("TODO_DB_PATH", raising=False)

    settings = Settings.from_env()
    assert settings.db_path == tmp_path / "todo.sqlite3"
    assert settings.current_user == "Alice"
    assert settings.poll_interval_seconds == 1.0
    assert directive_from_settings(settings) == SortDirective(SortKey.UPDATED_AT, descending=True)


def test_bad_sort_settings_fall_back(settings) -> None:
    settings.sort_key = "priority"
    assert directive_from_settings(settings) == SortDirective()


def test_avatar_url_quotes_name(settings) -> None:
    assert avatar_url_for(settings, "Jo Ann") == "https://i.pravatar.cc/64?u=Jo%20Ann"
    settings.avatar_url_template = ""
    assert avatar_url_for(settings, "Jo") == ""
