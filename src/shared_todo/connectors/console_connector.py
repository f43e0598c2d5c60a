# src/shared_todo/connectors/console_connector.py

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from ..cli.commands import registry as command_registry
from ..core.state import AppState
from ..tasks.task_models import Task

logger = logging.getLogger(__name__)


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}", flush=True)


class ConsoleCelebrations:
    """CelebrationSink that cheers on the terminal."""

    def celebrate(self, task: Task) -> None:
        _print_ts(f"*** '{task.title}' is done. Nice work! ***")


def announce_remote_changes(applied: int) -> None:
    _print_ts(f"[SYNC] {applied} change(s) from other sessions. /list to refresh the view.")


async def run_console_loop(state: AppState) -> None:
    """
    Read commands until /exit or EOF.

    input() runs in a worker thread; every command is handled back on the
    event loop, so the engine is only touched from one thread.
    """
    user = state.session.user
    logger.info("Console connector started (user=%s).", user.name if user else None)
    _print_ts("[CONSOLE] Use /help for commands, plain text adds a task. Use /exit to quit.\n")
    if user is None:
        _print_ts("No user selected. /users lists participants, /login <name> or /adduser <name>.")

    def emit(text: str) -> None:
        _print_ts(text)

    while True:
        try:
            user_input = (await asyncio.to_thread(input, ">>> ")).strip()
        except EOFError:
            logger.info("Console EOF received, exiting.")
            break
        except KeyboardInterrupt:
            logger.info("Console KeyboardInterrupt, exiting.")
            print()
            break

        if not user_input:
            continue

        if user_input.lower() in ("/exit", "/quit"):
            logger.info("Console exit command received.")
            break

        line = user_input if user_input.startswith("/") else f"/new {user_input}"

        try:
            reply = command_registry.handle(state, line, emit=emit)
        except Exception:
            logger.exception("Command handler crashed.")
            reply = "Internal error while handling a command."

        if reply is not None:
            _print_ts(reply)

    logger.info("Console connector finished.")
