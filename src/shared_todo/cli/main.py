# src/shared_todo/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then runs on one event loop:
- the console REPL (optional),
- the write dispatcher (engine outbox -> SQLite),
- change feeds for tasks and users (SQLite polling -> engine inbox).
"""

from __future__ import annotations

import asyncio
import logging

from ..cli.bootstrap import create_initial_state
from ..config import get_settings
from ..connectors.console_connector import (
    ConsoleCelebrations,
    announce_remote_changes,
    run_console_loop,
)
from ..core.state import AppState
from ..logging_setup import setup_logging
from ..tasks.change_feed import SqlitePollingFeed
from ..tasks.task_api import flush_writes, run_change_feed, run_write_dispatcher

logger = logging.getLogger(__name__)


async def _shutdown(state: AppState, background: list[asyncio.Task]) -> None:
    """Best-effort shutdown: stop the loops, then push what is still queued."""
    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)

    try:
        failures = await flush_writes(state.engine, state.writer)
    except Exception:
        logger.exception("Final flush failed.")
        return
    if failures or state.engine.failed_writes:
        logger.warning("%d write(s) never reached the store.", len(state.engine.failed_writes))


async def run_app(state: AppState) -> None:
    settings = state.settings
    feed = SqlitePollingFeed(
        state.store,
        interval_seconds=float(getattr(settings, "poll_interval_seconds", 1.0)),
    )

    background = [
        asyncio.create_task(
            run_write_dispatcher(
                state.engine,
                state.writer,
                interval_seconds=float(getattr(settings, "dispatch_interval_seconds", 0.2)),
            )
        ),
        asyncio.create_task(
            run_change_feed(state.engine, feed, "tasks", on_change=announce_remote_changes)
        ),
        asyncio.create_task(run_change_feed(state.engine, feed, "users")),
    ]

    try:
        if getattr(settings, "console_enabled", True):
            await run_console_loop(state)
        else:
            logger.info("Console disabled. Syncing in the background only. Press Ctrl+C to stop.")
            await asyncio.Event().wait()
    finally:
        await _shutdown(state, background)


def main() -> None:
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)

    log_dir = getattr(settings, "data_dir", ".local/shared_todo")
    setup_logging(log_dir=log_dir, console_level=console_level)

    logger.info("Starting %s...", getattr(settings, "app_name", "shared-todo"))

    state = create_initial_state(settings=settings, celebrations=ConsoleCelebrations())

    try:
        asyncio.run(run_app(state))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down...")
    finally:
        logger.info("Bye.")


if __name__ == "__main__":
    main()
