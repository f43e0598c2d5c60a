# src/shared_todo/cli/commands.py

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from typing import cast

from ..core.state import AppState
from ..tasks.errors import SyncError, ValidationError
from ..tasks.projector import SortDirective, TaskRow, TaskView
from ..tasks.sync_engine import MutationResult
from ..tasks.task_models import Task, TaskStatus
from .bootstrap import login_or_create

CommandEmitter = Callable[[str], None]
CommandHandler2 = Callable[[AppState, list[str]], str]
CommandHandler3 = Callable[[AppState, list[str], CommandEmitter | None], str]
CommandHandler = CommandHandler2 | CommandHandler3

logger = logging.getLogger(__name__)

SHORT_ID = 8


class CommandRegistry:
    """Simple slash-command registry used by the console connector (/help, /new, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(self, state: AppState, line: str, emit: CommandEmitter | None = None) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        Rejected input (ValidationError and friends) becomes an error reply.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except (TypeError, ValueError):
            nparams = 3

        try:
            if nparams >= 3:
                h3 = cast(CommandHandler3, handler)
                return h3(state, args, emit)
            h2 = cast(CommandHandler2, handler)
            return h2(state, args)
        except SyncError as e:
            logger.info("/%s rejected: %s", name, e)
            return f"Error: {e}"

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


# ---- helpers ----


def short_id(task_id: str) -> str:
    return task_id[:SHORT_ID]


def resolve_task(state: AppState, ref: str) -> Task:
    """Find a live task by full id or unique id prefix."""
    ref = (ref or "").strip()
    if not ref:
        raise ValidationError("task id is required")
    tasks = state.engine.tasks
    if ref in tasks:
        return tasks[ref]
    matches = [t for tid, t in tasks.items() if tid.startswith(ref)]
    if not matches:
        raise ValidationError(f"no task matches {ref!r}")
    if len(matches) > 1:
        raise ValidationError(f"{ref!r} is ambiguous ({len(matches)} tasks)")
    return matches[0]


def _require_user(state: AppState) -> str:
    user_id = state.session.user_id
    if user_id is None:
        raise ValidationError("no user selected; use /login <name> or /adduser <name>")
    return user_id


def format_row(row: TaskRow) -> str:
    task = row.task
    owner = row.owner_name or "?"
    mark = "*" if row.mine else " "
    line = f" {mark}[{short_id(task.id)}] {task.title} (owner: {owner})"
    if task.status is TaskStatus.WAITING_ON:
        if row.dependency is None:
            line += " | waiting on: -"
        else:
            dep = row.dependency
            line += f" | waiting on: [{short_id(dep.task_id)}] {dep.title} ({dep.status.label})"
        if row.in_cycle:
            line += " (cycle)"
    return line


def format_view(view: TaskView) -> str:
    if not view.groups:
        return "No tasks yet. Use /new to add one."
    lines: list[str] = []
    for group in view.groups:
        lines.append(f"== {group.status.label} ({len(group.rows)})")
        lines.extend(format_row(row) for row in group.rows)
    return "\n".join(lines)


def _describe(result: MutationResult) -> str:
    if result.task is None:
        return "Nothing changed."
    row = result.view.find(result.task.id)
    text = format_row(row) if row else f"[{short_id(result.task.id)}] {result.task.title}"
    return f"{result.task.status.label}:{text}"


# ---- commands ----


def cmd_help(state: AppState, args: list[str]) -> str:
    return registry.build_help()


def cmd_users(state: AppState, args: list[str]) -> str:
    users = sorted(state.engine.users.values(), key=lambda u: u.name.lower())
    if not users:
        return "No users yet. Use /adduser <name>."
    current = state.session.user_id
    lines = ["Users:"]
    for u in users:
        mark = "*" if u.id == current else " "
        lines.append(f" {mark} {u.name}")
    return "\n".join(lines)


def cmd_login(state: AppState, args: list[str]) -> str:
    if not args:
        return "Usage: /login <name>"
    user = login_or_create(state, " ".join(args), create=False)
    return f"Welcome, {user.name}!"


def cmd_adduser(state: AppState, args: list[str]) -> str:
    if not args:
        return "Usage: /adduser <name>"
    user = login_or_create(state, " ".join(args), create=True)
    return f"Welcome, {user.name}!"


def cmd_new(state: AppState, args: list[str]) -> str:
    owner = _require_user(state)
    title = " ".join(args).strip() or str(getattr(state.settings, "default_task_title", "New task"))
    result = state.engine.create_task(title, owner)
    return f"Created {_describe(result)}"


def cmd_title(state: AppState, args: list[str]) -> str:
    if len(args) < 2:
        return "Usage: /title <id> <new title>"
    task = resolve_task(state, args[0])
    result = state.engine.apply_local_mutation(task.id, {"title": " ".join(args[1:])})
    return _describe(result)


def cmd_desc(state: AppState, args: list[str]) -> str:
    """
    /desc <id> <text>  -> set description
    /desc <id>         -> clear description
    """
    if not args:
        return "Usage: /desc <id> [text]"
    task = resolve_task(state, args[0])
    text = " ".join(args[1:]).strip() or None
    state.engine.apply_local_mutation(task.id, {"description": text})
    return "Description saved." if text else "Description cleared."


def cmd_status(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if len(args) < 2:
        labels = ", ".join(s.value for s in TaskStatus)
        return f"Usage: /status <id> <status>  ({labels})"
    task = resolve_task(state, args[0])
    status = TaskStatus.parse(" ".join(args[1:]))
    result = state.engine.apply_local_mutation(task.id, {"status": status})
    if result.awaiting_target:
        state.session.awaiting_target_for = task.id
        if emit is not None:
            for other in result.view.rows():
                if other.task.id != task.id:
                    emit(f"  candidate [{short_id(other.task.id)}] {other.task.title}")
        return f"Who is [{short_id(task.id)}] waiting on? Use /wait {short_id(task.id)} <task id>."
    return _describe(result)


def cmd_wait(state: AppState, args: list[str]) -> str:
    """
    /wait <id> <target>  -> task <id> waits on <target>
    /wait <target>       -> completes a pending WaitingOn from /status
    """
    pending = state.session.awaiting_target_for
    if pending and not state.engine.is_awaiting_target(pending):
        # Status changed again (or the task was deleted) since /status asked.
        state.session.awaiting_target_for = None
        pending = None

    if len(args) >= 2:
        task = resolve_task(state, args[0])
        target = resolve_task(state, args[1])
    elif len(args) == 1 and pending:
        task = resolve_task(state, pending)
        target = resolve_task(state, args[0])
    else:
        return "Usage: /wait <id> <target id>"

    result = state.engine.apply_local_mutation(
        task.id,
        {"status": TaskStatus.WAITING_ON, "waiting_for_task_id": target.id},
    )
    state.session.awaiting_target_for = None
    return _describe(result)


def cmd_done(state: AppState, args: list[str]) -> str:
    if not args:
        return "Usage: /done <id>"
    task = resolve_task(state, args[0])
    return _describe(state.engine.apply_local_mutation(task.id, {"status": TaskStatus.DONE}))


def cmd_rm(state: AppState, args: list[str]) -> str:
    if not args:
        return "Usage: /rm <id>"
    task = resolve_task(state, args[0])
    state.engine.delete_task(task.id)
    return f"Deleted [{short_id(task.id)}] {task.title}."


def cmd_list(state: AppState, args: list[str]) -> str:
    if args:
        state.session.directive = SortDirective.parse(args[0], args[1] if len(args) > 1 else None)
    view = state.engine.current_view(state.session.directive, viewer_id=state.session.user_id)
    return format_view(view)


def cmd_show(state: AppState, args: list[str]) -> str:
    if not args:
        return "Usage: /show <id>"
    task = resolve_task(state, args[0])
    row = state.engine.current_view(viewer_id=state.session.user_id).find(task.id)
    lines = [
        format_row(row) if row else f"[{short_id(task.id)}] {task.title}",
        f"  id: {task.id}",
        f"  status: {task.status.label} ({task.status.value})",
        f"  description: {task.description or '-'}",
        f"  created: {task.created_at.isoformat()}",
        f"  updated: {task.updated_at.isoformat()}",
    ]
    return "\n".join(lines)


def cmd_sync(state: AppState, args: list[str]) -> str:
    """
    /sync          -> pending/failed write counts
    /sync retry    -> queue failed writes again
    /sync discard  -> forget failed writes (local state is kept)
    """
    engine = state.engine
    sub = args[0].lower() if args else ""
    if sub == "retry":
        return f"Re-queued {engine.retry_failed()} write(s)."
    if sub == "discard":
        return f"Discarded {len(engine.discard_failed())} failed write(s)."
    failed = engine.failed_writes
    lines = [f"Pending writes: {'yes' if engine.has_pending_writes else 'no'}", f"Failed writes: {len(failed)}"]
    for f in failed:
        lines.append(f"  {f.intent.op.value} {f.intent.entity_kind} [{short_id(f.intent.record_id)}]: {f.error}")
    return "\n".join(lines)


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("users", cmd_users, help_text="List participants.")
registry.register("login", cmd_login, help_text="Continue as an existing user: /login <name>.")
registry.register("adduser", cmd_adduser, help_text="Create a user and continue as them: /adduser <name>.")
registry.register("new", cmd_new, help_text="Add a task: /new [title].")
registry.register("title", cmd_title, help_text="Rename a task: /title <id> <text>.")
registry.register("desc", cmd_desc, help_text="Set or clear a description: /desc <id> [text].")
registry.register("status", cmd_status, help_text="Change status: /status <id> <Open|InProgress|WaitingOn|Done>.")
registry.register("wait", cmd_wait, help_text="Wait on another task: /wait <id> <target id>.")
registry.register("done", cmd_done, help_text="Mark a task done: /done <id>.")
registry.register("rm", cmd_rm, help_text="Delete a task: /rm <id>.", aliases=["delete"])
registry.register("list", cmd_list, help_text="Show the list: /list [status|updated] [asc|desc].", aliases=["ls"])
registry.register("show", cmd_show, help_text="Task details: /show <id>.")
registry.register("sync", cmd_sync, help_text="Write status: /sync | /sync retry | /sync discard.")
