# src/shared_todo/tasks/dependencies.py

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from .errors import InvalidDependency
from .task_models import Task, TaskStatus


@dataclass(frozen=True, slots=True)
class DependencyLink:
    """What a task is waiting on, as seen right now."""

    task_id: str
    title: str
    status: TaskStatus


def validate_dependency(task_id: str, target_id: str | None, tasks: Mapping[str, Task]) -> None:
    """
    Reject a proposed waiting_for_task_id.

    Only self-reference and unknown targets are errors. Longer cycles
    (A -> B -> A) are allowed and shown as they are.
    """
    if not target_id:
        raise InvalidDependency(task_id, target_id, "no target given")
    if target_id == task_id:
        raise InvalidDependency(task_id, target_id, "a task cannot wait on itself")
    if target_id not in tasks:
        raise InvalidDependency(task_id, target_id, "target does not exist")


def resolve_dependency(task: Task, tasks: Mapping[str, Task]) -> DependencyLink | None:
    """Look up the link target; a deleted target reads as no link at all."""
    target_id = task.waiting_for_task_id
    if not target_id:
        return None
    target = tasks.get(target_id)
    if target is None:
        return None
    return DependencyLink(task_id=target.id, title=target.title, status=target.status)


def dependents_of(target_id: str, tasks: Mapping[str, Task]) -> list[Task]:
    return sorted(
        (t for t in tasks.values() if t.waiting_for_task_id == target_id),
        key=lambda t: t.id,
    )


def find_cycle(task_id: str, tasks: Mapping[str, Task]) -> list[str] | None:
    """
    Follow waiting_for links from task_id.

    Returns the ids forming the loop if the chain comes back to task_id,
    else None. Dangling links end the chain.
    """
    chain = [task_id]
    seen = {task_id}
    current = tasks.get(task_id)
    while current is not None and current.waiting_for_task_id:
        nxt = current.waiting_for_task_id
        if nxt == task_id:
            return chain
        if nxt in seen:
            # Loop further down the chain that does not include task_id.
            return None
        chain.append(nxt)
        seen.add(nxt)
        current = tasks.get(nxt)
    return None
