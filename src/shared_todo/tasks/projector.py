# src/shared_todo/tasks/projector.py

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum

from .dependencies import DependencyLink, find_cycle, resolve_dependency
from .errors import ValidationError
from .task_models import Task, TaskStatus, User


class SortKey(StrEnum):
    STATUS = "status"
    UPDATED_AT = "updated_at"


@dataclass(frozen=True, slots=True)
class SortDirective:
    key: SortKey = SortKey.STATUS
    descending: bool = False

    @classmethod
    def parse(cls, key: str | None = None, direction: str | None = None) -> SortDirective:
        raw_key = (key or SortKey.STATUS.value).strip().lower()
        if raw_key in ("updated", "updated_at", "time"):
            sort_key = SortKey.UPDATED_AT
        elif raw_key == "status":
            sort_key = SortKey.STATUS
        else:
            raise ValidationError(f"unknown sort key: {key!r}")

        raw_dir = (direction or "asc").strip().lower()
        if raw_dir not in ("asc", "ascending", "desc", "descending"):
            raise ValidationError(f"unknown sort direction: {direction!r}")
        return cls(key=sort_key, descending=raw_dir.startswith("desc"))


@dataclass(frozen=True, slots=True)
class TaskRow:
    task: Task
    dependency: DependencyLink | None
    owner_name: str | None
    mine: bool
    in_cycle: bool


@dataclass(frozen=True, slots=True)
class StatusGroup:
    status: TaskStatus
    rows: tuple[TaskRow, ...]


@dataclass(frozen=True, slots=True)
class TaskView:
    directive: SortDirective
    groups: tuple[StatusGroup, ...]

    def rows(self) -> list[TaskRow]:
        return [row for group in self.groups for row in group.rows]

    def task_ids(self) -> list[str]:
        return [row.task.id for row in self.rows()]

    def find(self, task_id: str) -> TaskRow | None:
        for row in self.rows():
            if row.task.id == task_id:
                return row
        return None


def _row_key(task: Task, directive: SortDirective) -> tuple:
    # updated_at descending by default, id as the final tie-break
    ts = task.updated_at.timestamp()
    if directive.key is SortKey.UPDATED_AT and not directive.descending:
        return (ts, task.id)
    return (-ts, task.id)


def project(
    tasks: Iterable[Task],
    directive: SortDirective | None = None,
    *,
    users: Mapping[str, User] | None = None,
    viewer_id: str | None = None,
) -> TaskView:
    """
    Turn the live task set into status groups ready for rendering.

    Groups follow the status rank (reversed when sorting by status descending).
    Inside a group rows are ordered by updated_at, newest first unless sorting
    by updated_at ascending, then by id. Dependencies whose target is gone are
    rendered as absent.
    """
    directive = directive or SortDirective()
    by_id = {t.id: t for t in tasks}
    users = users or {}

    buckets: dict[TaskStatus, list[Task]] = {}
    for task in by_id.values():
        buckets.setdefault(task.status, []).append(task)

    order = sorted(buckets, key=lambda s: s.rank)
    if directive.key is SortKey.STATUS and directive.descending:
        order.reverse()

    groups: list[StatusGroup] = []
    for status in order:
        rows = []
        for task in sorted(buckets[status], key=lambda t: _row_key(t, directive)):
            owner = users.get(task.owner_id)
            rows.append(
                TaskRow(
                    task=task,
                    dependency=resolve_dependency(task, by_id),
                    owner_name=owner.name if owner else None,
                    mine=viewer_id is not None and task.owner_id == viewer_id,
                    in_cycle=find_cycle(task.id, by_id) is not None,
                )
            )
        groups.append(StatusGroup(status=status, rows=tuple(rows)))

    return TaskView(directive=directive, groups=tuple(groups))
