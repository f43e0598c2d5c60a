# src/shared_todo/tasks/task_models.py

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from .errors import ValidationError

PATCH_FIELDS = frozenset({"title", "description", "status", "waiting_for_task_id"})


class TaskStatus(StrEnum):
    """
    Task lifecycle status.

    Values are what goes over the wire. Older clients stored the German
    display labels instead; from_db() still accepts those.
    """

    OPEN = "Open"
    IN_PROGRESS = "InProgress"
    WAITING_ON = "WaitingOn"
    DONE = "Done"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.OPEN
        raw = str(raw).strip()
        try:
            return cls(raw)
        except ValueError:
            pass
        for status in cls:
            if raw.lower() in (status.value.lower(), status.label.lower()):
                return status
        return cls.OPEN

    @classmethod
    def parse(cls, raw: str) -> TaskStatus:
        """Strict parsing for user input: accepts values, names and labels."""
        key = (raw or "").strip().lower().replace("-", "_")
        for status in cls:
            if key in (status.value.lower(), status.name.lower(), status.label.lower()):
                return status
        raise ValidationError(f"unknown status: {raw!r}")

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def label(self) -> str:
        return _STATUS_STYLE[self][0]

    @property
    def color(self) -> str:
        return _STATUS_STYLE[self][1]


_STATUS_RANK = {
    TaskStatus.OPEN: 0,
    TaskStatus.IN_PROGRESS: 1,
    TaskStatus.WAITING_ON: 2,
    TaskStatus.DONE: 3,
}

_STATUS_STYLE = {
    TaskStatus.OPEN: ("Offen", "#d3d3d3"),
    TaskStatus.IN_PROGRESS: ("In Arbeit", "#f1af54"),
    TaskStatus.WAITING_ON: ("Warte auf..", "#cd404e"),
    TaskStatus.DONE: ("Erledigt", "#5ac57d"),
}


@dataclass(frozen=True, slots=True)
class User:
    id: str
    name: str
    profile_pic_url: str
    created_at: datetime


@dataclass(frozen=True, slots=True)
class Task:
    id: str
    title: str
    owner_id: str
    status: TaskStatus
    created_at: datetime
    updated_at: datetime

    description: str | None = None
    waiting_for_task_id: str | None = None


# ---- timestamps ----


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_ts(raw: str | datetime | None) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive values are taken as UTC. A trailing "Z" is accepted.
    """
    if raw is None or raw == "":
        raise ValidationError("timestamp is required")
    if isinstance(raw, datetime):
        dt = raw
    else:
        text = str(raw).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValidationError(f"invalid timestamp: {raw!r}") from e
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_ts(dt: datetime) -> str:
    return parse_ts(dt).isoformat()


# ---- validation ----


def is_valid_task(task: Task, known_ids: Iterable[str] | None = None) -> list[str]:
    """
    Check the record invariants of a task snapshot.

    Returns a list of human-readable problems; an empty list means valid.
    known_ids, when given, is the live id set the dependency must point into.
    """
    problems: list[str] = []

    if not task.id:
        problems.append("id is required")
    if not task.title or not task.title.strip():
        problems.append("title must not be empty")
    if not task.owner_id:
        problems.append("owner_id is required")
    if task.updated_at < task.created_at:
        problems.append("updated_at precedes created_at")

    target = task.waiting_for_task_id
    if target is not None:
        if target == task.id:
            problems.append("task cannot wait on itself")
        elif known_ids is not None and target not in set(known_ids):
            problems.append(f"waiting_for_task_id {target} does not exist")

    if task.status is not TaskStatus.WAITING_ON and target is not None:
        problems.append("waiting_for_task_id set while status is not WaitingOn")

    return problems


def normalize_patch(patch: Mapping[str, Any]) -> dict[str, Any]:
    """
    Validate and coerce a mutation patch.

    A key that is present means "touch this field"; None clears optional fields.
    """
    unknown = set(patch) - PATCH_FIELDS
    if unknown:
        raise ValidationError(f"unsupported patch fields: {', '.join(sorted(unknown))}")

    out: dict[str, Any] = {}

    if "title" in patch:
        title = patch["title"]
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("title must not be empty")
        out["title"] = title.strip()

    if "description" in patch:
        desc = patch["description"]
        out["description"] = None if desc is None else str(desc)

    if "status" in patch:
        raw = patch["status"]
        if raw is None:
            raise ValidationError("status cannot be cleared")
        out["status"] = raw if isinstance(raw, TaskStatus) else TaskStatus.parse(str(raw))

    if "waiting_for_task_id" in patch:
        target = patch["waiting_for_task_id"]
        out["waiting_for_task_id"] = str(target) if target else None

    return out


# ---- wire records ----


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value)
    return s if s != "" else None


def task_from_record(record: Mapping[str, Any]) -> Task:
    try:
        task_id = str(record["id"])
        created_at = parse_ts(record.get("created_at"))
    except KeyError as e:
        raise ValidationError(f"task record is missing {e.args[0]!r}") from e

    raw_updated = record.get("updated_at")
    updated_at = parse_ts(raw_updated) if raw_updated else created_at

    return Task(
        id=task_id,
        title=str(record.get("title") or ""),
        owner_id=str(record.get("owner_id") or ""),
        status=TaskStatus.from_db(record.get("status")),
        created_at=created_at,
        updated_at=updated_at,
        description=_opt_str(record.get("description")),
        waiting_for_task_id=_opt_str(record.get("waiting_for_task_id")),
    )


def task_to_record(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "owner_id": task.owner_id,
        "status": task.status.value,
        "waiting_for_task_id": task.waiting_for_task_id,
        "created_at": format_ts(task.created_at),
        "updated_at": format_ts(task.updated_at),
    }


def user_from_record(record: Mapping[str, Any]) -> User:
    try:
        return User(
            id=str(record["id"]),
            name=str(record.get("name") or ""),
            profile_pic_url=str(record.get("profile_pic_url") or ""),
            created_at=parse_ts(record.get("created_at")),
        )
    except KeyError as e:
        raise ValidationError(f"user record is missing {e.args[0]!r}") from e


def user_to_record(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "profile_pic_url": user.profile_pic_url,
        "created_at": format_ts(user.created_at),
    }
