# src/shared_todo/tasks/sync_engine.py

from __future__ import annotations

"""
Client-side synchronization engine.

Owns the local task set (and the user set) and reconciles three inputs:

- local mutations, applied optimistically and queued as write intents,
- write acknowledgements coming back from the store,
- change events from other sessions.

All reconciliation is record-level last-write-wins on updated_at. On a tie
the record that arrived last wins. Every method is synchronous; the async
pumps in task_api.py feed acknowledgements and events in.
"""

import logging
import uuid
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from ..core.ports import CelebrationSink, Clock
from .change_feed import ChangeEvent, EventKind
from .dependencies import dependents_of, validate_dependency
from .errors import ValidationError
from .projector import SortDirective, TaskView, project
from .status_machine import normalize_snapshot, transition
from .task_models import (
    Task,
    TaskStatus,
    User,
    format_ts,
    is_valid_task,
    normalize_patch,
    task_from_record,
    task_to_record,
    user_from_record,
    user_to_record,
    utc_now,
)

logger = logging.getLogger(__name__)

TASKS = "tasks"
USERS = "users"

_TICK = timedelta(microseconds=1)


class WriteOp(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class WriteIntent:
    """A write the store still has to see."""

    op: WriteOp
    entity_kind: str
    record_id: str
    fields: dict[str, Any]
    issued_at: datetime


@dataclass(frozen=True, slots=True)
class FailedWrite:
    intent: WriteIntent
    error: str


@dataclass(frozen=True, slots=True)
class MutationResult:
    task: Task | None
    view: TaskView
    intent: WriteIntent | None = None
    celebrate: bool = False
    awaiting_target: bool = False

    @property
    def applied(self) -> bool:
        return self.intent is not None


def _task_diff(old: Task, new: Task) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if old.title != new.title:
        out["title"] = new.title
    if old.description != new.description:
        out["description"] = new.description
    if old.status is not new.status:
        out["status"] = new.status.value
    if old.waiting_for_task_id != new.waiting_for_task_id:
        out["waiting_for_task_id"] = new.waiting_for_task_id
    return out


class SyncEngine:
    def __init__(
        self,
        tasks: Iterable[Task] = (),
        users: Iterable[User] = (),
        *,
        clock: Clock = utc_now,
        celebrations: CelebrationSink | None = None,
        directive: SortDirective | None = None,
    ) -> None:
        self._clock = clock
        self._celebrations = celebrations
        self._directive = directive or SortDirective()

        self._tasks: dict[str, Task] = {}
        self._users: dict[str, User] = {u.id: u for u in users}
        self._retired: set[str] = set()

        # updated_at of the newest local mutation per task whose ack is still due
        self._latest_local: dict[str, datetime] = {}
        self._awaiting_target: set[str] = set()

        self._outbox: deque[WriteIntent] = deque()
        self._inbox: deque[ChangeEvent] = deque()
        self._failed: list[FailedWrite] = []

        for task in tasks:
            self._tasks[task.id] = normalize_snapshot(task)

    # ---- read side ----

    @property
    def tasks(self) -> Mapping[str, Task]:
        return MappingProxyType(self._tasks)

    @property
    def users(self) -> Mapping[str, User]:
        return MappingProxyType(self._users)

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def is_retired(self, task_id: str) -> bool:
        return task_id in self._retired

    def is_awaiting_target(self, task_id: str) -> bool:
        return task_id in self._awaiting_target

    def find_user_by_name(self, name: str) -> User | None:
        key = (name or "").strip().lower()
        for user in self._users.values():
            if user.name.lower() == key:
                return user
        return None

    def current_view(
        self,
        directive: SortDirective | None = None,
        *,
        viewer_id: str | None = None,
    ) -> TaskView:
        return project(
            self._tasks.values(),
            directive or self._directive,
            users=self._users,
            viewer_id=viewer_id,
        )

    # ---- helpers ----

    def _next_ts(self, current: Task | None = None) -> datetime:
        now = self._clock()
        if current is not None and now <= current.updated_at:
            now = current.updated_at + _TICK
        return now

    def _enqueue(
        self,
        op: WriteOp,
        entity_kind: str,
        record_id: str,
        fields: dict[str, Any],
        issued_at: datetime,
    ) -> WriteIntent:
        intent = WriteIntent(
            op=op,
            entity_kind=entity_kind,
            record_id=record_id,
            fields=fields,
            issued_at=issued_at,
        )
        self._outbox.append(intent)
        return intent

    def _celebrate(self, task: Task) -> None:
        if self._celebrations is None:
            return
        try:
            self._celebrations.celebrate(task)
        except Exception:
            logger.exception("Celebration hook failed task_id=%s", task.id)

    @staticmethod
    def _coerce_task(snapshot: Task | Mapping[str, Any]) -> Task:
        if isinstance(snapshot, Task):
            return snapshot
        return task_from_record(snapshot)

    @staticmethod
    def _snapshot_id(snapshot: Task | Mapping[str, Any] | str) -> str:
        if isinstance(snapshot, Task):
            return snapshot.id
        if isinstance(snapshot, str):
            return snapshot
        rid = snapshot.get("id")
        if not rid:
            raise ValidationError("snapshot carries no id")
        return str(rid)

    def _merge(self, current: Task, incoming: Task) -> Task:
        """Record-level last-write-wins. Equal stamps: the later arrival wins."""
        if incoming.updated_at < current.updated_at:
            return current
        if incoming.owner_id != current.owner_id or incoming.created_at != current.created_at:
            logger.warning("Task %s: ignoring change of owner/created_at from the store", current.id)
            incoming = replace(incoming, owner_id=current.owner_id, created_at=current.created_at)
        return incoming

    # ---- local intents ----

    def create_task(
        self,
        title: str,
        owner_id: str,
        *,
        description: str | None = None,
        task_id: str | None = None,
    ) -> MutationResult:
        """Optimistically add a new Open task owned by owner_id."""
        if not title or not title.strip():
            raise ValidationError("title must not be empty")
        if owner_id not in self._users:
            raise ValidationError(f"unknown owner: {owner_id}")

        new_id = task_id or str(uuid.uuid4())
        if new_id in self._tasks or new_id in self._retired:
            raise ValidationError(f"task id already used: {new_id}")

        now = self._clock()
        task = Task(
            id=new_id,
            title=title.strip(),
            owner_id=owner_id,
            status=TaskStatus.OPEN,
            created_at=now,
            updated_at=now,
            description=description,
        )
        self._tasks[new_id] = task
        self._latest_local[new_id] = now
        intent = self._enqueue(WriteOp.INSERT, TASKS, new_id, task_to_record(task), now)
        logger.info("Task created id=%s owner=%s", new_id, owner_id)
        return MutationResult(task=task, view=self.current_view(), intent=intent)

    def apply_local_mutation(self, task_id: str, patch: Mapping[str, Any]) -> MutationResult:
        """
        Apply a patch optimistically and queue the write.

        Raises ValidationError (nothing changes) for bad titles, bad patches and
        invalid dependencies. Unknown or deleted ids are a logged no-op.
        A move to WaitingOn without a target leaves the status alone and
        reports awaiting_target=True so the caller can ask for one.
        """
        fields = normalize_patch(patch)

        current = self._tasks.get(task_id)
        if current is None:
            if task_id in self._retired:
                logger.info("Mutation for deleted task %s ignored", task_id)
            else:
                logger.warning("Mutation for unknown task %s ignored", task_id)
            return MutationResult(task=None, view=self.current_view())

        target_given = "waiting_for_task_id" in fields
        target = fields.get("waiting_for_task_id")
        if target_given and target is not None:
            validate_dependency(task_id, target, self._tasks)

        now = self._next_ts(current)
        draft = current
        plain = {k: fields[k] for k in ("title", "description") if k in fields}
        if plain:
            draft = replace(draft, **plain)

        step = transition(
            draft,
            fields.get("status"),
            target_id=target,
            target_given=target_given,
            now=now,
        )
        nxt = step.task

        if step.awaiting_target:
            self._awaiting_target.add(task_id)
        else:
            self._awaiting_target.discard(task_id)

        diff = _task_diff(current, nxt)
        if not diff:
            return MutationResult(
                task=current,
                view=self.current_view(),
                awaiting_target=step.awaiting_target,
            )

        nxt = replace(nxt, updated_at=now)
        problems = is_valid_task(nxt)
        if problems:
            raise ValidationError("; ".join(problems))

        self._tasks[task_id] = nxt
        self._latest_local[task_id] = now
        diff["updated_at"] = format_ts(now)
        intent = self._enqueue(WriteOp.UPDATE, TASKS, task_id, diff, now)

        logger.debug("Task %s mutated locally fields=%s", task_id, sorted(diff))
        if step.celebrate:
            self._celebrate(nxt)

        return MutationResult(
            task=nxt,
            view=self.current_view(),
            intent=intent,
            celebrate=step.celebrate,
            awaiting_target=step.awaiting_target,
        )

    def delete_task(self, task_id: str) -> MutationResult:
        if task_id not in self._tasks:
            logger.info("Delete for absent task %s ignored", task_id)
            return MutationResult(task=None, view=self.current_view())

        now = self._clock()
        self._forget(task_id)
        intent = self._enqueue(WriteOp.DELETE, TASKS, task_id, {}, now)
        return MutationResult(task=None, view=self.current_view(), intent=intent)

    def add_user(self, name: str, profile_pic_url: str = "", *, user_id: str | None = None) -> User:
        name = (name or "").strip()
        if not name:
            raise ValidationError("user name must not be empty")
        if self.find_user_by_name(name) is not None:
            raise ValidationError(f"user already exists: {name}")

        now = self._clock()
        user = User(
            id=user_id or str(uuid.uuid4()),
            name=name,
            profile_pic_url=profile_pic_url,
            created_at=now,
        )
        self._users[user.id] = user
        self._enqueue(WriteOp.INSERT, USERS, user.id, user_to_record(user), now)
        logger.info("User created id=%s name=%s", user.id, name)
        return user

    # ---- acknowledgements ----

    def on_write_acknowledged(
        self,
        task_id: str,
        server_snapshot: Task | Mapping[str, Any],
        issued_at: datetime | None = None,
    ) -> Task | None:
        """
        Fold the store's copy of a written record back in.

        The store's copy replaces the optimistic one unless a newer local
        mutation was issued after the acknowledged write; then the local
        record is kept. The result never moves updated_at backwards.
        """
        if task_id in self._retired:
            logger.debug("Ack for deleted task %s ignored", task_id)
            return None

        incoming = normalize_snapshot(self._coerce_task(server_snapshot))
        current = self._tasks.get(task_id)
        if current is None:
            self._tasks[task_id] = incoming
            return incoming

        latest = self._latest_local.get(task_id)
        reference = issued_at if issued_at is not None else incoming.updated_at
        if latest is not None and latest > reference:
            logger.debug("Ack for task %s superseded by local write at %s", task_id, latest)
            return current

        if current.updated_at > incoming.updated_at and current.updated_at != latest:
            # Someone else's newer write landed while ours was in flight.
            self._latest_local.pop(task_id, None)
            return current

        adopted = incoming
        if adopted.updated_at < current.updated_at:
            # Store keeps coarser timestamps than the local clock.
            adopted = replace(adopted, updated_at=current.updated_at)
        adopted = self._merge(current, adopted)

        self._tasks[task_id] = adopted
        self._latest_local.pop(task_id, None)
        return adopted

    def on_user_write_acknowledged(self, user_id: str, record: User | Mapping[str, Any]) -> User:
        user = record if isinstance(record, User) else user_from_record(record)
        self._users[user_id] = user
        return user

    def on_intent_acknowledged(self, intent: WriteIntent, record: Mapping[str, Any] | None) -> None:
        """Route a store response to the matching acknowledgement."""
        if intent.op is WriteOp.DELETE or record is None:
            return
        if intent.entity_kind == USERS:
            self.on_user_write_acknowledged(intent.record_id, record)
        else:
            self.on_write_acknowledged(intent.record_id, record, issued_at=intent.issued_at)

    def on_write_failed(self, intent: WriteIntent, error: BaseException | str) -> FailedWrite:
        """Record a failed write. The optimistic state stays as it is."""
        failed = FailedWrite(intent=intent, error=str(error))
        self._failed.append(failed)
        logger.warning(
            "Write failed op=%s kind=%s id=%s: %s",
            intent.op.value,
            intent.entity_kind,
            intent.record_id,
            failed.error,
        )
        return failed

    # ---- remote changes ----

    def on_remote_event(
        self,
        kind: EventKind | str,
        snapshot: Task | Mapping[str, Any] | str,
    ) -> Task | None:
        """
        Apply a change made by another session.

        Created inserts unknown ids; Updated merges by last-write-wins;
        Deleted removes and retires the id. Ids that were deleted are never
        brought back. Returns the task as it now stands, or None.
        """
        kind = EventKind.parse(kind)
        task_id = self._snapshot_id(snapshot)

        if kind is EventKind.DELETED:
            if task_id in self._tasks:
                self._forget(task_id)
            else:
                self._retired.add(task_id)
            return None

        if task_id in self._retired:
            logger.debug("%s event for deleted task %s ignored", kind.value, task_id)
            return None

        incoming = normalize_snapshot(self._coerce_task(snapshot))
        current = self._tasks.get(task_id)
        if current is None:
            # Updated may overtake Created; both insert.
            self._tasks[task_id] = incoming
            logger.debug("Task %s inserted from remote %s", task_id, kind.value)
            return incoming

        merged = self._merge(current, incoming)
        self._tasks[task_id] = merged
        latest = self._latest_local.get(task_id)
        if merged is not current and latest is not None and merged.updated_at >= latest:
            # Our pending write has been overtaken (or echoed back).
            self._latest_local.pop(task_id, None)
        return merged

    def on_remote_user_event(
        self,
        kind: EventKind | str,
        record: User | Mapping[str, Any] | str,
    ) -> User | None:
        kind = EventKind.parse(kind)
        if isinstance(record, User):
            user_id = record.id
        elif isinstance(record, str):
            user_id = record
        else:
            user_id = str(record.get("id") or "")

        if kind is EventKind.DELETED:
            self._users.pop(user_id, None)
            return None

        incoming = record if isinstance(record, User) else user_from_record(record)
        current = self._users.get(user_id)
        if current is not None:
            # Only the picture may change after creation.
            incoming = replace(current, profile_pic_url=incoming.profile_pic_url)
        self._users[user_id] = incoming
        return incoming

    def post_remote_event(self, event: ChangeEvent) -> None:
        self._inbox.append(event)

    def drain_inbox(self) -> int:
        """Apply every queued remote event; bad events are logged and skipped."""
        applied = 0
        while self._inbox:
            event = self._inbox.popleft()
            try:
                if event.entity_kind == USERS:
                    self.on_remote_user_event(event.kind, event.record)
                else:
                    self.on_remote_event(event.kind, event.record)
                applied += 1
            except ValidationError as e:
                logger.warning("Dropping malformed %s event: %s", event.kind.value, e)
        return applied

    def load(
        self,
        tasks: Iterable[Task | Mapping[str, Any]],
        users: Iterable[User | Mapping[str, Any]] = (),
    ) -> None:
        """Initial fetch: users first, then tasks, merged like Created events."""
        for user in users:
            self.on_remote_user_event(EventKind.CREATED, user)
        for task in tasks:
            self.on_remote_event(EventKind.CREATED, task)
        logger.info("Engine loaded tasks=%d users=%d", len(self._tasks), len(self._users))

    def _forget(self, task_id: str) -> None:
        self._tasks.pop(task_id, None)
        self._retired.add(task_id)
        self._latest_local.pop(task_id, None)
        self._awaiting_target.discard(task_id)

        dangling = dependents_of(task_id, self._tasks)
        if dangling:
            logger.info(
                "Task %s deleted; %d task(s) still point at it: %s",
                task_id,
                len(dangling),
                ", ".join(t.id for t in dangling),
            )

    # ---- outbox ----

    def take_write_intents(self) -> list[WriteIntent]:
        out = list(self._outbox)
        self._outbox.clear()
        return out

    @property
    def has_pending_writes(self) -> bool:
        return bool(self._outbox)

    @property
    def failed_writes(self) -> list[FailedWrite]:
        return list(self._failed)

    def retry_failed(self) -> int:
        """
        Put failed writes back into the outbox (oldest first).

        A failed insert is re-sent with the record as it stands now: edits made
        after it failed could not reach the store and are folded in here.
        """
        n = 0
        for failed in self._failed:
            intent = failed.intent
            stale = intent.entity_kind == TASKS and intent.record_id in self._retired
            if stale and intent.op is not WriteOp.DELETE:
                continue
            if intent.op is WriteOp.INSERT:
                intent = self._refresh_insert(intent)
            self._outbox.append(intent)
            n += 1
        self._failed.clear()
        return n

    def _refresh_insert(self, intent: WriteIntent) -> WriteIntent:
        if intent.entity_kind == TASKS:
            task = self._tasks.get(intent.record_id)
            if task is None:
                return intent
            return replace(intent, fields=task_to_record(task), issued_at=task.updated_at)
        user = self._users.get(intent.record_id)
        if user is None:
            return intent
        return replace(intent, fields=user_to_record(user))

    def discard_failed(self) -> list[FailedWrite]:
        out = list(self._failed)
        self._failed.clear()
        return out
