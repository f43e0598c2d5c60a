# src/shared_todo/tasks/change_feed.py

from __future__ import annotations

"""
Change events and the SQLite polling feed.

A feed yields ChangeEvent objects for one entity kind. The polling feed
diffs a {id: version} snapshot of the table on every tick, so several
processes sharing one database file see each other's writes.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from .errors import ValidationError

if TYPE_CHECKING:
    from .task_store import TaskStore

logger = logging.getLogger(__name__)


class EventKind(StrEnum):
    CREATED = "Created"
    UPDATED = "Updated"
    DELETED = "Deleted"

    @classmethod
    def parse(cls, raw: str | EventKind) -> EventKind:
        if isinstance(raw, EventKind):
            return raw
        key = str(raw or "").strip().upper()
        aliases = {
            "CREATED": cls.CREATED,
            "INSERT": cls.CREATED,
            "UPDATED": cls.UPDATED,
            "UPDATE": cls.UPDATED,
            "DELETED": cls.DELETED,
            "DELETE": cls.DELETED,
        }
        try:
            return aliases[key]
        except KeyError:
            raise ValidationError(f"unknown change event kind: {raw!r}") from None


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    kind: EventKind
    entity_kind: str
    record: dict[str, Any] = field(default_factory=dict)

    @property
    def record_id(self) -> str | None:
        rid = self.record.get("id")
        return str(rid) if rid is not None else None


def parse_change_payload(payload: Mapping[str, Any], entity_kind: str = "tasks") -> ChangeEvent:
    """
    Build a ChangeEvent from a feed payload.

    Accepted shapes:
    - {"eventKind": "Updated", "record": {...}}
    - {"eventType": "UPDATE", "new": {...}, "old": {...}}  (realtime style)
    For deletes the realtime style only carries the id in "old".
    """
    if "eventKind" in payload:
        kind = EventKind.parse(payload["eventKind"])
        record = payload.get("record") or {}
    elif "eventType" in payload:
        kind = EventKind.parse(payload["eventType"])
        record = payload.get("old") if kind is EventKind.DELETED else payload.get("new")
        record = record or {}
    else:
        raise ValidationError("change payload has neither eventKind nor eventType")

    if not isinstance(record, Mapping) or not record.get("id"):
        raise ValidationError(f"{kind.value} event carries no record id")

    return ChangeEvent(
        kind=kind,
        entity_kind=str(payload.get("table") or entity_kind),
        record=dict(record),
    )


def _version(record: Mapping[str, Any]) -> str:
    stamp = record.get("updated_at")
    if stamp:
        return str(stamp)
    # users carry no updated_at; compare the whole row
    return json.dumps(dict(record), sort_keys=True, default=str)


def poll_changes(
    records: list[dict[str, Any]],
    entity_kind: str,
    seen: dict[str, str],
) -> list[ChangeEvent]:
    """
    Diff the current rows against `seen` and update it in place.

    Emits Created for new ids, Updated for changed versions and Deleted for
    ids that disappeared.
    """
    events: list[ChangeEvent] = []
    current: dict[str, str] = {}

    for rec in records:
        rid = str(rec["id"])
        ver = _version(rec)
        current[rid] = ver
        if rid not in seen:
            events.append(ChangeEvent(EventKind.CREATED, entity_kind, dict(rec)))
        elif seen[rid] != ver:
            events.append(ChangeEvent(EventKind.UPDATED, entity_kind, dict(rec)))

    for rid in seen.keys() - current.keys():
        events.append(ChangeEvent(EventKind.DELETED, entity_kind, {"id": rid}))

    seen.clear()
    seen.update(current)
    return events


class SqlitePollingFeed:
    """ChangeFeed implementation that polls a TaskStore table."""

    def __init__(self, store: TaskStore, *, interval_seconds: float = 1.0, prime: bool = True) -> None:
        self._store = store
        self._interval = max(0.01, float(interval_seconds))
        self._prime = prime

    async def subscribe(self, entity_kind: str) -> AsyncIterator[ChangeEvent]:
        """
        Yield change events forever. Cancel the consuming task to stop.

        With prime=True the rows present at subscribe time are taken as
        already known and produce no events.
        """
        seen: dict[str, str] = {}
        if self._prime:
            try:
                poll_changes(self._store.list_records(entity_kind), entity_kind, seen)
            except Exception:
                logger.exception("Initial poll failed kind=%s", entity_kind)

        logger.info("Polling feed subscribed kind=%s interval=%.2fs", entity_kind, self._interval)

        while True:
            try:
                events = poll_changes(self._store.list_records(entity_kind), entity_kind, seen)
            except Exception:
                logger.exception("Polling feed tick failed kind=%s", entity_kind)
                events = []

            for event in events:
                yield event

            await asyncio.sleep(self._interval)
