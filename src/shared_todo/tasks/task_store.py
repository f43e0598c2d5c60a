# src/shared_todo/tasks/task_store.py

from __future__ import annotations

import contextlib
import logging
import re
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from .errors import NotFound, TransportError, ValidationError
from .task_models import TaskStatus, format_ts, parse_ts, utc_now

logger = logging.getLogger(__name__)

ENTITY_KINDS = ("tasks", "users")

_COLUMNS = {
    "tasks": (
        "id",
        "title",
        "description",
        "owner_id",
        "status",
        "waiting_for_task_id",
        "created_at",
        "updated_at",
    ),
    "users": ("id", "name", "profile_pic_url", "created_at"),
}

# Columns a client may change after insert.
_MUTABLE = {
    "tasks": frozenset({"title", "description", "status", "waiting_for_task_id", "updated_at"}),
    "users": frozenset({"profile_pic_url"}),
}


class TaskStore:
    """
    SQLite store for the shared list.

    Plays the part of the backing store: row-level CRUD on two tables
    (<prefix>tasks, <prefix>users). Several processes may point at the same
    file; the polling change feed picks up their writes.

    The schema is intentionally simple and migration-safe:
    - create table if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "todo.sqlite3", *, table_prefix: str = "aisws_") -> None:
        if not re.fullmatch(r"[A-Za-z0-9_]*", table_prefix):
            raise ValueError(f"invalid table prefix: {table_prefix!r}")
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._prefix = table_prefix
        self._ensure_schema()
        try:
            total = self.count("tasks")
        except Exception:
            total = -1
        logger.info("TaskStore ready db=%s prefix=%s tasks=%s", self._db_path, self._prefix, total)

    @property
    def db_path(self) -> Path:
        return self._db_path

    def table(self, entity_kind: str) -> str:
        if entity_kind not in ENTITY_KINDS:
            raise ValidationError(f"unknown entity kind: {entity_kind!r}")
        return f"{self._prefix}{entity_kind}"

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(Exception):
            conn.execute("PRAGMA journal_mode=WAL")

    def _ensure_schema(self) -> None:
        tasks = self.table("tasks")
        users = self.table("users")
        conn = self._get_conn()
        try:
            cur = conn.cursor()

            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {users} (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    profile_pic_url TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {tasks} (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT,
                    owner_id TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'Open',
                    waiting_for_task_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

            # Migrations (safe): add missing columns.
            cur.execute(f"PRAGMA table_info({tasks})")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE {tasks} ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column %s.%s", tasks, name)

            add_col("description", "TEXT")
            add_col("waiting_for_task_id", "TEXT")
            add_col("updated_at", "TEXT NOT NULL DEFAULT ''")

            cur.execute(f"CREATE INDEX IF NOT EXISTS idx_{tasks}_created ON {tasks}(created_at)")
            cur.execute(f"CREATE INDEX IF NOT EXISTS idx_{tasks}_waiting ON {tasks}(waiting_for_task_id)")

            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> dict[str, Any]:
        return {k: row[k] for k in row.keys()}

    # ---- public API ----

    def count(self, entity_kind: str) -> int:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(f"SELECT COUNT(*) FROM {self.table(entity_kind)}")
            (n,) = cur.fetchone()
            return int(n)
        finally:
            conn.close()

    def list_records(self, entity_kind: str) -> list[dict[str, Any]]:
        """All rows, newest first."""
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(f"SELECT * FROM {self.table(entity_kind)} ORDER BY created_at DESC, id ASC")
            return [self._row_to_record(r) for r in cur.fetchall()]
        finally:
            conn.close()

    def get_record(self, entity_kind: str, record_id: str) -> dict[str, Any] | None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(f"SELECT * FROM {self.table(entity_kind)} WHERE id = ?", (str(record_id),))
            row = cur.fetchone()
            return self._row_to_record(row) if row else None
        finally:
            conn.close()

    def insert_record(self, entity_kind: str, fields: dict[str, Any]) -> dict[str, Any]:
        table = self.table(entity_kind)
        allowed = _COLUMNS[entity_kind]
        unknown = set(fields) - set(allowed)
        if unknown:
            raise ValidationError(f"unknown {entity_kind} fields: {', '.join(sorted(unknown))}")

        now = format_ts(utc_now())
        rec = {k: fields.get(k) for k in allowed}
        rec["id"] = str(rec["id"] or uuid.uuid4())
        rec["created_at"] = rec["created_at"] or now

        if entity_kind == "tasks":
            if not rec["title"] or not str(rec["title"]).strip():
                raise ValidationError("title is required")
            if not rec["owner_id"]:
                raise ValidationError("owner_id is required")
            rec["status"] = TaskStatus.from_db(rec["status"]).value
            rec["updated_at"] = rec["updated_at"] or rec["created_at"]
        else:
            if not rec["name"] or not str(rec["name"]).strip():
                raise ValidationError("name is required")
            rec["profile_pic_url"] = rec["profile_pic_url"] or ""

        cols = ", ".join(allowed)
        placeholders = ", ".join("?" for _ in allowed)
        conn = self._get_conn()
        try:
            conn.execute(
                f"INSERT INTO {table} ({cols}) VALUES ({placeholders})",
                tuple(rec[k] for k in allowed),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"{entity_kind} {rec['id']} already exists") from e
        finally:
            conn.close()

        logger.debug("Inserted %s id=%s", entity_kind, rec["id"])
        return rec

    def update_record(self, entity_kind: str, record_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        table = self.table(entity_kind)
        mutable = _MUTABLE[entity_kind]
        bad = set(patch) - mutable
        if bad:
            raise ValidationError(f"{entity_kind} fields not writable: {', '.join(sorted(bad))}")

        fields: list[str] = []
        params: list[Any] = []
        stamp = None
        for key in sorted(patch):
            value = patch[key]
            if key == "status":
                value = TaskStatus.from_db(value).value
            if key == "title" and (not value or not str(value).strip()):
                raise ValidationError("title is required")
            if key == "updated_at":
                stamp = parse_ts(value)
                value = format_ts(stamp)
            fields.append(f"{key} = ?")
            params.append(value)

        if entity_kind == "tasks" and "updated_at" not in patch:
            fields.append("updated_at = ?")
            params.append(format_ts(utc_now()))

        conn = self._get_conn()
        try:
            # Read and write under one lock so a concurrent writer cannot slip in between.
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (str(record_id),)).fetchone()
            if row is None:
                conn.rollback()
                raise NotFound(f"{entity_kind} {record_id} not found")

            stored = self._row_stamp(row)
            if stamp is not None and stored is not None and stored > stamp:
                # Older write arriving late: the stored row stays, the caller gets it back.
                conn.rollback()
                logger.info(
                    "Stale update for %s %s ignored (stored=%s, sent=%s)",
                    entity_kind,
                    record_id,
                    format_ts(stored),
                    format_ts(stamp),
                )
                return self._row_to_record(row)

            if fields:
                conn.execute(
                    f"UPDATE {table} SET {', '.join(fields)} WHERE id = ?",
                    (*params, str(record_id)),
                )
            conn.commit()
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (str(record_id),)).fetchone()
        finally:
            conn.close()

        if row is None:
            raise NotFound(f"{entity_kind} {record_id} not found")
        return self._row_to_record(row)

    @staticmethod
    def _row_stamp(row: sqlite3.Row) -> datetime | None:
        keys = row.keys()
        raw = (row["updated_at"] if "updated_at" in keys else None) or row["created_at"]
        try:
            return parse_ts(raw)
        except ValidationError:
            return None

    def delete_record(self, entity_kind: str, record_id: str) -> bool:
        conn = self._get_conn()
        try:
            cur = conn.execute(f"DELETE FROM {self.table(entity_kind)} WHERE id = ?", (str(record_id),))
            conn.commit()
            deleted = cur.rowcount == 1
        finally:
            conn.close()
        logger.debug("Deleted %s id=%s found=%s", entity_kind, record_id, deleted)
        return deleted


class SqliteStoreWriter:
    """
    Async Store Write API over a TaskStore.

    SQLite failures surface as TransportError; ValidationError and NotFound
    pass through unchanged.
    """

    def __init__(self, store: TaskStore) -> None:
        self._store = store

    async def insert(self, entity_kind: str, fields: dict[str, Any]) -> dict[str, Any]:
        try:
            return self._store.insert_record(entity_kind, fields)
        except sqlite3.Error as e:
            raise TransportError(f"insert into {entity_kind} failed: {e}") from e

    async def update(self, entity_kind: str, record_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        try:
            return self._store.update_record(entity_kind, record_id, patch)
        except sqlite3.Error as e:
            raise TransportError(f"update of {entity_kind} {record_id} failed: {e}") from e

    async def delete(self, entity_kind: str, record_id: str) -> None:
        try:
            self._store.delete_record(entity_kind, record_id)
        except sqlite3.Error as e:
            raise TransportError(f"delete of {entity_kind} {record_id} failed: {e}") from e
