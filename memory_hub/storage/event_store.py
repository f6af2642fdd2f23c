"""
Memory Hub — Event Store
SQLite-backed canonical state: projects, events, embeddings, and
trigger/schedule definitions.

All mutations go through `transaction()`, the unit of work: one write
connection behind a lock, `BEGIN IMMEDIATE` … `COMMIT`, rollback on any
error. Watcher callbacks, scheduler ticks and API-driven writes are
serialized here rather than by their callers. Reads use per-thread
connections (WAL), so they never wait on a writer.
"""
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..core.errors import FatalStoreError, NotFoundError, ValidationError
from ..core.types import (
    EmbeddingRecord, EventType, MemoryEvent, Project, ScheduleTask, Trigger,
    UpsertOutcome, format_timestamp, utc_now,
)
from .schema import (
    connect, init_database, serialize_event, deserialize_event,
    deserialize_project, deserialize_trigger, deserialize_schedule,
    deserialize_embedding, deserialize_embedding_record, serialize_embedding,
)

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = (
    "id, timestamp, type, text, project_id, source, created_at, updated_at"
)


class UnitOfWork:
    """
    Write operations available inside one store transaction.
    Never constructed directly; obtained from EventStore.transaction().
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._savepoints = 0

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        """
        Nested scope whose writes roll back alone if it raises.
        Integrity violations surface as ValidationError so the caller can
        skip one record and keep the rest of the transaction.
        """
        self._savepoints += 1
        name = f"sp_{self._savepoints}"
        self.conn.execute(f"SAVEPOINT {name}")
        try:
            yield
        except sqlite3.IntegrityError as e:
            self.conn.execute(f"ROLLBACK TO {name}")
            self.conn.execute(f"RELEASE {name}")
            raise ValidationError(str(e)) from e
        except BaseException:
            self.conn.execute(f"ROLLBACK TO {name}")
            self.conn.execute(f"RELEASE {name}")
            raise
        self.conn.execute(f"RELEASE {name}")

    # ─── Events ──────────────────────────────────────────────────────────

    def get_event(self, event_id: str) -> Optional[MemoryEvent]:
        row = self.conn.execute(
            "SELECT * FROM events WHERE id = ?", (event_id,)
        ).fetchone()
        return deserialize_event(row) if row else None

    def upsert_event(self, event: MemoryEvent) -> UpsertOutcome:
        """
        Last-writer-wins upsert keyed on event.id.
        Identical content is a no-op. A text change drops the stale embedding.
        """
        existing = self.get_event(event.id)
        if existing is None:
            self.conn.execute(
                f"INSERT INTO events ({_EVENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                serialize_event(event),
            )
            return UpsertOutcome.INSERTED

        if existing.content_key() == event.content_key():
            return UpsertOutcome.UNCHANGED

        now = utc_now()
        self.conn.execute(
            """UPDATE events
               SET timestamp = ?, type = ?, text = ?, project_id = ?,
                   source = ?, updated_at = ?
               WHERE id = ?""",
            (
                format_timestamp(event.timestamp),
                event.type.value,
                event.text,
                event.project_id,
                event.source,
                format_timestamp(now),
                event.id,
            ),
        )
        if existing.text != event.text:
            self.delete_embedding(event.id)
        event.created_at = existing.created_at
        event.updated_at = now
        return UpsertOutcome.UPDATED

    def insert_event(self, event: MemoryEvent) -> None:
        """Insert a brand-new event. Raises ValidationError if the id exists."""
        if self.get_event(event.id) is not None:
            raise ValidationError(f"event {event.id} already exists")
        self.conn.execute(
            f"INSERT INTO events ({_EVENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            serialize_event(event),
        )

    # ─── Embeddings ──────────────────────────────────────────────────────

    def save_embedding(self, record: EmbeddingRecord) -> None:
        self.conn.execute(
            """INSERT INTO event_embeddings
               (event_id, vector, model, dimensions, created_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(event_id) DO UPDATE SET
                   vector = excluded.vector,
                   model = excluded.model,
                   dimensions = excluded.dimensions,
                   created_at = excluded.created_at""",
            (
                record.event_id,
                serialize_embedding(record.vector),
                record.model,
                record.dimensions,
                format_timestamp(record.created_at),
            ),
        )

    def delete_embedding(self, event_id: str) -> None:
        self.conn.execute(
            "DELETE FROM event_embeddings WHERE event_id = ?", (event_id,)
        )

    # ─── Rule Bookkeeping ────────────────────────────────────────────────

    def record_trigger_run(
        self,
        trigger_id: str,
        finished_at: datetime,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        self._record_run("triggers", trigger_id, finished_at, status, error)

    def record_schedule_run(
        self,
        task_id: str,
        finished_at: datetime,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        self._record_run("schedules", task_id, finished_at, status, error)

    def _record_run(
        self,
        table: str,
        rule_id: str,
        finished_at: datetime,
        status: str,
        error: Optional[str],
    ) -> None:
        # last_run never moves backwards
        ts = format_timestamp(finished_at)
        self.conn.execute(
            f"""UPDATE {table}
                SET last_run = CASE
                        WHEN last_run IS NULL OR last_run < ? THEN ?
                        ELSE last_run
                    END,
                    last_status = ?,
                    last_error = ?
                WHERE id = ?""",
            (ts, ts, status, error, rule_id),
        )


class EventStore:
    """
    The canonical relational store.
    Implements the project registry, event CRUD, keyword listing,
    embedding persistence, and rule definitions.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        try:
            self._write_conn: Optional[sqlite3.Connection] = init_database(db_path)
        except sqlite3.DatabaseError as e:
            raise FatalStoreError(f"cannot open store at {db_path}: {e}") from e
        self._write_lock = threading.RLock()
        self._local = threading.local()
        self._readers: List[sqlite3.Connection] = []
        self._readers_lock = threading.Lock()
        self._closed = False

    # ─── Unit of Work ────────────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator[UnitOfWork]:
        """
        Serialized write transaction. Commits on success; rolls back and
        re-raises on failure. sqlite integrity errors surface as
        ValidationError, every other sqlite error as FatalStoreError.
        """
        with self._write_lock:
            conn = self._require_writer()
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.DatabaseError as e:
                raise FatalStoreError(f"cannot begin transaction: {e}") from e
            try:
                yield UnitOfWork(conn)
            except sqlite3.IntegrityError as e:
                self._rollback(conn)
                raise ValidationError(str(e)) from e
            except sqlite3.DatabaseError as e:
                self._rollback(conn)
                raise FatalStoreError(f"store write failed: {e}") from e
            except BaseException:
                self._rollback(conn)
                raise
            try:
                conn.execute("COMMIT")
            except sqlite3.DatabaseError as e:
                self._rollback(conn)
                raise FatalStoreError(f"commit failed: {e}") from e

    def _rollback(self, conn: sqlite3.Connection) -> None:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.DatabaseError:
            logger.exception("Rollback failed")

    def _require_writer(self) -> sqlite3.Connection:
        if self._closed or self._write_conn is None:
            raise FatalStoreError("event store is closed")
        return self._write_conn

    def _reader(self) -> sqlite3.Connection:
        """Per-thread read connection."""
        if self._closed:
            raise FatalStoreError("event store is closed")
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = connect(self.db_path)
            except sqlite3.DatabaseError as e:
                raise FatalStoreError(f"cannot open reader: {e}") from e
            self._local.conn = conn
            with self._readers_lock:
                self._readers.append(conn)
        return conn

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            return self._reader().execute(sql, params).fetchall()
        except sqlite3.DatabaseError as e:
            raise FatalStoreError(f"store read failed: {e}") from e

    def _query_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        rows = self._query(sql, params)
        return rows[0] if rows else None

    # ─── Project Registry ────────────────────────────────────────────────

    def add_project(self, path: str, name: str, watch_enabled: bool = True) -> Project:
        """Register a project. Raises ValidationError on duplicate path/name."""
        project = Project(path=path, name=name, watch_enabled=watch_enabled)
        with self.transaction() as tx:
            tx.conn.execute(
                """INSERT INTO projects (id, path, name, watch_enabled, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    project.id,
                    project.path,
                    project.name,
                    1 if watch_enabled else 0,
                    format_timestamp(project.created_at),
                ),
            )
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        row = self._query_one("SELECT * FROM projects WHERE id = ?", (project_id,))
        return deserialize_project(row) if row else None

    def get_project_by_name(self, name: str) -> Optional[Project]:
        row = self._query_one("SELECT * FROM projects WHERE name = ?", (name,))
        return deserialize_project(row) if row else None

    def get_project_by_path(self, path: str) -> Optional[Project]:
        row = self._query_one("SELECT * FROM projects WHERE path = ?", (path,))
        return deserialize_project(row) if row else None

    def list_projects(self, watch_only: bool = False) -> List[Project]:
        sql = "SELECT * FROM projects"
        if watch_only:
            sql += " WHERE watch_enabled = 1"
        sql += " ORDER BY created_at, rowid"
        return [deserialize_project(r) for r in self._query(sql)]

    def set_project_watch(self, project_id: str, enabled: bool) -> Project:
        with self.transaction() as tx:
            cur = tx.conn.execute(
                "UPDATE projects SET watch_enabled = ? WHERE id = ?",
                (1 if enabled else 0, project_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"project {project_id} not found")
        return self.get_project(project_id)

    def delete_project(self, project_id: str) -> bool:
        """Delete a project; its events, embeddings and scoped triggers cascade."""
        with self.transaction() as tx:
            cur = tx.conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            return cur.rowcount > 0

    # ─── Events ──────────────────────────────────────────────────────────

    def get_event(self, event_id: str) -> Optional[MemoryEvent]:
        row = self._query_one("SELECT * FROM events WHERE id = ?", (event_id,))
        return deserialize_event(row) if row else None

    def get_events(self, event_ids: List[str]) -> List[MemoryEvent]:
        if not event_ids:
            return []
        placeholders = ",".join("?" for _ in event_ids)
        rows = self._query(
            f"SELECT * FROM events WHERE id IN ({placeholders})", tuple(event_ids)
        )
        by_id = {r["id"]: deserialize_event(r) for r in rows}
        return [by_id[eid] for eid in event_ids if eid in by_id]

    def list_events(
        self,
        project_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        query: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
        include_git: bool = True,
        ascending: bool = False,
        only_git: bool = False,
    ) -> List[MemoryEvent]:
        """
        Filtered listing with keyword (substring) match. Works whether or
        not embeddings exist. `only_git` keeps just commit events.
        """
        sql = "SELECT * FROM events WHERE 1=1"
        params: list = []
        if project_id:
            sql += " AND project_id = ?"
            params.append(project_id)
        if event_type:
            sql += " AND type = ?"
            params.append(event_type.value)
        if query:
            sql += " AND text LIKE ?"
            params.append(f"%{query}%")
        if start:
            sql += " AND timestamp >= ?"
            params.append(format_timestamp(start))
        if end:
            sql += " AND timestamp < ?"
            params.append(format_timestamp(end))
        if only_git:
            sql += " AND (type = 'git_commit' OR source = 'git')"
        elif not include_git:
            sql += " AND type != 'git_commit' AND source != 'git'"
        sql += " ORDER BY timestamp " + ("ASC" if ascending else "DESC")
        sql += " LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return [deserialize_event(r) for r in self._query(sql, tuple(params))]

    def count_events(self, project_id: Optional[str] = None) -> int:
        if project_id:
            row = self._query_one(
                "SELECT COUNT(*) AS n FROM events WHERE project_id = ?", (project_id,)
            )
        else:
            row = self._query_one("SELECT COUNT(*) AS n FROM events")
        return row["n"] if row else 0

    def insert_event(self, event: MemoryEvent) -> MemoryEvent:
        """Insert one new event in its own transaction."""
        with self.transaction() as tx:
            tx.insert_event(event)
        return event

    def all_event_ids(self) -> List[str]:
        return [r["id"] for r in self._query("SELECT id FROM events ORDER BY timestamp")]

    # ─── Embeddings ──────────────────────────────────────────────────────

    def save_embedding(self, record: EmbeddingRecord) -> None:
        with self.transaction() as tx:
            if tx.get_event(record.event_id) is None:
                raise NotFoundError(f"event {record.event_id} no longer exists")
            tx.save_embedding(record)

    def get_embedding(self, event_id: str) -> Optional[EmbeddingRecord]:
        row = self._query_one(
            "SELECT * FROM event_embeddings WHERE event_id = ?", (event_id,)
        )
        return deserialize_embedding_record(row) if row else None

    def events_missing_embeddings(self) -> List[str]:
        """IDs of events that have no embedding record at all."""
        rows = self._query(
            """SELECT e.id FROM events e
               LEFT JOIN event_embeddings ee ON ee.event_id = e.id
               WHERE ee.event_id IS NULL
               ORDER BY e.timestamp"""
        )
        return [r["id"] for r in rows]

    def embeddings_in_scope(
        self,
        project_id: Optional[str] = None,
        model: Optional[str] = None,
    ) -> List[Tuple[MemoryEvent, List[float]]]:
        """Every (event, vector) pair, optionally limited to a project/model."""
        sql = """SELECT e.*, ee.vector AS vector
                 FROM event_embeddings ee
                 JOIN events e ON e.id = ee.event_id
                 WHERE 1=1"""
        params: list = []
        if project_id:
            sql += " AND e.project_id = ?"
            params.append(project_id)
        if model:
            sql += " AND ee.model = ?"
            params.append(model)
        return [
            (deserialize_event(r), deserialize_embedding(r["vector"]))
            for r in self._query(sql, tuple(params))
        ]

    def count_embeddings(self) -> int:
        row = self._query_one("SELECT COUNT(*) AS n FROM event_embeddings")
        return row["n"] if row else 0

    # ─── Triggers ────────────────────────────────────────────────────────

    def create_trigger(self, trigger: Trigger) -> Trigger:
        with self.transaction() as tx:
            tx.conn.execute(
                """INSERT INTO triggers
                   (id, name, project_id, event_type, pattern, action_kind,
                    action_payload, enabled, last_run, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, ?)""",
                (
                    trigger.id,
                    trigger.name,
                    trigger.project_id,
                    trigger.event_type.value if trigger.event_type else None,
                    trigger.pattern,
                    trigger.action.kind.value,
                    json.dumps(trigger.action.payload),
                    1 if trigger.enabled else 0,
                    format_timestamp(trigger.created_at),
                ),
            )
        return trigger

    def update_trigger(self, trigger: Trigger) -> Trigger:
        with self.transaction() as tx:
            cur = tx.conn.execute(
                """UPDATE triggers
                   SET name = ?, project_id = ?, event_type = ?, pattern = ?,
                       action_kind = ?, action_payload = ?, enabled = ?
                   WHERE id = ?""",
                (
                    trigger.name,
                    trigger.project_id,
                    trigger.event_type.value if trigger.event_type else None,
                    trigger.pattern,
                    trigger.action.kind.value,
                    json.dumps(trigger.action.payload),
                    1 if trigger.enabled else 0,
                    trigger.id,
                ),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"trigger {trigger.id} not found")
        return trigger

    def get_trigger(self, trigger_id: str) -> Optional[Trigger]:
        row = self._query_one("SELECT * FROM triggers WHERE id = ?", (trigger_id,))
        return deserialize_trigger(row) if row else None

    def list_triggers(self, enabled_only: bool = False) -> List[Trigger]:
        """Triggers in creation order."""
        sql = "SELECT * FROM triggers"
        if enabled_only:
            sql += " WHERE enabled = 1"
        sql += " ORDER BY rowid"
        return [deserialize_trigger(r) for r in self._query(sql)]

    def delete_trigger(self, trigger_id: str) -> bool:
        with self.transaction() as tx:
            cur = tx.conn.execute("DELETE FROM triggers WHERE id = ?", (trigger_id,))
            return cur.rowcount > 0

    def record_trigger_run(
        self, trigger_id: str, finished_at: datetime, status: str,
        error: Optional[str] = None,
    ) -> None:
        with self.transaction() as tx:
            tx.record_trigger_run(trigger_id, finished_at, status, error)

    # ─── Schedules ───────────────────────────────────────────────────────

    def create_schedule(self, task: ScheduleTask) -> ScheduleTask:
        with self.transaction() as tx:
            tx.conn.execute(
                """INSERT INTO schedules
                   (id, name, cron, action_kind, action_payload, enabled,
                    last_run, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    task.id,
                    task.name,
                    task.cron,
                    task.action.kind.value,
                    json.dumps(task.action.payload),
                    1 if task.enabled else 0,
                    format_timestamp(task.last_run) if task.last_run else None,
                    format_timestamp(task.created_at),
                ),
            )
        return task

    def update_schedule(self, task: ScheduleTask) -> ScheduleTask:
        with self.transaction() as tx:
            cur = tx.conn.execute(
                """UPDATE schedules
                   SET name = ?, cron = ?, action_kind = ?, action_payload = ?,
                       enabled = ?
                   WHERE id = ?""",
                (
                    task.name,
                    task.cron,
                    task.action.kind.value,
                    json.dumps(task.action.payload),
                    1 if task.enabled else 0,
                    task.id,
                ),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"schedule {task.id} not found")
        return task

    def get_schedule(self, task_id: str) -> Optional[ScheduleTask]:
        row = self._query_one("SELECT * FROM schedules WHERE id = ?", (task_id,))
        return deserialize_schedule(row) if row else None

    def list_schedules(self, enabled_only: bool = False) -> List[ScheduleTask]:
        sql = "SELECT * FROM schedules"
        if enabled_only:
            sql += " WHERE enabled = 1"
        sql += " ORDER BY rowid"
        return [deserialize_schedule(r) for r in self._query(sql)]

    def delete_schedule(self, task_id: str) -> bool:
        with self.transaction() as tx:
            cur = tx.conn.execute("DELETE FROM schedules WHERE id = ?", (task_id,))
            return cur.rowcount > 0

    def record_schedule_run(
        self, task_id: str, finished_at: datetime, status: str,
        error: Optional[str] = None,
    ) -> None:
        with self.transaction() as tx:
            tx.record_schedule_run(task_id, finished_at, status, error)

    # ─── Stats / Lifecycle ───────────────────────────────────────────────

    def get_stats(self) -> Dict[str, Any]:
        def _count(table: str) -> int:
            row = self._query_one(f"SELECT COUNT(*) AS n FROM {table}")
            return row["n"] if row else 0

        return {
            "projects": _count("projects"),
            "events": _count("events"),
            "embeddings": _count("event_embeddings"),
            "triggers": _count("triggers"),
            "schedules": _count("schedules"),
        }

    def close(self):
        """Close every connection. Checkpoints the WAL first."""
        with self._write_lock:
            if self._closed:
                return
            self._closed = True
            with self._readers_lock:
                for conn in self._readers:
                    try:
                        conn.close()
                    except sqlite3.Error:
                        pass
                self._readers.clear()
            if self._write_conn is not None:
                try:
                    self._write_conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
                except sqlite3.Error:
                    pass  # Non-fatal: DB may already be closed or read-only
                self._write_conn.close()
                self._write_conn = None
