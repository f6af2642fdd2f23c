"""
Memory Hub — Database Schema
SQLite table definitions, initialization, and serialization helpers.
"""
import sqlite3
import json
import struct
from typing import List, Optional
from pathlib import Path
from ..core.types import (
    Project, MemoryEvent, EmbeddingRecord, Trigger, ScheduleTask, Action,
    ActionKind, EventType, parse_timestamp, format_timestamp,
)
SCHEMA_VERSION = 2
# ─── Schema SQL ──────────────────────────────────────────────────────────────
SCHEMA_SQL = """
-- Project registry: one row per watched root directory
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    path TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL UNIQUE,
    watch_enabled INTEGER NOT NULL DEFAULT 1,
    created_at DATETIME NOT NULL
);
-- Canonical events, reconciled from per-project log files
CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    timestamp DATETIME NOT NULL,
    type TEXT NOT NULL,
    text TEXT NOT NULL,
    project_id TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'file',
    created_at DATETIME NOT NULL,
    updated_at DATETIME,
    CONSTRAINT fk_events_project
        FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_events_project_id ON events(project_id);
CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_events_type ON events(type);
-- One vector per event; float32 blob
CREATE TABLE IF NOT EXISTS event_embeddings (
    event_id TEXT PRIMARY KEY,
    vector BLOB NOT NULL,
    model TEXT NOT NULL,
    dimensions INTEGER NOT NULL,
    created_at DATETIME NOT NULL,
    FOREIGN KEY (event_id) REFERENCES events(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_event_embeddings_model ON event_embeddings(model);
-- Event-driven automation rules
CREATE TABLE IF NOT EXISTS triggers (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    project_id TEXT,
    event_type TEXT,
    pattern TEXT,
    action_kind TEXT NOT NULL,
    action_payload TEXT NOT NULL DEFAULT '{}',
    enabled INTEGER NOT NULL DEFAULT 1,
    last_run DATETIME,
    created_at DATETIME NOT NULL,
    FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
);
-- Wall-clock automation rules
CREATE TABLE IF NOT EXISTS schedules (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    cron TEXT NOT NULL,
    action_kind TEXT NOT NULL,
    action_payload TEXT NOT NULL DEFAULT '{}',
    enabled INTEGER NOT NULL DEFAULT 1,
    last_run DATETIME,
    created_at DATETIME NOT NULL
);
"""
# ─── Database Initialization ─────────────────────────────────────────────────
def connect(db_path: str) -> sqlite3.Connection:
    """
    Open a connection configured for the store.
    Autocommit mode: transactions are opened explicitly by the unit of work.
    """
    conn = sqlite3.connect(
        db_path,
        timeout=30.0,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=30000")
    return conn
def init_database(db_path: str) -> sqlite3.Connection:
    """
    Create database and tables if they don't exist.
    Returns an open connection.
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = connect(db_path)
    conn.execute("PRAGMA journal_mode=WAL")      # Readers never block the writer
    conn.executescript(SCHEMA_SQL)
    _safe_add_columns(conn)
    conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")
    return conn


def _safe_add_columns(conn: sqlite3.Connection):
    """Add new columns to existing tables (idempotent)."""
    additions = [
        # v2: outcome of the most recent firing
        ("triggers", "last_status", "TEXT"),
        ("triggers", "last_error", "TEXT"),
        ("schedules", "last_status", "TEXT"),
        ("schedules", "last_error", "TEXT"),
    ]
    for table, column, col_type in additions:
        try:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")
        except sqlite3.OperationalError:
            pass  # Column already exists
# ─── Serialization ───────────────────────────────────────────────────────────
def _opt_ts(value) -> Optional[str]:
    return format_timestamp(value) if value else None
def _opt_dt(value):
    return parse_timestamp(value) if value else None
def deserialize_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        path=row["path"],
        name=row["name"],
        watch_enabled=bool(row["watch_enabled"]),
        created_at=parse_timestamp(row["created_at"]),
    )
def serialize_event(event: MemoryEvent) -> tuple:
    """Convert MemoryEvent to a tuple for SQL INSERT."""
    return (
        event.id,
        format_timestamp(event.timestamp),
        event.type.value,
        event.text,
        event.project_id,
        event.source,
        format_timestamp(event.created_at),
        _opt_ts(event.updated_at),
    )
def deserialize_event(row: sqlite3.Row) -> MemoryEvent:
    """Convert a database row back to a MemoryEvent."""
    return MemoryEvent(
        id=row["id"],
        timestamp=parse_timestamp(row["timestamp"]),
        type=EventType(row["type"]),
        text=row["text"],
        project_id=row["project_id"],
        source=row["source"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=_opt_dt(row["updated_at"]),
    )
def deserialize_trigger(row: sqlite3.Row) -> Trigger:
    return Trigger(
        id=row["id"],
        name=row["name"],
        project_id=row["project_id"],
        event_type=EventType(row["event_type"]) if row["event_type"] else None,
        pattern=row["pattern"],
        action=Action(
            kind=ActionKind(row["action_kind"]),
            payload=json.loads(row["action_payload"] or "{}"),
        ),
        enabled=bool(row["enabled"]),
        last_run=_opt_dt(row["last_run"]),
        last_status=row["last_status"],
        last_error=row["last_error"],
        created_at=parse_timestamp(row["created_at"]),
    )
def deserialize_schedule(row: sqlite3.Row) -> ScheduleTask:
    return ScheduleTask(
        id=row["id"],
        name=row["name"],
        cron=row["cron"],
        action=Action(
            kind=ActionKind(row["action_kind"]),
            payload=json.loads(row["action_payload"] or "{}"),
        ),
        enabled=bool(row["enabled"]),
        last_run=_opt_dt(row["last_run"]),
        last_status=row["last_status"],
        last_error=row["last_error"],
        created_at=parse_timestamp(row["created_at"]),
    )
def deserialize_embedding_record(row: sqlite3.Row) -> EmbeddingRecord:
    return EmbeddingRecord(
        event_id=row["event_id"],
        vector=deserialize_embedding(row["vector"]),
        model=row["model"],
        created_at=parse_timestamp(row["created_at"]),
    )
def serialize_embedding(embedding: List[float]) -> bytes:
    """Pack a float list into compact binary (float32)."""
    return struct.pack(f"{len(embedding)}f", *embedding)
def deserialize_embedding(blob: bytes) -> List[float]:
    """Unpack binary back to float list."""
    count = len(blob) // 4  # 4 bytes per float32
    return list(struct.unpack(f"{count}f", blob))
