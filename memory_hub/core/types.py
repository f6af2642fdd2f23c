"""
Memory Hub — Core Data Types
All shared dataclasses and enums used across the system.
This is the foundational contract that all components build on.
"""
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
from enum import Enum
from datetime import datetime, timezone
import uuid
# ─── Enums ───────────────────────────────────────────────────────────────────
class EventType(Enum):
    NOTE = "note"
    IDEA = "idea"
    TASK_UPDATE = "task_update"
    NEW_BUG = "new_bug"
    BUG_UPDATE = "bug_update"
    NEW_FEAT = "new_feat"
    SPIKE_PROGRESS = "spike_progress"
    SUMMARY = "summary"
    REPORT = "report"
    GIT_COMMIT = "git_commit"
    # Written by automation (trigger/schedule actions)
    SYSTEM = "system"
class ActionKind(Enum):
    WEBHOOK = "webhook"
    COMMAND = "command"
    ADD_EVENT = "add_event"
    DAILY_SUMMARY = "daily_summary"
    GENERATE_REPORT = "generate_report"
    EMBED_BACKFILL = "embed_backfill"
# One bounded provider call per project; no overall deadline on the action
PER_PROJECT_ACTIONS = frozenset({ActionKind.DAILY_SUMMARY, ActionKind.GENERATE_REPORT})
def action_deadline(kind: ActionKind, timeout: float) -> Optional[float]:
    """Outer deadline for one action run, above the executor's own per-call limit."""
    if kind in PER_PROJECT_ACTIONS:
        return None
    return timeout + 5.0
# Bumped whenever an action kind's payload contract changes.
ACTION_INTERFACE_VERSION = 1
class UpsertOutcome(Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
class ReconcileStatus(Enum):
    APPLIED = "applied"      # Transaction committed (possibly with zero changes)
    EMPTY = "empty"          # File blank or holds no events
    INVALID = "invalid"      # Malformed content, whole batch rejected
    SKIPPED = "skipped"      # File missing/unreadable, nothing attempted
# Fanout topics
TOPIC_EVENTS_UPDATED = "events:updated"
TOPIC_TRIGGER_FIRED = "triggers:fired"
TOPIC_SCHEDULE_RAN = "schedules:ran"
TOPIC_PROJECTS_CHANGED = "projects:changed"
TOPIC_INTAKE_HALTED = "intake:halted"
# ─── Time Helpers ────────────────────────────────────────────────────────────
def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)
def parse_timestamp(value: Any) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.
    Accepts a trailing 'Z'. Naive values are taken as UTC.
    Raises ValueError on anything else.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"not a timestamp: {value!r}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
def format_timestamp(dt: datetime) -> str:
    """Canonical storage form: aware UTC ISO string."""
    return parse_timestamp(dt).isoformat()
# ─── Core Data Structures ────────────────────────────────────────────────────
@dataclass
class Project:
    """A registered root directory whose log file is watched."""
    path: str
    name: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    watch_enabled: bool = True
    created_at: datetime = field(default_factory=utc_now)
@dataclass
class MemoryEvent:
    """
    Atomic record of project activity.
    Identity is `id` alone; everything else is last-writer-wins content.
    """
    id: str
    timestamp: datetime
    type: EventType
    text: str
    project_id: str
    source: str = "file"
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    def content_key(self) -> tuple:
        """Fields compared to decide whether an upsert changes anything."""
        return (
            format_timestamp(self.timestamp),
            self.type.value,
            self.text,
            self.project_id,
            self.source,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": format_timestamp(self.timestamp),
            "type": self.type.value,
            "text": self.text,
            "project_id": self.project_id,
            "source": self.source,
            "created_at": format_timestamp(self.created_at),
        }
@dataclass
class EmbeddingRecord:
    """Vector for one event, tagged with the model that produced it."""
    event_id: str
    vector: List[float]
    model: str
    created_at: datetime = field(default_factory=utc_now)

    @property
    def dimensions(self) -> int:
        return len(self.vector)
@dataclass
class Action:
    """What a trigger or schedule does when it fires."""
    kind: ActionKind
    payload: Dict[str, Any] = field(default_factory=dict)
@dataclass
class ActionOutcome:
    """Result reported by an ActionExecutor."""
    success: bool
    detail: str = ""
    created_event_ids: List[str] = field(default_factory=list)
@dataclass
class Trigger:
    """Rule evaluated against newly inserted events."""
    name: str
    action: Action
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    project_id: Optional[str] = None
    event_type: Optional[EventType] = None
    pattern: Optional[str] = None
    enabled: bool = True
    last_run: Optional[datetime] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
@dataclass
class ScheduleTask:
    """Rule executed on a wall-clock cadence, independent of events."""
    name: str
    cron: str
    action: Action
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    enabled: bool = True
    last_run: Optional[datetime] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
# ─── Batch / Retrieval Results ───────────────────────────────────────────────

@dataclass
class SkippedRecord:
    """A log record that was not applied, and why."""
    index: int
    record_id: Optional[str]
    reason: str
@dataclass
class ReconcileResult:
    """Outcome of folding one log-file change into the store."""
    status: ReconcileStatus
    source_path: Optional[str] = None
    inserted: List[MemoryEvent] = field(default_factory=list)
    updated: List[MemoryEvent] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    skipped: List[SkippedRecord] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def changed(self) -> bool:
        return bool(self.inserted or self.updated)

    def summary(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "path": self.source_path,
            "inserted": len(self.inserted),
            "updated": len(self.updated),
            "unchanged": len(self.unchanged),
            "skipped": len(self.skipped),
        }
@dataclass
class RetrievalHit:
    event: MemoryEvent
    score: float
@dataclass
class RetrievalResult:
    """Ranked events for one query, best first."""
    query: str
    hits: List[RetrievalHit] = field(default_factory=list)
    model: Optional[str] = None
    search_time_ms: float = 0.0

    @property
    def found(self) -> bool:
        return bool(self.hits)
@dataclass
class Answer:
    """Natural-language answer plus the excerpts it was grounded on."""
    query: str
    text: str
    hits: List[RetrievalHit] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
