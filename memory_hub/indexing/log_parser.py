"""
Memory Hub — Log Parser
Turns the raw content of a project's memory.json into event records.

Two shapes are accepted:
    {"events": [ {...}, {...} ]}      (what the capture tools write)
    [ {...}, {...} ]                  (bare list)

Batch-level problems (bad JSON, wrong shape) raise ValidationError and
the whole file change is rejected. Record-level problems are reported
per record so the rest of the batch can still be applied.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.errors import ValidationError
from ..core.types import EventType, parse_timestamp


@dataclass
class LogRecord:
    """One validated record from a log file."""
    index: int
    id: str
    timestamp: datetime
    type: EventType
    text: str
    project: Optional[str] = None
    source: str = "file"


@dataclass
class RecordError:
    """A record that failed validation."""
    index: int
    record_id: Optional[str]
    reason: str


@dataclass
class ParsedLog:
    records: List[LogRecord] = field(default_factory=list)
    errors: List[RecordError] = field(default_factory=list)


def load_records(content: str) -> List[Any]:
    """
    Decode file content into a list of raw records.
    Blank content yields an empty list.
    """
    if not content or not content.strip():
        return []
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ValidationError(f"malformed JSON at line {e.lineno} col {e.colno}: {e.msg}") from e

    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        events = data.get("events", [])
        if not isinstance(events, list):
            raise ValidationError("'events' must be a list")
        return events
    raise ValidationError(f"unexpected top-level JSON type: {type(data).__name__}")


def parse_record(index: int, raw: Any) -> LogRecord:
    """Validate a single raw record. Raises ValidationError."""
    if not isinstance(raw, dict):
        raise ValidationError("record is not an object")

    record_id = raw.get("id")
    if isinstance(record_id, (int, float)) and not isinstance(record_id, bool):
        record_id = str(record_id)
    if not isinstance(record_id, str) or not record_id.strip():
        raise ValidationError("missing id")

    try:
        event_type = EventType(raw.get("type"))
    except ValueError:
        raise ValidationError(f"unknown type {raw.get('type')!r}")

    text = raw.get("text")
    if not isinstance(text, str):
        raise ValidationError("text must be a string")

    try:
        timestamp = parse_timestamp(raw.get("timestamp"))
    except (TypeError, ValueError):
        raise ValidationError(f"bad timestamp {raw.get('timestamp')!r}")

    project = raw.get("project")
    if project is not None and not isinstance(project, str):
        raise ValidationError("project must be a string")

    source = raw.get("source") or "file"
    if not isinstance(source, str):
        raise ValidationError("source must be a string")

    return LogRecord(
        index=index,
        id=record_id.strip(),
        timestamp=timestamp,
        type=event_type,
        text=text,
        project=project.strip() if project else None,
        source=source,
    )


def parse_log(content: str) -> ParsedLog:
    """
    Parse a whole file.

    Returns:
        ParsedLog. Records are de-duplicated by id; the last occurrence wins.

    Raises:
        ValidationError: if the file as a whole cannot be parsed.
    """
    raw_records = load_records(content)
    by_id: Dict[str, LogRecord] = {}
    errors: List[RecordError] = []

    for index, raw in enumerate(raw_records):
        try:
            record = parse_record(index, raw)
        except ValidationError as e:
            rid = raw.get("id") if isinstance(raw, dict) else None
            errors.append(RecordError(index=index, record_id=_as_str(rid), reason=str(e)))
            continue
        # Later duplicate replaces the earlier one but keeps file order
        by_id.pop(record.id, None)
        by_id[record.id] = record

    return ParsedLog(records=list(by_id.values()), errors=errors)


def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)
