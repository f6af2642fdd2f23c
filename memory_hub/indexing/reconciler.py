"""
Memory Hub — Event Reconciler
Folds one log-file change into the event store.

Pipeline per change:
    read file → parse_log → resolve project per record → upsert all
    records in ONE transaction → one "events:updated" signal

A malformed file is rejected as a whole with zero writes. A bad record
(validation failure, unknown project) is skipped with a warning and the
rest of the batch still commits. Running the same content twice leaves
the store unchanged.
"""
import logging
from pathlib import Path
from typing import Dict, Optional

from ..core.errors import NotFoundError, ValidationError
from ..core.fanout import Fanout
from ..core.types import (
    MemoryEvent, Project, ReconcileResult, ReconcileStatus, SkippedRecord,
    TOPIC_EVENTS_UPDATED, UpsertOutcome,
)
from ..storage.event_store import EventStore
from .log_parser import LogRecord, parse_log

logger = logging.getLogger(__name__)


class EventReconciler:
    """
    Idempotent file → store reconciliation.

    Blocking (file IO + SQLite). Async callers run it via asyncio.to_thread.
    """

    def __init__(self, store: EventStore, fanout: Optional[Fanout] = None):
        self.store = store
        self.fanout = fanout

    def reconcile_file(self, path: str, project: Project) -> ReconcileResult:
        """
        Read `path` and reconcile it into `project`.
        Missing or unreadable files are skipped without touching the store.
        """
        try:
            content = Path(path).read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info(f"Log file gone, skipping: {path}")
            return ReconcileResult(status=ReconcileStatus.SKIPPED, source_path=path,
                                   error="file not found")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Cannot read {path}: {e}")
            return ReconcileResult(status=ReconcileStatus.SKIPPED, source_path=path,
                                   error=str(e))
        return self.reconcile_content(content, project, source_path=path)

    def reconcile_content(
        self,
        content: str,
        project: Project,
        source_path: Optional[str] = None,
    ) -> ReconcileResult:
        """
        Reconcile raw log content. `project` owns records that do not name one.

        Raises:
            FatalStoreError: the store failed; nothing from this batch was kept.
        """
        try:
            parsed = parse_log(content)
        except ValidationError as e:
            logger.warning(f"Rejected {source_path or 'log content'}: {e}")
            return ReconcileResult(status=ReconcileStatus.INVALID,
                                   source_path=source_path, error=str(e))

        result = ReconcileResult(status=ReconcileStatus.APPLIED, source_path=source_path)
        for err in parsed.errors:
            logger.warning(f"Skipping record #{err.index} ({err.record_id}): {err.reason}")
            result.skipped.append(SkippedRecord(err.index, err.record_id, err.reason))

        if not parsed.records:
            if not parsed.errors:
                result.status = ReconcileStatus.EMPTY
            return result

        resolved: Dict[str, Optional[Project]] = {}

        with self.store.transaction() as tx:
            for record in parsed.records:
                try:
                    owner = self._resolve_project(record, project, resolved)
                    event = self._to_event(record, owner)
                    with tx.savepoint():
                        outcome = tx.upsert_event(event)
                except (NotFoundError, ValidationError) as e:
                    logger.warning(f"Skipping record {record.id}: {e}")
                    result.skipped.append(SkippedRecord(record.index, record.id, str(e)))
                    continue

                if outcome is UpsertOutcome.INSERTED:
                    result.inserted.append(event)
                elif outcome is UpsertOutcome.UPDATED:
                    result.updated.append(event)
                else:
                    result.unchanged.append(event.id)

        logger.info(
            f"Reconciled {source_path or project.name}: "
            f"{len(result.inserted)} new, {len(result.updated)} updated, "
            f"{len(result.unchanged)} unchanged, {len(result.skipped)} skipped"
        )

        if result.changed and self.fanout is not None:
            self.fanout.publish(TOPIC_EVENTS_UPDATED, {
                "project_id": project.id,
                **result.summary(),
            })
        return result

    # ─── Helpers ─────────────────────────────────────────────────────────

    def _resolve_project(
        self,
        record: LogRecord,
        default: Project,
        cache: Dict[str, Optional[Project]],
    ) -> Project:
        """Map a record's project name to a registered project."""
        name = record.project
        if not name or name == default.name:
            return default
        if name not in cache:
            cache[name] = self.store.get_project_by_name(name)
        found = cache[name]
        if found is None:
            raise NotFoundError(f"unknown project {name!r}")
        return found

    @staticmethod
    def _to_event(record: LogRecord, project: Project) -> MemoryEvent:
        return MemoryEvent(
            id=record.id,
            timestamp=record.timestamp,
            type=record.type,
            text=record.text,
            project_id=project.id,
            source=record.source,
        )
