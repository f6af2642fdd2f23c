"""
Tests for the event store: unit of work, project registry, LWW upserts,
embeddings, rule bookkeeping and cascades.
"""
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from memory_hub.core.errors import FatalStoreError, NotFoundError, ValidationError
from memory_hub.core.types import (
    Action, ActionKind, EmbeddingRecord, EventType, MemoryEvent, ScheduleTask,
    Trigger, UpsertOutcome,
)
from memory_hub.storage.event_store import EventStore
from memory_hub.storage.schema import SCHEMA_VERSION

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _make_store():
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    return EventStore(db_path), db_path


def _safe_cleanup(store, db_path):
    """Close DB and remove files (Windows-safe)."""
    try:
        store.close()
    except Exception:
        pass
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except OSError:
            pass


def _event(event_id, project_id, text="hello world", event_type=EventType.NOTE,
           timestamp=T0, source="file"):
    return MemoryEvent(
        id=event_id,
        timestamp=timestamp,
        type=event_type,
        text=text,
        project_id=project_id,
        source=source,
    )


def _upsert(store, event):
    with store.transaction() as tx:
        return tx.upsert_event(event)


def test_project_registry():
    store, db_path = _make_store()
    try:
        p = store.add_project("/tmp/demo", "demo")
        assert store.get_project(p.id).name == "demo"
        assert store.get_project_by_name("demo").id == p.id
        assert store.get_project_by_path("/tmp/demo").id == p.id
        assert [x.id for x in store.list_projects()] == [p.id]

        with pytest.raises(ValidationError):
            store.add_project("/tmp/other", "demo")
        with pytest.raises(ValidationError):
            store.add_project("/tmp/demo", "other")

        updated = store.set_project_watch(p.id, False)
        assert updated.watch_enabled is False
        assert store.list_projects(watch_only=True) == []
        with pytest.raises(NotFoundError):
            store.set_project_watch("missing", True)
        print("  PASS: project_registry")
    finally:
        _safe_cleanup(store, db_path)


def test_upsert_is_last_writer_wins():
    store, db_path = _make_store()
    try:
        p = store.add_project("/tmp/demo", "demo")
        assert _upsert(store, _event("e1", p.id)) is UpsertOutcome.INSERTED
        first = store.get_event("e1")
        assert first.updated_at is None

        # Identical content is a no-op
        assert _upsert(store, _event("e1", p.id)) is UpsertOutcome.UNCHANGED
        assert store.get_event("e1").updated_at is None

        # Different content overwrites, creation time kept
        assert _upsert(store, _event("e1", p.id, text="changed")) is UpsertOutcome.UPDATED
        after = store.get_event("e1")
        assert after.text == "changed"
        assert after.created_at == first.created_at
        assert after.updated_at is not None
        assert store.count_events() == 1
        print("  PASS: upsert_is_last_writer_wins")
    finally:
        _safe_cleanup(store, db_path)


def test_text_change_drops_stale_embedding():
    store, db_path = _make_store()
    try:
        p = store.add_project("/tmp/demo", "demo")
        _upsert(store, _event("e1", p.id))
        store.save_embedding(EmbeddingRecord(event_id="e1", vector=[1.0, 0.0], model="m"))

        # Type-only change keeps the vector
        _upsert(store, _event("e1", p.id, event_type=EventType.IDEA))
        assert store.get_embedding("e1") is not None

        _upsert(store, _event("e1", p.id, text="new text"))
        assert store.get_embedding("e1") is None
        assert store.events_missing_embeddings() == ["e1"]
        print("  PASS: text_change_drops_stale_embedding")
    finally:
        _safe_cleanup(store, db_path)


def test_transaction_rolls_back_on_error():
    store, db_path = _make_store()
    try:
        p = store.add_project("/tmp/demo", "demo")
        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                tx.upsert_event(_event("e1", p.id))
                raise RuntimeError("boom")
        assert store.get_event("e1") is None

        # The write connection is usable afterwards
        _upsert(store, _event("e2", p.id))
        assert store.get_event("e2") is not None
        print("  PASS: transaction_rolls_back_on_error")
    finally:
        _safe_cleanup(store, db_path)


def test_integrity_error_becomes_validation_error():
    store, db_path = _make_store()
    try:
        with pytest.raises(ValidationError):
            store.insert_event(_event("e1", "no-such-project"))
        assert store.count_events() == 0

        p = store.add_project("/tmp/demo", "demo")
        store.insert_event(_event("e1", p.id))
        with pytest.raises(ValidationError):
            store.insert_event(_event("e1", p.id))
        print("  PASS: integrity_error_becomes_validation_error")
    finally:
        _safe_cleanup(store, db_path)


def test_savepoint_isolates_one_bad_write():
    store, db_path = _make_store()
    try:
        p = store.add_project("/tmp/demo", "demo")
        with store.transaction() as tx:
            tx.upsert_event(_event("ok-1", p.id))
            with pytest.raises(ValidationError):
                with tx.savepoint():
                    tx.upsert_event(_event("bad", "no-such-project"))
            tx.upsert_event(_event("ok-2", p.id))
        assert store.get_event("ok-1") is not None
        assert store.get_event("ok-2") is not None
        assert store.get_event("bad") is None
        print("  PASS: savepoint_isolates_one_bad_write")
    finally:
        _safe_cleanup(store, db_path)


def test_delete_project_cascades():
    store, db_path = _make_store()
    try:
        demo = store.add_project("/tmp/demo", "demo")
        other = store.add_project("/tmp/other", "other")
        for i in range(3):
            _upsert(store, _event(f"d{i}", demo.id))
            store.save_embedding(EmbeddingRecord(event_id=f"d{i}", vector=[0.1, 0.2], model="m"))
        _upsert(store, _event("o1", other.id))
        store.save_embedding(EmbeddingRecord(event_id="o1", vector=[0.1, 0.2], model="m"))
        store.create_trigger(Trigger(name="scoped", project_id=demo.id,
                                     action=Action(ActionKind.ADD_EVENT, {"text": "x"})))
        store.create_trigger(Trigger(name="global",
                                     action=Action(ActionKind.ADD_EVENT, {"text": "x"})))

        assert store.delete_project(demo.id) is True
        assert store.count_events(demo.id) == 0
        assert store.count_events() == 1
        assert store.count_embeddings() == 1
        assert store.get_embedding("d0") is None
        assert [t.name for t in store.list_triggers()] == ["global"]
        assert store.delete_project(demo.id) is False
        print("  PASS: delete_project_cascades")
    finally:
        _safe_cleanup(store, db_path)


def test_list_events_filters():
    store, db_path = _make_store()
    try:
        p = store.add_project("/tmp/demo", "demo")
        _upsert(store, _event("a", p.id, "fixed login bug", timestamp=T0))
        _upsert(store, _event("b", p.id, "try OAuth", EventType.IDEA, T0 + timedelta(hours=1)))
        _upsert(store, _event("c", p.id, "merge branch", EventType.GIT_COMMIT,
                              T0 + timedelta(hours=2), source="git"))

        assert [e.id for e in store.list_events()] == ["c", "b", "a"]
        assert [e.id for e in store.list_events(include_git=False)] == ["b", "a"]
        assert [e.id for e in store.list_events(query="LOGIN")] == ["a"]
        assert [e.id for e in store.list_events(event_type=EventType.IDEA)] == ["b"]
        window = store.list_events(start=T0 + timedelta(minutes=30),
                                   end=T0 + timedelta(hours=2), ascending=True)
        assert [e.id for e in window] == ["b"]
        assert [e.id for e in store.list_events(limit=1, offset=1)] == ["b"]
        print("  PASS: list_events_filters")
    finally:
        _safe_cleanup(store, db_path)


def test_embeddings_in_scope_by_project_and_model():
    store, db_path = _make_store()
    try:
        a = store.add_project("/tmp/a", "a")
        b = store.add_project("/tmp/b", "b")
        _upsert(store, _event("a1", a.id))
        _upsert(store, _event("b1", b.id))
        store.save_embedding(EmbeddingRecord(event_id="a1", vector=[1.0, 0.0], model="m1"))
        store.save_embedding(EmbeddingRecord(event_id="b1", vector=[0.0, 1.0], model="m2"))

        assert len(store.embeddings_in_scope()) == 2
        scoped = store.embeddings_in_scope(project_id=a.id)
        assert [e.id for e, _ in scoped] == ["a1"]
        assert scoped[0][1] == [1.0, 0.0]
        assert [e.id for e, _ in store.embeddings_in_scope(model="m2")] == ["b1"]

        with pytest.raises(NotFoundError):
            store.save_embedding(EmbeddingRecord(event_id="ghost", vector=[1.0], model="m1"))
        print("  PASS: embeddings_in_scope_by_project_and_model")
    finally:
        _safe_cleanup(store, db_path)


def test_triggers_listed_in_creation_order():
    store, db_path = _make_store()
    try:
        names = ["zeta", "alpha", "mid"]
        for name in names:
            store.create_trigger(Trigger(name=name, action=Action(ActionKind.WEBHOOK, {"url": "x"})))
        assert [t.name for t in store.list_triggers()] == names

        t = store.list_triggers()[1]
        t.enabled = False
        store.update_trigger(t)
        assert [x.name for x in store.list_triggers(enabled_only=True)] == ["zeta", "mid"]
        assert store.get_trigger(t.id).action.payload == {"url": "x"}
        assert store.delete_trigger(t.id) is True
        print("  PASS: triggers_listed_in_creation_order")
    finally:
        _safe_cleanup(store, db_path)


def test_schedules_update_and_delete():
    store, db_path = _make_store()
    try:
        names = ["nightly", "hourly", "weekly"]
        for name in names:
            store.create_schedule(ScheduleTask(
                name=name, cron="0 2 * * *", action=Action(ActionKind.EMBED_BACKFILL)))
        assert [s.name for s in store.list_schedules()] == names

        task = store.list_schedules()[1]
        store.record_schedule_run(task.id, T0, "ok")
        task = store.get_schedule(task.id)
        task.cron = "0 * * * *"
        task.enabled = False
        task.action = Action(ActionKind.DAILY_SUMMARY, {"project": "demo"})
        store.update_schedule(task)

        saved = store.get_schedule(task.id)
        assert saved.cron == "0 * * * *"
        assert saved.action.kind is ActionKind.DAILY_SUMMARY
        assert saved.action.payload == {"project": "demo"}
        assert saved.last_run == T0
        assert [s.name for s in store.list_schedules(enabled_only=True)] == ["nightly", "weekly"]

        assert store.delete_schedule(task.id) is True
        assert store.delete_schedule(task.id) is False
        assert store.get_schedule(task.id) is None
        with pytest.raises(NotFoundError):
            store.update_schedule(task)
        print("  PASS: schedules_update_and_delete")
    finally:
        _safe_cleanup(store, db_path)


def test_list_events_only_git():
    store, db_path = _make_store()
    try:
        p = store.add_project("/tmp/demo", "demo")
        store.insert_event(MemoryEvent(id="n", timestamp=T0, type=EventType.NOTE,
                                       text="note", project_id=p.id))
        store.insert_event(MemoryEvent(id="c", timestamp=T0, type=EventType.GIT_COMMIT,
                                       text="commit", project_id=p.id, source="git"))
        assert [e.id for e in store.list_events(p.id, only_git=True)] == ["c"]
        assert [e.id for e in store.list_events(p.id, include_git=False)] == ["n"]
        print("  PASS: list_events_only_git")
    finally:
        _safe_cleanup(store, db_path)


def test_schedule_last_run_never_moves_backwards():
    store, db_path = _make_store()
    try:
        task = store.create_schedule(ScheduleTask(
            name="nightly", cron="0 2 * * *", action=Action(ActionKind.EMBED_BACKFILL)))
        later = T0 + timedelta(hours=5)
        store.record_schedule_run(task.id, later, "ok")
        store.record_schedule_run(task.id, T0, "failed", "late report")

        saved = store.get_schedule(task.id)
        assert saved.last_run == later
        assert saved.last_status == "failed"
        assert saved.last_error == "late report"
        print("  PASS: schedule_last_run_never_moves_backwards")
    finally:
        _safe_cleanup(store, db_path)


def test_reopen_keeps_schema_version():
    store, db_path = _make_store()
    try:
        store.add_project("/tmp/demo", "demo")
        store.close()
        store = EventStore(db_path)
        version = store._reader().execute("PRAGMA user_version").fetchone()[0]
        assert version == SCHEMA_VERSION
        assert store.get_project_by_name("demo") is not None
        print("  PASS: reopen_keeps_schema_version")
    finally:
        _safe_cleanup(store, db_path)


def test_closed_store_raises_fatal():
    store, db_path = _make_store()
    try:
        store.close()
        with pytest.raises(FatalStoreError):
            store.list_projects()
        with pytest.raises(FatalStoreError):
            with store.transaction():
                pass
        print("  PASS: closed_store_raises_fatal")
    finally:
        _safe_cleanup(store, db_path)
