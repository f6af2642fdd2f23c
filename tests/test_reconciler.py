"""
Tests for log parsing and file → store reconciliation.
"""
import json
import os
import sys
import tempfile

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from memory_hub.core.errors import ValidationError
from memory_hub.core.fanout import Fanout
from memory_hub.core.types import (
    EmbeddingRecord, EventType, ReconcileStatus, TOPIC_EVENTS_UPDATED,
)
from memory_hub.indexing.log_parser import load_records, parse_log, parse_record
from memory_hub.indexing.reconciler import EventReconciler
from memory_hub.storage.event_store import EventStore


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


def _record(rid, text, type_="note", ts="2026-03-01T09:00:00Z", **extra):
    return {"id": rid, "timestamp": ts, "type": type_, "text": text, **extra}


def _log(*records):
    return json.dumps({"events": list(records)})


class _Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, topic, payload):
        self.calls.append((topic, payload))


# ─── Parser ──────────────────────────────────────────────────────────────────

def test_load_records_shapes():
    assert load_records("") == []
    assert load_records("   \n") == []
    assert load_records('{"events": []}') == []
    assert load_records('[{"id": "a"}]') == [{"id": "a"}]
    assert load_records('{"other": 1}') == []
    with pytest.raises(ValidationError):
        load_records("{not json")
    with pytest.raises(ValidationError):
        load_records('{"events": {"id": "a"}}')
    with pytest.raises(ValidationError):
        load_records("42")
    print("  PASS: load_records_shapes")


def test_parse_record_validation():
    rec = parse_record(0, _record(7, "hello", ts="2026-03-01T09:00:00"))
    assert rec.id == "7"
    assert rec.type is EventType.NOTE
    assert rec.timestamp.tzinfo is not None
    assert rec.source == "file"

    for bad in (
        "not a dict",
        _record("", "x"),
        _record("a", "x", type_="unknown"),
        _record("a", 5),
        _record("a", "x", ts="yesterday"),
        _record("a", "x", project=3),
    ):
        with pytest.raises(ValidationError):
            parse_record(0, bad)
    print("  PASS: parse_record_validation")


def test_parse_log_keeps_last_duplicate_and_reports_errors():
    parsed = parse_log(_log(
        _record("a", "first"),
        _record("b", "other"),
        {"id": "bad", "type": "note"},
        _record("a", "second"),
    ))
    assert [r.id for r in parsed.records] == ["b", "a"]
    assert parsed.records[1].text == "second"
    assert len(parsed.errors) == 1
    assert parsed.errors[0].record_id == "bad"
    assert parsed.errors[0].index == 2
    print("  PASS: parse_log_keeps_last_duplicate_and_reports_errors")


# ─── Reconciler ──────────────────────────────────────────────────────────────

def test_reconcile_is_idempotent():
    store, db_path = _make_store()
    try:
        fanout = Fanout()
        rec = _Recorder()
        fanout.subscribe(rec, TOPIC_EVENTS_UPDATED)
        project = store.add_project("/tmp/demo", "demo")
        reconciler = EventReconciler(store, fanout)
        content = _log(_record("a", "fixed login bug"), _record("b", "try OAuth", "idea"))

        first = reconciler.reconcile_content(content, project)
        assert first.status is ReconcileStatus.APPLIED
        assert len(first.inserted) == 2
        assert store.count_events(project.id) == 2

        second = reconciler.reconcile_content(content, project)
        assert not second.changed
        assert sorted(second.unchanged) == ["a", "b"]
        assert store.count_events(project.id) == 2

        # One notification for the changing batch, none for the no-op
        assert len(rec.calls) == 1
        topic, payload = rec.calls[0]
        assert payload["project_id"] == project.id
        assert payload["inserted"] == 2
        print("  PASS: reconcile_is_idempotent")
    finally:
        _safe_cleanup(store, db_path)


def test_malformed_file_writes_nothing():
    store, db_path = _make_store()
    try:
        project = store.add_project("/tmp/demo", "demo")
        reconciler = EventReconciler(store)
        reconciler.reconcile_content(_log(_record("a", "keep me")), project)

        result = reconciler.reconcile_content('{"events": [ {"id": "b",', project)
        assert result.status is ReconcileStatus.INVALID
        assert result.error
        assert [e.id for e in store.list_events()] == ["a"]
        print("  PASS: malformed_file_writes_nothing")
    finally:
        _safe_cleanup(store, db_path)


def test_empty_file_is_a_no_op():
    store, db_path = _make_store()
    try:
        project = store.add_project("/tmp/demo", "demo")
        result = EventReconciler(store).reconcile_content("", project)
        assert result.status is ReconcileStatus.EMPTY
        assert store.count_events() == 0
        print("  PASS: empty_file_is_a_no_op")
    finally:
        _safe_cleanup(store, db_path)


def test_unknown_project_record_is_skipped():
    store, db_path = _make_store()
    try:
        demo = store.add_project("/tmp/demo", "demo")
        other = store.add_project("/tmp/other", "other")
        content = _log(
            _record("a", "mine"),
            _record("b", "routed", project="other"),
            _record("c", "lost", project="nobody"),
            {"id": "d", "type": "nope", "text": "x", "timestamp": "2026-03-01T09:00:00Z"},
        )
        result = EventReconciler(store).reconcile_content(content, demo)
        assert result.status is ReconcileStatus.APPLIED
        assert {e.id for e in result.inserted} == {"a", "b"}
        assert {s.record_id for s in result.skipped} == {"c", "d"}
        assert store.get_event("b").project_id == other.id
        assert store.get_event("c") is None
        print("  PASS: unknown_project_record_is_skipped")
    finally:
        _safe_cleanup(store, db_path)


def test_edit_updates_in_place_and_drops_embedding():
    store, db_path = _make_store()
    try:
        project = store.add_project("/tmp/demo", "demo")
        reconciler = EventReconciler(store)
        reconciler.reconcile_content(_log(_record("a", "old words")), project)
        store.save_embedding(EmbeddingRecord(event_id="a", vector=[1.0, 0.0], model="m"))

        result = reconciler.reconcile_content(_log(_record("a", "new words")), project)
        assert [e.id for e in result.updated] == ["a"]
        assert store.get_event("a").text == "new words"
        assert store.get_embedding("a") is None
        print("  PASS: edit_updates_in_place_and_drops_embedding")
    finally:
        _safe_cleanup(store, db_path)


def test_reconcile_file_missing_and_present():
    store, db_path = _make_store()
    tmpdir = tempfile.mkdtemp()
    try:
        project = store.add_project(tmpdir, "demo")
        reconciler = EventReconciler(store)
        path = os.path.join(tmpdir, "memory.json")

        missing = reconciler.reconcile_file(path, project)
        assert missing.status is ReconcileStatus.SKIPPED

        with open(path, "w", encoding="utf-8") as f:
            f.write(_log(_record("a", "from disk")))
        result = reconciler.reconcile_file(path, project)
        assert result.status is ReconcileStatus.APPLIED
        assert result.source_path == path
        assert store.get_event("a").text == "from disk"
        print("  PASS: reconcile_file_missing_and_present")
    finally:
        _safe_cleanup(store, db_path)
        try:
            os.unlink(os.path.join(tmpdir, "memory.json"))
            os.rmdir(tmpdir)
        except OSError:
            pass
