"""
Tests for semantic ranking, excerpt formatting and answer assembly.
"""
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from memory_hub.core.errors import TransientProviderError
from memory_hub.core.types import (
    EmbeddingRecord, EventType, MemoryEvent, RetrievalHit, RetrievalResult,
)
from memory_hub.indexing.embeddings import EmbeddingManager
from memory_hub.indexing.work_queue import WorkQueue
from memory_hub.retrieval.context_builder import (
    NOT_FOUND_ANSWER, AnswerAssembler, ContextBuilder,
)
from memory_hub.retrieval.retriever import SemanticRetriever, cosine_similarity
from memory_hub.storage.event_store import EventStore

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


def _event(event_id, text, project_id="p", ts=T0, event_type=EventType.NOTE):
    return MemoryEvent(id=event_id, timestamp=ts, type=event_type, text=text, project_id=project_id)


async def _index(store, mgr, event):
    store.insert_event(event)
    vector, model = await mgr.embed(event.text)
    store.save_embedding(EmbeddingRecord(event_id=event.id, vector=vector, model=model))


class FixedProvider:
    """Returns a fixed query vector."""

    def __init__(self, vector, model="fixed"):
        self.vector = vector
        self.model = model

    async def embed(self, text):
        return list(self.vector), self.model


class DownProvider:
    async def embed(self, text):
        raise TransientProviderError("provider down")


class StubGenerator:
    def __init__(self, reply="generated answer", fail=False):
        self.reply = reply
        self.fail = fail
        self.calls = []

    async def generate(self, query, excerpts):
        self.calls.append((query, list(excerpts)))
        if self.fail:
            raise TransientProviderError("overloaded")
        return self.reply


def test_cosine_similarity():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)
    assert cosine_similarity([0, 0], [1, 0]) == 0.0
    print("  PASS: cosine_similarity")


@pytest.mark.asyncio
async def test_identical_text_ranks_first():
    store, db_path = _make_store()
    try:
        p = store.add_project("/tmp/demo", "demo")
        mgr = EmbeddingManager(strategy="hash", dimensions=128)
        await _index(store, mgr, _event("a", "fixed login bug", p.id))
        await _index(store, mgr, _event("b", "try OAuth", p.id, event_type=EventType.IDEA))
        await _index(store, mgr, _event("c", "refactor database layer", p.id))

        retriever = SemanticRetriever(store, mgr, top_k=2)
        result = await retriever.search("try OAuth")
        assert result.found
        assert result.hits[0].event.id == "b"
        assert result.hits[0].score == pytest.approx(1.0, abs=1e-4)
        assert len(result.hits) == 2
        assert result.model == "hash:128"

        login = await retriever.search("login issue", limit=3)
        ids = [h.event.id for h in login.hits]
        assert ids.index("a") < ids.index("b")
        print("  PASS: identical_text_ranks_first")
    finally:
        _safe_cleanup(store, db_path)


@pytest.mark.asyncio
async def test_ties_go_to_newer_event_and_scope_filters():
    store, db_path = _make_store()
    try:
        demo = store.add_project("/tmp/demo", "demo")
        other = store.add_project("/tmp/other", "other")
        for event_id, ts, project in (
            ("old", T0, demo.id),
            ("new", T0 + timedelta(days=1), demo.id),
            ("elsewhere", T0 + timedelta(days=2), other.id),
        ):
            store.insert_event(_event(event_id, "same words", project, ts))
            store.save_embedding(EmbeddingRecord(event_id=event_id, vector=[1.0, 0.0], model="fixed"))
        # Other model and other dimension never take part
        store.insert_event(_event("stale", "same words", demo.id))
        store.save_embedding(EmbeddingRecord(event_id="stale", vector=[1.0, 0.0], model="older"))
        store.insert_event(_event("wide", "same words", demo.id))
        store.save_embedding(EmbeddingRecord(event_id="wide", vector=[1.0, 0.0, 0.0], model="fixed"))

        retriever = SemanticRetriever(store, FixedProvider([2.0, 0.0]))
        result = await retriever.search("anything", project_id=demo.id)
        assert [h.event.id for h in result.hits] == ["new", "old"]

        everywhere = await retriever.search("anything")
        assert [h.event.id for h in everywhere.hits] == ["elsewhere", "new", "old"]
        print("  PASS: ties_go_to_newer_event_and_scope_filters")
    finally:
        _safe_cleanup(store, db_path)


@pytest.mark.asyncio
async def test_search_degrades_to_empty_and_resumes_queue():
    store, db_path = _make_store()
    try:
        queue = WorkQueue(name="embed")
        retriever = SemanticRetriever(store, DownProvider(), max_attempts=1, pause_queue=queue)
        result = await retriever.search("login")
        assert not result.found
        assert not queue.is_paused()

        blank = await retriever.search("   ")
        assert blank.hits == []
        print("  PASS: search_degrades_to_empty_and_resumes_queue")
    finally:
        _safe_cleanup(store, db_path)


def test_context_builder_formats_excerpts():
    builder = ContextBuilder(max_chars_per_excerpt=10)
    event = _event("a", "fixed login bug for good", ts=T0)
    line = builder.format_event(event)
    assert line == "[a] (2026-03-01T09:00:00+00:00) [note]: fixed logi…"

    block = builder.build_context_block([RetrievalHit(event=event, score=0.9)])
    assert block.startswith(ContextBuilder.HEADER)
    assert block.endswith(ContextBuilder.FOOTER)
    assert builder.build_context_block([]) == ""
    print("  PASS: context_builder_formats_excerpts")


@pytest.mark.asyncio
async def test_answer_not_found_skips_provider():
    gen = StubGenerator()
    answer = await AnswerAssembler(gen).answer("anything", RetrievalResult(query="anything"))
    assert answer.text == NOT_FOUND_ANSWER
    assert gen.calls == []
    print("  PASS: answer_not_found_skips_provider")


@pytest.mark.asyncio
async def test_answer_uses_only_retrieved_excerpts():
    hits = [
        RetrievalHit(event=_event("a", "fixed login bug"), score=0.9),
        RetrievalHit(event=_event("b", "try OAuth"), score=0.5),
    ]
    result = RetrievalResult(query="login?", hits=hits, model="hash:8")

    gen = StubGenerator()
    answer = await AnswerAssembler(gen).answer("login?", result)
    assert answer.text == "generated answer"
    assert answer.metadata["generated"] is True
    query, excerpts = gen.calls[0]
    assert query == "login?"
    assert len(excerpts) == 2
    assert excerpts[0].startswith("[a]")

    failing = StubGenerator(fail=True)
    fallback = await AnswerAssembler(failing, max_attempts=1).answer("login?", result)
    assert fallback.metadata["generated"] is False
    assert "fixed login bug" in fallback.text

    raw = await AnswerAssembler(None).answer("login?", result)
    assert raw.metadata["generated"] is False
    assert raw.text.splitlines()[1].startswith("[b]")
    print("  PASS: answer_uses_only_retrieved_excerpts")
