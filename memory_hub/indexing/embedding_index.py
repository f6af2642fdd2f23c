"""
Memory Hub — Embedding Index
Keeps one vector per event, computed in the background.

Events are queued by id after the reconciler commits. A worker loads
the event, asks the EmbeddingProvider for a vector (timeout + bounded
exponential backoff) and stores it. An event whose provider calls keep
failing simply stays without a vector: it is still listed and keyword
searchable, it just does not take part in semantic ranking.

A model change does not migrate old vectors. `backfill(force=True)` is
the explicit re-embed maintenance operation.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Set

from ..core.errors import TransientProviderError
from ..core.providers import EmbeddingProvider
from ..core.types import EmbeddingRecord
from ..storage.event_store import EventStore
from ..utils.retry import call_with_retry
from .work_queue import WorkQueue, WorkTask

logger = logging.getLogger(__name__)


class EmbeddingIndex:
    """Async embed pipeline over the event store."""

    def __init__(
        self,
        store: EventStore,
        provider: EmbeddingProvider,
        max_attempts: int = 4,
        initial_backoff: float = 0.5,
        max_backoff: float = 8.0,
        timeout: float = 30.0,
        min_text_length: int = 3,
        num_workers: int = 1,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.provider = provider
        self.max_attempts = max_attempts
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.timeout = timeout
        self.min_text_length = min_text_length
        self._sleep_fn = sleep_fn
        self.queue = WorkQueue(handler=self._process, name="embed", num_workers=num_workers)
        self._pending: Set[str] = set()
        self._forced: Set[str] = set()
        self._stats = {"embedded": 0, "skipped": 0, "failed": 0}

    # ─── Lifecycle ───────────────────────────────────────────────────────

    async def start(self) -> None:
        await self.queue.start()

    async def stop(self) -> None:
        await self.queue.shutdown()

    # ─── Enqueue ─────────────────────────────────────────────────────────

    def enqueue(self, event_ids: Iterable[str], force: bool = False) -> int:
        """
        Queue events for embedding. Ids already waiting are not queued twice.
        Returns how many were newly queued.
        """
        queued = 0
        for event_id in event_ids:
            if force:
                self._forced.add(event_id)
            if event_id in self._pending:
                continue
            if self.queue.enqueue_nowait(WorkTask(payload=event_id)):
                self._pending.add(event_id)
                queued += 1
        return queued

    async def backfill(self, force: bool = False) -> int:
        """
        Queue every event without a vector, or every event at all when
        `force` is set (re-embed after a model change).
        """
        if force:
            ids = await asyncio.to_thread(self.store.all_event_ids)
        else:
            ids = await asyncio.to_thread(self.store.events_missing_embeddings)
        queued = self.enqueue(ids, force=force)
        logger.info(f"Embedding backfill queued {queued} event(s) (force={force})")
        return queued

    def pending_event_ids(self) -> List[str]:
        return sorted(self._pending)

    # ─── Worker ──────────────────────────────────────────────────────────

    async def _process(self, task: WorkTask) -> None:
        event_id = task.payload
        self._pending.discard(event_id)
        force = event_id in self._forced
        self._forced.discard(event_id)
        await self.embed_event(event_id, force=force)

    async def embed_event(self, event_id: str, force: bool = False) -> bool:
        """
        Compute and store the vector for one event.
        Returns True if a vector was written.
        """
        event = await asyncio.to_thread(self.store.get_event, event_id)
        if event is None:
            logger.debug(f"Event {event_id} gone before embedding")
            self._stats["skipped"] += 1
            return False
        text = event.text.strip()
        if len(text) < self.min_text_length:
            self._stats["skipped"] += 1
            return False

        if not force:
            existing = await asyncio.to_thread(self.store.get_embedding, event_id)
            current_tag = getattr(self.provider, "model_tag", None)
            if existing is not None and (current_tag is None or existing.model == current_tag):
                self._stats["skipped"] += 1
                return False

        try:
            vector, model = await call_with_retry(
                lambda: self.provider.embed(text),
                max_attempts=self.max_attempts,
                initial_backoff=self.initial_backoff,
                max_backoff=self.max_backoff,
                timeout=self.timeout,
                sleep_fn=self._sleep_fn,
                label=f"embed {event_id}",
            )
        except TransientProviderError as e:
            logger.warning(f"Leaving {event_id} without embedding: {e}")
            self._stats["failed"] += 1
            return False

        saved = await asyncio.to_thread(self._save, event_id, event.text, vector, model)
        if saved:
            self._stats["embedded"] += 1
        else:
            self._stats["skipped"] += 1
        return saved

    def _save(self, event_id: str, text: str, vector: List[float], model: str) -> bool:
        # The event may have been rewritten while the provider was working
        with self.store.transaction() as tx:
            current = tx.get_event(event_id)
            if current is None or current.text != text:
                return False
            tx.save_embedding(EmbeddingRecord(event_id=event_id, vector=vector, model=model))
        return True

    # ─── Stats ───────────────────────────────────────────────────────────

    async def wait_for_drain(self, timeout: float = 30.0) -> bool:
        return await self.queue.wait_for_drain(timeout)

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "pending": len(self._pending), "queue": self.queue.get_stats()}
