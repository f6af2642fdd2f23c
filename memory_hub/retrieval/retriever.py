"""
Memory Hub — Semantic Retriever
Ranks stored events against a natural-language query.

Linear scan: the query vector is compared with every stored vector in
scope (same model, same dimension) by cosine similarity. Personal-scale
data keeps this fast enough without an approximate index. The retriever
only ranks; answer text is produced elsewhere.
"""
import asyncio
import logging
import time
from typing import List, Optional, Sequence

import numpy as np

from ..core.errors import TransientProviderError
from ..core.providers import EmbeddingProvider
from ..core.types import RetrievalHit, RetrievalResult
from ..indexing.work_queue import WorkQueue
from ..storage.event_store import EventStore
from ..utils.retry import call_with_retry

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| * |b|); 0.0 when either vector has zero norm."""
    a_arr = np.asarray(a, dtype=np.float32)
    b_arr = np.asarray(b, dtype=np.float32)
    norm_a = np.linalg.norm(a_arr)
    norm_b = np.linalg.norm(b_arr)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a_arr, b_arr) / (norm_a * norm_b))


class SemanticRetriever:
    """Embeds a query and returns the top-K most similar events."""

    def __init__(
        self,
        store: EventStore,
        provider: EmbeddingProvider,
        top_k: int = 8,
        timeout: float = 30.0,
        max_attempts: int = 3,
        initial_backoff: float = 0.5,
        max_backoff: float = 4.0,
        pause_queue: Optional[WorkQueue] = None,
    ):
        self.store = store
        self.provider = provider
        self.top_k = top_k
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.pause_queue = pause_queue

    async def search(
        self,
        query: str,
        project_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> RetrievalResult:
        """
        Rank events in scope against `query`.

        Ties on score go to the more recent event. If the query cannot be
        embedded, the result is empty rather than an error.
        """
        start = time.monotonic()
        limit = limit or self.top_k
        if not query or not query.strip():
            return RetrievalResult(query=query)

        # Background embedding yields to the query
        if self.pause_queue is not None:
            await self.pause_queue.pause()
        try:
            try:
                query_vec, model = await call_with_retry(
                    lambda: self.provider.embed(query),
                    max_attempts=self.max_attempts,
                    initial_backoff=self.initial_backoff,
                    max_backoff=self.max_backoff,
                    timeout=self.timeout,
                    label="embed query",
                )
            except TransientProviderError as e:
                logger.warning(f"Query embedding failed; no semantic results: {e}")
                return RetrievalResult(query=query, search_time_ms=_elapsed_ms(start))

            candidates = await asyncio.to_thread(
                self.store.embeddings_in_scope, project_id, model
            )
        finally:
            if self.pause_queue is not None:
                await self.pause_queue.resume()

        hits = self._rank(query_vec, candidates, limit)
        return RetrievalResult(
            query=query,
            hits=hits,
            model=model,
            search_time_ms=_elapsed_ms(start),
        )

    @staticmethod
    def _rank(query_vec: List[float], candidates, limit: int) -> List[RetrievalHit]:
        dims = len(query_vec)
        candidates = [(event, vec) for event, vec in candidates if len(vec) == dims]
        if not candidates or dims == 0:
            return []

        q = np.asarray(query_vec, dtype=np.float32)
        q_norm = np.linalg.norm(q)
        if q_norm == 0:
            return []
        matrix = np.asarray([vec for _, vec in candidates], dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1)
        dots = matrix @ q
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, dots / (norms * q_norm), 0.0)

        ranked = sorted(
            zip(candidates, scores.tolist()),
            key=lambda item: (-item[1], -item[0][0].timestamp.timestamp()),
        )
        return [RetrievalHit(event=event, score=float(score)) for (event, _), score in ranked[:limit]]


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000
