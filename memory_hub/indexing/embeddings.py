"""
Memory Hub — Embedding Manager
Generates vector embeddings for event text. Implements EmbeddingProvider.

Supports two strategies:
- "local": Sentence-transformers (all-MiniLM-L6-v2): real semantic embeddings, free, needs PyTorch
- "hash": Deterministic hash-based pseudo-embeddings: free, offline, word overlap only

The model tag returned with every vector names the strategy and model, so
vectors from different generations are never compared against each other.
"""
import asyncio
import hashlib
import logging
import re
from typing import List, Optional, Tuple

import numpy as np

from ..core.errors import ConfigurationError, TransientProviderError

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\w+")


class EmbeddingManager:
    """
    Generate embeddings for text content.
    Strategy pattern allows swapping embedding backends.
    """

    STRATEGIES = ("local", "hash")

    def __init__(
        self,
        strategy: str = "hash",
        dimensions: int = 384,
        model_name: str = "all-MiniLM-L6-v2",
    ):
        """
        Args:
            strategy: "local" or "hash"
            dimensions: Vector length for the hash strategy (local uses the model's own)
            model_name: sentence-transformers model for the local strategy
        """
        if strategy not in self.STRATEGIES:
            raise ConfigurationError(f"unknown embedding strategy {strategy!r}")
        self.strategy = strategy
        self.dimensions = dimensions
        self.model_name = model_name
        self._local_model = None

    @property
    def model_tag(self) -> str:
        if self.strategy == "local":
            return f"local:{self.model_name}"
        return f"hash:{self.dimensions}"

    async def embed(self, text: str) -> Tuple[List[float], str]:
        """Embed one text. Returns (vector, model tag)."""
        if self.strategy == "local":
            vector = await asyncio.to_thread(self._embed_local, text)
        else:
            vector = self._embed_hash_semantic(text)
        return vector, self.model_tag

    # ─── Local Sentence-Transformers Strategy ────────────────────────────────

    def _get_local_model(self):
        """Lazy-load sentence-transformers model on first use."""
        if self._local_model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as e:
                raise ConfigurationError(
                    "EMBEDDING_STRATEGY=local needs the 'local' extra "
                    "(pip install memory-hub[local])"
                ) from e
            logger.info(f"Loading sentence-transformers model {self.model_name}")
            self._local_model = SentenceTransformer(self.model_name)
        return self._local_model

    def _embed_local(self, text: str) -> List[float]:
        model = self._get_local_model()
        try:
            embedding = model.encode(text, normalize_embeddings=True)
        except RuntimeError as e:
            raise TransientProviderError(f"local embedding failed: {e}") from e
        return embedding.tolist()

    # ─── Hash-Based Strategy ─────────────────────────────────────────────────

    def _embed_hash_semantic(self, text: str) -> List[float]:
        """
        Hash embedding that preserves some word-level signal.
        Combines word-level hashes so texts with shared words have some similarity.
        Deterministic: same text → same vector.
        """
        words = _WORD_RE.findall(text.lower())
        if not words:
            return [0.0] * self.dimensions
        word_vecs = [self._word_vector(w) for w in words]
        avg = np.mean(word_vecs, axis=0)
        norm = np.linalg.norm(avg)
        if norm > 0:
            avg = avg / norm
        return avg.astype(np.float32).tolist()

    def _word_vector(self, word: str) -> np.ndarray:
        hash_bytes = hashlib.sha256(word.encode("utf-8")).digest()
        rng = np.random.default_rng(int.from_bytes(hash_bytes[:8], "big"))
        return rng.standard_normal(self.dimensions).astype(np.float32)


def create_embedding_provider(
    strategy: str,
    dimensions: int = 384,
    model_name: Optional[str] = None,
) -> EmbeddingManager:
    """Build the configured embedding provider."""
    kwargs = {"strategy": strategy, "dimensions": dimensions}
    if model_name:
        kwargs["model_name"] = model_name
    return EmbeddingManager(**kwargs)
