"""
Memory Hub — Context Builder
Formats retrieved events into excerpts for the generation provider,
and assembles the final answer.
"""
import logging
from typing import Any, Dict, List, Optional
from ..core.errors import TransientProviderError
from ..core.providers import GenerationProvider
from ..core.types import Answer, MemoryEvent, RetrievalHit, RetrievalResult, format_timestamp
from ..utils.retry import call_with_retry
logger = logging.getLogger(__name__)
NOT_FOUND_ANSWER = "I didn't find any information about that in your memories."
class ContextBuilder:
    """
    Formats events into one-line excerpts, best match first.
    The provider sees exactly these lines and nothing else.
    """
    HEADER = "═══ RETRIEVED FROM MEMORY ═══"
    FOOTER = "═══ END RETRIEVED CONTEXT ═══"

    def __init__(self, max_chars_per_excerpt: int = 2000):
        self.max_chars_per_excerpt = max_chars_per_excerpt

    def format_event(self, event: MemoryEvent) -> str:
        text = event.text
        if len(text) > self.max_chars_per_excerpt:
            text = text[: self.max_chars_per_excerpt] + "…"
        return f"[{event.id}] ({format_timestamp(event.timestamp)}) [{event.type.value}]: {text}"

    def build_excerpts(self, hits: List[RetrievalHit]) -> List[str]:
        return [self.format_event(hit.event) for hit in hits]

    def build_event_lines(self, events: List[MemoryEvent]) -> List[str]:
        """Chronological lines for digests (daily summary)."""
        return [self.format_event(e) for e in events]

    def build_context_block(self, hits: List[RetrievalHit]) -> str:
        """Delimited block of excerpts, for prompts that want one string."""
        if not hits:
            return ""
        lines = [self.HEADER, ""]
        lines.extend(self.build_excerpts(hits))
        lines.extend(["", self.FOOTER])
        return "\n".join(lines)
class AnswerAssembler:
    """
    Turns a RetrievalResult into an Answer via the generation provider.
    No hits → fixed not-found answer, provider not called.
    """

    def __init__(
        self,
        provider: Optional[GenerationProvider],
        builder: Optional[ContextBuilder] = None,
        timeout: float = 30.0,
        max_attempts: int = 2,
        initial_backoff: float = 0.5,
        max_backoff: float = 4.0,
    ):
        self.provider = provider
        self.builder = builder or ContextBuilder()
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff

    async def answer(self, query: str, result: RetrievalResult) -> Answer:
        metadata: Dict[str, Any] = {
            "model": result.model,
            "search_time_ms": result.search_time_ms,
            "hits": len(result.hits),
        }
        if not result.found:
            return Answer(query=query, text=NOT_FOUND_ANSWER, hits=[], metadata=metadata)

        excerpts = self.builder.build_excerpts(result.hits)
        if self.provider is None:
            # No generator configured: hand back the ranked excerpts as-is
            metadata["generated"] = False
            return Answer(query=query, text="\n".join(excerpts), hits=result.hits, metadata=metadata)

        try:
            text = await call_with_retry(
                lambda: self.provider.generate(query, excerpts),
                max_attempts=self.max_attempts,
                initial_backoff=self.initial_backoff,
                max_backoff=self.max_backoff,
                timeout=self.timeout,
                label="generate answer",
            )
        except TransientProviderError as e:
            logger.warning(f"Answer generation failed, returning excerpts: {e}")
            metadata["generated"] = False
            metadata["error"] = str(e)
            return Answer(query=query, text="\n".join(excerpts), hits=result.hits, metadata=metadata)

        metadata["generated"] = True
        return Answer(query=query, text=text, hits=result.hits, metadata=metadata)
