"""
Memory Hub — Provider Protocols

Defines what the core needs from its external collaborators.
Uses structural typing (Protocol): any object with these methods works.
No inheritance, no registration, no boilerplate.

All three are async so network-bound implementations never block the
watcher or scheduler loops. Callers wrap every call in a timeout and
treat expiry as TransientProviderError.
"""
from typing import Any, Dict, List, Optional, Tuple, runtime_checkable
from typing import Protocol

from .types import ActionKind, ActionOutcome


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Turns text into a fixed-length vector.

    Returns (vector, model). The model tag identifies the embedding
    generation; vectors from different models are never compared.
    Raise TransientProviderError for retryable failures.
    """

    async def embed(self, text: str) -> Tuple[List[float], str]:
        ...


@runtime_checkable
class GenerationProvider(Protocol):
    """
    Produces a natural-language answer from a question and ranked excerpts.

    Args:
        query: The user's question
        excerpts: Pre-formatted context lines, best match first

    Returns:
        Answer text.
    """

    async def generate(self, query: str, excerpts: List[str]) -> str:
        ...


@runtime_checkable
class ActionExecutor(Protocol):
    """
    Performs the side effect behind a trigger or schedule.

    Args:
        kind: Which action to run
        payload: Action configuration, as stored on the rule
        context: Optional firing context (e.g. the triggering event)

    Returns:
        ActionOutcome. Implementations raise ActionExecutionError for
        definitive failures and TransientProviderError for retryable ones.
    """

    async def execute(
        self,
        kind: ActionKind,
        payload: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> ActionOutcome:
        ...
