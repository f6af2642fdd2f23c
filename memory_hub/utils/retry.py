"""
Memory Hub — Bounded Retry
Timeout + exponential backoff for calls to external providers.

Only TransientProviderError is retried. A timeout counts as transient.
Every other exception propagates immediately.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from ..core.errors import TransientProviderError

logger = logging.getLogger(__name__)


async def call_with_timeout(
    fn: Callable[[], Awaitable[Any]],
    timeout: Optional[float],
) -> Any:
    """Await fn() with a deadline; expiry becomes TransientProviderError."""
    try:
        if timeout is None or timeout <= 0:
            return await fn()
        return await asyncio.wait_for(fn(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientProviderError(f"timed out after {timeout}s") from e


async def call_with_retry(
    fn: Callable[[], Awaitable[Any]],
    *,
    max_attempts: int = 3,
    initial_backoff: float = 0.5,
    max_backoff: float = 8.0,
    timeout: Optional[float] = None,
    sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "call",
) -> Any:
    """
    Run `fn` up to `max_attempts` times.

    Backoff starts at `initial_backoff` seconds and doubles after each
    transient failure, capped at `max_backoff`.

    Raises:
        TransientProviderError: the last transient failure, once attempts run out.
    """
    attempts = max(1, int(max_attempts))
    backoff = max(0.0, float(initial_backoff))
    cap = max(backoff, float(max_backoff))

    for attempt in range(1, attempts + 1):
        try:
            return await call_with_timeout(fn, timeout)
        except TransientProviderError as e:
            if attempt >= attempts:
                logger.warning(f"{label} failed after {attempt} attempts: {e}")
                raise
            logger.info(f"{label} attempt {attempt}/{attempts} failed ({e}); retrying in {backoff:.2f}s")
            await sleep_fn(backoff)
            backoff = min(cap, backoff * 2 if backoff else cap)
