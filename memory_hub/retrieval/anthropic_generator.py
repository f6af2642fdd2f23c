"""
Memory Hub — Anthropic Generation Provider

Concrete GenerationProvider backed by the Anthropic API.
Answers a question from ranked memory excerpts, and writes digests
(daily summaries) from a day's worth of events.

Without this provider, `MemoryHub.ask` returns the ranked excerpts
verbatim and the daily_summary action is unavailable.
"""
from typing import List

import anthropic

from ..core.errors import ConfigurationError, TransientProviderError


class AnthropicGenerationProvider:
    """
    GenerationProvider implementation backed by Anthropic's Claude API.
    Uses Haiku by default (cheap + fast).
    """

    SYSTEM_PROMPT = (
        "You answer questions about a developer's project history using ONLY "
        "the memory excerpts provided. Never invent dates, events or actions "
        "that are not present in the excerpts. If the excerpts do not contain "
        "the answer, say: \"I did not find this information in your memories.\" "
        "Cite the ids of the excerpts you relied on in square brackets."
    )

    def __init__(
        self,
        api_key: str,
        model: str = "claude-haiku-4-5-20251001",
        max_tokens: int = 1024,
        client=None,
    ):
        if not api_key and client is None:
            raise ConfigurationError("ANTHROPIC_API_KEY is required for answer generation")
        self.client = client or anthropic.AsyncAnthropic(api_key=api_key)
        self.model = model
        self.max_tokens = max_tokens

    async def generate(self, query: str, excerpts: List[str]) -> str:
        """Answer `query` from `excerpts` (best match first)."""
        prompt = self._build_prompt(query, excerpts)
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=self.SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
            )
        except (
            anthropic.APITimeoutError,
            anthropic.APIConnectionError,
            anthropic.RateLimitError,
            anthropic.InternalServerError,
        ) as e:
            raise TransientProviderError(f"anthropic: {e}") from e
        except anthropic.APIStatusError as e:
            raise ConfigurationError(f"anthropic rejected the request ({e.status_code}): {e}") from e

        parts = [block.text for block in response.content if getattr(block, "type", "") == "text"]
        return "".join(parts).strip()

    @staticmethod
    def _build_prompt(query: str, excerpts: List[str]) -> str:
        memories = "\n".join(excerpts)
        return f"""MEMORIES (most relevant first):
{memories}

REQUEST:
{query}"""
