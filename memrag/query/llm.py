"""
JSON-mode LLM client
---------------------
Small wrapper over the Anthropic messages API for the structured calls the
engine makes (auto-tagging, query expansion, query decomposition). Every
caller wants one JSON object back, so the client:

  - sends the system prompt as the separate `system` parameter
  - extracts the first {...} object from the text reply
  - raises LLMResponseError when the reply has no parseable object
  - retries transient provider failures via tenacity
  - accounts tokens and cost per model
"""
from __future__ import annotations

from typing import Any, Optional

import anthropic
from anthropic import AsyncAnthropic
from langsmith import traceable
from loguru import logger
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from memrag.errors import (
    LLMResponseError,
    TransientProviderError,
    classify_http_error,
    is_retryable_error,
)
from memrag.resilience.rate_limiter import RateLimiter
from memrag.utils.helpers import extract_json_object

MODEL = "claude-haiku-4-5-20251001"
PROVIDER = "anthropic"

# (input $/M, output $/M)
_MODEL_PRICING: dict[str, tuple[float, float]] = {
    "claude-haiku-4-5-20251001": (0.800, 4.000),
    "claude-sonnet-4-6": (3.000, 15.000),
}


def _cost_usd(model: str, input_tokens: int, output_tokens: int) -> float:
    rates = _MODEL_PRICING.get(model, _MODEL_PRICING[MODEL])
    return (input_tokens * rates[0] + output_tokens * rates[1]) / 1_000_000


class JsonLLM:
    """
    Args:
        api_key:       ANTHROPIC_API_KEY (falls back to the SDK's env lookup).
        model:         Claude model id.
        timeout_s:     Per-request timeout.
        rate_limiter:  Shared anthropic limiter (requests + estimated tokens).
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = MODEL,
        timeout_s: float = 15.0,
        rate_limiter: Optional[RateLimiter] = None,
        client: Optional[AsyncAnthropic] = None,
    ) -> None:
        self.model = model
        self.rate_limiter = rate_limiter
        self._client = client or AsyncAnthropic(api_key=api_key, timeout=timeout_s, max_retries=0)
        self.input_tokens = 0
        self.output_tokens = 0

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception(is_retryable_error),
        reraise=True,
    )
    async def _complete(self, system: str, prompt: str, max_tokens: int) -> str:
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire(len(system + prompt) // 4 + max_tokens)
        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=0,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIStatusError as exc:
            raise classify_http_error(PROVIDER, exc.status_code, str(exc)) from exc
        except (anthropic.APITimeoutError, anthropic.APIConnectionError) as exc:
            raise TransientProviderError(PROVIDER, f"network error: {exc}") from exc

        if response.usage is not None:
            self.input_tokens += response.usage.input_tokens
            self.output_tokens += response.usage.output_tokens
        return "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )

    @traceable(name="complete_json", run_type="llm")
    async def complete_json(self, system: str, prompt: str, max_tokens: int = 300) -> dict[str, Any]:
        """
        Returns:
            The first JSON object in the reply.

        Raises:
            LLMResponseError: the reply has no parseable JSON object.
            ProviderError:    the call itself failed.
        """
        text = await self._complete(system, prompt, max_tokens)
        try:
            parsed = extract_json_object(text)
        except ValueError as exc:
            raise LLMResponseError(f"{self.model}: {exc}") from exc
        if not isinstance(parsed, dict):
            raise LLMResponseError(f"{self.model}: expected a JSON object, got {type(parsed).__name__}")

        logger.debug(f"[JsonLLM] {self.model} | keys={sorted(parsed)}")
        return parsed

    def usage_summary(self) -> dict:
        return {
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "estimated_cost_usd": round(_cost_usd(self.model, self.input_tokens, self.output_tokens), 6),
        }
