"""
OpenAI Dense Embedding Client
------------------------------
Wraps the OpenAI embeddings API (text-embedding-3-large, 3072 dims) with:
  - Batching (100 texts per call, the ingestion batch size)
  - Input preparation: whitespace collapsed, truncated to 8000 chars and
    to the 8191-token input limit (estimated)
  - Sliding-window rate limiting (requests + estimated tokens)
  - Retry logic via tenacity, transient errors only
  - LangSmith run tracing and token usage accounting
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import numpy as np
import openai
from langsmith import traceable
from loguru import logger
from openai import AsyncOpenAI
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from memrag.chunking.tokenizer import (
    MAX_EMBEDDING_TOKENS,
    count_tokens,
    is_within_token_limit,
    truncate_to_tokens,
)
from memrag.errors import (
    ProviderError,
    TransientProviderError,
    classify_http_error,
    is_retryable_error,
)
from memrag.resilience.rate_limiter import RateLimiter
from memrag.utils.helpers import collapse_whitespace

MODEL = "text-embedding-3-large"
DIMENSIONS = 3072
BATCH_SIZE = 100
MAX_INPUT_CHARS = 8000
PROVIDER = "openai"


def prepare_text(
    text: str,
    max_chars: int = MAX_INPUT_CHARS,
    max_tokens: int = MAX_EMBEDDING_TOKENS,
) -> str:
    """Collapse whitespace and cut to the provider's input ceiling (chars, then estimated tokens)."""
    prepared = collapse_whitespace(text)[:max_chars]
    if not is_within_token_limit(prepared, max_tokens):
        prepared = truncate_to_tokens(prepared, max_tokens, suffix="")
    return prepared or " "


class DenseEmbedder(ABC):
    """Anything that turns text into fixed-dimension float vectors."""

    dimensions: int

    @abstractmethod
    async def embed_texts(self, texts: list[str]) -> np.ndarray:
        """Return an (N, dimensions) float32 array."""

    async def embed_query(self, text: str) -> np.ndarray:
        return (await self.embed_texts([text]))[0]


class OpenAIEmbedder(DenseEmbedder):
    """
    Generates L2-normalised embeddings so cosine similarity == inner product
    (which the local FAISS IndexFlatIP relies on).
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = MODEL,
        dimensions: int = DIMENSIONS,
        batch_size: int = BATCH_SIZE,
        max_input_chars: int = MAX_INPUT_CHARS,
        rate_limiter: Optional[RateLimiter] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.max_input_chars = max_input_chars
        self.rate_limiter = rate_limiter
        self._client = client or AsyncOpenAI(api_key=api_key, timeout=30.0, max_retries=0)
        self.total_tokens_used: int = 0
        self.total_api_calls: int = 0

    @traceable(name="embed_texts", run_type="embedding")
    async def embed_texts(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, self.dimensions), dtype=np.float32)

        prepared = [prepare_text(t, self.max_input_chars) for t in texts]
        all_embeddings: list[list[float]] = []

        for i in range(0, len(prepared), self.batch_size):
            batch = prepared[i: i + self.batch_size]
            if self.rate_limiter is not None:
                await self.rate_limiter.acquire(sum(count_tokens(t) for t in batch))
            embeddings, tokens = await self._embed_batch(batch)
            all_embeddings.extend(embeddings)
            self.total_tokens_used += tokens
            self.total_api_calls += 1

            logger.debug(
                f"[Embedder] Batch {i // self.batch_size + 1} | "
                f"{len(batch)} texts | {tokens} tokens | "
                f"Running total: {self.total_tokens_used} tokens"
            )

        matrix = np.array(all_embeddings, dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms = np.where(norms == 0, 1, norms)
        return (matrix / norms).astype(np.float32)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception(is_retryable_error),
        reraise=True,
    )
    async def _embed_batch(self, texts: list[str]) -> tuple[list[list[float]], int]:
        """Call the OpenAI Embeddings API for a single batch."""
        try:
            response = await self._client.embeddings.create(
                model=self.model, input=texts, dimensions=self.dimensions
            )
        except openai.APIStatusError as exc:
            raise classify_http_error(PROVIDER, exc.status_code, str(exc)) from exc
        except (openai.APITimeoutError, openai.APIConnectionError) as exc:
            raise TransientProviderError(PROVIDER, f"network error: {exc}") from exc

        data = sorted(response.data, key=lambda x: x.index)
        if len(data) != len(texts):
            raise ProviderError(PROVIDER, f"expected {len(texts)} embeddings, got {len(data)}")
        tokens_used = response.usage.total_tokens if response.usage else 0
        return [item.embedding for item in data], tokens_used

    def usage_summary(self) -> dict:
        return {
            "model": self.model,
            "total_api_calls": self.total_api_calls,
            "total_tokens_used": self.total_tokens_used,
            # text-embedding-3-large: $0.13 per million tokens
            "estimated_cost_usd": round(self.total_tokens_used / 1_000_000 * 0.13, 6),
        }
