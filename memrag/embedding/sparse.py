"""
Sparse (lexical) Embeddings
----------------------------
Two producers of {indices, values} vectors:

  PineconeSparseEmbedder  Pinecone Inference /embed with
                          pinecone-sparse-english-v0 (REST via httpx)
  HashingSparseEmbedder   local term-frequency vector over a 1M-bucket hash
                          space, used when the provider is not configured

An empty vector is a valid "no lexical signal" result. Provider failures are
absorbed: they are logged and return an empty vector, so the caller falls
back to dense-only for that text.
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections import Counter
from typing import Literal, Optional

import httpx
from loguru import logger

from memrag.errors import classify_http_error
from memrag.resilience.rate_limiter import RateLimiter
from memrag.schemas import SparseValues
from memrag.utils.helpers import collapse_whitespace

SPARSE_MODEL = "pinecone-sparse-english-v0"
MAX_SPARSE_TEXT_LENGTH = 8000
HASH_SPACE = 1_000_000
INFERENCE_API_BASE = "https://api.pinecone.io"
API_VERSION = "2025-01"

InputType = Literal["passage", "query"]

BOOST_KEYWORDS = frozenset({
    "rls", "jwt", "oauth", "api", "sql", "uuid", "postgres", "postgis",
    "supabase", "pinecone", "vercel", "claude", "openai", "mapbox",
    "migration", "deployment", "error", "bug", "fix", "create", "delete",
    "realtime", "websocket", "typescript", "react", "vite", "tailwind",
    "edge", "function", "docker", "redis", "graphql", "webhook",
})


# --- Keyword helpers ----------------------------------------------------------

def find_boost_keywords(text: str) -> list[str]:
    found: list[str] = []
    for word in text.lower().split():
        if word in BOOST_KEYWORDS and word not in found:
            found.append(word)
    return found


def contains_boost_keywords(text: str) -> bool:
    return bool(find_boost_keywords(text))


def keyword_boost_multiplier(text: str) -> float:
    """1.0 / 1.2 / 1.4 / 1.5 for 0 / 1 / 2 / 3+ boost keywords."""
    count = len(find_boost_keywords(text))
    if count == 0:
        return 1.0
    if count == 1:
        return 1.2
    if count == 2:
        return 1.4
    return 1.5


# --- Local fallback -----------------------------------------------------------

def _hash_word(word: str) -> int:
    """Stable 32-bit string hash (h*31 + c, wrapped), folded into HASH_SPACE."""
    h = 0
    for ch in word:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h) % HASH_SPACE


def generate_simple_sparse_vector(text: str) -> SparseValues:
    """Normalised term frequency of words longer than 2 chars, indices sorted."""
    words = [w for w in re.sub(r"[^\w\s]", " ", text.lower()).split() if len(w) > 2]
    if not words:
        return SparseValues()

    weights: dict[int, float] = {}
    for term, freq in Counter(words).items():
        index = _hash_word(term)
        weights[index] = weights.get(index, 0.0) + freq / len(words)

    ordered = sorted(weights.items())
    return SparseValues(indices=[i for i, _ in ordered], values=[v for _, v in ordered])


# --- Embedders ----------------------------------------------------------------

class SparseEmbedder(ABC):
    @abstractmethod
    async def embed(self, text: str, input_type: InputType = "passage") -> SparseValues:
        ...


class HashingSparseEmbedder(SparseEmbedder):
    async def embed(self, text: str, input_type: InputType = "passage") -> SparseValues:
        return generate_simple_sparse_vector(text)


class PineconeSparseEmbedder(SparseEmbedder):
    def __init__(
        self,
        api_key: str,
        model: str = SPARSE_MODEL,
        timeout_s: float = 8.0,
        rate_limiter: Optional[RateLimiter] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.model = model
        self.rate_limiter = rate_limiter
        self._client = client or httpx.AsyncClient(base_url=INFERENCE_API_BASE, timeout=timeout_s)
        self._headers = {
            "Api-Key": api_key,
            "Content-Type": "application/json",
            "X-Pinecone-API-Version": API_VERSION,
        }

    async def embed(self, text: str, input_type: InputType = "passage") -> SparseValues:
        prepared = collapse_whitespace(text)[:MAX_SPARSE_TEXT_LENGTH]
        if not prepared:
            return SparseValues()

        try:
            if self.rate_limiter is not None:
                await self.rate_limiter.acquire()
            response = await self._client.post(
                "/embed",
                headers=self._headers,
                json={
                    "model": self.model,
                    "parameters": {"input_type": input_type, "truncate": "END"},
                    "inputs": [{"text": prepared}],
                },
            )
            if response.status_code >= 400:
                raise classify_http_error("pinecone-sparse", response.status_code, response.text)
            return self._parse(response.json())
        except Exception as exc:
            logger.warning(f"[SparseEmbedder] Embedding failed, using empty vector: {exc}")
            return SparseValues()

    @staticmethod
    def _parse(payload: dict) -> SparseValues:
        data = payload.get("data") or []
        if not data:
            logger.warning("[SparseEmbedder] No sparse values in response, returning empty")
            return SparseValues()
        entry = data[0]
        if "sparse_indices" in entry:
            return SparseValues(
                indices=list(entry.get("sparse_indices") or []),
                values=[float(v) for v in entry.get("sparse_values") or []],
            )
        nested = entry.get("sparseValues") or entry.get("sparse_values") or {}
        if isinstance(nested, dict):
            return SparseValues(
                indices=list(nested.get("indices") or []),
                values=[float(v) for v in nested.get("values") or []],
            )
        return SparseValues()

    async def aclose(self) -> None:
        await self._client.aclose()
