"""
Rerank Providers
-----------------
Every cross-encoder backend implements one interface:

    async rerank(query, texts, top_n) -> list[ProviderScore(index, score)]

`index` points into `texts`. Providers make exactly one HTTP call per rerank
and raise ProviderErrors classified by `classify_http_error`; retry, rate
limiting and circuit breaking are the orchestrator's job.

    name             endpoint                          model
    ---------------  --------------------------------  -------------------
    cohere           api.cohere.com/v2/rerank          rerank-v3.5
    pinecone         api.pinecone.io/rerank            pinecone-rerank-v0
    pinecone-cohere  api.pinecone.io/rerank            cohere-rerank-3.5
    pinecone-bge     api.pinecone.io/rerank            bge-reranker-v2-m3
    none             (passthrough, semantic order)
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from loguru import logger

from memrag.errors import TransientProviderError, classify_http_error

COHERE_API_BASE = "https://api.cohere.com"
PINECONE_API_BASE = "https://api.pinecone.io"
PINECONE_API_VERSION = "2025-01"

COHERE_MODEL = "rerank-v3.5"
PINECONE_MODEL = "pinecone-rerank-v0"
PINECONE_COHERE_MODEL = "cohere-rerank-3.5"
PINECONE_BGE_MODEL = "bge-reranker-v2-m3"

PASSTHROUGH = "none"


@dataclass(frozen=True)
class ProviderScore:
    index: int
    score: float


class RerankProvider(ABC):
    """
    Uniform cross-encoder interface.

    Class attributes describe the call budget the orchestrator applies:
    max_attempts (total tries, transient errors only), max_documents (texts
    beyond this are not scored) and cost_per_1k_searches_usd.
    """

    name: str = ""
    model: str = ""
    max_attempts: int = 3
    max_documents: int = 1000
    cost_per_1k_searches_usd: float = 0.0

    @abstractmethod
    async def rerank(self, query: str, texts: list[str], top_n: int) -> list[ProviderScore]:
        ...

    def estimate_cost(self, searches: int = 1) -> float:
        return searches / 1000 * self.cost_per_1k_searches_usd

    async def aclose(self) -> None:
        return None


class _HttpRerankProvider(RerankProvider):
    def __init__(
        self,
        base_url: str,
        headers: dict[str, str],
        timeout_s: float,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._headers = headers
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_s)

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(path, headers=self._headers, json=payload)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(self.name, f"request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(self.name, f"network error: {exc}") from exc
        if response.status_code >= 400:
            raise classify_http_error(self.name, response.status_code, response.text)
        return response.json()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class CohereRerankProvider(_HttpRerankProvider):
    """Cohere v2 rerank. $2 per 1000 searches, up to 100 documents per search."""

    name = "cohere"
    max_attempts = 3
    max_documents = 100
    cost_per_1k_searches_usd = 2.0

    def __init__(
        self,
        api_key: str,
        model: str = COHERE_MODEL,
        timeout_s: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(
            COHERE_API_BASE,
            {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            timeout_s,
            client,
        )
        self.model = model

    async def rerank(self, query: str, texts: list[str], top_n: int) -> list[ProviderScore]:
        texts = texts[: self.max_documents]
        data = await self._post(
            "/v2/rerank",
            {"model": self.model, "query": query, "documents": texts, "top_n": min(top_n, len(texts))},
        )
        results = data.get("results")
        if not isinstance(results, list):
            raise TransientProviderError(self.name, "response missing 'results'")
        return [ProviderScore(index=int(r["index"]), score=float(r["relevance_score"])) for r in results]


class PineconeRerankProvider(_HttpRerankProvider):
    """Pinecone Inference rerank; the same endpoint hosts several models."""

    max_attempts = 2
    cost_per_1k_searches_usd = 0.002

    def __init__(
        self,
        api_key: str,
        model: str = PINECONE_MODEL,
        name: str = "pinecone",
        timeout_s: float = 8.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(
            PINECONE_API_BASE,
            {
                "Api-Key": api_key,
                "Content-Type": "application/json",
                "X-Pinecone-API-Version": PINECONE_API_VERSION,
            },
            timeout_s,
            client,
        )
        self.name = name
        self.model = model

    async def rerank(self, query: str, texts: list[str], top_n: int) -> list[ProviderScore]:
        texts = texts[: self.max_documents]
        data = await self._post(
            "/rerank",
            {
                "model": self.model,
                "query": query,
                "documents": [{"id": str(i), "text": t} for i, t in enumerate(texts)],
                "top_n": min(top_n, len(texts)),
                "return_documents": False,
                "parameters": {"truncate": "END"},
            },
        )
        results = data.get("data")
        if not isinstance(results, list):
            raise TransientProviderError(self.name, "response missing 'data'")
        return [ProviderScore(index=int(r["index"]), score=float(r["score"])) for r in results]


class PassthroughProvider(RerankProvider):
    """Keeps semantic order; used for the explicit `none` provider."""

    name = PASSTHROUGH
    max_attempts = 1

    async def rerank(self, query: str, texts: list[str], top_n: int) -> list[ProviderScore]:
        return [ProviderScore(index=i, score=0.0) for i in range(min(top_n, len(texts)))]


def build_provider_registry(
    cohere_api_key: Optional[str] = None,
    pinecone_api_key: Optional[str] = None,
    cohere_model: str = COHERE_MODEL,
    pinecone_model: str = PINECONE_MODEL,
) -> dict[str, RerankProvider]:
    """
    Instantiate every provider whose credentials are present.

    Unconfigured providers are simply absent; the orchestrator treats a
    missing entry as unavailable and moves on down the chain.
    """
    registry: dict[str, RerankProvider] = {PASSTHROUGH: PassthroughProvider()}
    if cohere_api_key:
        registry["cohere"] = CohereRerankProvider(cohere_api_key, model=cohere_model)
    if pinecone_api_key:
        registry["pinecone"] = PineconeRerankProvider(pinecone_api_key, model=pinecone_model)
        registry["pinecone-cohere"] = PineconeRerankProvider(
            pinecone_api_key, model=PINECONE_COHERE_MODEL, name="pinecone-cohere"
        )
        registry["pinecone-bge"] = PineconeRerankProvider(
            pinecone_api_key, model=PINECONE_BGE_MODEL, name="pinecone-bge"
        )
    logger.debug(f"[Reranker] Providers available: {sorted(registry)}")
    return registry
