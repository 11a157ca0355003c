"""
Vector Index Interface + Pinecone REST client
----------------------------------------------
The engine needs two operations from a vector store:

    upsert(records)                                   batches capped at 100
    query(dense, sparse, top_k, filter) -> matches    one combined hybrid query

Hybrid weighting is applied before the query by scaling the dense vector by
alpha and the sparse values by (1 - alpha), so a store that simply sums the
dense inner product and the sparse dot product returns a convex blend.

Filters use the Pinecone operator dialect ($eq, $ne, $in, $nin, $gt, $gte,
$lt, $lte, $and, $or); `matches_filter` evaluates the same dialect locally.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
from loguru import logger
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from memrag.errors import TransientProviderError, classify_http_error, is_retryable_error
from memrag.resilience.rate_limiter import RateLimiter
from memrag.schemas import Match, SparseValues, VectorRecord

MAX_UPSERT_BATCH = 100


def hybrid_scale(
    dense: list[float], sparse: Optional[SparseValues], alpha: float
) -> tuple[list[float], Optional[SparseValues]]:
    """Convex-combination weighting of a dense/sparse query pair."""
    if not 0.0 <= alpha <= 1.0:
        raise ValueError(f"alpha must be within [0, 1], got {alpha}")
    scaled_dense = [v * alpha for v in dense]
    if sparse is None or sparse.is_empty:
        return scaled_dense, None
    return scaled_dense, SparseValues(
        indices=list(sparse.indices),
        values=[v * (1 - alpha) for v in sparse.values],
    )


# --- Local filter evaluation --------------------------------------------------

def _compare(value: Any, op: str, operand: Any) -> bool:
    if op == "$eq":
        return value == operand
    if op == "$ne":
        return value != operand
    if op == "$in":
        if isinstance(value, list):
            return any(v in operand for v in value)
        return value in operand
    if op == "$nin":
        if isinstance(value, list):
            return not any(v in operand for v in value)
        return value not in operand
    if value is None:
        return False
    try:
        if op == "$gt":
            return value > operand
        if op == "$gte":
            return value >= operand
        if op == "$lt":
            return value < operand
        if op == "$lte":
            return value <= operand
    except TypeError:
        return False
    raise ValueError(f"Unsupported filter operator: {op}")


def matches_filter(metadata: dict[str, Any], filter_: Optional[dict[str, Any]]) -> bool:
    if not filter_:
        return True
    for key, condition in filter_.items():
        if key == "$and":
            if not all(matches_filter(metadata, sub) for sub in condition):
                return False
            continue
        if key == "$or":
            if not any(matches_filter(metadata, sub) for sub in condition):
                return False
            continue

        value = metadata.get(key)
        if isinstance(condition, dict):
            if not all(_compare(value, op, operand) for op, operand in condition.items()):
                return False
        elif isinstance(value, list):
            if condition not in value:
                return False
        elif value != condition:
            return False
    return True


# --- Interface ----------------------------------------------------------------

class VectorIndex(ABC):
    max_upsert_batch: int = MAX_UPSERT_BATCH

    @abstractmethod
    async def upsert(self, records: list[VectorRecord]) -> int:
        """Upsert one batch (<= max_upsert_batch). Returns the count written."""

    @abstractmethod
    async def query(
        self,
        dense: list[float],
        sparse: Optional[SparseValues],
        top_k: int,
        filter_: Optional[dict[str, Any]] = None,
    ) -> list[Match]:
        ...

    async def upsert_batched(self, records: list[VectorRecord]) -> int:
        total = 0
        for i in range(0, len(records), self.max_upsert_batch):
            total += await self.upsert(records[i: i + self.max_upsert_batch])
        return total


class PineconeIndex(VectorIndex):
    """
    Pinecone data-plane client over REST (httpx).

    Args:
        host:         Index host, e.g. https://memory-abc123.svc.us-east1.pinecone.io
        api_key:      PINECONE_API_KEY
        namespace:    Optional namespace for every call.
        rate_limiter: Shared pinecone limiter.
    """

    def __init__(
        self,
        host: str,
        api_key: str,
        namespace: str = "",
        timeout_s: float = 10.0,
        rate_limiter: Optional[RateLimiter] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        base_url = host if host.startswith("http") else f"https://{host}"
        self.namespace = namespace
        self.rate_limiter = rate_limiter
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_s)
        self._headers = {"Api-Key": api_key, "Content-Type": "application/json"}

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        retry=retry_if_exception(is_retryable_error),
        reraise=True,
    )
    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()
        try:
            response = await self._client.post(path, headers=self._headers, json=payload)
        except httpx.TransportError as exc:
            raise TransientProviderError("pinecone", f"network error: {exc}") from exc
        if response.status_code >= 400:
            raise classify_http_error("pinecone", response.status_code, response.text)
        return response.json() if response.content else {}

    async def upsert(self, records: list[VectorRecord]) -> int:
        if not records:
            return 0
        if len(records) > self.max_upsert_batch:
            return await self.upsert_batched(records)

        vectors = []
        for record in records:
            vector: dict[str, Any] = {
                "id": record.id,
                "values": record.values,
                "metadata": record.metadata,
            }
            if record.sparse_values is not None and not record.sparse_values.is_empty:
                vector["sparseValues"] = record.sparse_values.model_dump()
            vectors.append(vector)

        payload: dict[str, Any] = {"vectors": vectors}
        if self.namespace:
            payload["namespace"] = self.namespace
        data = await self._post("/vectors/upsert", payload)
        upserted = int(data.get("upsertedCount", len(records)))
        logger.debug(f"[PineconeIndex] Upserted {upserted} vectors")
        return upserted

    async def query(
        self,
        dense: list[float],
        sparse: Optional[SparseValues],
        top_k: int,
        filter_: Optional[dict[str, Any]] = None,
    ) -> list[Match]:
        payload: dict[str, Any] = {
            "vector": dense,
            "topK": top_k,
            "includeMetadata": True,
        }
        if sparse is not None and not sparse.is_empty:
            payload["sparseVector"] = sparse.model_dump()
        if filter_:
            payload["filter"] = filter_
        if self.namespace:
            payload["namespace"] = self.namespace

        data = await self._post("/query", payload)
        return [
            Match(id=m["id"], score=float(m.get("score", 0.0)), metadata=m.get("metadata") or {})
            for m in data.get("matches", [])
        ]

    async def aclose(self) -> None:
        await self._client.aclose()
