"""
Hybrid Retriever
-----------------
Embeds the user query and runs ONE hybrid (dense + sparse) query against the
vector index.

    query ──┬── dense embed  (OpenAI)            ─┐
            └── sparse embed (input_type=query)  ─┴─► alpha scale ─► index.query
                      (concurrent, asyncio.gather)

Alpha comes from `resolve_alpha`: explicit > data-type default > global
default, auto-tuned unless explicit. The index receives the dense vector
scaled by alpha and the sparse values scaled by (1 - alpha).

The retriever is stateless per query -- call retrieve() as many times as you
like from the same instance.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np
from langsmith import traceable
from loguru import logger
from pydantic import BaseModel, Field

from memrag.embedding.embedder import DenseEmbedder
from memrag.embedding.sparse import SparseEmbedder
from memrag.embedding.vector_index import VectorIndex, hybrid_scale
from memrag.errors import IngestionError, RetrievalError, is_retryable_error
from memrag.retrieval.alpha import DEFAULT_ALPHA, resolve_alpha
from memrag.schemas import QueryFilters, RankedResult, SparseValues, VectorRecord


class HybridQueryInfo(BaseModel):
    alpha_used: float
    alpha_source: str
    sparse_terms_count: int = 0
    dense_ms: float = 0.0
    sparse_ms: float = 0.0
    query_ms: float = 0.0
    keyword_boost_applied: bool = False
    hybrid: bool = True
    filter_applied: dict[str, Any] = Field(default_factory=dict)


class HybridSearchResult(BaseModel):
    results: list[RankedResult] = Field(default_factory=list)
    info: HybridQueryInfo


class HybridRetriever:
    """
    Args:
        index:             VectorIndex (Pinecone or local FAISS).
        dense_embedder:    Produces the query embedding.
        sparse_embedder:   Produces the lexical query vector; None disables hybrid.
        default_alpha:     Global fallback alpha.
        auto_tune:         Apply query-shape alpha adjustments.
    """

    def __init__(
        self,
        index: VectorIndex,
        dense_embedder: DenseEmbedder,
        sparse_embedder: Optional[SparseEmbedder] = None,
        default_alpha: float = DEFAULT_ALPHA,
        auto_tune: bool = True,
    ) -> None:
        self.index = index
        self.dense_embedder = dense_embedder
        self.sparse_embedder = sparse_embedder
        self.default_alpha = default_alpha
        self.auto_tune = auto_tune

    async def _timed_dense(self, query: str) -> tuple[np.ndarray, float]:
        start = time.perf_counter()
        vector = await self.dense_embedder.embed_query(query)
        return vector, (time.perf_counter() - start) * 1000

    async def _timed_sparse(self, query: str) -> tuple[SparseValues, float]:
        start = time.perf_counter()
        vector = await self.sparse_embedder.embed(query, input_type="query")
        return vector, (time.perf_counter() - start) * 1000

    @traceable(name="retrieve", run_type="retriever")
    async def retrieve(
        self,
        query: str,
        top_k: int = 10,
        filters: Optional[QueryFilters] = None,
        alpha_hint: Optional[float] = None,
        data_type: Optional[str] = None,
        hybrid: bool = True,
    ) -> HybridSearchResult:
        """
        Embed the query and return the top_k matches as RankedResults.

        Raises:
            RetrievalError: embedding or index query failed.
        """
        logger.debug(f"[Retriever] Query: {query[:80]!r} | top_k={top_k} | hybrid={hybrid}")
        use_sparse = hybrid and self.sparse_embedder is not None
        decision = resolve_alpha(
            query,
            explicit=alpha_hint,
            data_type=data_type,
            default_alpha=self.default_alpha,
            auto_tune=self.auto_tune,
        )

        try:
            if use_sparse:
                (dense, dense_ms), (sparse, sparse_ms) = await asyncio.gather(
                    self._timed_dense(query), self._timed_sparse(query)
                )
            else:
                dense, dense_ms = await self._timed_dense(query)
                sparse, sparse_ms = None, 0.0
        except Exception as exc:
            raise RetrievalError(f"query embedding failed: {exc}") from exc

        # dense-only queries carry the dense vector unscaled
        alpha = decision.alpha if use_sparse else 1.0
        scaled_dense, scaled_sparse = hybrid_scale(
            [float(v) for v in dense], sparse, alpha
        )
        index_filter = filters.to_index_filter() if filters is not None else {}

        start = time.perf_counter()
        try:
            matches = await self.index.query(
                scaled_dense, scaled_sparse, top_k=top_k, filter_=index_filter or None
            )
        except Exception as exc:
            raise RetrievalError(f"vector query failed: {exc}") from exc
        query_ms = (time.perf_counter() - start) * 1000

        results = [RankedResult.from_match(m, rank) for rank, m in enumerate(matches, start=1)]
        info = HybridQueryInfo(
            alpha_used=round(decision.alpha, 4) if use_sparse else 1.0,
            alpha_source=decision.source if use_sparse else "dense_only",
            sparse_terms_count=len(sparse.indices) if sparse is not None else 0,
            dense_ms=round(dense_ms, 2),
            sparse_ms=round(sparse_ms, 2),
            query_ms=round(query_ms, 2),
            keyword_boost_applied=decision.keyword_boost_applied,
            hybrid=use_sparse,
            filter_applied=index_filter,
        )

        logger.info(
            f"[Retriever] Retrieved {len(results)} candidates "
            f"(alpha={info.alpha_used} via {info.alpha_source}, "
            f"top score: {results[0].semantic_score:.4f})"
            if results
            else "[Retriever] No results"
        )
        return HybridSearchResult(results=results, info=info)


# --- Write side ---------------------------------------------------------------

@dataclass
class HybridItem:
    id: str
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class HybridUpsertResult:
    upserted: int = 0
    sparse_vectors: int = 0
    dense_ms: float = 0.0
    sparse_ms: float = 0.0
    upsert_ms: float = 0.0


async def upsert_hybrid_vectors(
    index: VectorIndex,
    dense_embedder: DenseEmbedder,
    items: list[HybridItem],
    sparse_embedder: Optional[SparseEmbedder] = None,
) -> HybridUpsertResult:
    """
    Embed and upsert items in batches of the index's upsert limit.

    Dense failure is fatal (IngestionError stage="embedding"); a failed sparse
    embed degrades that item to dense-only; index failure raises
    IngestionError stage="upsert".
    """
    result = HybridUpsertResult()
    if not items:
        return result

    start = time.perf_counter()
    try:
        dense = await dense_embedder.embed_texts([item.text for item in items])
    except Exception as exc:
        raise IngestionError("embedding", str(exc), retryable=is_retryable_error(exc)) from exc
    result.dense_ms = (time.perf_counter() - start) * 1000

    sparse: list[Optional[SparseValues]] = [None] * len(items)
    if sparse_embedder is not None:
        start = time.perf_counter()
        sparse = list(
            await asyncio.gather(*(sparse_embedder.embed(item.text) for item in items))
        )
        result.sparse_ms = (time.perf_counter() - start) * 1000
        result.sparse_vectors = sum(1 for s in sparse if s is not None and not s.is_empty)

    records = [
        VectorRecord(
            id=item.id,
            values=[float(v) for v in dense[i]],
            sparse_values=sparse[i] if sparse[i] is not None and not sparse[i].is_empty else None,
            metadata=item.metadata,
        )
        for i, item in enumerate(items)
    ]

    start = time.perf_counter()
    try:
        result.upserted = await index.upsert_batched(records)
    except Exception as exc:
        raise IngestionError("upsert", str(exc), retryable=is_retryable_error(exc)) from exc
    result.upsert_ms = (time.perf_counter() - start) * 1000

    logger.debug(
        f"[Retriever] Upserted {result.upserted} vectors "
        f"({result.sparse_vectors} with sparse values)"
    )
    return result
