"""
Query Pipeline
---------------
One natural-language query to a final ranked list:

    intent -> expansion -> decomposition -> retrieval -> rerank -> recency -> top `limit`

Every step is recorded as a PipelineStep (duration, counts, details). The
enhancement and scoring steps degrade: an exception there is recorded as a
skipped step with skip_reason "Error: ..." and the pipeline carries on with
what it has. Retrieval is the one step that can fail the query
(RetrievalError).

Reranking always scores against the ORIGINAL query, not the expanded one.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Optional

from langsmith import traceable
from loguru import logger
from pydantic import BaseModel, Field

from memrag.config import RAGConfig
from memrag.errors import InputValidationError, RetrievalError
from memrag.query.decomposition import (
    DecomposedQuery,
    QueryDecomposer,
    fused_to_ranked,
    reciprocal_rank_fusion,
)
from memrag.query.expansion import QueryExpander
from memrag.query.intent import QueryIntent, detect_intent
from memrag.retrieval.recency import apply_recency_weighting
from memrag.retrieval.reranker import RerankOrchestrator, calculate_rerank_metrics
from memrag.retrieval.retriever import HybridRetriever
from memrag.schemas import QueryFilters, RankedResult
from memrag.utils.helpers import elapsed_ms, utcnow


class QueryOptions(BaseModel):
    """Per-request overrides; None means "use the configured default"."""

    use_rerank: Optional[bool] = None
    use_hybrid: Optional[bool] = None
    use_expansion: Optional[bool] = None
    use_recency: Optional[bool] = None
    use_intent_detection: Optional[bool] = None
    use_decomposition: Optional[bool] = None
    alpha: Optional[float] = None
    recency_weight: Optional[str] = None
    rerank_top_n: Optional[int] = None
    rerank_provider: Optional[str] = None
    fetch_multiplier: Optional[int] = None


class QueryRequest(BaseModel):
    query: str
    limit: Optional[int] = None
    filters: Optional[QueryFilters] = None
    options: QueryOptions = Field(default_factory=QueryOptions)


class PipelineStep(BaseModel):
    name: str
    duration_ms: float = 0.0
    input_count: Optional[int] = None
    output_count: Optional[int] = None
    skipped: bool = False
    skip_reason: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class QueryMetadata(BaseModel):
    query_id: str
    original_query: str
    expanded_query: Optional[str] = None
    sub_queries: list[str] = Field(default_factory=list)
    detected_intent: Optional[QueryIntent] = None
    pipeline_steps: list[PipelineStep] = Field(default_factory=list)
    total_time_ms: float = 0.0
    features_enabled: list[str] = Field(default_factory=list)


class QueryResponse(BaseModel):
    results: list[RankedResult] = Field(default_factory=list)
    metadata: QueryMetadata

    def step(self, name: str) -> Optional[PipelineStep]:
        return next((s for s in self.metadata.pipeline_steps if s.name == name), None)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class _Effective(BaseModel):
    use_rerank: bool
    use_hybrid: bool
    use_expansion: bool
    use_recency: bool
    use_intent_detection: bool
    use_decomposition: bool
    alpha: Optional[float]
    recency_weight: str
    rerank_top_n: int
    rerank_provider: str
    fetch_multiplier: int


def _error_reason(exc: BaseException) -> str:
    return f"Error: {str(exc) or type(exc).__name__}"


def _skipped(name: str, reason: str, duration_ms: float = 0.0) -> PipelineStep:
    return PipelineStep(name=name, duration_ms=round(duration_ms, 2), skipped=True, skip_reason=reason)


class QueryPipeline:
    """
    Args:
        retriever:  Hybrid retrieval coordinator (required).
        reranker:   Rerank orchestrator; None behaves like rerank disabled.
        expander:   Query expander; defaults to rule-based only.
        decomposer: Query decomposer; defaults to rule-based only.
        config:     Feature flags and limits.
    """

    def __init__(
        self,
        retriever: HybridRetriever,
        reranker: Optional[RerankOrchestrator] = None,
        expander: Optional[QueryExpander] = None,
        decomposer: Optional[QueryDecomposer] = None,
        config: Optional[RAGConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.retriever = retriever
        self.reranker = reranker
        self.expander = expander or QueryExpander()
        self.decomposer = decomposer or QueryDecomposer()
        self.config = config or RAGConfig()
        self._clock = clock

    def _effective(self, options: QueryOptions) -> _Effective:
        features = self.config.features

        def pick(value, default):
            return default if value is None else value

        return _Effective(
            use_rerank=pick(options.use_rerank, features.rerank_enabled) and self.reranker is not None,
            use_hybrid=pick(options.use_hybrid, features.hybrid_search_enabled),
            use_expansion=pick(options.use_expansion, features.query_expansion_enabled),
            use_recency=pick(options.use_recency, features.recency_weighting_enabled),
            use_intent_detection=pick(options.use_intent_detection, features.intent_detection_enabled),
            use_decomposition=pick(options.use_decomposition, features.query_decomposition_enabled),
            alpha=options.alpha,
            recency_weight=pick(options.recency_weight, features.default_recency_weight),
            rerank_top_n=pick(options.rerank_top_n, self.config.rerank.top_n),
            rerank_provider=pick(options.rerank_provider, features.rerank_provider),
            fetch_multiplier=pick(options.fetch_multiplier, self.config.search.fetch_multiplier_for_rerank),
        )

    @staticmethod
    def _features_enabled(eff: _Effective) -> list[str]:
        flags = {
            "rerank": eff.use_rerank,
            "hybrid_search": eff.use_hybrid,
            "query_expansion": eff.use_expansion,
            "query_decomposition": eff.use_decomposition,
            "recency_weighting": eff.use_recency,
            "intent_detection": eff.use_intent_detection,
        }
        return [name for name, on in flags.items() if on]

    def _validate(self, request: QueryRequest) -> int:
        if not request.query or not request.query.strip():
            raise InputValidationError("query must not be empty")
        limit = request.limit or self.config.search.default_limit
        if limit < 1:
            raise InputValidationError(f"limit must be positive, got {limit}")
        return min(limit, self.config.search.max_limit)

    # --- Steps ----------------------------------------------------------------

    def _detect_intent(self, query: str, eff: _Effective) -> tuple[Optional[QueryIntent], PipelineStep]:
        if not eff.use_intent_detection:
            return None, _skipped("intent_detection", "Disabled in options")
        start = time.perf_counter()
        try:
            intent = detect_intent(query, now=self._clock())
        except Exception as exc:
            logger.warning(f"[QueryPipeline] Intent detection failed: {exc}")
            return None, _skipped("intent_detection", _error_reason(exc), elapsed_ms(start))
        return intent, PipelineStep(
            name="intent_detection",
            duration_ms=round(elapsed_ms(start), 2),
            details={
                "intent_type": intent.intent_type,
                "confidence": intent.confidence,
                "filters_inferred": len(intent.inferred_filters.to_index_filter()),
            },
        )

    async def _expand(self, query: str, eff: _Effective) -> tuple[str, PipelineStep]:
        if not eff.use_expansion:
            return query, _skipped("query_expansion", "Disabled in options")
        start = time.perf_counter()
        try:
            expansion = await self.expander.expand(query)
        except Exception as exc:
            logger.warning(f"[QueryPipeline] Query expansion failed: {exc}")
            return query, _skipped("query_expansion", _error_reason(exc), elapsed_ms(start))
        if expansion.added_terms == 0:
            return query, _skipped("query_expansion", "No expansion terms found", elapsed_ms(start))
        return expansion.expanded, PipelineStep(
            name="query_expansion",
            duration_ms=round(elapsed_ms(start), 2),
            details={"method": expansion.expansion_method, "terms_added": expansion.added_terms},
        )

    async def _decompose(self, query: str, eff: _Effective) -> tuple[Optional[DecomposedQuery], PipelineStep]:
        if not eff.use_decomposition:
            return None, _skipped("query_decomposition", "Disabled in options")
        start = time.perf_counter()
        try:
            decomposed = await self.decomposer.decompose(query)
        except Exception as exc:
            logger.warning(f"[QueryPipeline] Query decomposition failed: {exc}")
            return None, _skipped("query_decomposition", _error_reason(exc), elapsed_ms(start))
        if not decomposed.is_decomposed:
            return None, _skipped("query_decomposition", "Single-part query", elapsed_ms(start))
        return decomposed, PipelineStep(
            name="query_decomposition",
            duration_ms=round(elapsed_ms(start), 2),
            output_count=len(decomposed.sub_queries),
            details={"method": decomposed.decomposition_method, "sub_queries": decomposed.sub_queries},
        )

    async def _retrieve(
        self,
        search_query: str,
        decomposed: Optional[DecomposedQuery],
        filters: QueryFilters,
        data_type: Optional[str],
        retrieval_limit: int,
        eff: _Effective,
    ) -> tuple[list[RankedResult], PipelineStep]:
        start = time.perf_counter()
        name = "hybrid_retrieval" if eff.use_hybrid else "dense_retrieval"

        async def _one(q: str):
            return await self.retriever.retrieve(
                q,
                top_k=retrieval_limit,
                filters=filters,
                alpha_hint=eff.alpha,
                data_type=data_type,
                hybrid=eff.use_hybrid,
            )

        try:
            if decomposed is None:
                searched = await _one(search_query)
                results = searched.results
                details = searched.info.model_dump(exclude={"filter_applied"})
                input_count = 1
            else:
                per_query = await asyncio.gather(*(_one(q) for q in decomposed.sub_queries))
                fused = reciprocal_rank_fusion([r.results for r in per_query])
                results = fused_to_ranked(fused)[:retrieval_limit]
                details = {"fusion": "rrf", "per_query_counts": [len(r.results) for r in per_query]}
                input_count = len(decomposed.sub_queries)
        except RetrievalError:
            raise
        except Exception as exc:
            raise RetrievalError(f"Retrieval failed: {exc}") from exc

        return results, PipelineStep(
            name=name,
            duration_ms=round(elapsed_ms(start), 2),
            input_count=input_count,
            output_count=len(results),
            details=details,
        )

    async def _rerank(
        self, query: str, results: list[RankedResult], top_n: int, eff: _Effective
    ) -> tuple[list[RankedResult], PipelineStep]:
        if not eff.use_rerank:
            return results, _skipped("reranking", "Disabled in options")
        if not results:
            return results, _skipped("reranking", "No results to rerank")
        start = time.perf_counter()
        try:
            reranked = await self.reranker.rerank(query, results, top_n=top_n, provider=eff.rerank_provider)
        except Exception as exc:
            logger.warning(f"[QueryPipeline] Reranking failed: {exc}")
            return results, _skipped("reranking", _error_reason(exc), elapsed_ms(start))
        metrics = calculate_rerank_metrics(reranked.documents)
        return reranked.documents, PipelineStep(
            name="reranking",
            duration_ms=round(elapsed_ms(start), 2),
            input_count=len(results),
            output_count=len(reranked.documents),
            details={
                "provider": reranked.provider_used,
                "fallback_used": reranked.fallback_used,
                "documents_moved": metrics["documents_moved"],
                "avg_rank_change": round(metrics["avg_rank_change"], 1),
                "top_5_changed": metrics["top_5_changed"],
                "circuit_breaker_skipped": reranked.metrics.circuit_breaker_skipped,
            },
        )

    def _apply_recency(self, results: list[RankedResult], eff: _Effective) -> tuple[list[RankedResult], PipelineStep]:
        if not eff.use_recency or not results:
            return results, _skipped("recency_weighting", "Disabled or no results")
        start = time.perf_counter()
        try:
            weighted = apply_recency_weighting(
                results, recency_weight=eff.recency_weight, reference_date=self._clock()
            )
        except Exception as exc:
            logger.warning(f"[QueryPipeline] Recency weighting failed: {exc}")
            return results, _skipped("recency_weighting", _error_reason(exc), elapsed_ms(start))
        return weighted, PipelineStep(
            name="recency_weighting",
            duration_ms=round(elapsed_ms(start), 2),
            output_count=len(weighted),
            details={"weight": eff.recency_weight},
        )

    # --- Entry point ----------------------------------------------------------

    @traceable(name="query_pipeline", run_type="chain")
    async def run(self, request: QueryRequest) -> QueryResponse:
        """
        Raises:
            InputValidationError: empty query or non-positive limit.
            RetrievalError:       the index or query embedding failed.
        """
        started = time.perf_counter()
        limit = self._validate(request)
        query = request.query.strip()
        eff = self._effective(request.options)
        steps: list[PipelineStep] = []

        intent, step = self._detect_intent(query, eff)
        steps.append(step)
        inferred = intent.inferred_filters if intent is not None else QueryFilters()
        filters = inferred.merge(request.filters)
        data_type = filters.data_type[0] if filters.data_type else None

        search_query, step = await self._expand(query, eff)
        steps.append(step)

        decomposed, step = await self._decompose(query, eff)
        steps.append(step)

        multiplier = eff.fetch_multiplier if eff.use_rerank else 1
        retrieval_limit = min(limit * multiplier, self.config.search.max_limit)
        results, step = await self._retrieve(search_query, decomposed, filters, data_type, retrieval_limit, eff)
        steps.append(step)

        results, step = await self._rerank(query, results, max(limit, eff.rerank_top_n), eff)
        steps.append(step)

        results, step = self._apply_recency(results, eff)
        steps.append(step)

        final = [r.model_copy(update={"rank": rank}) for rank, r in enumerate(results[:limit], start=1)]
        metadata = QueryMetadata(
            query_id=str(uuid.uuid4()),
            original_query=query,
            expanded_query=search_query if search_query != query else None,
            sub_queries=decomposed.sub_queries if decomposed is not None else [],
            detected_intent=intent,
            pipeline_steps=steps,
            total_time_ms=round(elapsed_ms(started), 2),
            features_enabled=self._features_enabled(eff),
        )
        logger.info(
            f"[QueryPipeline] {query[:60]!r} -> {len(final)} result(s) in {metadata.total_time_ms:.0f}ms "
            f"(skipped: {[s.name for s in steps if s.skipped]})"
        )
        return QueryResponse(results=final, metadata=metadata)
