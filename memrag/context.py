"""
Runtime context: builds and owns every long-lived object.

Rate-limiter windows and circuit-breaker counters are process-wide state.
They live here, on one RAGContext per process, and are injected into the
embedders, reranker and pipelines. Tests build their own isolated context
(or the components directly) instead of sharing module globals.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from memrag.config import RAGConfig, load_config
from memrag.embedding.embedder import DenseEmbedder, OpenAIEmbedder
from memrag.embedding.faiss_index import FaissHybridIndex
from memrag.embedding.sparse import HashingSparseEmbedder, PineconeSparseEmbedder, SparseEmbedder
from memrag.embedding.vector_index import PineconeIndex, VectorIndex
from memrag.errors import ConfigurationError
from memrag.ingestion.pipeline import IngestionPipeline
from memrag.ingestion.queue import QueueWorker
from memrag.ingestion.store import DocumentStore, InMemoryDocumentStore, InMemoryQueueStore, QueueStore
from memrag.ingestion.tagger import AutoTagger
from memrag.query.decomposition import QueryDecomposer
from memrag.query.expansion import QueryExpander
from memrag.query.llm import JsonLLM
from memrag.resilience.circuit_breaker import CircuitBreakerRegistry
from memrag.resilience.rate_limiter import RateLimiter, RateLimiterRegistry
from memrag.retrieval.rerank_providers import build_provider_registry
from memrag.retrieval.reranker import RerankOrchestrator
from memrag.retrieval.retriever import HybridRetriever
from memrag.serving.pipeline import QueryPipeline

DOCUMENTS_FILE = "documents.json"
QUEUE_FILE = "queue.json"


def build_rate_limiters(config: RAGConfig) -> RateLimiterRegistry:
    registry = RateLimiterRegistry()
    for name, settings in config.rate_limits.items():
        registry.register(
            RateLimiter(
                name,
                requests_per_minute=settings.requests_per_minute,
                tokens_per_minute=settings.tokens_per_minute,
                requests_per_day=settings.requests_per_day,
                max_wait_s=settings.max_wait_s,
            )
        )
    return registry


@dataclass
class RAGContext:
    config: RAGConfig
    rate_limiters: RateLimiterRegistry
    breakers: CircuitBreakerRegistry
    index: VectorIndex
    dense_embedder: DenseEmbedder
    sparse_embedder: SparseEmbedder
    document_store: DocumentStore
    queue_store: QueueStore
    llm: Optional[JsonLLM]
    reranker: RerankOrchestrator
    retriever: HybridRetriever
    ingestion: IngestionPipeline
    query_pipeline: QueryPipeline
    queue_worker: QueueWorker

    @classmethod
    def from_config(
        cls,
        config: Optional[RAGConfig] = None,
        index: Optional[VectorIndex] = None,
        dense_embedder: Optional[DenseEmbedder] = None,
        document_store: Optional[DocumentStore] = None,
        queue_store: Optional[QueueStore] = None,
    ) -> "RAGContext":
        """
        Wire the engine from config. Any collaborator passed in explicitly is
        used as-is; the rest are built from config + credentials.

        Raises:
            ConfigurationError: a required credential (OpenAI key, or the
                Pinecone key + host for the pinecone backend) is missing.
        """
        config = config or load_config()
        creds = config.credentials
        limiters = build_rate_limiters(config)
        breakers = CircuitBreakerRegistry(
            threshold=config.rerank.breaker_threshold, reset_s=config.rerank.breaker_reset_s
        )
        local_dir = Path(config.index.local_dir)

        if dense_embedder is None:
            dense_embedder = OpenAIEmbedder(
                api_key=creds.require("openai_api_key"),
                model=config.embedding.model,
                dimensions=config.embedding.dimensions,
                batch_size=config.embedding.batch_size,
                max_input_chars=config.embedding.max_input_chars,
                rate_limiter=limiters.get("openai"),
            )

        if index is None:
            if config.index.backend == "pinecone":
                index = PineconeIndex(
                    host=creds.require("pinecone_index_host"),
                    api_key=creds.require("pinecone_api_key"),
                    rate_limiter=limiters.get("pinecone"),
                )
            elif config.index.backend == "faiss":
                index = FaissHybridIndex.load(local_dir, dimensions=config.embedding.dimensions)
            else:
                raise ConfigurationError(f"Unknown index backend: {config.index.backend}")

        sparse_embedder: SparseEmbedder
        if creds.pinecone_api_key:
            sparse_embedder = PineconeSparseEmbedder(
                creds.pinecone_api_key, model=config.embedding.sparse_model, rate_limiter=limiters.get("pinecone")
            )
        else:
            sparse_embedder = HashingSparseEmbedder()

        document_store = document_store or InMemoryDocumentStore.load(local_dir / DOCUMENTS_FILE)
        queue_store = queue_store or InMemoryQueueStore.load(local_dir / QUEUE_FILE)

        llm: Optional[JsonLLM] = None
        if creds.anthropic_api_key:
            llm = JsonLLM(api_key=creds.anthropic_api_key, rate_limiter=limiters.get("anthropic"))

        features = config.features
        reranker = RerankOrchestrator(
            build_provider_registry(
                cohere_api_key=creds.cohere_api_key,
                pinecone_api_key=creds.pinecone_api_key,
                cohere_model=config.rerank.cohere_model,
                pinecone_model=config.rerank.pinecone_model,
            ),
            breakers=breakers,
            rate_limiters=limiters,
            default_provider=features.rerank_provider,
            fallback_chain=config.rerank.fallback_chain if config.rerank.fallback_enabled else [],
            score_weight=config.rerank.score_weight,
            default_top_n=config.rerank.top_n,
        )
        retriever = HybridRetriever(
            index,
            dense_embedder,
            sparse_embedder=sparse_embedder if features.hybrid_search_enabled else None,
            default_alpha=config.hybrid.default_alpha,
            auto_tune=config.hybrid.auto_tune_enabled,
        )
        ingestion = IngestionPipeline(
            index,
            dense_embedder,
            document_store,
            sparse_embedder=sparse_embedder,
            tagger=AutoTagger(llm) if llm is not None else None,
            hybrid_enabled=features.hybrid_search_enabled,
            auto_tag_enabled=features.auto_tagging_enabled,
            deduplication_enabled=config.ingestion.deduplication_enabled,
            default_project=config.ingestion.default_project,
        )
        query_pipeline = QueryPipeline(
            retriever,
            reranker=reranker,
            expander=QueryExpander(llm=llm, llm_enabled=features.llm_expansion_enabled),
            decomposer=QueryDecomposer(llm=llm, llm_enabled=features.llm_decomposition_enabled),
            config=config,
        )

        logger.info(
            f"[RAGContext] backend={config.index.backend} | "
            f"sparse={type(sparse_embedder).__name__} | llm={'on' if llm else 'off'} | "
            f"rerank providers={reranker.available_providers}"
        )
        return cls(
            config=config,
            rate_limiters=limiters,
            breakers=breakers,
            index=index,
            dense_embedder=dense_embedder,
            sparse_embedder=sparse_embedder,
            document_store=document_store,
            queue_store=queue_store,
            llm=llm,
            reranker=reranker,
            retriever=retriever,
            ingestion=ingestion,
            query_pipeline=query_pipeline,
            queue_worker=QueueWorker(queue_store, ingestion, config.ingestion),
        )

    def persist(self) -> None:
        """Snapshot the local index and in-memory stores to index.local_dir."""
        local_dir = Path(self.config.index.local_dir)
        if isinstance(self.index, FaissHybridIndex):
            self.index.save(local_dir)
        if isinstance(self.document_store, InMemoryDocumentStore):
            self.document_store.save(local_dir / DOCUMENTS_FILE)
        if isinstance(self.queue_store, InMemoryQueueStore):
            self.queue_store.save(local_dir / QUEUE_FILE)

    async def aclose(self) -> None:
        for closable in (self.index, self.sparse_embedder, *self.reranker.providers.values()):
            close = getattr(closable, "aclose", None)
            if close is not None:
                await close()
