"""
Ingestion Pipeline
-------------------
One document from raw content to indexed, persisted chunks:

    received -> dedup_checked -> tagged -> chunked -> embedded
             -> upserted -> persisted -> completed

  1. Dedup        canonical content hash checked against the document store
  2. Auto-tag     one LLM call, defaults on any failure (non-fatal)
  3. Metadata     timestamp (request or now), session_date, ISO week
  4. Chunk        parent id "{data_type}_{document_id}"
  5. Dense        batched OpenAI embeddings behind the openai rate limiter
  6. Sparse       per chunk; a failed chunk degrades to dense-only
  7. Vectors      chunk metadata + pass-through keys (files_changed, ...)
  8. Upsert       batches of 100 behind the index rate limiter
  9. Persist      StoredDocument upserted by document id (non-fatal)

`ingest` never raises: an unrecoverable error is reported as
`success=False` together with the last stage reached and whether the
failure is worth retrying, so the queue worker can decide.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from langsmith import traceable
from loguru import logger
from pydantic import BaseModel, Field

from memrag.chunking.chunker import ContentChunker, get_chunk_stats
from memrag.chunking.schemas import Chunk
from memrag.embedding.embedder import DenseEmbedder
from memrag.embedding.sparse import SparseEmbedder
from memrag.embedding.vector_index import VectorIndex
from memrag.errors import IngestionError, InputValidationError, is_retryable_error
from memrag.ingestion.deduplication import Deduplicator
from memrag.ingestion.store import DocumentStore
from memrag.ingestion.tagger import AutoTagger, default_tags, tag_or_default
from memrag.retrieval.retriever import HybridItem, upsert_hybrid_vectors
from memrag.schemas import DataType, ParentMetadata, StoredDocument, TaggingResult
from memrag.utils.helpers import elapsed_ms, iso_week, parse_datetime, utcnow

PASSTHROUGH_METADATA_KEYS = ("files_changed", "commit_hash", "branch")


class IngestionStage(str, Enum):
    RECEIVED = "received"
    DEDUP_CHECKED = "dedup_checked"
    TAGGED = "tagged"
    CHUNKED = "chunked"
    EMBEDDED = "embedded"
    UPSERTED = "upserted"
    PERSISTED = "persisted"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


class IngestionOptions(BaseModel):
    """Per-request overrides; None means "use the pipeline default"."""

    deduplicate: Optional[bool] = None
    auto_tag: Optional[bool] = None
    generate_sparse: Optional[bool] = None


class IngestionRequest(BaseModel):
    content: str
    data_type: DataType = DataType.DEFAULT
    source: str = "unknown"
    metadata: dict[str, Any] = Field(default_factory=dict)
    document_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: Optional[datetime] = None
    queue_id: Optional[str] = None
    options: IngestionOptions = Field(default_factory=IngestionOptions)

    @property
    def parent_id(self) -> str:
        return f"{self.data_type.value}_{self.document_id}"


class IngestionTiming(BaseModel):
    chunking_ms: float = 0.0
    tagging_ms: float = 0.0
    embedding_ms: float = 0.0
    sparse_ms: float = 0.0
    upsert_ms: float = 0.0
    storage_ms: float = 0.0
    total_ms: float = 0.0


class IngestionResult(BaseModel):
    document_id: str
    chunks_created: int = 0
    vectors_upserted: int = 0
    duplicates_skipped: int = 0
    tags: Optional[TaggingResult] = None
    timing: IngestionTiming = Field(default_factory=IngestionTiming)
    success: bool = True
    error: Optional[str] = None
    stage: IngestionStage = IngestionStage.RECEIVED
    retryable: bool = False


class FailedIngestion(BaseModel):
    request: IngestionRequest
    error: str


class BatchIngestionSummary(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    total_chunks: int = 0
    total_vectors: int = 0
    duplicates_skipped: int = 0
    total_time_ms: float = 0.0


class BatchIngestionResult(BaseModel):
    successful: list[IngestionResult] = Field(default_factory=list)
    failed: list[FailedIngestion] = Field(default_factory=list)
    summary: BatchIngestionSummary = Field(default_factory=BatchIngestionSummary)


def build_parent_metadata(
    request: IngestionRequest,
    tags: TaggingResult,
    now: datetime,
    default_project: str = "default",
) -> ParentMetadata:
    timestamp = parse_datetime(request.timestamp) or now
    extra = {k: v for k, v in request.metadata.items() if k not in ParentMetadata.model_fields}
    return ParentMetadata(
        source=request.source,
        data_type=request.data_type,
        project=str(request.metadata.get("project") or default_project),
        domain=tags.domain,
        action=tags.action,
        status=tags.status,
        entities=list(tags.entities),
        summary=tags.summary,
        importance=tags.importance,
        timestamp=timestamp.isoformat(),
        session_date=timestamp.date().isoformat(),
        week=iso_week(timestamp),
        extra=extra,
    )


def chunk_vector_metadata(chunk: Chunk, request_metadata: dict[str, Any]) -> dict[str, Any]:
    metadata = chunk.metadata.to_index_metadata()
    metadata.update(id=chunk.id, parent_id=chunk.parent_id, token_count=chunk.token_count)
    for key in PASSTHROUGH_METADATA_KEYS:
        if request_metadata.get(key):
            metadata[key] = request_metadata[key]
    return metadata


class IngestionPipeline:
    """
    Args:
        index:           Vector index to upsert into.
        dense_embedder:  Required; a dense failure aborts the document.
        document_store:  Full-content store, also the dedup source of truth.
        sparse_embedder: Optional; used only when hybrid search is enabled.
        tagger:          Optional auto-tagger; None means default tags.
    """

    def __init__(
        self,
        index: VectorIndex,
        dense_embedder: DenseEmbedder,
        document_store: DocumentStore,
        sparse_embedder: Optional[SparseEmbedder] = None,
        tagger: Optional[AutoTagger] = None,
        chunker: Optional[ContentChunker] = None,
        deduplicator: Optional[Deduplicator] = None,
        hybrid_enabled: bool = True,
        auto_tag_enabled: bool = True,
        deduplication_enabled: bool = True,
        default_project: str = "default",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.index = index
        self.dense_embedder = dense_embedder
        self.document_store = document_store
        self.sparse_embedder = sparse_embedder
        self.tagger = tagger
        self.chunker = chunker or ContentChunker()
        self.deduplicator = deduplicator or Deduplicator(document_store)
        self.hybrid_enabled = hybrid_enabled
        self.auto_tag_enabled = auto_tag_enabled
        self.deduplication_enabled = deduplication_enabled
        self.default_project = default_project
        self._clock = clock

    @traceable(name="ingest", run_type="chain")
    async def ingest(self, request: IngestionRequest) -> IngestionResult:
        started = time.perf_counter()
        timing = IngestionTiming()
        parent_id = request.parent_id
        stage = IngestionStage.RECEIVED

        deduplicate = request.options.deduplicate
        if deduplicate is None:
            deduplicate = self.deduplication_enabled
        auto_tag = request.options.auto_tag
        if auto_tag is None:
            auto_tag = self.auto_tag_enabled
        generate_sparse = request.options.generate_sparse
        if generate_sparse is None:
            generate_sparse = self.hybrid_enabled

        try:
            if not request.content.strip():
                raise InputValidationError("content must not be empty")

            # 1. Dedup
            content_hash = self.deduplicator.hash(request.content)
            if deduplicate:
                existing_id = await self.deduplicator.find_existing(content_hash)
                if existing_id is not None:
                    logger.info(f"[IngestionPipeline] Duplicate detected (hash: {content_hash}) -> {existing_id}")
                    timing.total_ms = elapsed_ms(started)
                    return IngestionResult(
                        document_id=existing_id,
                        duplicates_skipped=1,
                        timing=timing,
                        stage=IngestionStage.COMPLETED,
                    )
            stage = IngestionStage.DEDUP_CHECKED

            # 2. Auto-tag
            if auto_tag and self.tagger is not None:
                tag_start = time.perf_counter()
                tags = await tag_or_default(
                    self.tagger, request.content, request.source, request.data_type.value
                )
                timing.tagging_ms = elapsed_ms(tag_start)
            else:
                tags = default_tags(request.content)
            stage = IngestionStage.TAGGED

            # 3-4. Metadata + chunking
            parent_metadata = build_parent_metadata(request, tags, self._clock(), self.default_project)
            chunk_start = time.perf_counter()
            chunks = self.chunker.chunk(request.content, parent_id, parent_metadata)
            timing.chunking_ms = elapsed_ms(chunk_start)
            stats = get_chunk_stats(chunks)
            logger.info(
                f"[IngestionPipeline] {parent_id} | {stats.total_chunks} chunk(s) "
                f"(avg {stats.avg_tokens_per_chunk} tokens)"
            )
            stage = IngestionStage.CHUNKED

            # 5-8. Embeddings + upsert
            items = [
                HybridItem(id=c.id, text=c.content, metadata=chunk_vector_metadata(c, request.metadata))
                for c in chunks
            ]
            try:
                upserted = await upsert_hybrid_vectors(
                    self.index,
                    self.dense_embedder,
                    items,
                    sparse_embedder=self.sparse_embedder if generate_sparse else None,
                )
            except IngestionError as exc:
                if exc.stage == "upsert":
                    stage = IngestionStage.EMBEDDED
                raise
            timing.embedding_ms = upserted.dense_ms
            timing.sparse_ms = upserted.sparse_ms
            timing.upsert_ms = upserted.upsert_ms
            stage = IngestionStage.UPSERTED

            # 9. Persist
            storage_start = time.perf_counter()
            await self._persist(request, parent_id, content_hash, chunks, parent_metadata, stats.model_dump())
            timing.storage_ms = elapsed_ms(storage_start)
            stage = IngestionStage.PERSISTED

        except Exception as exc:
            timing.total_ms = elapsed_ms(started)
            logger.error(f"[IngestionPipeline] {parent_id} failed after stage '{stage.value}': {exc}")
            return IngestionResult(
                document_id=parent_id,
                timing=timing,
                success=False,
                error=str(exc),
                stage=stage,
                retryable=is_retryable_error(exc),
            )

        timing.total_ms = elapsed_ms(started)
        logger.info(
            f"[IngestionPipeline] {parent_id} | {len(chunks)} chunks | "
            f"{upserted.upserted} vectors | {timing.total_ms:.0f}ms"
        )
        return IngestionResult(
            document_id=parent_id,
            chunks_created=len(chunks),
            vectors_upserted=upserted.upserted,
            tags=tags,
            timing=timing,
            stage=IngestionStage.COMPLETED,
        )

    async def _persist(
        self,
        request: IngestionRequest,
        parent_id: str,
        content_hash: str,
        chunks: list[Chunk],
        parent_metadata: ParentMetadata,
        stats: dict[str, Any],
    ) -> None:
        document = StoredDocument(
            document_id=parent_id,
            full_content=request.content,
            content_hash=content_hash,
            chunk_count=len(chunks),
            data_type=request.data_type,
            source=request.source,
            created_by_queue_id=request.queue_id,
            metadata={
                **parent_metadata.model_dump(mode="json"),
                "chunk_ids": [c.id for c in chunks],
                "stats": stats,
            },
        )
        try:
            await self.document_store.upsert(document)
        except Exception as exc:
            # vectors are already live; the document row can be rebuilt later
            logger.warning(f"[IngestionPipeline] Failed to store full content for {parent_id}: {exc}")

    async def ingest_batch(
        self, requests: list[IngestionRequest], concurrency: int = 2
    ) -> BatchIngestionResult:
        started = time.perf_counter()
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def _guarded(request: IngestionRequest) -> IngestionResult:
            async with semaphore:
                return await self.ingest(request)

        results = await asyncio.gather(*(_guarded(r) for r in requests))

        batch = BatchIngestionResult()
        for request, result in zip(requests, results):
            if result.success:
                batch.successful.append(result)
            else:
                batch.failed.append(FailedIngestion(request=request, error=result.error or "Unknown error"))

        batch.summary = BatchIngestionSummary(
            total=len(requests),
            successful=len(batch.successful),
            failed=len(batch.failed),
            total_chunks=sum(r.chunks_created for r in batch.successful),
            total_vectors=sum(r.vectors_upserted for r in batch.successful),
            duplicates_skipped=sum(r.duplicates_skipped for r in batch.successful),
            total_time_ms=round(elapsed_ms(started), 1),
        )
        logger.info(
            f"[IngestionPipeline] Batch: {batch.summary.successful}/{batch.summary.total} ok, "
            f"{batch.summary.duplicates_skipped} duplicate(s), {batch.summary.total_chunks} chunks"
        )
        return batch
