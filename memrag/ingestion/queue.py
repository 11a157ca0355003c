"""
Queue worker: drains pending QueueItems through the ingestion pipeline.

One pass:
  1. stale `processing` items (worker died mid-item) go back to pending
  2. up to `batch_size` pending items are claimed, highest priority first
  3. the BatchProcessor runs them (concurrency 2, 60s timeout, 3 attempts)
  4. successes are completed; non-retryable failures (validation, permanent
     provider errors) are dead-lettered at once; the rest go through
     fail_with_retry, which re-queues or dead-letters by retry count
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from loguru import logger

from memrag.config import IngestionConfig
from memrag.errors import IngestionError
from memrag.ingestion.pipeline import IngestionPipeline, IngestionRequest, IngestionResult
from memrag.ingestion.store import QueueStore
from memrag.resilience.batch_processor import BatchConfig, BatchProcessor
from memrag.schemas import QueueItem
from memrag.utils.helpers import parse_datetime


@dataclass
class QueueRunReport:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    dead_lettered: int = 0
    duplicates: int = 0
    stale_reset: int = 0
    batch_summary: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return vars(self).copy()


def request_from_item(item: QueueItem) -> IngestionRequest:
    # The queue id doubles as document id so a retried item upserts the same vectors.
    return IngestionRequest(
        content=item.content,
        data_type=item.data_type,
        source=item.source,
        metadata=dict(item.metadata),
        document_id=item.id,
        timestamp=parse_datetime(item.metadata.get("timestamp")),
        queue_id=item.id,
    )


class QueueWorker:
    def __init__(
        self,
        queue: QueueStore,
        pipeline: IngestionPipeline,
        config: Optional[IngestionConfig] = None,
        processor: Optional[BatchProcessor] = None,
    ) -> None:
        self.queue = queue
        self.pipeline = pipeline
        self.config = config or IngestionConfig()
        self.processor = processor or BatchProcessor(
            BatchConfig(
                max_concurrent=self.config.max_concurrent,
                timeout_s=self.config.timeout_s,
                retry_attempts=self.config.retry_attempts,
                retry_delay_s=self.config.retry_delay_s,
            )
        )

    async def _handle(self, item: QueueItem) -> tuple[QueueItem, IngestionResult]:
        result = await self.pipeline.ingest(request_from_item(item))
        if not result.success:
            raise IngestionError(result.stage.value, result.error or "unknown error", retryable=result.retryable)
        return item, result

    async def process_pending(self, batch_size: Optional[int] = None, priority_min: int = 0) -> QueueRunReport:
        report = QueueRunReport()
        report.stale_reset = await self.queue.reset_stale(self.config.stale_processing_minutes)

        items = await self.queue.claim_pending(batch_size or self.config.batch_size, priority_min)
        if not items:
            logger.info("[QueueWorker] No pending items")
            return report

        logger.info(f"[QueueWorker] Claimed {len(items)} item(s)")
        batch = await self.processor.run(items, self._handle)

        for item, result in batch.successful:
            await self.queue.complete(item.id)
            report.succeeded += 1
            report.duplicates += result.duplicates_skipped

        for failure in batch.failed:
            report.failed += 1
            if not failure.retryable:
                await self.queue.dead_letter(failure.item.id, failure.error)
                dead = True
            else:
                dead = await self.queue.fail_with_retry(
                    failure.item.id, failure.error, self.config.max_retries_for_dlq
                )
            if dead:
                report.dead_lettered += 1

        report.processed = len(items)
        report.batch_summary = batch.to_dict()["summary"]
        logger.info(
            f"[QueueWorker] Processed {report.processed}: {report.succeeded} ok, "
            f"{report.failed} failed ({report.dead_lettered} dead-lettered), "
            f"{report.duplicates} duplicate(s)"
        )
        return report
