"""
Document, queue and dead-letter stores.

The relational store is an external collaborator; these ABCs capture the
handful of operations the engine needs from it. The in-memory
implementations back the CLI and the test-suite and can be snapshotted to
JSON (orjson) between runs.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import timedelta
from pathlib import Path
from typing import Optional

from loguru import logger

from memrag.schemas import DeadLetterItem, QueueItem, QueueStatus, StoredDocument
from memrag.utils.helpers import load_json, save_json, utcnow


# --- Documents ----------------------------------------------------------------

class DocumentStore(ABC):
    @abstractmethod
    async def find_by_hashes(self, hashes: list[str]) -> dict[str, StoredDocument]:
        """Existing documents keyed by content hash."""

    @abstractmethod
    async def upsert(self, document: StoredDocument) -> None:
        """Insert or replace by document_id."""

    @abstractmethod
    async def get(self, document_id: str) -> Optional[StoredDocument]:
        ...

    async def find_by_hash(self, content_hash: str) -> Optional[StoredDocument]:
        found = await self.find_by_hashes([content_hash])
        return found.get(content_hash)


class InMemoryDocumentStore(DocumentStore):
    def __init__(self) -> None:
        self._documents: dict[str, StoredDocument] = {}
        self._by_hash: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def find_by_hashes(self, hashes: list[str]) -> dict[str, StoredDocument]:
        return {
            h: self._documents[self._by_hash[h]]
            for h in hashes
            if h in self._by_hash
        }

    async def upsert(self, document: StoredDocument) -> None:
        async with self._lock:
            previous = self._documents.get(document.document_id)
            if previous is not None and self._by_hash.get(previous.content_hash) == document.document_id:
                del self._by_hash[previous.content_hash]
            self._documents[document.document_id] = document
            self._by_hash[document.content_hash] = document.document_id

    async def get(self, document_id: str) -> Optional[StoredDocument]:
        return self._documents.get(document_id)

    def __len__(self) -> int:
        return len(self._documents)

    def save(self, path: str | Path) -> None:
        save_json([d.model_dump(mode="json") for d in self._documents.values()], path)

    @classmethod
    def load(cls, path: str | Path) -> "InMemoryDocumentStore":
        store = cls()
        if Path(path).exists():
            for raw in load_json(path):
                doc = StoredDocument(**raw)
                store._documents[doc.document_id] = doc
                store._by_hash[doc.content_hash] = doc.document_id
        return store


# --- Queue --------------------------------------------------------------------

class QueueStore(ABC):
    @abstractmethod
    async def enqueue(self, item: QueueItem) -> QueueItem:
        ...

    @abstractmethod
    async def claim_pending(self, batch_size: int, priority_min: int = 0) -> list[QueueItem]:
        """Atomically move up to batch_size pending items to processing."""

    @abstractmethod
    async def complete(self, item_id: str) -> None:
        ...

    @abstractmethod
    async def fail_with_retry(self, item_id: str, error: str, max_retries: int) -> bool:
        """Record a failure. Returns True if the item was dead-lettered."""

    @abstractmethod
    async def dead_letter(self, item_id: str, error: str) -> None:
        """Record a failure that retrying cannot fix and dead-letter the item now."""

    @abstractmethod
    async def reset_stale(self, older_than_minutes: int) -> int:
        """Return processing items older than the cutoff to pending."""

    @abstractmethod
    async def get(self, item_id: str) -> Optional[QueueItem]:
        ...

    @abstractmethod
    async def dead_letters(self) -> list[DeadLetterItem]:
        ...

    @abstractmethod
    async def stats(self) -> dict[str, int]:
        ...


class InMemoryQueueStore(QueueStore):
    def __init__(self) -> None:
        self._items: dict[str, QueueItem] = {}
        self._dead: list[DeadLetterItem] = []
        self._lock = asyncio.Lock()

    async def enqueue(self, item: QueueItem) -> QueueItem:
        async with self._lock:
            self._items[item.id] = item
        return item

    async def claim_pending(self, batch_size: int, priority_min: int = 0) -> list[QueueItem]:
        async with self._lock:
            pending = [
                i for i in self._items.values()
                if i.status == QueueStatus.PENDING and i.priority >= priority_min
            ]
            pending.sort(key=lambda i: (-i.priority, i.created_at))
            claimed = pending[:batch_size]
            now = utcnow()
            for item in claimed:
                item.status = QueueStatus.PROCESSING
                item.updated_at = now
            return [i.model_copy(deep=True) for i in claimed]

    async def complete(self, item_id: str) -> None:
        async with self._lock:
            item = self._items[item_id]
            item.status = QueueStatus.COMPLETED
            item.error_message = None
            item.updated_at = utcnow()

    def _record_failure(self, item: QueueItem, error: str) -> None:
        now = utcnow()
        item.error_history.append(
            {"attempt": item.retry_count + 1, "error": error, "timestamp": now.isoformat()}
        )
        item.error_message = error
        item.updated_at = now

    def _move_to_dead_letter(self, item: QueueItem, error: str) -> None:
        item.status = QueueStatus.FAILED
        self._dead.append(
            DeadLetterItem(
                original_id=item.id,
                item=item.model_copy(deep=True),
                final_error=error,
                retry_count=item.retry_count + 1,
                error_history=list(item.error_history),
            )
        )
        del self._items[item.id]
        logger.error(
            f"[Queue] {item.id} moved to dead-letter after "
            f"{item.retry_count + 1} attempt(s): {error}"
        )

    async def fail_with_retry(self, item_id: str, error: str, max_retries: int) -> bool:
        async with self._lock:
            item = self._items[item_id]
            self._record_failure(item, error)

            if item.retry_count + 1 >= max_retries:
                self._move_to_dead_letter(item, error)
                return True

            item.retry_count += 1
            item.status = QueueStatus.PENDING
            logger.warning(
                f"[Queue] {item_id} failed (retry {item.retry_count}/{max_retries}), re-queued: {error}"
            )
            return False

    async def dead_letter(self, item_id: str, error: str) -> None:
        async with self._lock:
            item = self._items[item_id]
            self._record_failure(item, error)
            self._move_to_dead_letter(item, error)

    async def reset_stale(self, older_than_minutes: int) -> int:
        cutoff = utcnow() - timedelta(minutes=older_than_minutes)
        reset = 0
        async with self._lock:
            for item in self._items.values():
                if item.status == QueueStatus.PROCESSING and item.updated_at < cutoff:
                    item.status = QueueStatus.PENDING
                    item.updated_at = utcnow()
                    reset += 1
        if reset:
            logger.warning(f"[Queue] Reset {reset} stale processing item(s) to pending")
        return reset

    async def get(self, item_id: str) -> Optional[QueueItem]:
        return self._items.get(item_id)

    async def dead_letters(self) -> list[DeadLetterItem]:
        return list(self._dead)

    async def stats(self) -> dict[str, int]:
        counts = {status.value: 0 for status in QueueStatus}
        for item in self._items.values():
            counts[item.status.value] += 1
        counts["dead_lettered"] = len(self._dead)
        return counts

    def export_dead_letters(self, path: str | Path) -> None:
        save_json([d.model_dump(mode="json") for d in self._dead], path)

    def save(self, path: str | Path) -> None:
        save_json(
            {
                "items": [i.model_dump(mode="json") for i in self._items.values()],
                "dead_letters": [d.model_dump(mode="json") for d in self._dead],
            },
            path,
        )

    @classmethod
    def load(cls, path: str | Path) -> "InMemoryQueueStore":
        store = cls()
        if Path(path).exists():
            raw = load_json(path)
            for entry in raw.get("items", []):
                item = QueueItem(**entry)
                store._items[item.id] = item
            store._dead = [DeadLetterItem(**d) for d in raw.get("dead_letters", [])]
        return store
