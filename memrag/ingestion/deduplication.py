"""
Content Deduplication
----------------------
Canonical hashing so identical content is never re-indexed.

Normalisation (all on by default): trim, collapse whitespace runs to one
space, lowercase. The hash is sha256 of the normalised text, optionally
salted with sorted metadata, truncated to `hash_length` hex chars.
"""
from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import Any, Optional

import orjson
from loguru import logger

from memrag.ingestion.store import DocumentStore

IN_BATCH_DUPLICATE = "in-batch-duplicate"


@dataclass(frozen=True)
class DeduplicationConfig:
    normalize_whitespace: bool = True
    case_insensitive: bool = True
    trim_content: bool = True
    hash_length: int = 16
    include_metadata: bool = False


DEFAULT_DEDUP_CONFIG = DeduplicationConfig()


@dataclass
class DuplicateRecord:
    item: dict[str, Any]
    existing_id: str


@dataclass
class DeduplicationResult:
    unique_items: list[dict[str, Any]] = field(default_factory=list)
    duplicates: list[DuplicateRecord] = field(default_factory=list)

    @property
    def duplicate_rate(self) -> int:
        total = len(self.unique_items) + len(self.duplicates)
        return round(len(self.duplicates) / total * 100) if total else 0


def normalize_content(content: str, config: DeduplicationConfig = DEFAULT_DEDUP_CONFIG) -> str:
    normalized = content
    if config.trim_content:
        normalized = normalized.strip()
    if config.normalize_whitespace:
        normalized = re.sub(r"\s+", " ", normalized)
    if config.case_insensitive:
        normalized = normalized.lower()
    return normalized


def hash_content(
    content: str,
    metadata: Optional[dict[str, Any]] = None,
    config: DeduplicationConfig = DEFAULT_DEDUP_CONFIG,
) -> str:
    to_hash = normalize_content(content, config)
    if config.include_metadata and metadata:
        to_hash = f"{to_hash}::{orjson.dumps(metadata, option=orjson.OPT_SORT_KEYS).decode()}"
    return hashlib.sha256(to_hash.encode("utf-8")).hexdigest()[: config.hash_length]


class Deduplicator:
    """Hash + existing-hash lookup against the document store."""

    def __init__(self, store: DocumentStore, config: DeduplicationConfig = DEFAULT_DEDUP_CONFIG) -> None:
        self.store = store
        self.config = config

    def hash(self, content: str, metadata: Optional[dict[str, Any]] = None) -> str:
        return hash_content(content, metadata, self.config)

    async def find_existing(self, content_hash: str) -> Optional[str]:
        """Document id already holding this hash, if any."""
        existing = await self.store.find_by_hash(content_hash)
        return existing.document_id if existing else None

    async def deduplicate(self, items: list[dict[str, Any]]) -> DeduplicationResult:
        """
        Split items (dicts with a `content` key) into unique and duplicate
        records, checking both the store and earlier items in the same batch.
        """
        hashed = [
            {**item, "content_hash": self.hash(item["content"], item.get("metadata"))}
            for item in items
        ]
        existing = await self.store.find_by_hashes(sorted({i["content_hash"] for i in hashed}))

        result = DeduplicationResult()
        seen: set[str] = set()
        for item in hashed:
            h = item["content_hash"]
            if h in existing:
                result.duplicates.append(DuplicateRecord(item=item, existing_id=existing[h].document_id))
            elif h in seen:
                result.duplicates.append(DuplicateRecord(item=item, existing_id=IN_BATCH_DUPLICATE))
            else:
                seen.add(h)
                result.unique_items.append(item)

        logger.info(
            f"[Deduplication] {len(result.unique_items)}/{len(items)} unique items "
            f"({result.duplicate_rate}% duplicate rate)"
        )
        return result
