"""
Core Pydantic schemas for the memrag engine.

The ingestion path (Document -> ParentMetadata -> VectorRecord) and the query
path (QueryFilters -> RankedResult) share these models so metadata keeps one
shape end-to-end instead of travelling as loose dicts.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from memrag.utils.helpers import utcnow


# --- Enumerations ------------------------------------------------------------

class DataType(str, Enum):
    SESSION = "session"
    CODE = "code"
    DEPLOYMENT = "deployment"
    LEARNING = "learning"
    ERROR = "error"
    CONFIG = "config"
    SYSTEM_SNAPSHOT = "system_snapshot"
    METRIC = "metric"
    RESEARCH = "research"
    DECISION = "decision"
    ARCHITECTURE = "architecture"
    BUG = "bug"
    FEATURE = "feature"
    DOCUMENTATION = "documentation"
    DEFAULT = "default"

    @classmethod
    def parse(cls, value: Any) -> "DataType":
        """Lenient lookup: unknown or empty values map to DEFAULT."""
        if isinstance(value, DataType):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.DEFAULT


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Importance(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# --- Documents ----------------------------------------------------------------

class Document(BaseModel):
    """A submitted record plus its canonical content hash."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    content: str
    data_type: DataType = DataType.DEFAULT
    source: str = "unknown"
    content_hash: str                    # sha256 of normalised content, immutable
    metadata: dict[str, Any] = Field(default_factory=dict)


class TaggingResult(BaseModel):
    """Structured tags the auto-tagger derives from raw content."""

    domain: str = "research"
    action: str = "update"
    status: str = "success"
    entities: list[str] = Field(default_factory=list)
    summary: str = ""
    importance: Importance = Importance.MEDIUM


class ParentMetadata(BaseModel):
    """Metadata every chunk of a document inherits."""

    source: str
    data_type: DataType
    project: str = "default"
    domain: str = "research"
    action: str = "update"
    status: str = "success"
    entities: list[str] = Field(default_factory=list)
    summary: str = ""
    importance: Importance = Importance.MEDIUM
    timestamp: str                       # ISO-8601
    session_date: str                    # YYYY-MM-DD
    week: str                            # ISO week, e.g. 2026-W07
    extra: dict[str, Any] = Field(default_factory=dict)


class StoredDocument(BaseModel):
    """Full-content record persisted next to the vectors."""

    document_id: str                     # parent id used as vector id prefix
    full_content: str
    content_hash: str
    chunk_count: int
    data_type: DataType
    source: str
    created_by_queue_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


# --- Vectors ------------------------------------------------------------------

class SparseValues(BaseModel):
    indices: list[int] = Field(default_factory=list)
    values: list[float] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return len(self.indices) == 0


class VectorRecord(BaseModel):
    id: str
    values: list[float]
    sparse_values: Optional[SparseValues] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Match(BaseModel):
    """One hit returned by a vector index query."""

    id: str
    score: float
    metadata: dict[str, Any] = Field(default_factory=dict)


# --- Queue --------------------------------------------------------------------

class QueueItem(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    content: str
    data_type: DataType = DataType.DEFAULT
    source: str = "unknown"
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: QueueStatus = QueueStatus.PENDING
    retry_count: int = 0
    priority: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    error_message: Optional[str] = None
    error_history: list[dict[str, Any]] = Field(default_factory=list)


class DeadLetterItem(BaseModel):
    """Terminal record for a queue item that exhausted its retries."""

    original_id: str
    item: QueueItem
    final_error: str
    retry_count: int
    error_history: list[dict[str, Any]] = Field(default_factory=list)
    dead_lettered_at: datetime = Field(default_factory=utcnow)


# --- Query side ---------------------------------------------------------------

_FILTER_LIST_FIELDS = ("data_type", "source", "status", "importance", "domain", "project")


class TimeRange(BaseModel):
    start: datetime
    end: datetime
    description: str = ""


class QueryFilters(BaseModel):
    """
    Typed metadata filter for retrieval.

    List fields become `$in` conditions, the time range becomes a
    session_date window, and `extra` is passed through verbatim.
    """

    data_type: list[str] = Field(default_factory=list)
    source: list[str] = Field(default_factory=list)
    status: list[str] = Field(default_factory=list)
    importance: list[str] = Field(default_factory=list)
    domain: list[str] = Field(default_factory=list)
    project: list[str] = Field(default_factory=list)
    time_range: Optional[TimeRange] = None
    extra: dict[str, Any] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.to_index_filter()

    def merge(self, user: "QueryFilters | None") -> "QueryFilters":
        """Combine inferred (self) with user filters; user values win per field."""
        if user is None:
            return self.model_copy(deep=True)
        merged: dict[str, Any] = {}
        for name in _FILTER_LIST_FIELDS:
            user_value = getattr(user, name)
            merged[name] = list(user_value) if user_value else list(getattr(self, name))
        merged["time_range"] = user.time_range or self.time_range
        merged["extra"] = {**self.extra, **user.extra}
        return QueryFilters(**merged)

    def to_index_filter(self) -> dict[str, Any]:
        conditions: list[dict[str, Any]] = []
        for name in _FILTER_LIST_FIELDS:
            values = getattr(self, name)
            if not values:
                continue
            if len(values) == 1:
                conditions.append({name: values[0]})
            else:
                conditions.append({name: {"$in": list(values)}})

        if self.time_range is not None:
            conditions.append({"session_date": {"$gte": self.time_range.start.date().isoformat()}})
            conditions.append({"session_date": {"$lte": self.time_range.end.date().isoformat()}})

        for key, value in self.extra.items():
            if isinstance(value, list):
                conditions.append({key: {"$in": value}})
            else:
                # dict values are already operator expressions
                conditions.append({key: value})

        if not conditions:
            return {}
        if len(conditions) == 1:
            return conditions[0]
        return {"$and": conditions}


class RankedResult(BaseModel):
    """A candidate as it moves through rerank and recency; never persisted."""

    id: str
    semantic_score: float
    rerank_score: Optional[float] = None
    recency_decay: float = 1.0
    recency_boost: float = 1.0
    final_score: float = 0.0
    rank: int = 0
    original_rank: int = 0
    rank_change: int = 0
    age_days: Optional[float] = None
    content: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_match(cls, match: Match, rank: int) -> "RankedResult":
        content = match.metadata.get("content") or match.metadata.get("content_preview") or ""
        return cls(
            id=match.id,
            semantic_score=match.score,
            final_score=match.score,
            rank=rank,
            original_rank=rank,
            content=str(content),
            metadata=dict(match.metadata),
        )
