"""
Chunk schema - the atomic unit that gets embedded and indexed.

A Chunk carries its parent's metadata (flattened) plus flags derived from
its own text, so the vector index can filter on either without a join.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from memrag.schemas import DataType, Importance


class ChunkingConfig(BaseModel):
    target_size: int                     # tokens
    overlap: int                         # tokens shared with the previous chunk
    preserve_code_blocks: bool = True
    preserve_errors: bool = True
    min_chunk_size: int = 100            # tokens; smaller chunks are dropped

    @property
    def max_tokens(self) -> int:
        """Hard per-chunk ceiling."""
        return self.target_size + self.overlap


class ChunkMetadata(BaseModel):
    # Inherited from ParentMetadata
    source: str
    data_type: DataType
    project: str = "default"
    domain: str = "research"
    action: str = "update"
    status: str = "success"
    entities: list[str] = Field(default_factory=list)
    summary: str = ""
    importance: Importance = Importance.MEDIUM
    timestamp: str
    session_date: str
    week: str = ""

    # Chunk-specific
    chunk_index: int
    total_chunks: int
    is_chunk: bool = True
    has_code_block: bool = False
    has_error: bool = False
    has_header: bool = False
    section_title: Optional[str] = None  # <= 100 chars
    content_preview: str = ""            # <= 500 chars

    def to_index_metadata(self) -> dict[str, Any]:
        """Flat, null-free dict suitable for vector-index metadata."""
        return self.model_dump(mode="json", exclude_none=True)


class Chunk(BaseModel):
    id: str                              # "{parent_id}_chunk_{index}"
    parent_id: str
    content: str
    chunk_index: int
    total_chunks: int
    token_count: int
    metadata: ChunkMetadata


class ChunkStats(BaseModel):
    total_chunks: int = 0
    total_tokens: int = 0
    avg_tokens_per_chunk: int = 0
    min_chunk_tokens: int = 0
    max_chunk_tokens: int = 0
    chunks_with_code: int = 0
    chunks_with_errors: int = 0
