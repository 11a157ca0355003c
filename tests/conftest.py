"""Shared fixtures: deterministic embedders, fake clocks, in-memory stores."""
from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone

import numpy as np
import pytest

from memrag.embedding.embedder import DenseEmbedder
from memrag.embedding.faiss_index import FaissHybridIndex
from memrag.ingestion.store import InMemoryDocumentStore, InMemoryQueueStore
from memrag.schemas import DataType, ParentMetadata

TEST_DIMENSIONS = 256
FIXED_NOW = datetime(2026, 2, 16, 12, 0, tzinfo=timezone.utc)


class FakeDenseEmbedder(DenseEmbedder):
    """
    Bag-of-words hashing into a small dense space: texts that share words
    land close together, which is enough to make retrieval order testable.
    """

    def __init__(self, dimensions: int = TEST_DIMENSIONS) -> None:
        self.dimensions = dimensions
        self.calls: list[list[str]] = []

    async def embed_texts(self, texts: list[str]) -> np.ndarray:
        self.calls.append(list(texts))
        matrix = np.zeros((len(texts), self.dimensions), dtype=np.float32)
        for row, text in enumerate(texts):
            for word in re.findall(r"\w+", text.lower()):
                bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dimensions
                matrix[row, bucket] += 1.0
            if not matrix[row].any():
                matrix[row, 0] = 1.0
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        return matrix / norms


class FakeClock:
    """Manually advanced monotonic clock with an async sleep that advances it."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_parent_metadata(data_type: DataType | str = DataType.SESSION, **overrides) -> ParentMetadata:
    values = dict(
        source="claude-code",
        data_type=DataType.parse(data_type),
        project="memrag",
        timestamp=FIXED_NOW.isoformat(),
        session_date=FIXED_NOW.date().isoformat(),
        week="2026-W08",
    )
    values.update(overrides)
    return ParentMetadata(**values)


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dense_embedder() -> FakeDenseEmbedder:
    return FakeDenseEmbedder()


@pytest.fixture
def faiss_index() -> FaissHybridIndex:
    return FaissHybridIndex(dimensions=TEST_DIMENSIONS)


@pytest.fixture
def document_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def queue_store() -> InMemoryQueueStore:
    return InMemoryQueueStore()


@pytest.fixture
def parent_metadata() -> ParentMetadata:
    return make_parent_metadata()
