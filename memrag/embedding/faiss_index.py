"""
Local FAISS Hybrid Index
-------------------------
In-process implementation of the VectorIndex contract for local runs, the CLI
and tests.

The index stores:
  - A FAISS IndexIDMap2(IndexFlatIP) for dense inner-product search
    (vectors are L2-normalised by the embedder, so IP == cosine)
  - A parallel dict of sparse vectors (index -> weight) per record
  - Record metadata, filtered locally with the Pinecone operator dialect

Query score = dense_q . dense_doc + sparse_q . sparse_doc, where the caller
has already scaled the query vectors by alpha / (1 - alpha).

Persistence (save/load):
  - FAISS index -> <dir>/faiss.index
  - Records      -> <dir>/records.json
  - Manifest     -> <dir>/index_manifest.json
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Optional

import faiss
import numpy as np
from loguru import logger

from memrag.embedding.vector_index import VectorIndex, matches_filter
from memrag.schemas import Match, SparseValues, VectorRecord
from memrag.utils.helpers import load_json, save_json

INDEX_DIR = Path("data/index")


class FaissHybridIndex(VectorIndex):
    """
    Dense (FAISS) + sparse (dict dot product) store with upsert-by-id.

    Usage:
        index = FaissHybridIndex(dimensions=3072)
        await index.upsert(records)
        matches = await index.query(dense, sparse, top_k=10)
    """

    def __init__(self, dimensions: int = 3072) -> None:
        self.dimensions = dimensions
        self.faiss_index = faiss.IndexIDMap2(faiss.IndexFlatIP(dimensions))
        self._records: dict[int, VectorRecord] = {}
        self._sparse: dict[int, dict[int, float]] = {}
        self._id_to_row: dict[str, int] = {}
        self._next_row = 0
        self._lock = asyncio.Lock()

    # --- Build ----------------------------------------------------------------

    async def upsert(self, records: list[VectorRecord]) -> int:
        if not records:
            return 0
        # last write wins for ids repeated within one batch
        records = list({r.id: r for r in records}.values())
        async with self._lock:
            stale = [self._id_to_row[r.id] for r in records if r.id in self._id_to_row]
            if stale:
                self.faiss_index.remove_ids(np.array(stale, dtype=np.int64))
                for row in stale:
                    self._records.pop(row, None)
                    self._sparse.pop(row, None)

            rows: list[int] = []
            vectors: list[list[float]] = []
            for record in records:
                if len(record.values) != self.dimensions:
                    raise ValueError(
                        f"Dimension mismatch for {record.id}: "
                        f"{len(record.values)} vs {self.dimensions}"
                    )
                row = self._next_row
                self._next_row += 1
                self._id_to_row[record.id] = row
                self._records[row] = record
                if record.sparse_values is not None and not record.sparse_values.is_empty:
                    self._sparse[row] = dict(
                        zip(record.sparse_values.indices, record.sparse_values.values)
                    )
                rows.append(row)
                vectors.append(record.values)

            matrix = np.ascontiguousarray(np.array(vectors, dtype=np.float32))
            self.faiss_index.add_with_ids(matrix, np.array(rows, dtype=np.int64))

        logger.debug(
            f"[FaissHybridIndex] Upserted {len(records)} vectors "
            f"(index size: {self.faiss_index.ntotal})"
        )
        return len(records)

    # --- Search ---------------------------------------------------------------

    def _dense_scores(self, dense: list[float]) -> dict[int, float]:
        total = self.faiss_index.ntotal
        if total == 0:
            return {}
        qv = np.ascontiguousarray(np.array(dense, dtype=np.float32).reshape(1, -1))
        scores, rows = self.faiss_index.search(qv, total)
        return {int(row): float(score) for score, row in zip(scores[0], rows[0]) if row >= 0}

    def _sparse_score(self, row: int, sparse: Optional[SparseValues]) -> float:
        if sparse is None or sparse.is_empty:
            return 0.0
        doc = self._sparse.get(row)
        if not doc:
            return 0.0
        return sum(weight * doc.get(index, 0.0) for index, weight in zip(sparse.indices, sparse.values))

    async def query(
        self,
        dense: list[float],
        sparse: Optional[SparseValues],
        top_k: int,
        filter_: Optional[dict[str, Any]] = None,
    ) -> list[Match]:
        dense_scores = self._dense_scores(dense)
        scored: list[tuple[float, int]] = []
        for row, record in self._records.items():
            if not matches_filter(record.metadata, filter_):
                continue
            score = dense_scores.get(row, 0.0) + self._sparse_score(row, sparse)
            scored.append((score, row))

        scored.sort(key=lambda x: x[0], reverse=True)
        return [
            Match(id=self._records[row].id, score=score, metadata=dict(self._records[row].metadata))
            for score, row in scored[:top_k]
        ]

    # --- Persistence ----------------------------------------------------------

    def save(self, index_dir: Path = INDEX_DIR) -> None:
        """Persist FAISS index + records + manifest to disk."""
        index_dir = Path(index_dir)
        index_dir.mkdir(parents=True, exist_ok=True)

        faiss.write_index(self.faiss_index, str(index_dir / "faiss.index"))
        save_json(
            [{"row": row, "record": r.model_dump(mode="json")} for row, r in self._records.items()],
            index_dir / "records.json",
        )
        save_json(
            {
                "total_vectors": self.faiss_index.ntotal,
                "dimensions": self.dimensions,
                "sparse_vectors": len(self._sparse),
                "data_types": sorted({str(r.metadata.get("data_type", "")) for r in self._records.values()}),
            },
            index_dir / "index_manifest.json",
        )
        logger.info(f"[FaissHybridIndex] Saved {self.faiss_index.ntotal} vectors -> {index_dir}")

    @classmethod
    def load(cls, index_dir: Path = INDEX_DIR, dimensions: int = 3072) -> "FaissHybridIndex":
        """Load a persisted index, or return an empty one if none exists yet."""
        index_dir = Path(index_dir)
        manifest_path = index_dir / "index_manifest.json"
        if not manifest_path.exists():
            return cls(dimensions=dimensions)

        manifest = load_json(manifest_path)
        instance = cls(dimensions=int(manifest["dimensions"]))
        instance.faiss_index = faiss.read_index(str(index_dir / "faiss.index"))
        for entry in load_json(index_dir / "records.json"):
            row = int(entry["row"])
            record = VectorRecord(**entry["record"])
            instance._records[row] = record
            instance._id_to_row[record.id] = row
            if record.sparse_values is not None and not record.sparse_values.is_empty:
                instance._sparse[row] = dict(zip(record.sparse_values.indices, record.sparse_values.values))
        instance._next_row = max(instance._records, default=-1) + 1

        logger.info(f"[FaissHybridIndex] Loaded: {instance.faiss_index.ntotal} vectors")
        return instance

    @property
    def is_built(self) -> bool:
        return self.faiss_index.ntotal > 0

    def __len__(self) -> int:
        return len(self._records)
