from __future__ import annotations

import logging
import os
import pickle
import threading
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import faiss
import numpy as np

from .errors import IndexSchemaMismatch, IndexSearchFailure, IndexWriteFailure

logger = logging.getLogger(__name__)

INDEX_FILENAME = "vectors.idx"
SCHEMA_VERSION = 2


@dataclass
class EmbeddingRecord:
    attachment_id: str
    notebook_id: str
    path: str
    text: str
    vector: np.ndarray


@dataclass
class SearchResult:
    attachment_id: str
    notebook_id: str
    path: str
    text: str
    distance: float


@dataclass
class _Row:
    attachment_id: str
    notebook_id: str
    path: str
    text: str


_Snapshot = Tuple[np.ndarray, Dict[int, _Row], int]


def _write_state(path: Path, state: Dict[str, Any]) -> None:
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("wb") as f:
        pickle.dump(state, f)
    os.replace(tmp, path)


class VectorIndex:
    """Notebook-scoped cosine search over embedding records.

    Vectors live in a faiss ``IndexIDMap`` over an inner-product flat index;
    they are normalised on the way in, so ``1 - score`` is the cosine distance.
    The serialized faiss index, the row metadata and the id counter are
    pickled together into one file that is replaced atomically after every
    ``add`` or ``delete_by_attachment``. A write that fails rolls the
    in-memory state back to the last saved one.
    """

    def __init__(self, index_dir: Path, dim: int, model_name: str) -> None:
        self.index_dir = Path(index_dir)
        self.dim = dim
        self.model_name = model_name
        self._lock = threading.RLock()
        self._index: Optional[faiss.IndexIDMap] = None
        self._rows: Dict[int, _Row] = {}
        self._by_notebook: Dict[str, Set[int]] = defaultdict(set)
        self._by_attachment: Dict[str, List[int]] = defaultdict(list)
        self._next_id = 0

    @property
    def index_path(self) -> Path:
        return self.index_dir / INDEX_FILENAME

    def open(self) -> "VectorIndex":
        """Load an existing index from disk, checking its schema."""
        with self._lock:
            self._ensure_loaded()
        return self

    def _schema(self) -> dict:
        return {"version": SCHEMA_VERSION, "dim": self.dim, "model_name": self.model_name}

    def _ensure_loaded(self) -> faiss.IndexIDMap:
        if self._index is not None:
            return self._index

        if self.index_path.exists():
            logger.debug("Loading vector index from %s", self.index_path)
            with self.index_path.open("rb") as f:
                state = pickle.load(f)
            if state.get("schema") != self._schema():
                raise IndexSchemaMismatch(
                    f"Vector index in {self.index_dir} was built with schema "
                    f"{state.get('schema')}, expected {self._schema()}"
                )
            index = faiss.deserialize_index(state["vectors"])
            rows, next_id = state["rows"], state["next_id"]
            if index.d != self.dim:
                raise IndexSchemaMismatch(
                    f"Vector index dimension {index.d} does not match model dimension {self.dim}"
                )
            if index.ntotal != len(rows) or any(row_id >= next_id for row_id in rows):
                raise IndexSchemaMismatch(
                    f"Vector index in {self.index_dir} is inconsistent: "
                    f"{index.ntotal} vectors for {len(rows)} rows"
                )
            self._rows, self._next_id = rows, next_id
            self._rebuild_maps()
        else:
            logger.debug("Creating empty vector index (dim=%d)", self.dim)
            index = faiss.IndexIDMap(faiss.IndexFlatIP(self.dim))

        self._index = index
        return index

    def _rebuild_maps(self) -> None:
        self._by_notebook = defaultdict(set)
        self._by_attachment = defaultdict(list)
        for row_id, row in self._rows.items():
            self._by_notebook[row.notebook_id].add(row_id)
            self._by_attachment[row.attachment_id].append(row_id)

    def _snapshot(self) -> _Snapshot:
        return faiss.serialize_index(self._index), dict(self._rows), self._next_id

    def _restore(self, snapshot: _Snapshot) -> None:
        blob, rows, next_id = snapshot
        self._index = faiss.deserialize_index(blob)
        self._rows, self._next_id = rows, next_id
        self._rebuild_maps()

    def _persist(self) -> None:
        self.index_dir.mkdir(parents=True, exist_ok=True)
        _write_state(
            self.index_path,
            {
                "schema": self._schema(),
                "vectors": faiss.serialize_index(self._index),
                "rows": self._rows,
                "next_id": self._next_id,
            },
        )

    def _open_for_write(self) -> faiss.IndexIDMap:
        try:
            return self._ensure_loaded()
        except IndexSchemaMismatch:
            raise
        except Exception as exc:
            raise IndexWriteFailure("Could not open the vector index") from exc

    def _prepare(self, vectors: Sequence[np.ndarray]) -> np.ndarray:
        matrix = np.vstack([np.asarray(v, dtype="float32").reshape(1, -1) for v in vectors])
        if matrix.shape[1] != self.dim:
            raise ValueError(f"Expected vectors of dimension {self.dim}, got {matrix.shape[1]}")
        matrix = np.ascontiguousarray(matrix, dtype="float32")
        faiss.normalize_L2(matrix)
        return matrix

    def add(self, records: Sequence[EmbeddingRecord]) -> int:
        """Append a batch of records; either all of them become searchable or none."""
        if not records:
            raise IndexWriteFailure("Refusing to write an empty embedding batch")
        try:
            matrix = self._prepare([r.vector for r in records])
        except ValueError as exc:
            raise IndexWriteFailure(str(exc)) from exc

        with self._lock:
            index = self._open_for_write()
            snapshot = self._snapshot()

            ids = np.arange(self._next_id, self._next_id + len(records), dtype="int64")
            index.add_with_ids(matrix, ids)
            for row_id, record in zip(ids.tolist(), records):
                self._rows[row_id] = _Row(
                    attachment_id=record.attachment_id,
                    notebook_id=record.notebook_id,
                    path=record.path,
                    text=record.text,
                )
                self._by_notebook[record.notebook_id].add(row_id)
                self._by_attachment[record.attachment_id].append(row_id)
            self._next_id += len(records)

            try:
                self._persist()
            except Exception as exc:
                self._restore(snapshot)
                raise IndexWriteFailure("Failed to persist the vector index") from exc

        logger.debug("Indexed %d records", len(records))
        return len(records)

    def delete_by_attachment(self, attachment_id: str) -> int:
        """Remove every record of an attachment. Safe to call repeatedly."""
        with self._lock:
            index = self._open_for_write()
            row_ids = self._by_attachment.get(attachment_id)
            if not row_ids:
                return 0

            snapshot = self._snapshot()
            removed = index.remove_ids(np.asarray(row_ids, dtype="int64"))
            for row_id in row_ids:
                row = self._rows.pop(row_id)
                members = self._by_notebook[row.notebook_id]
                members.discard(row_id)
                if not members:
                    del self._by_notebook[row.notebook_id]
            del self._by_attachment[attachment_id]

            try:
                self._persist()
            except Exception as exc:
                self._restore(snapshot)
                raise IndexWriteFailure(
                    f"Failed to persist deletion of attachment {attachment_id}"
                ) from exc

        logger.debug("Removed %d records of attachment %s", removed, attachment_id)
        return int(removed)

    def search(self, notebook_id: str, query_vector: np.ndarray, k: int) -> List[SearchResult]:
        """Return up to `k` records of `notebook_id`, nearest (by cosine) first."""
        if k < 1:
            return []
        try:
            query = self._prepare([query_vector])
        except ValueError as exc:
            raise IndexSearchFailure(str(exc)) from exc

        with self._lock:
            try:
                index = self._ensure_loaded()
                candidates = self._by_notebook.get(notebook_id)
                if not candidates:
                    return []

                wanted = np.fromiter(candidates, dtype="int64", count=len(candidates))
                selector = faiss.IDSelectorBatch(len(wanted), faiss.swig_ptr(wanted))
                params = faiss.SearchParameters(sel=selector)
                scores, labels = index.search(query, min(k, len(wanted)), params=params)
            except Exception as exc:
                raise IndexSearchFailure("Vector search failed") from exc

            results: List[SearchResult] = []
            for score, label in zip(scores[0], labels[0]):
                row = self._rows.get(int(label))
                if label < 0 or row is None or row.notebook_id != notebook_id:
                    continue
                results.append(
                    SearchResult(
                        attachment_id=row.attachment_id,
                        notebook_id=row.notebook_id,
                        path=row.path,
                        text=row.text,
                        distance=float(1.0 - score),
                    )
                )

        results.sort(key=lambda r: r.distance)
        return results[:k]

    def count(self, attachment_id: Optional[str] = None, notebook_id: Optional[str] = None) -> int:
        """Number of records, optionally restricted to one attachment or notebook."""
        with self._lock:
            self._ensure_loaded()
            if attachment_id is not None:
                return len(self._by_attachment.get(attachment_id, ()))
            if notebook_id is not None:
                return len(self._by_notebook.get(notebook_id, ()))
            return len(self._rows)

    def attachment_ids(self) -> Set[str]:
        with self._lock:
            self._ensure_loaded()
            return set(self._by_attachment)


__all__ = ["EmbeddingRecord", "SearchResult", "VectorIndex"]
