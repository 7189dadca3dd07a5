"""Approximate k-NN over cosine similarity, backed by hnswlib.

Vectors are stored L2-normalised, one row per chunk id. build() lays rows
out in ascending id order; insert() appends a row. hnswlib labels are those
row numbers, so a label maps straight back to its chunk id without a
separate id table.

An index is built once per generation and never mutated after commit, so
deletion is "rebuild without". Up to ``exact_threshold`` vectors no graph
is built and search is exhaustive, therefore exact.

Results are ordered by similarity descending, then chunk_id ascending.

Storage is two files:
- vectors.npz: normalised vectors, ids and the build parameters
- graph.hnsw: hnswlib's own serialisation (empty when no graph was built)
"""

from __future__ import annotations

import json
import os
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import hnswlib
import numpy as np
import structlog

log = structlog.get_logger()

_FORMAT = 2


class HnswIndex:
    """Cosine HNSW index keyed by chunk id."""

    def __init__(
        self,
        dim: int,
        *,
        m: int = 16,
        ef_construction: int = 100,
        ef_search: int = 64,
        seed: int = 42,
        exact_threshold: int = 256,
    ) -> None:
        if dim < 1:
            raise ValueError(f"dim must be >= 1, got {dim}")
        if m < 2:
            raise ValueError(f"m must be >= 2, got {m}")
        self._dim = dim
        self._m = m
        self._ef_construction = max(1, ef_construction)
        self._ef_search = max(1, ef_search)
        self._seed = seed
        self._exact_threshold = max(0, exact_threshold)

        self._vectors = np.zeros((0, dim), dtype=np.float32)
        self._ids: list[str] = []
        self._row_of: dict[str, int] = {}
        self._graph: hnswlib.Index | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, chunk_id: object) -> bool:
        return chunk_id in self._row_of

    @property
    def dim(self) -> int:
        return self._dim

    @property
    def ids(self) -> list[str]:
        return list(self._ids)

    @property
    def vectors(self) -> np.ndarray:
        """Read-only view of the stored (normalised) vectors, one row per id."""
        view = self._vectors.view()
        view.flags.writeable = False
        return view

    @property
    def has_graph(self) -> bool:
        return self._graph is not None

    def row_of(self, chunk_id: str) -> int:
        return self._row_of[chunk_id]

    def params(self) -> dict[str, Any]:
        return {
            "kind": "hnsw",
            "metric": "cosine",
            "m": self._m,
            "ef_construction": self._ef_construction,
            "ef_search": self._ef_search,
            "seed": self._seed,
            "exact_threshold": self._exact_threshold,
        }

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def build(self, ids: Sequence[str], vectors: np.ndarray) -> HnswIndex:
        """Store all vectors in ascending chunk id order and build the graph.

        The index must be empty. Duplicate ids are rejected.
        """
        if self._ids:
            raise ValueError("build() requires an empty index")
        if not len(ids):
            return self
        matrix = np.asarray(vectors, dtype=np.float32)
        if matrix.ndim != 2 or matrix.shape[0] != len(ids):
            raise ValueError(f"{len(ids)} ids for vectors of shape {matrix.shape}")
        if matrix.shape[1] != self._dim:
            raise ValueError(f"vector dim {matrix.shape[1]} != index dim {self._dim}")

        order = sorted(range(len(ids)), key=lambda j: ids[j])
        sorted_ids = [ids[i] for i in order]
        row_of = {cid: row for row, cid in enumerate(sorted_ids)}
        if len(row_of) != len(sorted_ids):
            dupes = sorted({a for a, b in zip(sorted_ids, sorted_ids[1:]) if a == b})
            raise ValueError(f"duplicate chunk id: {dupes[0]}")

        self._vectors = _normalize_rows(matrix[order])
        self._ids = sorted_ids
        self._row_of = row_of
        if len(sorted_ids) > self._exact_threshold:
            self._graph = self._build_graph()
        return self

    def insert(self, chunk_id: str, vector: np.ndarray) -> None:
        """Add one vector. A chunk id already in the index is rejected."""
        if chunk_id in self._row_of:
            raise ValueError(f"duplicate chunk id: {chunk_id}")
        v = _normalize(vector, self._dim)
        row = len(self._ids)
        self._vectors = np.vstack([self._vectors, v[np.newaxis, :]])
        self._ids.append(chunk_id)
        self._row_of[chunk_id] = row

        if self._graph is not None:
            if self._graph.get_max_elements() <= row:
                self._graph.resize_index(2 * (row + 1))
            self._graph.add_items(v[np.newaxis, :], np.array([row]), num_threads=1)
        elif len(self._ids) > self._exact_threshold:
            self._graph = self._build_graph()

    def _build_graph(self) -> hnswlib.Index:
        count = len(self._ids)
        graph = hnswlib.Index(space="cosine", dim=self._dim)
        graph.init_index(
            max_elements=count,
            ef_construction=self._ef_construction,
            M=self._m,
            random_seed=self._seed,
        )
        # One thread keeps insertion order, and so the graph, reproducible
        graph.add_items(self._vectors, np.arange(count), num_threads=1)
        graph.set_ef(self._ef_search)
        log.debug("hnsw_graph_built", vectors=count, m=self._m)
        return graph

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self, vector: np.ndarray, k: int, *, ef: int | None = None
    ) -> list[tuple[str, float]]:
        """Return up to k ``(chunk_id, similarity)`` pairs, best first."""
        count = len(self._ids)
        if k <= 0 or count == 0:
            return []
        q = _normalize(vector, self._dim)
        k = min(k, count)

        if self._graph is None:
            return self._exact(q, k)

        self._graph.set_ef(max(ef or self._ef_search, k))
        try:
            labels, distances = self._graph.knn_query(q, k=k, num_threads=1)
        except RuntimeError as e:
            # hnswlib refuses to return fewer than k results
            log.warning("hnsw_search_underfilled", k=k, vectors=count, error=str(e))
            return self._exact(q, k)
        ranked = sorted(
            (
                (self._ids[int(label)], _clip(1.0 - float(dist)))
                for label, dist in zip(labels[0], distances[0], strict=True)
            ),
            key=lambda t: (-t[1], t[0]),
        )
        return ranked

    def _exact(self, q: np.ndarray, k: int) -> list[tuple[str, float]]:
        sims = self._vectors @ q
        order = sorted(range(len(self._ids)), key=lambda i: (-float(sims[i]), self._ids[i]))
        return [(self._ids[i], _clip(sims[i])) for i in order[:k]]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, vectors_path: Path, graph_path: Path) -> None:
        """Write vectors and graph files and fsync both."""
        arrays: dict[str, Any] = {
            "vectors": self._vectors,
            "ids": np.array(self._ids, dtype="U") if self._ids else np.zeros(0, dtype="U1"),
            "params": np.array(json.dumps({"format": _FORMAT, "dim": self._dim, **self.params()})),
        }
        with vectors_path.open("wb") as f:
            np.savez_compressed(f, **arrays)
            f.flush()
            os.fsync(f.fileno())

        if self._graph is not None:
            self._graph.save_index(str(graph_path))
        else:
            graph_path.write_bytes(b"")
        with graph_path.open("rb") as f:
            os.fsync(f.fileno())

    @classmethod
    def load(cls, vectors_path: Path, graph_path: Path) -> HnswIndex:
        """Load an index written by save(). Raises ValueError/KeyError/OSError on bad files."""
        with np.load(vectors_path, allow_pickle=False) as data:
            params = json.loads(str(data["params"]))
            if params.get("format") != _FORMAT:
                raise ValueError(f"unsupported index format: {params.get('format')}")
            index = cls(
                int(params["dim"]),
                m=int(params["m"]),
                ef_construction=int(params["ef_construction"]),
                ef_search=int(params["ef_search"]),
                seed=int(params["seed"]),
                exact_threshold=int(params["exact_threshold"]),
            )
            vectors = np.asarray(data["vectors"], dtype=np.float32)
            ids = [str(s) for s in data["ids"].tolist()]

        if len(ids) != vectors.shape[0]:
            raise ValueError("index arrays disagree in length")
        if ids and vectors.shape[1] != index._dim:
            raise ValueError(f"vector dim {vectors.shape[1]} != {index._dim}")
        index._vectors = vectors.reshape(len(ids), index._dim).copy()
        index._ids = ids
        index._row_of = {cid: i for i, cid in enumerate(ids)}
        if len(index._row_of) != len(ids):
            raise ValueError("duplicate chunk ids in index")

        graph_bytes = graph_path.stat().st_size
        if len(ids) > index._exact_threshold:
            if graph_bytes == 0:
                raise ValueError(f"{len(ids)} vectors but no graph")
            graph = hnswlib.Index(space="cosine", dim=index._dim)
            graph.load_index(str(graph_path), max_elements=len(ids))
            if graph.get_current_count() != len(ids):
                raise ValueError(
                    f"graph holds {graph.get_current_count()} vectors, expected {len(ids)}"
                )
            graph.set_ef(index._ef_search)
            index._graph = graph
        elif graph_bytes:
            raise ValueError("graph present for an exhaustively searched index")
        return index


def _normalize(vector: np.ndarray, dim: int) -> np.ndarray:
    v = np.asarray(vector, dtype=np.float32).reshape(-1)
    if v.shape[0] != dim:
        raise ValueError(f"vector dim {v.shape[0]} != index dim {dim}")
    norm = float(np.linalg.norm(v))
    return v / max(norm, 1e-10)


def _normalize_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    return (matrix / np.maximum(norms, 1e-10)).astype(np.float32)


def _clip(sim: Any) -> float:
    return min(1.0, max(-1.0, float(sim)))
