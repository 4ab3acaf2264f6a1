"""In-memory vector index with linear-scan cosine search."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Protocol

import numpy as np

from conceptkb.types import EmbeddingRecord, SearchHit

logger = logging.getLogger(__name__)


class EmbeddingSource(Protocol):
    def iter_embeddings(self) -> Iterable[EmbeddingRecord]: ...


@dataclass
class _Entry:
    entity_id: str
    vector: np.ndarray
    norm: float


def _as_vector(values) -> np.ndarray:
    return np.asarray(values, dtype=np.float32).reshape(-1)


def cosine_similarity(a, b) -> float:
    """Cosine similarity of two equal-length vectors; 0.0 if either has zero norm."""
    va, vb = _as_vector(a), _as_vector(b)
    if va.shape != vb.shape:
        raise ValueError(f"vector dimension mismatch: {va.shape[0]} vs {vb.shape[0]}")
    denom = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


class VectorIndex:
    """Map of entity id to embedding, rebuilt from storage and patched in place.

    Entries keep insertion order (an upsert moves the id to the end), which
    is the tie-break order for equal similarities.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    def initialize(self, source: EmbeddingSource) -> int:
        """Replace the index contents with every record from ``source``."""
        self._entries = {}
        for record in source.iter_embeddings():
            self.add_embedding(record.entity_id, record.vector)
        logger.info("vector index initialized with %d entries", len(self._entries))
        return len(self._entries)

    def add_embedding(self, entity_id: str, vector) -> None:
        vec = _as_vector(vector)
        self._entries.pop(entity_id, None)
        self._entries[entity_id] = _Entry(entity_id, vec, float(np.linalg.norm(vec)))

    def remove_embedding(self, entity_id: str) -> bool:
        return self._entries.pop(entity_id, None) is not None

    def get(self, entity_id: str) -> np.ndarray | None:
        entry = self._entries.get(entity_id)
        return entry.vector if entry else None

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._entries

    def search(
        self,
        query_vector,
        k: int = 20,
        min_similarity: float = 0.0,
        exclude_ids: Iterable[str] = (),
    ) -> list[SearchHit]:
        """Top-k entries by cosine similarity, highest first.

        A zero-norm query or entry scores 0. Unlike ``cosine_similarity``,
        vectors of differing length are not rejected: they are compared over
        their shared prefix with full-length norms, and one warning is logged
        per search that meets them.
        """
        if k <= 0 or not self._entries:
            return []
        query = _as_vector(query_vector)
        query_norm = float(np.linalg.norm(query))
        excluded = set(exclude_ids)
        mismatched = 0

        scored: list[SearchHit] = []
        for entry in self._entries.values():
            if entry.entity_id in excluded:
                continue
            denom = query_norm * entry.norm
            if denom == 0.0:
                similarity = 0.0
            else:
                n = min(query.shape[0], entry.vector.shape[0])
                if entry.vector.shape[0] != query.shape[0]:
                    mismatched += 1
                similarity = float(np.dot(query[:n], entry.vector[:n]) / denom)
            if similarity >= min_similarity:
                scored.append(SearchHit(entity_id=entry.entity_id, similarity=similarity))

        if mismatched:
            logger.warning("%d index entries differ from the %d-dim query, compared over shared prefix",
                           mismatched, query.shape[0])

        # sorted() is stable, so equal scores keep insertion order
        scored = sorted(scored, key=lambda h: -h.similarity)
        return scored[:k]

    def size(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries = {}
