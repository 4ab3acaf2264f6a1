"""Similar-concept search over the in-memory vector index."""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from conceptkb.embeddings.orchestrator import Embedder
from conceptkb.storage.sqlite_store import SQLiteStore
from conceptkb.storage.vector_index import VectorIndex
from conceptkb.types import ConceptStatus, SearchHit

logger = logging.getLogger(__name__)


class VectorSearch:
    """Vector similarity search resolved against the concept store."""

    def __init__(self, index: VectorIndex, store: SQLiteStore, embedder: Embedder) -> None:
        self.index = index
        self.store = store
        self.embedder = embedder

    async def find_similar(
        self,
        query_text: str,
        limit: int = 10,
        min_similarity: float = 0.0,
        exclude_ids: Iterable[str] = (),
        query_vector: Sequence[float] | None = None,
    ) -> list[SearchHit]:
        """Active concepts closest to ``query_text``, highest similarity first.

        The query is embedded only when no ``query_vector`` is given. Hits whose
        concept is gone or trashed are dropped.
        """
        if query_vector is None:
            query_vector = await self.embedder.embed(query_text)
        # Over-fetch so trashed or dangling entries don't starve the result.
        hits = self.index.search(
            query_vector, k=max(limit * 2, limit + 10),
            min_similarity=min_similarity, exclude_ids=exclude_ids,
        )
        concepts = self.store.get_concepts([h.entity_id for h in hits])
        results: list[SearchHit] = []
        for hit in hits:
            concept = concepts.get(hit.entity_id)
            if concept is None or concept.status != ConceptStatus.ACTIVE:
                continue
            results.append(hit.model_copy(update={"title": concept.title}))
            if len(results) >= limit:
                break
        logger.debug("find_similar: %d hits (%d scanned)", len(results), len(hits))
        return results
