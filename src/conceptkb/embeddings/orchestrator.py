"""Embedding orchestrator.

Keeps ``concept_embeddings`` and the in-memory VectorIndex in sync with the
concepts table. A concept has a current embedding when its row exists and is
at least as new as the concept itself.

Reconciliation runs batches sequentially. Each batch is retried with backoff;
a batch that never makes progress counts as failed and the run moves on. The
run ends when nothing is missing, when the iteration ceiling is hit, or when
no batch has ever succeeded and the last one left the missing count
unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import math
import sqlite3
from datetime import datetime
from typing import Callable, Protocol

import httpx

from conceptkb.config import EmbeddingConfig
from conceptkb.exceptions import ConceptKBError, EmbeddingBatchError, NotFoundError
from conceptkb.llm.context_sessions import ContextSessionManager
from conceptkb.retry import Backoff, Sleep, retry_async
from conceptkb.storage.sqlite_store import SQLiteStore
from conceptkb.storage.vector_index import VectorIndex
from conceptkb.types import EmbeddingRecord, EmbeddingStatus, ReconcileProgress
from conceptkb.utils import utcnow

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ReconcileProgress], None]

# Failures of a single entity inside a batch; logged and skipped.
_ENTITY_ERRORS = (ConceptKBError, httpx.HTTPError, sqlite3.Error, ValueError)


class Embedder(Protocol):
    @property
    def embedding_model(self) -> str: ...

    async def embed(self, text: str) -> list[float]: ...


class EmbeddingOrchestrator:
    def __init__(
        self,
        store: SQLiteStore,
        index: VectorIndex,
        embedder: Embedder,
        config: EmbeddingConfig | None = None,
        sessions: ContextSessionManager | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.store = store
        self.index = index
        self.embedder = embedder
        self.config = config or EmbeddingConfig()
        self.sessions = sessions
        self._sleep = sleep
        self._is_indexing = False
        self._last_indexed_at: datetime | None = None

    @property
    def is_indexing(self) -> bool:
        return self._is_indexing

    def get_status(self) -> EmbeddingStatus:
        total = self.store.count_concepts()
        missing = self.store.count_missing_embeddings()
        return EmbeddingStatus(
            total=total,
            with_embedding=total - missing,
            without_embedding=missing,
            is_indexing=self._is_indexing,
            last_indexed_at=self._last_indexed_at,
            index_size=self.index.size(),
        )

    async def get_or_create_embedding(
        self,
        entity_id: str,
        text: str,
        not_before: datetime | None = None,
    ) -> EmbeddingRecord:
        """Return the stored embedding for ``entity_id`` or generate a new one.

        A stored record is reused when it was produced by the active embedding
        model and is not older than ``not_before``. Legacy text-encoded
        records are rewritten in binary form on reuse.
        """
        model = self.embedder.embedding_model
        existing = self.store.get_embedding(entity_id)
        if existing is not None and existing.model == model and (
            not_before is None or existing.updated_at >= not_before
        ):
            if existing.legacy:
                logger.debug("upgrading legacy embedding for %s", entity_id)
                return self.store.upsert_embedding(entity_id, existing.vector, existing.model)
            return existing

        vector = await self.embedder.embed(text)
        if not vector:
            raise ConceptKBError(f"empty embedding returned for {entity_id}")
        return self.store.upsert_embedding(entity_id, vector, model)

    async def embed_for_entity(self, entity_id: str) -> EmbeddingRecord:
        concept = self.store.get_concept(entity_id)
        if concept is None:
            raise NotFoundError(f"concept not found: {entity_id}")
        record = await self.get_or_create_embedding(
            concept.id, concept.embedding_text(), not_before=concept.updated_at
        )
        self.index.add_embedding(concept.id, record.vector)
        return record

    async def forget_entity(self, entity_id: str) -> None:
        """Drop everything derived from a deleted concept."""
        self.store.delete_embedding(entity_id)
        self.index.remove_embedding(entity_id)
        if self.sessions is not None:
            await self.sessions.invalidate_for_entities([entity_id])

    async def reconcile_missing(
        self,
        batch_size: int | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ReconcileProgress:
        batch_size = max(batch_size or self.config.batch_size, 1)
        total_missing = self.store.count_missing_embeddings()
        progress = ReconcileProgress(remaining=total_missing)
        if total_missing == 0:
            logger.debug("no concepts missing embeddings")
            return progress
        if self._is_indexing:
            logger.warning("reconciliation already running, skipping")
            return progress

        ceiling = math.ceil(total_missing / batch_size) + self.config.iteration_margin
        logger.info("reconciling %d concepts (batch=%d, ceiling=%d)",
                    total_missing, batch_size, ceiling)

        # Concepts that failed every attempt this run are not picked again.
        failed_ids: set[str] = set()
        self._is_indexing = True
        try:
            while progress.iterations < ceiling:
                before = self.store.count_missing_embeddings()
                if before == 0:
                    break
                if not self.store.list_concepts_missing_embedding(1, exclude_ids=failed_ids):
                    logger.warning("only %d previously failed concepts remain", before)
                    break
                progress.iterations += 1
                batch_failed: set[str] = set()

                async def attempt() -> int:
                    batch_failed.clear()
                    return await self._process_batch(batch_size, failed_ids, batch_failed)

                backoff = Backoff(
                    max_attempts=self.config.max_attempts,
                    base_delay=self.config.base_delay,
                )
                outcome, embedded = await retry_async(
                    attempt,
                    backoff,
                    retry_on=_ENTITY_ERRORS,
                    name=f"embedding batch {progress.iterations}",
                    sleep=self._sleep,
                )
                if outcome.ok:
                    progress.successful_batches += 1
                    progress.processed += embedded or 0
                else:
                    progress.failed_batches += 1
                    logger.warning("embedding batch %d failed after %d attempts: %s",
                                   progress.iterations, outcome.attempts, outcome.error)
                failed_ids.update(batch_failed)

                after = self.store.count_missing_embeddings()
                progress.remaining = after
                if on_progress is not None:
                    on_progress(progress.model_copy())

                if after == 0:
                    break
                if progress.successful_batches == 0 and after == before:
                    logger.warning("no reconciliation progress, stopping with %d missing", after)
                    break
            else:
                logger.warning("reconciliation hit iteration ceiling %d with %d missing",
                               ceiling, progress.remaining)
        finally:
            self._is_indexing = False
            self._last_indexed_at = utcnow()

        logger.info("reconciliation done: processed=%d ok=%d failed=%d remaining=%d",
                    progress.processed, progress.successful_batches,
                    progress.failed_batches, progress.remaining)
        return progress

    async def _process_batch(self, batch_size: int, skip: set[str], failed: set[str]) -> int:
        concepts = self.store.list_concepts_missing_embedding(batch_size, exclude_ids=skip)
        embedded = 0
        for concept in concepts:
            try:
                await self.embed_for_entity(concept.id)
                embedded += 1
            except _ENTITY_ERRORS as exc:
                logger.warning("failed to embed concept %s: %s", concept.id, exc)
                failed.add(concept.id)
        if concepts and embedded == 0:
            raise EmbeddingBatchError(f"0/{len(concepts)} concepts embedded")
        return embedded
