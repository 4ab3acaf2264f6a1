from __future__ import annotations

import asyncio
import json
import math
from datetime import timedelta

import pytest

from conceptkb.config import EmbeddingConfig, SessionConfig
from conceptkb.embeddings.orchestrator import EmbeddingOrchestrator
from conceptkb.exceptions import NotFoundError, ProviderError
from conceptkb.llm.context_sessions import ContextSessionManager
from conceptkb.storage.sqlite_store import SQLiteStore
from conceptkb.storage.vector_index import VectorIndex
from conceptkb.types import Concept, Message
from conceptkb.utils import iso_str, utcnow


class _Embedder:
    embedding_model = "stub-embed"

    def __init__(self, fail_when=lambda text: False) -> None:
        self.fail_when = fail_when
        self.calls = 0

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self.fail_when(text):
            raise ProviderError("embedding backend unavailable", status_code=503)
        return [float(len(text)), float(text.count("a")), 1.0]


async def _no_sleep(delay: float) -> None:
    return None


def _setup(tmp_path, embedder, n: int, titles=None):
    store = SQLiteStore(tmp_path / "kb.db")
    base = utcnow() - timedelta(hours=1)
    for i in range(n):
        stamp = base + timedelta(seconds=i)
        store.insert_concept(Concept(
            title=(titles[i] if titles else f"concept {i}"), content="body",
            created_at=stamp, updated_at=stamp,
        ))
    index = VectorIndex()
    orch = EmbeddingOrchestrator(
        store, index, embedder,
        EmbeddingConfig(batch_size=3, max_attempts=3, base_delay=0.0),
        sleep=_no_sleep,
    )
    return store, index, orch


@pytest.mark.parametrize("n,batch", [(7, 3), (9, 3), (1, 10), (10, 1)])
def test_reconcile_all_succeed_uses_ceil_n_over_b_iterations(tmp_path, n, batch):
    async def _run() -> None:
        store, index, orch = _setup(tmp_path, _Embedder(), n)
        seen = []
        try:
            progress = await orch.reconcile_missing(batch, on_progress=seen.append)
            assert progress.iterations == math.ceil(n / batch)
            assert progress.failed_batches == 0
            assert progress.processed == n
            assert [p.remaining for p in seen][-1] == 0
            assert len(seen) == progress.iterations

            status = orch.get_status()
            assert status.without_embedding == 0
            assert status.with_embedding == n
            assert status.index_size == n
            assert status.is_indexing is False
            assert status.last_indexed_at is not None
        finally:
            store.close()

    asyncio.run(_run())


def test_reconcile_always_failing_terminates(tmp_path):
    async def _run() -> None:
        embedder = _Embedder(fail_when=lambda text: True)
        store, index, orch = _setup(tmp_path, embedder, 7)
        try:
            progress = await orch.reconcile_missing(3)
            assert progress.successful_batches == 0
            assert progress.failed_batches == 1
            assert orch.get_status().without_embedding == 7
            # One batch of 3, retried up to max_attempts.
            assert embedder.calls == 3 * 3
        finally:
            store.close()

    asyncio.run(_run())


def test_reconcile_skips_a_poisoned_concept(tmp_path):
    async def _run() -> None:
        embedder = _Embedder(fail_when=lambda text: text.startswith("poison"))
        titles = ["poison", "b", "c", "d", "e"]
        store, index, orch = _setup(tmp_path, embedder, 5, titles=titles)
        try:
            progress = await orch.reconcile_missing(2)
            assert progress.iterations == 3
            assert progress.processed == 4
            assert progress.remaining == 1
            assert progress.successful_batches == 3
            assert progress.failed_batches == 0
            assert index.size() == 4
            # The poisoned concept shared a batch with a healthy one, so no retry.
            assert embedder.calls == 5
        finally:
            store.close()

    asyncio.run(_run())


def test_reconcile_moves_past_a_failing_concept_ahead_of_healthy_ones(tmp_path):
    async def _run() -> None:
        embedder = _Embedder(fail_when=lambda text: text.startswith("poison"))
        store, index, orch = _setup(tmp_path, embedder, 4, titles=["a", "poison", "b", "c"])
        try:
            progress = await orch.reconcile_missing(1)
            assert progress.iterations == 4
            assert progress.processed == 3
            assert progress.successful_batches == 3
            assert progress.failed_batches == 1
            assert progress.remaining == 1
            assert index.size() == 3
            # One batch of its own, retried max_attempts times, then skipped.
            assert embedder.calls == 3 + 3

            missing = store.list_concepts_missing_embedding(10)
            assert [c.title for c in missing] == ["poison"]
            assert store.list_concepts_missing_embedding(10, exclude_ids={missing[0].id}) == []
        finally:
            store.close()

    asyncio.run(_run())


def test_nothing_missing_is_a_noop(tmp_path):
    async def _run() -> None:
        store, _, orch = _setup(tmp_path, _Embedder(), 0)
        try:
            progress = await orch.reconcile_missing()
            assert progress.iterations == 0
        finally:
            store.close()

    asyncio.run(_run())


def test_embed_for_entity_reuses_current_and_refreshes_stale(tmp_path):
    async def _run() -> None:
        embedder = _Embedder()
        store, index, orch = _setup(tmp_path, embedder, 1)
        concept = store.list_concepts()[0]
        try:
            first = await orch.embed_for_entity(concept.id)
            assert first.model == "stub-embed"
            assert concept.id in index

            await orch.embed_for_entity(concept.id)
            assert embedder.calls == 1

            store.update_concept(concept.id, content="aaaa")
            refreshed = await orch.embed_for_entity(concept.id)
            assert embedder.calls == 2
            assert refreshed.vector != first.vector
            assert index.get(concept.id).tolist() == refreshed.vector

            with pytest.raises(NotFoundError):
                await orch.embed_for_entity("missing")
        finally:
            store.close()

    asyncio.run(_run())


def test_legacy_record_is_upgraded_without_re_embedding(tmp_path):
    async def _run() -> None:
        embedder = _Embedder()
        store, index, orch = _setup(tmp_path, embedder, 1)
        concept = store.list_concepts()[0]
        try:
            now = iso_str(utcnow())
            store._conn.execute(
                "INSERT INTO concept_embeddings VALUES (?, ?, ?, ?, ?, ?)",
                ("old", concept.id, json.dumps([0.5, 0.25, 1.0]), "stub-embed", now, now),
            )
            store._conn.commit()

            record = await orch.embed_for_entity(concept.id)
            assert embedder.calls == 0
            assert record.vector == [0.5, 0.25, 1.0]
            assert store.get_embedding(concept.id).legacy is False
        finally:
            store.close()

    asyncio.run(_run())


def test_forget_entity_drops_record_index_entry_and_sessions(tmp_path):
    async def _run() -> None:
        store, index, orch = _setup(tmp_path, _Embedder(), 1)
        orch.sessions = ContextSessionManager(store, SessionConfig())
        concept = store.list_concepts()[0]
        try:
            await orch.embed_for_entity(concept.id)
            await orch.sessions.get_or_create(
                "chat:x", "openai", "m", [Message(role="user", content="hi")], [concept.id]
            )
            await orch.forget_entity(concept.id)
            assert store.get_embedding(concept.id) is None
            assert concept.id not in index
            assert store.get_session("chat:x") is None
        finally:
            store.close()

    asyncio.run(_run())
