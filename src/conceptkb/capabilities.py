"""Wiring of store, model client, caches, index and orchestrator.

Components receive their collaborators explicitly. The process-wide default
bundle exists only for the CLI and HTTP entry points; tests override it with
``set_default`` and clear it with ``reset_default``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from conceptkb.config import Config
from conceptkb.embeddings.orchestrator import EmbeddingOrchestrator
from conceptkb.llm.backends import ProviderAdapter
from conceptkb.llm.client import ModelClient
from conceptkb.llm.context_sessions import ContextSessionManager
from conceptkb.llm.semantic_cache import SemanticCache
from conceptkb.retrieval.links import LinkProposer
from conceptkb.retrieval.vector import VectorSearch
from conceptkb.storage.sqlite_store import SQLiteStore
from conceptkb.storage.vector_index import VectorIndex

logger = logging.getLogger(__name__)


@dataclass
class Capabilities:
    config: Config
    store: SQLiteStore
    client: ModelClient
    cache: SemanticCache
    sessions: ContextSessionManager
    index: VectorIndex
    orchestrator: EmbeddingOrchestrator
    search: VectorSearch
    links: LinkProposer

    async def close(self) -> None:
        await self.client.close()
        self.store.close()


def build_capabilities(
    config: Config | None = None,
    adapter: ProviderAdapter | None = None,
    provider: str | None = None,
    load_index: bool = True,
) -> Capabilities:
    config = config or Config()
    config.ensure_dirs()
    store = SQLiteStore(config.db_path)

    sessions = ContextSessionManager(store, config.sessions)
    client = ModelClient(config.llm, provider=provider, adapter=adapter, sessions=sessions)
    cache = SemanticCache(store, client.embed, config.cache)
    client.cache = cache

    index = VectorIndex()
    if load_index:
        index.initialize(store)

    orchestrator = EmbeddingOrchestrator(
        store, index, client, config.embeddings, sessions=sessions
    )
    search = VectorSearch(index, store, client)
    links = LinkProposer(store, client, search)
    logger.debug("capabilities ready (provider=%s, model=%s)", client.provider, client.model)
    return Capabilities(
        config=config,
        store=store,
        client=client,
        cache=cache,
        sessions=sessions,
        index=index,
        orchestrator=orchestrator,
        search=search,
        links=links,
    )


_default: Capabilities | None = None


def get_default() -> Capabilities:
    global _default
    if _default is None:
        _default = build_capabilities()
    return _default


def set_default(caps: Capabilities | None) -> None:
    global _default
    _default = caps


def reset_default() -> None:
    set_default(None)
