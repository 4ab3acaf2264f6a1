"""Semantic response cache.

Completions are keyed by an embedding of the prompt rather than its exact
text. A lookup embeds the prompt, scans the most recently used entries of the
same (provider, model, kind) partition and returns the closest one whose cosine
similarity clears the threshold. Every failure degrades to a miss.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Awaitable, Callable

from conceptkb.config import CacheConfig
from conceptkb.exceptions import ConceptKBError
from conceptkb.storage.sqlite_store import SQLiteStore
from conceptkb.storage.vector_index import cosine_similarity
from conceptkb.types import CachedResponse

logger = logging.getLogger(__name__)

Fingerprinter = Callable[[str], Awaitable[list[float]]]

_ABSORBED = (ConceptKBError, sqlite3.Error, ValueError)


class SemanticCache:
    def __init__(self, store: SQLiteStore, fingerprint: Fingerprinter,
                 config: CacheConfig | None = None) -> None:
        self.store = store
        self.fingerprint = fingerprint
        self.config = config or CacheConfig()

    async def get(self, prompt_key: str, provider: str, model: str,
                  kind: str = "json") -> dict[str, Any] | None:
        try:
            query = await self.fingerprint(prompt_key)
            entries = self.store.list_cache_entries(
                provider, model, limit=self.config.scan_limit, kind=kind
            )
            best: CachedResponse | None = None
            best_similarity = 0.0
            for entry in entries:
                if len(entry.fingerprint) != len(query):
                    continue
                similarity = cosine_similarity(query, entry.fingerprint)
                if similarity >= self.config.similarity_threshold and similarity > best_similarity:
                    best, best_similarity = entry, similarity
            if best is None:
                return None
            self.store.touch_cache_entry(best.id)
            logger.debug("semantic cache hit %s (similarity=%.4f)", best.id, best_similarity)
            return best.response
        except _ABSORBED as exc:
            logger.warning("semantic cache lookup failed: %s", exc)
            return None

    async def store_response(self, prompt_key: str, response: dict[str, Any],
                             provider: str, model: str, kind: str = "json") -> None:
        try:
            fingerprint = await self.fingerprint(prompt_key)
            count = self.store.count_cache_entries(provider, model, kind)
            if count >= self.config.max_entries:
                keep = max(self.config.max_entries - self.config.eviction_headroom, 0)
                evicted = self.store.evict_cache_entries(provider, model, count - keep, kind)
                logger.debug("evicted %d semantic cache entries", evicted)
            self.store.insert_cache_entry(CachedResponse(
                fingerprint=fingerprint,
                prompt_text=prompt_key,
                response=response,
                provider=provider,
                model=model,
                kind=kind,
            ))
        except _ABSORBED as exc:
            logger.warning("semantic cache store failed: %s", exc)

    def clear(self, provider: str | None = None, model: str | None = None) -> int:
        return self.store.clear_cache(provider, model)
