"""Multi-turn context sessions keyed by a logical session key.

A session accumulates messages and the concept ids they were built from, and
may own one provider-side context cache. The external cache is always torn
down before the session row is deleted. Provider cache operations are an
optimization: their failures are logged and never propagate.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Sequence

import httpx

from conceptkb.config import SessionConfig
from conceptkb.exceptions import ConceptKBError
from conceptkb.llm.backends import supports_context_cache
from conceptkb.storage.sqlite_store import SQLiteStore
from conceptkb.types import ContextSession, Message
from conceptkb.utils import utcnow

logger = logging.getLogger(__name__)

_CACHE_ERRORS = (ConceptKBError, httpx.HTTPError)


def generate_session_key(operation: str, entity_id: str | None = None,
                         extra: str | None = None) -> str:
    parts = [operation]
    if entity_id:
        parts.append(entity_id)
    if extra:
        parts.append(extra)
    return ":".join(parts)


def _union(existing: Iterable[str], new: Iterable[str]) -> list[str]:
    merged = list(existing)
    seen = set(merged)
    for item in new:
        if item not in seen:
            merged.append(item)
            seen.add(item)
    return merged


class ContextSessionManager:
    def __init__(
        self,
        store: SQLiteStore,
        config: SessionConfig | None = None,
        adapter: object | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config = config or SessionConfig()
        self.adapter = adapter
        self.clock = clock

    async def get_or_create(
        self,
        session_key: str,
        provider: str,
        model: str,
        initial_messages: Sequence[Message] = (),
        entity_ids: Sequence[str] = (),
        ttl_seconds: float | None = None,
        adapter: object | None = None,
    ) -> ContextSession:
        await self.cleanup_expired(adapter)

        now = self.clock()
        ttl = self.config.ttl_seconds if ttl_seconds is None else ttl_seconds
        expires_at = now + timedelta(seconds=ttl)

        existing = self.store.get_session(session_key)
        if existing is not None and not existing.is_expired(now):
            existing.messages = [*existing.messages, *initial_messages]
            existing.entity_ids = _union(existing.entity_ids, entity_ids)
            existing.expires_at = expires_at
            return self.store.save_session(existing)
        if existing is not None:
            await self._teardown(existing, adapter)

        session = ContextSession(
            session_key=session_key,
            provider=provider,
            model=model,
            messages=list(initial_messages),
            entity_ids=_union([], entity_ids),
            expires_at=expires_at,
            created_at=now,
        )
        logger.debug("created context session %s", session_key)
        return self.store.save_session(session)

    async def get_session(self, session_key: str, adapter: object | None = None) -> ContextSession | None:
        session = self.store.get_session(session_key)
        if session is None:
            return None
        if session.is_expired(self.clock()):
            await self._teardown(session, adapter)
            return None
        return session

    async def update_session(
        self,
        session_key: str,
        new_messages: Sequence[Message],
        entity_ids: Sequence[str] | None = None,
    ) -> ContextSession | None:
        """Append messages (and ids) without touching the expiry."""
        session = self.store.get_session(session_key)
        if session is None:
            return None
        session.messages = [*session.messages, *new_messages]
        if entity_ids:
            session.entity_ids = _union(session.entity_ids, entity_ids)
        return self.store.save_session(session)

    async def delete_session(self, session_key: str, adapter: object | None = None) -> bool:
        session = self.store.get_session(session_key)
        if session is None:
            return False
        await self._teardown(session, adapter)
        return True

    def active_cache_handle(self, session_key: str) -> str | None:
        session = self.store.get_session(session_key)
        if session is None:
            return None
        now = self.clock()
        if session.is_expired(now):
            return None
        return session.cache_handle(now)

    async def create_cache_for_session(
        self,
        session_key: str,
        static_content: str,
        adapter: object | None = None,
        model: str | None = None,
    ) -> str | None:
        """Ask the provider to cache large static content for a session.

        Returns the external handle, or None when the provider can't cache,
        the content is below the size threshold, or creation failed.
        """
        adapter = adapter or self.adapter
        if adapter is None or not supports_context_cache(adapter):
            return None
        if len(static_content) < self.config.provider_cache_min_chars:
            return None
        session = self.store.get_session(session_key)
        if session is None or session.is_expired(self.clock()):
            return None

        ttl = self.config.provider_cache_ttl_seconds
        try:
            handle = await adapter.create_context_cache(  # type: ignore[union-attr]
                static_content, model or session.model, ttl
            )
        except _CACHE_ERRORS as exc:
            logger.warning("context cache creation failed for %s: %s", session_key, exc)
            return None
        if not handle:
            return None

        previous = session.external_cache_id
        if previous and previous != handle:
            await self._delete_external(previous, adapter)
        session.external_cache_id = handle
        session.cache_expires_at = self.clock() + timedelta(seconds=ttl)
        self.store.save_session(session)
        logger.debug("created context cache %s for session %s", handle, session_key)
        return handle

    async def touch_cache(self, session_key: str, adapter: object | None = None) -> bool:
        """Extend the provider cache TTL of a session, best effort."""
        adapter = adapter or self.adapter
        session = self.store.get_session(session_key)
        if session is None or not session.external_cache_id or not supports_context_cache(adapter):
            return False
        ttl = self.config.provider_cache_ttl_seconds
        try:
            await adapter.update_cache_ttl(session.external_cache_id, ttl)  # type: ignore[union-attr]
        except _CACHE_ERRORS as exc:
            logger.warning("context cache ttl refresh failed for %s: %s", session_key, exc)
            return False
        session.cache_expires_at = self.clock() + timedelta(seconds=ttl)
        self.store.save_session(session)
        return True

    async def cleanup_expired(self, adapter: object | None = None) -> int:
        expired = self.store.list_expired_sessions(self.clock())
        for session in expired:
            await self._teardown(session, adapter)
        if expired:
            logger.debug("swept %d expired context sessions", len(expired))
        return len(expired)

    async def invalidate_for_entities(self, entity_ids: Iterable[str],
                                      adapter: object | None = None) -> int:
        """Delete every session built from any of ``entity_ids``."""
        targets = set(entity_ids)
        if not targets:
            return 0
        deleted = 0
        for session in self.store.list_sessions():
            if targets.intersection(session.entity_ids):
                await self._teardown(session, adapter)
                deleted += 1
        if deleted:
            logger.debug("invalidated %d context sessions for %s", deleted, sorted(targets))
        return deleted

    async def _teardown(self, session: ContextSession, adapter: object | None) -> None:
        if session.external_cache_id:
            await self._delete_external(session.external_cache_id, adapter or self.adapter)
        self.store.delete_session(session.id)

    async def _delete_external(self, handle: str, adapter: object | None) -> None:
        if adapter is None or not supports_context_cache(adapter):
            logger.debug("no cache-capable adapter to delete %s", handle)
            return
        try:
            await adapter.delete_cache(handle)  # type: ignore[union-attr]
        except _CACHE_ERRORS as exc:
            logger.warning("failed to delete context cache %s: %s", handle, exc)
