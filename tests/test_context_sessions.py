from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from conceptkb.config import SessionConfig
from conceptkb.exceptions import ProviderError
from conceptkb.llm.context_sessions import ContextSessionManager, generate_session_key
from conceptkb.storage.sqlite_store import SQLiteStore
from conceptkb.types import Message


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class _CachingAdapter:
    name = "gemini"
    embedding_model = "stub-embed"

    def __init__(self, fail_delete: bool = False) -> None:
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.touched: list[str] = []
        self.fail_delete = fail_delete

    async def create_context_cache(self, content: str, model: str, ttl_seconds: int = 3600) -> str:
        name = f"cachedContents/c{len(self.created)}"
        self.created.append(name)
        return name

    async def update_cache_ttl(self, cache_name: str, ttl_seconds: int = 3600) -> None:
        self.touched.append(cache_name)

    async def delete_cache(self, cache_name: str) -> None:
        if self.fail_delete:
            raise ProviderError("cache delete failed: 500", status_code=500)
        self.deleted.append(cache_name)


def _msgs(*texts: str) -> list[Message]:
    return [Message(role="user", content=t) for t in texts]


def _manager(tmp_path, adapter=None, **cfg) -> tuple[ContextSessionManager, SQLiteStore, _Clock]:
    store = SQLiteStore(tmp_path / "kb.db")
    clock = _Clock()
    config = SessionConfig(ttl_seconds=60, provider_cache_min_chars=10, **cfg)
    return ContextSessionManager(store, config, adapter=adapter, clock=clock), store, clock


def test_session_key_format():
    assert generate_session_key("chat") == "chat"
    assert generate_session_key("chat", "c1") == "chat:c1"
    assert generate_session_key("enrich", "c1", "v2") == "enrich:c1:v2"


def test_same_key_within_ttl_merges(tmp_path):
    async def _run() -> None:
        mgr, store, clock = _manager(tmp_path)
        try:
            first = await mgr.get_or_create("chat:a", "gemini", "m", _msgs("one", "two"), ["a", "b"])
            clock.advance(30)
            second = await mgr.get_or_create("chat:a", "gemini", "m", _msgs("three"), ["b", "c"])

            assert second.id == first.id
            assert [m.content for m in second.messages] == ["one", "two", "three"]
            assert second.entity_ids == ["a", "b", "c"]
            assert second.expires_at == clock.now + timedelta(seconds=60)
            assert len(store.list_sessions()) == 1
        finally:
            store.close()

    asyncio.run(_run())


def test_expired_session_is_recreated_fresh(tmp_path):
    async def _run() -> None:
        mgr, store, clock = _manager(tmp_path)
        try:
            await mgr.get_or_create("chat:a", "gemini", "m", _msgs("old"), ["a"])
            clock.advance(61)
            fresh = await mgr.get_or_create("chat:a", "gemini", "m", _msgs("new"), ["z"])
            assert [m.content for m in fresh.messages] == ["new"]
            assert fresh.entity_ids == ["z"]
        finally:
            store.close()

    asyncio.run(_run())


def test_context_cache_lifecycle(tmp_path):
    async def _run() -> None:
        adapter = _CachingAdapter()
        mgr, store, clock = _manager(tmp_path, adapter=adapter, provider_cache_ttl_seconds=30)
        try:
            await mgr.get_or_create("chat:a", "gemini", "gemini-1.5-flash", _msgs("hi"), ["a"])

            assert await mgr.create_cache_for_session("chat:a", "short") is None
            handle = await mgr.create_cache_for_session("chat:a", "x" * 50)
            assert handle == "cachedContents/c0"
            assert mgr.active_cache_handle("chat:a") == handle

            # Merging keeps the handle.
            await mgr.get_or_create("chat:a", "gemini", "gemini-1.5-flash", _msgs("more"))
            assert store.get_session("chat:a").external_cache_id == handle

            assert await mgr.touch_cache("chat:a") is True
            assert adapter.touched == [handle]

            # The provider cache may expire before the session does.
            clock.advance(31)
            assert mgr.active_cache_handle("chat:a") is None

            clock.advance(30)
            assert await mgr.cleanup_expired() == 1
            assert adapter.deleted == [handle]
            assert store.get_session("chat:a") is None
        finally:
            store.close()

    asyncio.run(_run())


def test_cache_failures_never_propagate(tmp_path):
    async def _run() -> None:
        adapter = _CachingAdapter(fail_delete=True)
        mgr, store, _ = _manager(tmp_path, adapter=adapter)
        try:
            await mgr.get_or_create("chat:a", "gemini", "m", _msgs("hi"), ["a"])
            await mgr.create_cache_for_session("chat:a", "x" * 50)
            assert await mgr.delete_session("chat:a") is True
            assert store.get_session("chat:a") is None
        finally:
            store.close()

    asyncio.run(_run())


def test_non_caching_adapter_gets_no_handle(tmp_path):
    class _Plain:
        name = "openai"

    async def _run() -> None:
        mgr, store, _ = _manager(tmp_path, adapter=_Plain())
        try:
            await mgr.get_or_create("chat:a", "openai", "m", _msgs("hi"))
            assert await mgr.create_cache_for_session("chat:a", "x" * 50) is None
        finally:
            store.close()

    asyncio.run(_run())


def test_invalidate_for_entities(tmp_path):
    async def _run() -> None:
        adapter = _CachingAdapter()
        mgr, store, _ = _manager(tmp_path, adapter=adapter)
        try:
            await mgr.get_or_create("s1", "gemini", "m", _msgs("a"), ["a", "b"])
            await mgr.get_or_create("s2", "gemini", "m", _msgs("b"), ["c"])
            await mgr.get_or_create("s3", "gemini", "m", _msgs("c"), ["b"])
            await mgr.create_cache_for_session("s1", "x" * 50)

            assert await mgr.invalidate_for_entities(["b"]) == 2
            assert [s.session_key for s in store.list_sessions()] == ["s2"]
            assert adapter.deleted == ["cachedContents/c0"]
        finally:
            store.close()

    asyncio.run(_run())


def test_update_session_keeps_expiry(tmp_path):
    async def _run() -> None:
        mgr, store, clock = _manager(tmp_path)
        try:
            created = await mgr.get_or_create("s", "gemini", "m", _msgs("a"))
            clock.advance(10)
            updated = await mgr.update_session("s", _msgs("b"), ["x"])
            assert updated.expires_at == created.expires_at
            assert [m.content for m in updated.messages] == ["a", "b"]
            assert await mgr.update_session("missing", _msgs("b")) is None

            clock.advance(60)
            assert await mgr.get_session("s") is None
        finally:
            store.close()

    asyncio.run(_run())
