from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from conceptkb.config import SessionConfig
from conceptkb.exceptions import ModelNotFoundError, ProviderError, StructuredOutputError
from conceptkb.llm.backends import supports_context_cache
from conceptkb.llm.context_sessions import ContextSessionManager
from conceptkb.llm.providers import GEMINI_KNOWN_MODELS, GeminiAdapter, OpenAIAdapter
from conceptkb.storage.sqlite_store import SQLiteStore
from conceptkb.types import Message
from conceptkb.utils import parse_json_object


def _attach(adapter, handler) -> list[httpx.Request]:
    seen: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    adapter._client = httpx.AsyncClient(
        base_url=adapter.base_url,
        headers=adapter._headers,
        transport=httpx.MockTransport(_record),
    )
    return seen


def _gemini_text(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}],
            "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 2}}


def test_parse_json_object_handles_fences_and_rejects_non_objects():
    assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_object(' {"b": [1, 2]} ') == {"b": [1, 2]}
    for bad in ("", "not json", "[1, 2]"):
        with pytest.raises(StructuredOutputError):
            parse_json_object(bad)


def test_openai_chat_json_and_embeddings():
    async def _run() -> None:
        adapter = OpenAIAdapter(api_key="sk-test")

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            if request.url.path.endswith("/embeddings"):
                return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2]}]})
            assert body["messages"][0] == {"role": "system", "content": "be terse"}
            assert body["messages"][1] == {"role": "assistant", "content": "earlier"}
            assert body["response_format"] == {"type": "json_object"}
            return httpx.Response(200, json={
                "choices": [{"message": {"content": '{"x": 1}'}}],
                "usage": {"prompt_tokens": 5, "completion_tokens": 1},
            })

        seen = _attach(adapter, handler)
        try:
            out = await adapter.complete_json(
                "q", "be terse", [Message(role="assistant", content="earlier")], model="gpt-4o"
            )
            assert out == {"x": 1}
            assert json.loads(seen[0].content)["model"] == "gpt-4o"
            assert seen[0].headers["Authorization"] == "Bearer sk-test"
            assert await adapter.embed("hello") == [0.1, 0.2]
            assert adapter.stats["total_tokens"] == 6
            assert not supports_context_cache(adapter)
        finally:
            await adapter.close()

    asyncio.run(_run())


def test_http_errors_map_to_provider_taxonomy():
    async def _run() -> None:
        adapter = OpenAIAdapter(api_key="sk-test")

        def handler(request: httpx.Request) -> httpx.Response:
            model = json.loads(request.content)["model"]
            if model == "gone":
                return httpx.Response(404, json={"error": {"message": "model not found"}})
            if model == "weird":
                return httpx.Response(400, text="The model `weird` does not exist")
            return httpx.Response(500, text="upstream exploded")

        _attach(adapter, handler)
        try:
            with pytest.raises(ModelNotFoundError):
                await adapter.complete("q", model="gone")
            with pytest.raises(ModelNotFoundError):
                await adapter.complete("q", model="weird")
            with pytest.raises(ProviderError) as info:
                await adapter.complete("q", model="gpt-4o")
            assert not isinstance(info.value, ModelNotFoundError)
            assert info.value.status_code == 500
        finally:
            await adapter.close()

    asyncio.run(_run())


def test_gemini_prompt_flattening_and_versioned_models():
    history = [Message(role="user", content="hi"), Message(role="assistant", content="hello")]
    assert GeminiAdapter.build_prompt("q", None, None) == "q"
    assert GeminiAdapter.build_prompt("q", "sys", None) == "sys\n\nq"
    assert GeminiAdapter.build_prompt("q", "sys", history) == (
        "[User]: hi\n\n[Assistant]: hello\n\n[System]: sys\n\n[User]: q"
    )
    assert GeminiAdapter.versioned_model("gemini-1.5-flash") == "gemini-1.5-flash-001"
    assert GeminiAdapter.versioned_model("gemini-1.5-pro-002") == "gemini-1.5-pro-002"
    assert GeminiAdapter.versioned_model("something-else") == "gemini-1.5-flash-001"


def test_gemini_generate_with_cached_content_uses_versioned_model():
    async def _run() -> None:
        adapter = GeminiAdapter(api_key="g-key")

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST" and request.url.path.endswith("/cachedContents"):
                body = json.loads(request.content)
                assert body["model"] == "models/gemini-1.5-flash-001"
                assert body["ttl"] == "600s"
                return httpx.Response(200, json={"name": "cachedContents/xyz"})
            if request.method == "PATCH":
                assert request.url.params["updateMask"] == "ttl"
                return httpx.Response(200, json={})
            if request.method == "DELETE":
                return httpx.Response(404)
            body = json.loads(request.content)
            if "cachedContent" in body:
                assert request.url.path.endswith("/models/gemini-1.5-flash-001:generateContent")
                return httpx.Response(200, json=_gemini_text('{"cached": true}'))
            assert request.url.path.endswith("/models/gemini-1.5-flash:generateContent")
            assert body["generationConfig"]["responseMimeType"] == "application/json"
            return httpx.Response(200, json=_gemini_text('{"cached": false}'))

        seen = _attach(adapter, handler)
        try:
            assert supports_context_cache(adapter)
            handle = await adapter.create_context_cache("big context", "gemini-1.5-flash", 600)
            assert handle == "cachedContents/xyz"
            assert await adapter.complete_json("q", model="gemini-1.5-flash") == {"cached": False}
            assert await adapter.complete_json(
                "q", model="gemini-1.5-flash", cached_content=handle
            ) == {"cached": True}
            await adapter.update_cache_ttl(handle, 600)
            await adapter.delete_cache(handle)
            assert seen[0].headers["x-goog-api-key"] == "g-key"
        finally:
            await adapter.close()

    asyncio.run(_run())


def test_gemini_model_listing_falls_back_to_known_models():
    async def _run() -> None:
        adapter = GeminiAdapter(api_key="g-key")
        _attach(adapter, lambda request: httpx.Response(503))
        try:
            assert await adapter.list_available_models() == GEMINI_KNOWN_MODELS
        finally:
            await adapter.close()

    asyncio.run(_run())


def test_non_json_success_body_is_a_provider_error(tmp_path):
    async def _run() -> None:
        adapter = GeminiAdapter(api_key="g-key")
        _attach(adapter, lambda request: httpx.Response(
            200, text="<html>maintenance</html>", headers={"content-type": "text/plain"}
        ))
        store = SQLiteStore(tmp_path / "kb.db")
        sessions = ContextSessionManager(
            store, SessionConfig(provider_cache_min_chars=1), adapter=adapter
        )
        try:
            with pytest.raises(ProviderError) as info:
                await adapter.complete("q", model="gemini-1.5-flash")
            assert info.value.status_code == 200

            await sessions.get_or_create("chat:c1", "gemini", "gemini-1.5-flash")
            assert await sessions.create_cache_for_session("chat:c1", "static context") is None
            assert store.get_session("chat:c1").external_cache_id is None
        finally:
            await adapter.close()
            store.close()

    asyncio.run(_run())
