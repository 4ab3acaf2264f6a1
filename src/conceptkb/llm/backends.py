"""Provider adapter abstraction layer."""

from __future__ import annotations

from typing import Any, Protocol, Sequence, runtime_checkable

import httpx

from conceptkb.exceptions import ModelNotFoundError, ProviderError
from conceptkb.types import Message

_NOT_FOUND_MARKERS = ("not found", "model_not_found", "does not exist")


@runtime_checkable
class ProviderAdapter(Protocol):
    """One model backend: text completion, structured completion, embedding."""

    name: str
    embedding_model: str

    async def complete(
        self,
        prompt: str,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        history: Sequence[Message] | None = None,
        *,
        model: str | None = None,
        cached_content: str | None = None,
    ) -> str: ...

    async def complete_json(
        self,
        prompt: str,
        system_prompt: str | None = None,
        history: Sequence[Message] | None = None,
        *,
        temperature: float | None = None,
        model: str | None = None,
        cached_content: str | None = None,
    ) -> dict[str, Any]: ...

    async def embed(self, text: str) -> list[float]: ...


@runtime_checkable
class ContextCacheCapable(Protocol):
    """Adapters whose backend can hold a conversation prefix server-side."""

    async def create_context_cache(self, content: str, model: str, ttl_seconds: int = 3600) -> str: ...

    async def update_cache_ttl(self, cache_name: str, ttl_seconds: int = 3600) -> None: ...

    async def delete_cache(self, cache_name: str) -> None: ...


def supports_context_cache(adapter: object) -> bool:
    return isinstance(adapter, ContextCacheCapable)


def is_model_not_found(exc: BaseException) -> bool:
    if isinstance(exc, ModelNotFoundError):
        return True
    if isinstance(exc, ProviderError) and exc.status_code == 404:
        return True
    return False


def raise_for_status(resp: httpx.Response, model: str) -> None:
    """Translate an HTTP error into ModelNotFoundError or ProviderError."""
    if resp.is_success:
        return
    detail = resp.text[:500]
    lowered = detail.lower()
    if resp.status_code == 404 or any(m in lowered for m in _NOT_FOUND_MARKERS):
        raise ModelNotFoundError(model, f"{model}: {resp.status_code} {detail}",
                                 status_code=resp.status_code)
    raise ProviderError(f"{resp.status_code} {detail}", status_code=resp.status_code)


def history_to_text(history: Sequence[Message]) -> str:
    """Flatten messages to role-prefixed paragraphs for single-prompt backends."""
    prefixes = {"system": "[System]", "user": "[User]", "assistant": "[Assistant]"}
    return "\n\n".join(f"{prefixes[m.role]}: {m.content}" for m in history)


class HTTPAdapter:
    """Lazily created ``httpx.AsyncClient`` shared by the concrete adapters."""

    name = ""

    def __init__(self, base_url: str, timeout: float = 120.0,
                 headers: dict[str, str] | None = None) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self._headers = headers or {}
        self._client: httpx.AsyncClient | None = None
        self._stats = {"calls": 0, "input_tokens": 0, "output_tokens": 0}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers,
                timeout=self.timeout,
            )
        return self._client

    async def _post(self, path: str, body: dict[str, Any], model: str, **kwargs: Any) -> dict[str, Any]:
        client = await self._get_client()
        try:
            resp = await client.post(path, json=body, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(f"{self.name} request failed: {exc}") from exc
        raise_for_status(resp, model)
        self._stats["calls"] += 1
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(
                f"{self.name} returned a non-JSON body", status_code=resp.status_code
            ) from exc
        if not isinstance(data, dict):
            raise ProviderError(f"{self.name} returned an unexpected response shape")
        return data

    @property
    def stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "total_tokens": self._stats["input_tokens"] + self._stats["output_tokens"],
        }

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
