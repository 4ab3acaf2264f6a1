"""Provider adapters for OpenAI and Google Gemini."""

from __future__ import annotations

import logging
import time
from typing import Any, Sequence

import httpx

from conceptkb.config import GEMINI, OPENAI, LLMConfig
from conceptkb.exceptions import ConfigurationError, ProviderError
from conceptkb.llm.backends import HTTPAdapter, history_to_text
from conceptkb.types import Message
from conceptkb.utils import parse_json_object

logger = logging.getLogger(__name__)

# Context caching only works against pinned model versions.
_GEMINI_VERSIONED = {
    "gemini-1.5-flash": "gemini-1.5-flash-001",
    "gemini-1.5-pro": "gemini-1.5-pro-001",
    "gemini-3-pro-preview": "gemini-1.5-pro-001",
    "gemini-1.5-flash-002": "gemini-1.5-flash-002",
    "gemini-1.5-pro-002": "gemini-1.5-pro-002",
}

GEMINI_KNOWN_MODELS = [
    "gemini-3-pro-preview",
    "gemini-1.5-flash",
    "gemini-1.5-flash-002",
    "gemini-1.5-pro",
    "gemini-1.5-pro-002",
    "gemini-2.0-flash-exp",
    "gemini-pro",
]


class OpenAIAdapter(HTTPAdapter):
    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        embedding_model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 120.0,
    ) -> None:
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY is required")
        super().__init__(base_url, timeout, headers={"Authorization": f"Bearer {api_key}"})
        self.model = model
        self.temperature = temperature
        self.embedding_model = embedding_model

    @staticmethod
    def _messages(prompt: str, system_prompt: str | None,
                  history: Sequence[Message] | None) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend({"role": m.role, "content": m.content} for m in history or ())
        messages.append({"role": "user", "content": prompt})
        return messages

    async def _chat(self, body: dict[str, Any]) -> str:
        data = await self._post("/chat/completions", body, body["model"])
        usage = data.get("usage", {})
        self._stats["input_tokens"] += int(usage.get("prompt_tokens", 0))
        self._stats["output_tokens"] += int(usage.get("completion_tokens", 0))
        choices = data.get("choices") or [{}]
        return str((choices[0].get("message") or {}).get("content") or "")

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
    ) -> str:
        body: dict[str, Any] = {
            "model": model or self.model,
            "messages": self._messages(prompt, system_prompt, history),
            "temperature": temperature if temperature is not None else self.temperature,
        }
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        return await self._chat(body)

    async def complete_json(
        self,
        prompt: str,
        system_prompt: str | None = None,
        history: Sequence[Message] | None = None,
        *,
        temperature: float | None = None,
        model: str | None = None,
        cached_content: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model or self.model,
            "messages": self._messages(prompt, system_prompt, history),
            "temperature": temperature if temperature is not None else self.temperature,
            "response_format": {"type": "json_object"},
        }
        return parse_json_object(await self._chat(body))

    async def embed(self, text: str) -> list[float]:
        data = await self._post(
            "/embeddings", {"model": self.embedding_model, "input": text}, self.embedding_model
        )
        rows = data.get("data") or []
        if not rows:
            raise ProviderError("openai embedding response contained no vectors")
        return [float(x) for x in rows[0]["embedding"]]


class GeminiAdapter(HTTPAdapter):
    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-3-pro-preview",
        temperature: float = 0.7,
        embedding_model: str = "text-embedding-004",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 120.0,
    ) -> None:
        if not api_key:
            raise ConfigurationError("GOOGLE_API_KEY is required")
        super().__init__(base_url, timeout, headers={"x-goog-api-key": api_key})
        self.model = model
        self.temperature = temperature
        self.embedding_model = embedding_model
        self._available_models: list[str] | None = None

    @staticmethod
    def versioned_model(model: str) -> str:
        if "-001" in model or "-002" in model:
            return model
        return _GEMINI_VERSIONED.get(model, "gemini-1.5-flash-001")

    @staticmethod
    def build_prompt(prompt: str, system_prompt: str | None,
                     history: Sequence[Message] | None) -> str:
        if history:
            history_text = history_to_text(history)
            if system_prompt:
                return f"{history_text}\n\n[System]: {system_prompt}\n\n[User]: {prompt}"
            return f"{history_text}\n\n[User]: {prompt}"
        return f"{system_prompt}\n\n{prompt}" if system_prompt else prompt

    async def _generate(self, model: str, text: str, generation_config: dict[str, Any],
                        cached_content: str | None) -> str:
        # A cached prefix is bound to the versioned model it was created with.
        target = self.versioned_model(model) if cached_content else model
        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": text}]}],
            "generationConfig": {k: v for k, v in generation_config.items() if v is not None},
        }
        if cached_content:
            body["cachedContent"] = cached_content
        data = await self._post(f"/models/{target}:generateContent", body, model)
        usage = data.get("usageMetadata", {})
        self._stats["input_tokens"] += int(usage.get("promptTokenCount", 0))
        self._stats["output_tokens"] += int(usage.get("candidatesTokenCount", 0))
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(str(p.get("text", "")) for p in parts if isinstance(p, dict))

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
    ) -> str:
        return await self._generate(
            model or self.model,
            self.build_prompt(prompt, system_prompt, history),
            {
                "temperature": temperature if temperature is not None else self.temperature,
                "maxOutputTokens": max_tokens,
            },
            cached_content,
        )

    async def complete_json(
        self,
        prompt: str,
        system_prompt: str | None = None,
        history: Sequence[Message] | None = None,
        *,
        temperature: float | None = None,
        model: str | None = None,
        cached_content: str | None = None,
    ) -> dict[str, Any]:
        text = await self._generate(
            model or self.model,
            self.build_prompt(prompt, system_prompt, history),
            {
                "temperature": temperature if temperature is not None else self.temperature,
                "responseMimeType": "application/json",
            },
            cached_content,
        )
        return parse_json_object(text)

    async def embed(self, text: str) -> list[float]:
        data = await self._post(
            f"/models/{self.embedding_model}:embedContent",
            {
                "model": f"models/{self.embedding_model}",
                "content": {"parts": [{"text": text}]},
            },
            self.embedding_model,
        )
        values = (data.get("embedding") or {}).get("values")
        if not values:
            raise ProviderError("gemini embedding response contained no values")
        return [float(x) for x in values]

    async def list_available_models(self) -> list[str]:
        """Models the key can use, or the known-good list if listing fails."""
        if self._available_models is not None:
            return self._available_models
        client = await self._get_client()
        try:
            resp = await client.get("/models")
            resp.raise_for_status()
            names = [m.get("name", "") for m in resp.json().get("models", [])]
            self._available_models = [
                n.removeprefix("models/") for n in names if n.removeprefix("models/").startswith("gemini-")
            ]
            return self._available_models
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("failed to list gemini models, using fallback list: %s", exc)
        self._available_models = list(GEMINI_KNOWN_MODELS)
        return self._available_models

    # --- Context caching ---

    async def create_context_cache(self, content: str, model: str, ttl_seconds: int = 3600) -> str:
        versioned = self.versioned_model(model)
        data = await self._post(
            "/cachedContents",
            {
                "model": f"models/{versioned}",
                "displayName": f"context_cache_{int(time.time() * 1000)}",
                "ttl": f"{int(ttl_seconds)}s",
                "contents": [{"role": "user", "parts": [{"text": content}]}],
            },
            versioned,
        )
        return str(data.get("name", ""))

    async def update_cache_ttl(self, cache_name: str, ttl_seconds: int = 3600) -> None:
        client = await self._get_client()
        resp = await client.patch(
            f"/{cache_name}", params={"updateMask": "ttl"}, json={"ttl": f"{int(ttl_seconds)}s"}
        )
        if not resp.is_success:
            raise ProviderError(f"cache ttl update failed: {resp.status_code}",
                                status_code=resp.status_code)

    async def delete_cache(self, cache_name: str) -> None:
        client = await self._get_client()
        resp = await client.delete(f"/{cache_name}")
        if not resp.is_success and resp.status_code != 404:
            raise ProviderError(f"cache delete failed: {resp.status_code}",
                                status_code=resp.status_code)
        logger.debug("deleted context cache %s", cache_name)


def create_adapter(provider: str, config: LLMConfig, model: str | None = None,
                   temperature: float | None = None) -> OpenAIAdapter | GeminiAdapter:
    """Build the adapter for ``provider`` from config credentials."""
    temp = config.temperature if temperature is None else temperature
    model = model or config.default_models.get(provider, "")
    if provider == OPENAI:
        return OpenAIAdapter(
            api_key=config.openai_api_key,
            model=model,
            temperature=temp,
            embedding_model=config.embedding_models[OPENAI],
            base_url=config.openai_base_url,
            timeout=config.timeout,
        )
    if provider == GEMINI:
        return GeminiAdapter(
            api_key=config.google_api_key,
            model=model,
            temperature=temp,
            embedding_model=config.embedding_models[GEMINI],
            base_url=config.gemini_base_url,
            timeout=config.timeout,
        )
    raise ConfigurationError(f"unsupported provider: {provider}")
