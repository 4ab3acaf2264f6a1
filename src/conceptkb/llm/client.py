"""Provider-agnostic model client.

Two resilience policies sit on top of a single ProviderAdapter:

* model fallback: a "model not found" error moves on to the next known-good
  model for the provider; any other backend error propagates untouched. The
  model that finally answers becomes the client's model (in memory only).
* structured-output repair: an unparseable JSON response is retried on the
  same model with exponential backoff until the per-model budget is spent,
  then the next fallback model is tried.

When every model has been tried, ModelFallbackExhaustedError is raised with
the last underlying error attached.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from conceptkb.config import GEMINI, OPENAI, PROVIDERS, LLMConfig
from conceptkb.exceptions import (
    ConfigurationError,
    ModelFallbackExhaustedError,
    StructuredOutputError,
)
from conceptkb.llm.backends import ProviderAdapter, is_model_not_found, supports_context_cache
from conceptkb.llm.context_sessions import ContextSessionManager
from conceptkb.llm.providers import create_adapter
from conceptkb.llm.semantic_cache import SemanticCache
from conceptkb.retry import Backoff, Sleep
from conceptkb.types import Message

logger = logging.getLogger(__name__)

T = TypeVar("T")


def select_provider(config: LLMConfig, explicit: str | None = None) -> str:
    """Explicit choice, else the configured override, else whichever key is set."""
    provider = (explicit or config.provider or "").strip().lower()
    if provider:
        if provider not in PROVIDERS:
            raise ConfigurationError(f"unsupported provider: {provider}")
        return provider
    if config.google_api_key:
        return GEMINI
    if config.openai_api_key:
        return OPENAI
    raise ConfigurationError("No LLM provider API keys found. Set OPENAI_API_KEY or GOOGLE_API_KEY.")


def cache_key(prompt: str, system_prompt: str | None) -> str:
    return f"{system_prompt}\n\n{prompt}" if system_prompt else prompt


class ModelClient:
    def __init__(
        self,
        config: LLMConfig | None = None,
        provider: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        adapter: ProviderAdapter | None = None,
        cache: SemanticCache | None = None,
        sessions: ContextSessionManager | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config or LLMConfig()
        if adapter is not None:
            self._provider = provider or adapter.name
        else:
            self._provider = select_provider(self.config, provider)
        self._model = model or self.config.default_models.get(self._provider, "")
        self._temperature = self.config.temperature if temperature is None else temperature
        self._adapter = adapter or create_adapter(self._provider, self.config, self._model, self._temperature)
        self.cache = cache
        self.sessions = sessions
        if sessions is not None and sessions.adapter is None:
            sessions.adapter = self._adapter
        self._sleep = sleep

    # --- Accessors ---

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def model(self) -> str:
        return self._model

    @property
    def temperature(self) -> float:
        return self._temperature

    @property
    def adapter(self) -> ProviderAdapter:
        return self._adapter

    @property
    def embedding_model(self) -> str:
        return self._adapter.embedding_model

    def set_model(self, model: str) -> None:
        self._model = model

    def set_temperature(self, temperature: float) -> None:
        self._temperature = temperature

    def set_provider(self, provider: str) -> None:
        provider = select_provider(self.config, provider)
        if provider == self._provider:
            return
        model = self.config.default_models.get(provider, "")
        self._adapter = create_adapter(provider, self.config, model, self._temperature)
        self._provider = provider
        self._model = model
        if self.sessions is not None:
            self.sessions.adapter = self._adapter

    def fallback_chain(self) -> list[str]:
        """Configured model first, then the provider's known-good models."""
        extra = self.config.fallback_models.get(self._provider, [])
        return [self._model, *[m for m in extra if m != self._model]]

    # --- Operations ---

    async def complete(
        self,
        prompt: str,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        history: Sequence[Message] | None = None,
        *,
        use_cache: bool = False,
        session_key: str | None = None,
    ) -> str:
        key = cache_key(prompt, system_prompt)
        if use_cache and self._cache_enabled():
            hit = await self.cache.get(  # type: ignore[union-attr]
                key, self._provider, self._model, kind="text"
            )
            if hit is not None and isinstance(hit.get("text"), str):
                return hit["text"]

        cached_content = self._context_handle(session_key)
        temp = self._temperature if temperature is None else temperature

        def call(model: str) -> Awaitable[str]:
            return self._adapter.complete(
                prompt, system_prompt, max_tokens, temp, history,
                model=model, cached_content=cached_content,
            )

        text = await self._run_cascade(call, repair=False)
        if use_cache and self._cache_enabled():
            await self.cache.store_response(  # type: ignore[union-attr]
                key, {"text": text}, self._provider, self._model, kind="text"
            )
        return text

    async def complete_json(
        self,
        prompt: str,
        system_prompt: str | None = None,
        history: Sequence[Message] | None = None,
        *,
        temperature: float | None = None,
        use_cache: bool = True,
        session_key: str | None = None,
    ) -> dict[str, Any]:
        key = cache_key(prompt, system_prompt)
        if use_cache and self._cache_enabled():
            hit = await self.cache.get(key, self._provider, self._model)  # type: ignore[union-attr]
            if hit is not None:
                return hit

        cached_content = self._context_handle(session_key)
        temp = self._temperature if temperature is None else temperature

        def call(model: str) -> Awaitable[dict[str, Any]]:
            return self._adapter.complete_json(
                prompt, system_prompt, history,
                temperature=temp, model=model, cached_content=cached_content,
            )

        result = await self._run_cascade(call, repair=True)
        if use_cache and self._cache_enabled():
            await self.cache.store_response(key, result, self._provider, self._model)  # type: ignore[union-attr]
        return result

    async def embed(self, text: str) -> list[float]:
        return await self._adapter.embed(text)

    async def close(self) -> None:
        close = getattr(self._adapter, "close", None)
        if close is not None:
            await close()

    # --- Internals ---

    def _cache_enabled(self) -> bool:
        return self.cache is not None and self.cache.config.enabled

    def _context_handle(self, session_key: str | None) -> str | None:
        if not session_key or self.sessions is None or not supports_context_cache(self._adapter):
            return None
        return self.sessions.active_cache_handle(session_key)

    def _adopt(self, model: str) -> None:
        if model != self._model:
            logger.info("switched %s model %s -> %s", self._provider, self._model, model)
            self._model = model

    async def _run_cascade(self, call: Callable[[str], Awaitable[T]], repair: bool) -> T:
        chain = self.fallback_chain()
        budget = max(self.config.json_max_retries, 1) if repair else 1
        last_error: BaseException | None = None

        for model in chain:
            backoff = Backoff(max_attempts=budget, base_delay=self.config.json_retry_base_delay)
            while not backoff.exhausted:
                attempt = backoff.record()
                try:
                    result = await call(model)
                except StructuredOutputError as exc:
                    if not repair:
                        raise
                    last_error = exc
                    logger.warning("structured output from %s unparseable (attempt %d/%d): %s",
                                   model, attempt, budget, exc)
                    if not backoff.exhausted:
                        await self._sleep(backoff.next_delay())
                    continue
                except Exception as exc:
                    if not is_model_not_found(exc):
                        raise
                    last_error = exc
                    logger.warning("model %s unavailable, trying next fallback: %s", model, exc)
                    break
                self._adopt(model)
                return result

        detail = str(last_error) if last_error else "no models configured"
        raise ModelFallbackExhaustedError(
            f"All {self._provider} models failed"
            + (f" after {budget} attempts each" if repair else "")
            + f". Last error: {detail}",
            last_error=last_error,
            attempted=chain,
        ) from last_error
