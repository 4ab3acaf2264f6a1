"""conceptkb configuration."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

OPENAI = "openai"
GEMINI = "gemini"
PROVIDERS = (OPENAI, GEMINI)


def _default_data_dir() -> Path:
    return Path(os.environ.get("CONCEPTKB_DATA_DIR", Path.home() / ".conceptkb"))


class LLMConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("CONCEPTKB_LLM_PROVIDER", ""))
    openai_api_key: str = Field(default_factory=lambda: os.environ.get("OPENAI_API_KEY", ""))
    google_api_key: str = Field(default_factory=lambda: os.environ.get("GOOGLE_API_KEY", ""))
    openai_base_url: str = "https://api.openai.com/v1"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    default_models: dict[str, str] = Field(default_factory=lambda: {
        OPENAI: "gpt-4o-mini",
        GEMINI: "gemini-3-pro-preview",
    })
    embedding_models: dict[str, str] = Field(default_factory=lambda: {
        OPENAI: "text-embedding-3-small",
        GEMINI: "text-embedding-004",
    })
    fallback_models: dict[str, list[str]] = Field(default_factory=lambda: {
        OPENAI: ["gpt-4o-mini", "gpt-4o", "gpt-4.1-mini"],
        GEMINI: [
            "gemini-3-pro-preview",
            "gemini-1.5-flash",
            "gemini-1.5-flash-002",
            "gemini-1.5-pro",
            "gemini-1.5-pro-002",
            "gemini-2.0-flash-exp",
            "gemini-pro",
        ],
    })
    temperature: float = 0.7
    timeout: float = 120.0
    json_max_retries: int = 3
    json_retry_base_delay: float = 1.0

    def api_key_for(self, provider: str) -> str:
        if provider == OPENAI:
            return self.openai_api_key
        if provider == GEMINI:
            return self.google_api_key
        return ""

    def available_providers(self) -> list[str]:
        """Providers with a usable credential, in preference order."""
        return [p for p in (GEMINI, OPENAI) if self.api_key_for(p)]


class CacheConfig(BaseModel):
    enabled: bool = True
    similarity_threshold: float = 0.95
    max_entries: int = 1000
    eviction_headroom: int = 100
    scan_limit: int = 100


class SessionConfig(BaseModel):
    ttl_seconds: float = 3600.0
    provider_cache_min_chars: int = 2000
    provider_cache_ttl_seconds: int = 3600


class EmbeddingConfig(BaseModel):
    batch_size: int = 10
    max_attempts: int = 3
    base_delay: float = 1.0
    iteration_margin: int = 2


class APIConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8430
    bearer_token: str = Field(default_factory=lambda: os.environ.get("CONCEPTKB_API_TOKEN", ""))


class Config(BaseModel):
    data_dir: Path = Field(default_factory=_default_data_dir)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    sessions: SessionConfig = Field(default_factory=SessionConfig)
    embeddings: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @property
    def db_path(self) -> Path:
        return self.data_dir / "db" / "conceptkb.db"

    def ensure_dirs(self) -> None:
        for d in [self.data_dir, self.db_path.parent]:
            d.mkdir(parents=True, exist_ok=True)
