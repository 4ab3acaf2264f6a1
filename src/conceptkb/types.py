"""Core data types."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from conceptkb.utils import new_id, utcnow

Role = Literal["system", "user", "assistant"]


class ConceptStatus(str, Enum):
    ACTIVE = "active"
    TRASHED = "trashed"


class Concept(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    description: str | None = None
    content: str = ""
    status: ConceptStatus = ConceptStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def embedding_text(self) -> str:
        """Text fed to the embedding model: title, description, content."""
        return f"{self.title}\n{self.description or ''}\n{self.content}"


class Message(BaseModel):
    role: Role
    content: str


class EmbeddingRecord(BaseModel):
    entity_id: str
    vector: list[float]
    model: str
    updated_at: datetime = Field(default_factory=utcnow)
    # True when the row was stored in the legacy textual form
    legacy: bool = False

    @property
    def dims(self) -> int:
        return len(self.vector)


class ContextSession(BaseModel):
    id: str = Field(default_factory=new_id)
    session_key: str
    provider: str
    model: str
    messages: list[Message] = Field(default_factory=list)
    entity_ids: list[str] = Field(default_factory=list)
    external_cache_id: str | None = None
    cache_expires_at: datetime | None = None
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def cache_handle(self, now: datetime | None = None) -> str | None:
        """External cache handle if it has not expired yet."""
        if not self.external_cache_id:
            return None
        if self.cache_expires_at is not None and self.cache_expires_at <= (now or utcnow()):
            return None
        return self.external_cache_id


class CachedResponse(BaseModel):
    id: str = Field(default_factory=new_id)
    fingerprint: list[float]
    prompt_text: str
    response: dict[str, Any]
    provider: str
    model: str
    kind: str = "json"
    created_at: datetime = Field(default_factory=utcnow)
    last_used_at: datetime = Field(default_factory=utcnow)


class SearchHit(BaseModel):
    entity_id: str
    similarity: float
    title: str = ""


class LinkProposal(BaseModel):
    source_id: str
    target_id: str
    target_title: str = ""
    relation_label: str
    confidence: float
    reasoning: str = ""


class EmbeddingStatus(BaseModel):
    total: int
    with_embedding: int
    without_embedding: int
    is_indexing: bool = False
    last_indexed_at: datetime | None = None
    index_size: int = 0


class ReconcileProgress(BaseModel):
    processed: int = 0
    successful_batches: int = 0
    failed_batches: int = 0
    remaining: int = 0
    iterations: int = 0
