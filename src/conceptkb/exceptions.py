"""conceptkb exception hierarchy."""

from __future__ import annotations


class ConceptKBError(Exception):
    """Base class for all conceptkb errors."""


class ConfigurationError(ConceptKBError):
    """No usable credential or an unknown provider. Never retried."""


class ProviderError(ConceptKBError):
    """A model backend call failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ModelNotFoundError(ProviderError):
    """The requested model is unavailable on the backend (404 class)."""

    def __init__(self, model: str, message: str = "", status_code: int | None = 404) -> None:
        super().__init__(message or f"model not found: {model}", status_code=status_code)
        self.model = model


class StructuredOutputError(ConceptKBError):
    """A structured (JSON object) response could not be parsed."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw

    @property
    def preview(self) -> str:
        return self.raw[:200]


class ModelFallbackExhaustedError(ConceptKBError):
    """Every model in the fallback cascade failed."""

    def __init__(self, message: str, last_error: BaseException | None = None,
                 attempted: list[str] | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error
        self.attempted = list(attempted or [])


class StorageError(ConceptKBError):
    """Persistent store failure."""


class NotFoundError(StorageError):
    """Referenced entity does not exist."""


class EmbeddingBatchError(ConceptKBError):
    """A reconciliation batch made no progress."""
