"""LLM client interfaces and provider implementations."""

from conceptkb.llm.backends import ContextCacheCapable, ProviderAdapter, supports_context_cache
from conceptkb.llm.client import ModelClient, select_provider
from conceptkb.llm.context_sessions import ContextSessionManager, generate_session_key
from conceptkb.llm.providers import GeminiAdapter, OpenAIAdapter, create_adapter
from conceptkb.llm.semantic_cache import SemanticCache

__all__ = [
    "ProviderAdapter",
    "ContextCacheCapable",
    "supports_context_cache",
    "OpenAIAdapter",
    "GeminiAdapter",
    "create_adapter",
    "ModelClient",
    "select_provider",
    "SemanticCache",
    "ContextSessionManager",
    "generate_session_key",
]
