"""conceptkb: LLM orchestration core for a concept knowledge base."""

__version__ = "0.1.0"

from conceptkb.capabilities import Capabilities, build_capabilities
from conceptkb.config import Config
from conceptkb.embeddings.orchestrator import EmbeddingOrchestrator
from conceptkb.llm.client import ModelClient
from conceptkb.storage.vector_index import VectorIndex

__all__ = [
    "__version__",
    "Capabilities",
    "build_capabilities",
    "Config",
    "EmbeddingOrchestrator",
    "ModelClient",
    "VectorIndex",
]
