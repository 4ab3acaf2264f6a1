"""Embedding generation and reconciliation."""

from conceptkb.embeddings.orchestrator import Embedder, EmbeddingOrchestrator

__all__ = ["Embedder", "EmbeddingOrchestrator"]
