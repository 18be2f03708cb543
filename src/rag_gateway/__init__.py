"""RAG gateway package."""

from .config import ChunkingConfig, EmbeddingConfig, RetrievalConfig, ServiceConfig, StorageConfig

__all__ = ["ChunkingConfig", "EmbeddingConfig", "RetrievalConfig", "ServiceConfig", "StorageConfig"]
