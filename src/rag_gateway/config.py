"""Configuration models for the RAG gateway."""

from __future__ import annotations

import os
from typing import Literal

from pydantic import BaseModel, Field

from rag_gateway.types import SearchMode


class ChunkingConfig(BaseModel):
    """Configures boundary-aware sliding-window chunking.

    `chunk_size`, `overlap` and `boundary_window` are all measured in `unit`.
    """

    chunk_size: int = Field(default=500, ge=1)
    overlap: int = Field(default=100, ge=0)
    boundary_window: int = Field(default=100, ge=0)
    unit: Literal["chars", "tokens"] = "chars"


class EmbeddingConfig(BaseModel):
    """Configures embedding batching, retry and provider access."""

    provider: Literal["auto", "openai", "hashing"] = "auto"
    model: str = "text-embedding-3-small"
    dimension: int | None = Field(default=None, ge=1)
    batch_size: int = Field(default=20, ge=1)
    max_attempts: int = Field(default=4, ge=1)
    initial_backoff_seconds: float = Field(default=1.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_backoff_seconds: float = Field(default=30.0, ge=0.0)
    request_timeout_seconds: float = Field(default=60.0, gt=0.0)
    max_concurrency: int = Field(default=4, ge=1)
    api_key: str | None = None
    base_url: str | None = None


class RetrievalConfig(BaseModel):
    """Configures query-time defaults and hybrid ranking.

    Hybrid search asks each route for `top_k * candidate_multiplier` hits,
    merges them by chunk, reranks with `rerank_strategy` and drops results
    scoring below `relevance_threshold`.
    """

    default_top_k: int = Field(default=5, ge=1)
    context_window: int = Field(default=0, ge=0)
    default_mode: SearchMode = SearchMode.SEMANTIC
    semantic_weight: float = Field(default=0.6, ge=0.0)
    keyword_weight: float = Field(default=0.4, ge=0.0)
    rerank_strategy: Literal["weighted_sum", "max_score", "rrf"] = "weighted_sum"
    rrf_k: int = Field(default=60, ge=1)
    candidate_multiplier: int = Field(default=4, ge=1)
    relevance_threshold: float | None = Field(default=None, ge=0.0, le=1.0)


class StorageConfig(BaseModel):
    """Selects and configures the vector store backend."""

    backend: Literal["memory", "faiss"] = "memory"
    database_path: str = "rag_gateway.db"
    busy_timeout_seconds: float = Field(default=5.0, gt=0.0)


class ServiceConfig(BaseModel):
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    log_level: str = "INFO"
    log_json: bool = True


def load_config_from_env() -> ServiceConfig:
    """Build a `ServiceConfig` from `RAG_*` and `OPENAI_*` environment variables.

    Unset variables fall back to model defaults; malformed values raise
    `pydantic.ValidationError`.
    """

    chunking = _collect(
        chunk_size="RAG_CHUNK_SIZE",
        overlap="RAG_CHUNK_OVERLAP",
        boundary_window="RAG_CHUNK_BOUNDARY_WINDOW",
        unit="RAG_CHUNK_UNIT",
    )
    embedding = _collect(
        provider="RAG_EMBEDDING_PROVIDER",
        model="RAG_EMBEDDING_MODEL",
        dimension="RAG_EMBEDDING_DIMENSION",
        batch_size="RAG_EMBEDDING_BATCH_SIZE",
        max_attempts="RAG_EMBEDDING_MAX_ATTEMPTS",
        initial_backoff_seconds="RAG_EMBEDDING_BACKOFF_SECONDS",
        request_timeout_seconds="RAG_EMBEDDING_TIMEOUT_SECONDS",
        max_concurrency="RAG_EMBEDDING_CONCURRENCY",
        api_key="OPENAI_API_KEY",
        base_url="OPENAI_BASE_URL",
    )
    retrieval = _collect(
        default_top_k="RAG_DEFAULT_TOP_K",
        context_window="RAG_CONTEXT_WINDOW",
        default_mode="RAG_SEARCH_MODE",
        semantic_weight="RAG_SEMANTIC_WEIGHT",
        keyword_weight="RAG_KEYWORD_WEIGHT",
        rerank_strategy="RAG_RERANK_STRATEGY",
        rrf_k="RAG_RRF_K",
        candidate_multiplier="RAG_CANDIDATE_MULTIPLIER",
        relevance_threshold="RAG_RELEVANCE_THRESHOLD",
    )
    storage = _collect(
        backend="RAG_STORAGE_BACKEND",
        database_path="RAG_DATABASE_PATH",
        busy_timeout_seconds="RAG_DATABASE_TIMEOUT_SECONDS",
    )
    return ServiceConfig(
        chunking=ChunkingConfig.model_validate(chunking),
        embedding=EmbeddingConfig.model_validate(embedding),
        retrieval=RetrievalConfig.model_validate(retrieval),
        storage=StorageConfig.model_validate(storage),
        log_level=os.getenv("RAG_LOG_LEVEL", "INFO"),
        log_json=os.getenv("RAG_LOG_JSON", "true").lower() == "true",
    )


def _collect(**env_names: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for field_name, env_name in env_names.items():
        value = os.getenv(env_name)
        if value:
            values[field_name] = value
    return values
