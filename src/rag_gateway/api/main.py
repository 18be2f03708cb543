"""FastAPI entrypoint for tool-call, ingest, document and search endpoints."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import Body, FastAPI, HTTPException
from pydantic import BaseModel, Field

from rag_gateway.config import ServiceConfig, load_config_from_env
from rag_gateway.errors import DocumentNotFound, InvalidArguments, RagError
from rag_gateway.gateway.registry import ToolRegistry
from rag_gateway.gateway.tools import register_builtin_tools
from rag_gateway.ingest.chunker import SlidingWindowChunker
from rag_gateway.ingest.embedder import (
    EmbeddingClient,
    EmbeddingProvider,
    HashingEmbeddingProvider,
    OpenAIEmbeddingProvider,
)
from rag_gateway.ingest.loader import DocumentLoader
from rag_gateway.ingest.pipeline import IngestPipeline
from rag_gateway.obs.logging import configure_logging
from rag_gateway.retrieval.faiss_store import FaissVectorStore
from rag_gateway.retrieval.retriever import RetrievalService
from rag_gateway.retrieval.vector_store import InMemoryVectorStore, VectorIndex
from rag_gateway.types import DocumentStatus, SearchFilter, SearchMode


def _create_embedding_provider(config: ServiceConfig) -> tuple[EmbeddingProvider, str]:
    embedding = config.embedding
    use_openai = embedding.provider == "openai" or (
        embedding.provider == "auto" and embedding.api_key is not None
    )
    if use_openai:
        return OpenAIEmbeddingProvider(embedding), "openai"
    return HashingEmbeddingProvider(dimension=embedding.dimension or 256), "hashing"


def _create_vector_store(config: ServiceConfig) -> VectorIndex:
    if config.storage.backend == "faiss":
        return FaissVectorStore(
            config.storage.database_path,
            busy_timeout_seconds=config.storage.busy_timeout_seconds,
        )
    return InMemoryVectorStore()


class IngestRequest(BaseModel):
    path: str
    doc_id: str | None = None
    format: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    top_k: int = Field(default=5, ge=1, le=50)
    threshold: float | None = Field(default=None, ge=-1.0, le=1.0)
    document_ids: list[str] | None = None
    metadata_filter: dict[str, Any] | None = None
    mode: SearchMode | None = None
    context_window: int = Field(default=0, ge=0, le=5)


class MetadataUpdateRequest(BaseModel):
    metadata: dict[str, Any]


_config = load_config_from_env()
configure_logging(_config.log_level, json_output=_config.log_json)
logger = structlog.get_logger(__name__)

app = FastAPI(title="RAG Gateway", version="0.1.0")

_provider, _provider_name = _create_embedding_provider(_config)
_embedder = EmbeddingClient(_provider, _config.embedding)
_vector_store = _create_vector_store(_config)
_loader = DocumentLoader()
_ingest_pipeline = IngestPipeline(
    _loader,
    SlidingWindowChunker(_config.chunking),
    _embedder,
    _vector_store,
)
_retriever = RetrievalService(_vector_store, _embedder, _config.retrieval)
_registry = ToolRegistry()
register_builtin_tools(_registry, _ingest_pipeline, _retriever, _vector_store)

logger.info(
    "service_started",
    embedding_provider=_provider_name,
    storage_backend=_config.storage.backend,
    tools=len(_registry.specs()),
)


def _http_error(exc: RagError) -> HTTPException:
    if isinstance(exc, DocumentNotFound):
        status_code = 404
    elif exc.retryable:
        status_code = 503
    elif isinstance(exc, InvalidArguments):
        status_code = 422
    else:
        status_code = 400
    return HTTPException(status_code=status_code, detail={"error": exc.kind, "message": str(exc)})


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "embedding_provider": _provider_name,
        "storage_backend": _config.storage.backend,
        "embedding_dimension": _embedder.dimension,
        "supported_formats": _loader.supported_formats(),
        "tools": [spec.name for spec in _registry.specs()],
        "chunk_count": _vector_store.count_chunks(),
    }


@app.get("/tools")
def list_tools() -> dict[str, Any]:
    return {"tools": [tool.model_dump(by_alias=True) for tool in _registry.list_tools()]}


@app.post("/tools/execute")
def execute_tool(request: dict[str, Any] = Body(...)) -> dict[str, Any]:
    return _registry.execute(request).to_payload()


@app.post("/ingest")
def ingest(request: IngestRequest) -> dict[str, Any]:
    try:
        report = _ingest_pipeline.ingest_path(
            request.path,
            doc_id=request.doc_id,
            declared_format=request.format,
            extra_metadata=request.metadata,
        )
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"File not found: {request.path}") from exc
    except RagError as exc:
        raise _http_error(exc) from exc

    return {
        "document": report.document.to_payload(),
        "chunks_created": report.chunk_count,
        "warnings": report.warnings,
    }


@app.get("/documents")
def list_documents(status: DocumentStatus | None = None) -> dict[str, Any]:
    documents = _vector_store.list_documents(status)
    return {"items": [document.to_payload() for document in documents]}


@app.get("/documents/{doc_id}")
def document_detail(doc_id: str) -> dict[str, Any]:
    document = _vector_store.get_document(doc_id)
    if document is None:
        raise HTTPException(status_code=404, detail=f"Document not found: {doc_id}")
    return document.to_payload()


@app.patch("/documents/{doc_id}/metadata")
def update_document_metadata(doc_id: str, request: MetadataUpdateRequest) -> dict[str, Any]:
    try:
        document = _vector_store.update_document(doc_id, metadata=request.metadata)
    except RagError as exc:
        raise _http_error(exc) from exc
    return document.to_payload()


@app.delete("/documents/{doc_id}")
def delete_document(doc_id: str) -> dict[str, Any]:
    if not _vector_store.delete_document(doc_id):
        raise HTTPException(status_code=404, detail=f"Document not found: {doc_id}")
    return {"doc_id": doc_id, "deleted": True}


@app.post("/search")
def search(request: SearchRequest) -> dict[str, Any]:
    search_filter = SearchFilter(
        document_ids=frozenset(request.document_ids) if request.document_ids else None,
        metadata=request.metadata_filter or None,
        min_score=request.threshold,
    )
    try:
        hits = _retriever.retrieve(
            request.query,
            request.top_k,
            None if search_filter.is_empty() else search_filter,
            mode=request.mode,
            context_window=request.context_window,
        )
    except RagError as exc:
        raise _http_error(exc) from exc
    return {"items": [hit.to_payload() for hit in hits]}
