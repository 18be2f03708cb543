"""Built-in tools exposing ingestion and retrieval to agents."""

from __future__ import annotations

import base64
import binascii
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator, model_validator

from rag_gateway.errors import DocumentNotFound, InvalidArguments
from rag_gateway.gateway.models import ToolArguments
from rag_gateway.gateway.registry import ToolRegistry, ToolSpec
from rag_gateway.ingest.pipeline import IngestPipeline
from rag_gateway.retrieval.retriever import RetrievalService
from rag_gateway.retrieval.vector_store import VectorIndex
from rag_gateway.types import DocumentStatus, SearchFilter, SearchMode


class IngestDocumentInput(ToolArguments):
    name: str = Field(min_length=1, description="Display name; its extension hints the format.")
    path: str | None = Field(default=None, description="Server-side file path to ingest.")
    content: str | None = Field(default=None, description="Inline UTF-8 document text.")
    content_base64: str | None = Field(default=None, description="Inline document bytes, base64.")
    format: str | None = Field(default=None, description="MIME type, extension or format name.")
    document_id: str | None = Field(default=None, description="Reuse an id to replace a document.")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _exactly_one_source(self) -> IngestDocumentInput:
        sources = [value for value in (self.path, self.content, self.content_base64) if value is not None]
        if len(sources) != 1:
            raise ValueError("provide exactly one of path, content or contentBase64")
        return self


class SearchInput(ToolArguments):
    query: str = Field(min_length=1)
    top_k: int = Field(default=5, ge=1, le=50)
    threshold: float | None = Field(
        default=None, ge=-1.0, le=1.0, description="Minimum score: cosine similarity in semantic mode."
    )
    document_ids: list[str] | None = Field(default=None, description="Restrict to these documents.")
    metadata_filter: dict[str, Any] | None = Field(default=None, description="Exact-match chunk metadata.")
    context_window: int = Field(default=0, ge=0, le=5, description="Neighbouring chunks to merge in.")
    mode: SearchMode | None = Field(default=None, description="semantic, keyword or hybrid.")

    @field_validator("mode", mode="before")
    @classmethod
    def _lowercase_mode(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class ListDocumentsInput(ToolArguments):
    status: DocumentStatus | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _lowercase_status(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class DocumentIdInput(ToolArguments):
    document_id: str = Field(min_length=1)


class UpdateMetadataInput(ToolArguments):
    document_id: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(description="Keys to add or overwrite on the document.")


def register_builtin_tools(
    registry: ToolRegistry,
    pipeline: IngestPipeline,
    retriever: RetrievalService,
    vector_store: VectorIndex,
) -> None:
    """Register the default tool set.

    Tools:
    - `ingest_document`: load, chunk, embed and store one document.
    - `search`: semantic, keyword or hybrid search with optional filters.
    - `list_documents`: documents, optionally filtered by status.
    - `get_document_info`: one document's metadata and status.
    - `update_document_metadata`: merge keys into a document's metadata.
    - `delete_document`: remove a document and all of its chunks.
    """

    def _ingest(input_data: IngestDocumentInput) -> dict[str, Any]:
        if input_data.path is not None:
            file_path = Path(input_data.path)
            if not file_path.is_file():
                raise InvalidArguments(f"File not found: {input_data.path}")
            data = file_path.read_bytes()
            metadata = {"source": str(file_path), **input_data.metadata}
        elif input_data.content is not None:
            data = input_data.content.encode("utf-8")
            metadata = dict(input_data.metadata)
        else:
            try:
                data = base64.b64decode(input_data.content_base64 or "", validate=True)
            except binascii.Error as exc:
                raise InvalidArguments(f"contentBase64 is not valid base64: {exc}") from exc
            metadata = dict(input_data.metadata)

        report = pipeline.ingest_bytes(
            data,
            name=input_data.name,
            declared_format=input_data.format,
            doc_id=input_data.document_id,
            metadata=metadata,
        )
        return {
            "document": report.document.to_payload(),
            "chunkCount": report.chunk_count,
            "warnings": report.warnings,
        }

    def _search(input_data: SearchInput) -> dict[str, Any]:
        search_filter = SearchFilter(
            document_ids=frozenset(input_data.document_ids) if input_data.document_ids else None,
            metadata=input_data.metadata_filter or None,
            min_score=input_data.threshold,
        )
        hits = retriever.retrieve(
            input_data.query,
            input_data.top_k,
            None if search_filter.is_empty() else search_filter,
            mode=input_data.mode,
            context_window=input_data.context_window,
        )
        return {
            "query": input_data.query,
            "mode": (input_data.mode or retriever.config.default_mode).value,
            "count": len(hits),
            "results": [hit.to_payload() for hit in hits],
        }

    def _list_documents(input_data: ListDocumentsInput) -> dict[str, Any]:
        documents = vector_store.list_documents(input_data.status)
        return {
            "count": len(documents),
            "documents": [document.to_payload() for document in documents],
        }

    def _get_document_info(input_data: DocumentIdInput) -> dict[str, Any]:
        document = vector_store.get_document(input_data.document_id)
        if document is None:
            raise DocumentNotFound(f"Document not found: {input_data.document_id}")
        return document.to_payload()

    def _update_document_metadata(input_data: UpdateMetadataInput) -> dict[str, Any]:
        return vector_store.update_document(input_data.document_id, metadata=input_data.metadata).to_payload()

    def _delete_document(input_data: DocumentIdInput) -> dict[str, Any]:
        if not vector_store.delete_document(input_data.document_id):
            raise DocumentNotFound(f"Document not found: {input_data.document_id}")
        return {"documentId": input_data.document_id, "deleted": True}

    registry.register(
        ToolSpec(
            name="ingest_document",
            description="Ingest a document (path, inline text or base64 bytes) into the search index.",
            args_schema=IngestDocumentInput,
            handler=_ingest,
            tags=["ingest"],
        )
    )
    registry.register(
        ToolSpec(
            name="search",
            description=(
                "Search ingested documents (semantic, keyword or hybrid); "
                "returns ranked chunks with scores."
            ),
            args_schema=SearchInput,
            handler=_search,
            tags=["retrieval", "rag"],
        )
    )
    registry.register(
        ToolSpec(
            name="list_documents",
            description="List ingested documents, optionally filtered by status.",
            args_schema=ListDocumentsInput,
            handler=_list_documents,
            tags=["documents"],
        )
    )
    registry.register(
        ToolSpec(
            name="get_document_info",
            description="Get metadata, status and chunk count for one document.",
            args_schema=DocumentIdInput,
            handler=_get_document_info,
            tags=["documents"],
        )
    )
    registry.register(
        ToolSpec(
            name="update_document_metadata",
            description="Merge metadata keys into an existing document without re-ingesting it.",
            args_schema=UpdateMetadataInput,
            handler=_update_document_metadata,
            tags=["documents"],
        )
    )
    registry.register(
        ToolSpec(
            name="delete_document",
            description="Delete a document and all of its chunks from the index.",
            args_schema=DocumentIdInput,
            handler=_delete_document,
            tags=["documents"],
        )
    )
