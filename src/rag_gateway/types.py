"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SearchMode(str, Enum):
    """Which retrieval routes answer a query."""

    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


class DocumentStatus(str, Enum):
    """Lifecycle of a document inside the ingestion pipeline."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(slots=True)
class OffsetAnchor:
    """Maps a position in normalized text back to a source location."""

    offset: int
    page: int | None = None
    section: str | None = None


@dataclass(slots=True)
class LoadedText:
    """Normalized text produced by the document loader."""

    text: str
    source_format: str
    anchors: list[OffsetAnchor] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Document:
    """A source document tracked by the vector store."""

    doc_id: str
    name: str
    source_format: str
    size_bytes: int
    status: DocumentStatus = DocumentStatus.PENDING
    error: str | None = None
    chunk_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_payload(self) -> dict[str, Any]:
        return {
            "documentId": self.doc_id,
            "name": self.name,
            "sourceFormat": self.source_format,
            "sizeBytes": self.size_bytes,
            "status": self.status.value,
            "error": self.error,
            "chunkCount": self.chunk_count,
            "metadata": dict(self.metadata),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(slots=True)
class DocumentChunk:
    """A chunked span of a document's normalized text.

    `start_offset`/`end_offset` form a half-open character range into the
    normalized text, so `text == source[start_offset:end_offset]`.
    """

    chunk_id: str
    doc_id: str
    index: int
    text: str
    start_offset: int
    end_offset: int
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding: list[float] | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class SimilarityResult:
    """A ranked search hit. Built per query and never persisted."""

    chunk_id: str
    doc_id: str
    document_name: str
    chunk_index: int
    text: str
    metadata: dict[str, Any]
    created_at: datetime
    score: float
    context: str | None = None
    semantic_score: float | None = None
    keyword_score: float | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "chunkId": self.chunk_id,
            "documentId": self.doc_id,
            "documentName": self.document_name,
            "chunkIndex": self.chunk_index,
            "text": self.text,
            "metadata": dict(self.metadata),
            "createdAt": self.created_at.isoformat(),
            "score": self.score,
        }
        if self.semantic_score is not None:
            payload["semanticScore"] = self.semantic_score
        if self.keyword_score is not None:
            payload["keywordScore"] = self.keyword_score
        if self.context is not None:
            payload["context"] = self.context
        return payload


@dataclass(slots=True)
class SearchFilter:
    """Restricts a similarity search.

    `metadata` is an exact-match filter on chunk metadata and `min_score` is a
    lower bound on the score of the search mode in use; for semantic search
    that is cosine similarity.
    """

    document_ids: frozenset[str] | None = None
    metadata: dict[str, Any] | None = None
    min_score: float | None = None

    def is_empty(self) -> bool:
        return not self.document_ids and not self.metadata and self.min_score is None

    def matches(self, doc_id: str, metadata: dict[str, Any]) -> bool:
        if self.document_ids and doc_id not in self.document_ids:
            return False
        if self.metadata:
            for key, value in self.metadata.items():
                if metadata.get(key) != value:
                    return False
        return True


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    name: str
    input_payload: dict[str, Any]
    success: bool
    error_kind: str | None
    latency_ms: float
