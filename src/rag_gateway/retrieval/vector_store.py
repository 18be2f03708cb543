"""Vector store interfaces and the in-memory adapter."""

from __future__ import annotations

import heapq
import itertools
import re
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from math import sqrt
from typing import Any, Protocol

import structlog

from rag_gateway.errors import DimensionMismatch, DocumentNotFound
from rag_gateway.types import (
    Document,
    DocumentChunk,
    DocumentStatus,
    SearchFilter,
    SimilarityResult,
    utc_now,
)

logger = structlog.get_logger(__name__)

_TERM_PATTERN = re.compile(r"\w+")


class VectorIndex(Protocol):
    """Storage contract required by the ingestion and query paths.

    Only `complete` documents own chunks: replacing a document record or
    moving it to any other status drops its chunks, and `upsert_chunks` is
    the one way to make a document complete.
    """

    supports_filter_pushdown: bool

    def upsert_document(self, document: Document) -> Document:
        """Insert or replace document metadata, dropping any existing chunks."""

    def update_document(
        self,
        doc_id: str,
        *,
        status: DocumentStatus | None = None,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Document:
        """Change status/error and merge metadata of an existing document.

        `status=None` keeps status, error and chunks as they are.
        """

    def get_document(self, doc_id: str) -> Document | None:
        """Return a document or `None`."""

    def list_documents(self, status: DocumentStatus | None = None) -> list[Document]:
        """Return documents in creation order, optionally by status."""

    def upsert_chunks(self, doc_id: str, chunks: Sequence[DocumentChunk]) -> None:
        """Atomically replace a document's chunks and mark it complete."""

    def get_chunks(self, doc_id: str) -> list[DocumentChunk]:
        """Return a document's chunks ordered by index."""

    def similarity_search(
        self,
        query_vector: Sequence[float],
        top_k: int,
        search_filter: SearchFilter | None = None,
    ) -> list[SimilarityResult]:
        """Rank chunks of complete documents by cosine similarity."""

    def keyword_search(
        self,
        query_text: str,
        top_k: int,
        search_filter: SearchFilter | None = None,
    ) -> list[SimilarityResult]:
        """Rank chunks of complete documents by term match, scores in (0, 1]."""

    def delete_document(self, doc_id: str) -> bool:
        """Remove a document and all its chunks; `False` if it did not exist."""

    def count_chunks(self, doc_id: str | None = None) -> int:
        """Count stored chunks, for one document or overall."""


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"Vector dimensions differ: {len(a)} != {len(b)}")
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return max(-1.0, min(1.0, numerator / (norm_a * norm_b)))


def keyword_terms(text: str) -> list[str]:
    """Lower-cased word tokens, each once, in first-seen order."""
    return list(dict.fromkeys(_TERM_PATTERN.findall(text.lower())))


@dataclass(slots=True)
class _Candidate:
    seq: int
    chunk: DocumentChunk
    document_name: str


def _best(
    scored: list[tuple[float, int, _Candidate]],
    top_k: int,
    *,
    route: str,
) -> list[SimilarityResult]:
    """Keep the best `top_k`; ties go to the lower sequence."""

    best = heapq.nsmallest(top_k, scored, key=lambda item: (-item[0], item[1]))
    return [
        SimilarityResult(
            chunk_id=candidate.chunk.chunk_id,
            doc_id=candidate.chunk.doc_id,
            document_name=candidate.document_name,
            chunk_index=candidate.chunk.index,
            text=candidate.chunk.text,
            metadata=dict(candidate.chunk.metadata),
            created_at=candidate.chunk.created_at,
            score=score,
            semantic_score=score if route == "semantic" else None,
            keyword_score=score if route == "keyword" else None,
        )
        for score, _, candidate in best
    ]


def _rank(
    candidates: Iterable[_Candidate],
    query_vector: Sequence[float],
    top_k: int,
    search_filter: SearchFilter | None,
) -> list[SimilarityResult]:
    if top_k < 1:
        raise ValueError("top_k must be >= 1")

    scored: list[tuple[float, int, _Candidate]] = []
    for candidate in candidates:
        chunk = candidate.chunk
        if search_filter is not None and not search_filter.matches(chunk.doc_id, chunk.metadata):
            continue
        score = cosine_similarity(query_vector, chunk.embedding or [])
        if search_filter is not None and search_filter.min_score is not None:
            if score < search_filter.min_score:
                continue
        scored.append((score, candidate.seq, candidate))
    return _best(scored, top_k, route="semantic")


def _rank_by_terms(
    candidates: Iterable[_Candidate],
    query_text: str,
    top_k: int,
    search_filter: SearchFilter | None,
) -> list[SimilarityResult]:
    """Score each chunk by the share of query terms it contains."""

    if top_k < 1:
        raise ValueError("top_k must be >= 1")
    query_terms = set(keyword_terms(query_text))
    if not query_terms:
        return []

    scored: list[tuple[float, int, _Candidate]] = []
    for candidate in candidates:
        chunk = candidate.chunk
        if search_filter is not None and not search_filter.matches(chunk.doc_id, chunk.metadata):
            continue
        overlap = len(query_terms.intersection(keyword_terms(chunk.text))) / len(query_terms)
        if overlap == 0:
            continue
        if search_filter is not None and search_filter.min_score is not None:
            if overlap < search_filter.min_score:
                continue
        scored.append((overlap, candidate.seq, candidate))
    return _best(scored, top_k, route="keyword")


def validate_chunks(doc_id: str, chunks: Sequence[DocumentChunk]) -> None:
    """Reject chunk sets that would break index contiguity or vector shape."""

    dimension: int | None = None
    for expected_index, chunk in enumerate(sorted(chunks, key=lambda item: item.index)):
        if chunk.doc_id != doc_id:
            raise ValueError(f"Chunk {chunk.chunk_id} belongs to {chunk.doc_id}, not {doc_id}")
        if chunk.index != expected_index:
            raise ValueError(
                f"Chunk indices for {doc_id} must be contiguous from 0; "
                f"expected {expected_index}, got {chunk.index}"
            )
        if not chunk.embedding:
            raise ValueError(f"Chunk {chunk.chunk_id} has no embedding")
        if dimension is None:
            dimension = len(chunk.embedding)
        elif len(chunk.embedding) != dimension:
            raise ValueError(f"Chunk {chunk.chunk_id} has inconsistent embedding dimension")


def check_document_status(document: Document) -> None:
    if document.status == DocumentStatus.COMPLETE:
        raise ValueError("Documents become complete only through upsert_chunks")


def dimension_mismatch(actual: int, stored: int) -> DimensionMismatch:
    return DimensionMismatch(
        f"Vector has dimension {actual}, but the store holds {stored}-dimensional vectors"
    )


def _copy_document(document: Document) -> Document:
    return replace(document, metadata=dict(document.metadata))


class InMemoryVectorStore:
    """Lock-guarded vector store used for tests and local runs."""

    supports_filter_pushdown = True

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._documents: dict[str, Document] = {}
        self._chunks: dict[str, list[_Candidate]] = {}
        self._sequence = itertools.count()

    def upsert_document(self, document: Document) -> Document:
        check_document_status(document)
        with self._lock:
            stored = replace(_copy_document(document), chunk_count=0)
            self._documents[document.doc_id] = stored
            self._chunks.pop(document.doc_id, None)
            return _copy_document(stored)

    def update_document(
        self,
        doc_id: str,
        *,
        status: DocumentStatus | None = None,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Document:
        with self._lock:
            document = self._documents.get(doc_id)
            if document is None:
                raise DocumentNotFound(f"Document not found: {doc_id}")
            if status is not None:
                check_document_status(replace(document, status=status))
                document.status = status
                document.error = error
                document.chunk_count = 0
                self._chunks.pop(doc_id, None)
            if metadata:
                document.metadata.update(metadata)
            document.updated_at = utc_now()
            return _copy_document(document)

    def get_document(self, doc_id: str) -> Document | None:
        with self._lock:
            document = self._documents.get(doc_id)
            return _copy_document(document) if document is not None else None

    def list_documents(self, status: DocumentStatus | None = None) -> list[Document]:
        with self._lock:
            documents = [
                _copy_document(document)
                for document in self._documents.values()
                if status is None or document.status == status
            ]
        return sorted(documents, key=lambda document: document.created_at)

    def upsert_chunks(self, doc_id: str, chunks: Sequence[DocumentChunk]) -> None:
        validate_chunks(doc_id, chunks)
        ordered = sorted(chunks, key=lambda chunk: chunk.index)
        with self._lock:
            document = self._documents.get(doc_id)
            if document is None:
                raise DocumentNotFound(f"Document not found: {doc_id}")
            stored_dimension = self._dimension(exclude=doc_id)
            new_dimension = len(ordered[0].embedding or []) if ordered else None
            if stored_dimension is not None and new_dimension not in (None, stored_dimension):
                raise dimension_mismatch(new_dimension, stored_dimension)
            self._chunks[doc_id] = [
                _Candidate(
                    seq=next(self._sequence),
                    chunk=replace(
                        chunk, embedding=list(chunk.embedding or []), metadata=dict(chunk.metadata)
                    ),
                    document_name=document.name,
                )
                for chunk in ordered
            ]
            document.status = DocumentStatus.COMPLETE
            document.error = None
            document.chunk_count = len(ordered)
            document.updated_at = utc_now()
        logger.debug("chunks_upserted", doc_id=doc_id, chunk_count=len(ordered), backend="memory")

    def get_chunks(self, doc_id: str) -> list[DocumentChunk]:
        with self._lock:
            return [replace(candidate.chunk) for candidate in self._chunks.get(doc_id, [])]

    def similarity_search(
        self,
        query_vector: Sequence[float],
        top_k: int,
        search_filter: SearchFilter | None = None,
    ) -> list[SimilarityResult]:
        with self._lock:
            stored_dimension = self._dimension()
            if stored_dimension is not None and len(query_vector) != stored_dimension:
                raise dimension_mismatch(len(query_vector), stored_dimension)
            candidates = self._searchable()
        return _rank(candidates, query_vector, top_k, search_filter)

    def keyword_search(
        self,
        query_text: str,
        top_k: int,
        search_filter: SearchFilter | None = None,
    ) -> list[SimilarityResult]:
        with self._lock:
            candidates = self._searchable()
        return _rank_by_terms(candidates, query_text, top_k, search_filter)

    def delete_document(self, doc_id: str) -> bool:
        with self._lock:
            existed = self._documents.pop(doc_id, None) is not None
            removed = self._chunks.pop(doc_id, [])
        if existed:
            logger.info("document_deleted", doc_id=doc_id, chunks_removed=len(removed), backend="memory")
        return existed

    def count_chunks(self, doc_id: str | None = None) -> int:
        with self._lock:
            if doc_id is not None:
                return len(self._chunks.get(doc_id, []))
            return sum(len(doc_chunks) for doc_chunks in self._chunks.values())

    def _searchable(self) -> list[_Candidate]:
        return [
            candidate
            for doc_id, doc_chunks in self._chunks.items()
            if self._documents[doc_id].status == DocumentStatus.COMPLETE
            for candidate in doc_chunks
        ]

    def _dimension(self, exclude: str | None = None) -> int | None:
        for doc_id, doc_chunks in self._chunks.items():
            if doc_id != exclude and doc_chunks:
                return len(doc_chunks[0].chunk.embedding or [])
        return None
