"""End-to-end ingest pipeline: load -> chunk -> embed -> persist."""

from __future__ import annotations

import threading
import uuid
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import structlog

from rag_gateway.cancellation import CancellationScope
from rag_gateway.errors import DocumentNotFound, PartialExtraction, RagError
from rag_gateway.ingest.chunker import SlidingWindowChunker
from rag_gateway.ingest.embedder import Embedder, EmbeddingClient
from rag_gateway.ingest.loader import DocumentLoader
from rag_gateway.retrieval.vector_store import VectorIndex
from rag_gateway.types import Document, DocumentStatus, utc_now

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


@dataclass(slots=True)
class IngestionReport:
    document: Document
    chunk_count: int
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class BatchIngestionSummary:
    reports: list[IngestionReport] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)


class IngestPipeline:
    """Coordinates loader/chunker/embedder/vector store stages.

    Owns the document lifecycle: a document is `pending` on creation,
    `processing` while being worked on, and becomes `complete` only through
    `VectorIndex.upsert_chunks`, which persists every chunk in the same step.
    Any failure, cancellation included, leaves it `failed` with the error.
    """

    def __init__(
        self,
        loader: DocumentLoader,
        chunker: SlidingWindowChunker,
        embedder: Embedder,
        vector_store: VectorIndex,
    ) -> None:
        self._loader = loader
        self._chunker = chunker
        self._embedder = embedder
        self._vector_store = vector_store
        self._locks: dict[str, _LockEntry] = {}
        self._locks_guard = threading.Lock()

    def ingest_bytes(
        self,
        data: bytes,
        *,
        name: str,
        declared_format: str | None = None,
        doc_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        scope: CancellationScope | None = None,
    ) -> IngestionReport:
        """Ingest one document and return its final state.

        `declared_format` may be a MIME type, extension or format name; when
        absent the file name's extension is tried before content sniffing.
        Re-ingesting an existing `doc_id` replaces its chunks.
        """

        doc_id = doc_id or uuid.uuid4().hex
        with self._document_lock(doc_id):
            document = self._vector_store.upsert_document(
                Document(
                    doc_id=doc_id,
                    name=name,
                    source_format="unknown",
                    size_bytes=len(data),
                    metadata=dict(metadata or {}),
                )
            )
            logger.info("document_ingestion_started", doc_id=doc_id, name=name, size_bytes=len(data))
            try:
                return self._run(document, data, declared_format or name, scope or CancellationScope())
            except Exception as exc:
                self._mark_failed(doc_id, exc)
                raise

    def ingest_path(
        self,
        path: str | Path,
        *,
        doc_id: str | None = None,
        declared_format: str | None = None,
        extra_metadata: dict[str, Any] | None = None,
        scope: CancellationScope | None = None,
    ) -> IngestionReport:
        """Ingest a single source file."""

        file_path = Path(path)
        data = file_path.read_bytes()
        return self.ingest_bytes(
            data,
            name=file_path.name,
            declared_format=declared_format,
            doc_id=doc_id,
            metadata={"source": str(file_path), **(extra_metadata or {})},
            scope=scope,
        )

    def ingest_many(
        self,
        paths: list[str | Path],
        *,
        max_workers: int = 4,
        scope: CancellationScope | None = None,
    ) -> BatchIngestionSummary:
        """Ingest many files concurrently; one failure does not stop the rest."""

        summary = BatchIngestionSummary()
        if not paths:
            return summary
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ingest") as pool:
            futures = {str(path): pool.submit(self.ingest_path, path, scope=scope) for path in paths}
            for path, future in futures.items():
                try:
                    summary.reports.append(future.result())
                except (RagError, OSError, ValueError) as exc:
                    summary.failures[path] = f"{type(exc).__name__}: {exc}"
        logger.info(
            "batch_ingestion_completed",
            documents=len(paths),
            succeeded=len(summary.reports),
            failed=len(summary.failures),
        )
        return summary

    def _run(
        self,
        document: Document,
        data: bytes,
        declared_format: str,
        scope: CancellationScope,
    ) -> IngestionReport:
        doc_id = document.doc_id
        source_format = self._loader.resolve_format(data, declared_format)
        self._vector_store.upsert_document(
            replace(
                document,
                source_format=source_format,
                status=DocumentStatus.PROCESSING,
                updated_at=utc_now(),
            )
        )
        scope.check()

        warnings: list[str] = []
        try:
            loaded = self._loader.load(data, declared_format=source_format)
        except PartialExtraction as exc:
            if not exc.partial.text.strip():
                raise
            loaded = exc.partial
            warnings.append(str(exc))
        warnings.extend(warning for warning in loaded.warnings if warning not in warnings)
        scope.check()

        chunks = self._chunker.chunk_document(doc_id, loaded, metadata={"source_format": source_format})
        if chunks:
            vectors = self._embed([chunk.text for chunk in chunks], scope)
            for chunk, vector in zip(chunks, vectors, strict=True):
                chunk.embedding = vector
        scope.check()

        if warnings:
            self._vector_store.update_document(
                doc_id,
                status=DocumentStatus.PROCESSING,
                metadata={"extraction_warnings": warnings},
            )
        self._vector_store.upsert_chunks(doc_id, chunks)

        stored = self._vector_store.get_document(doc_id)
        if stored is None:
            raise DocumentNotFound(f"Document {doc_id} was deleted while it was being ingested")
        logger.info(
            "document_ingested",
            doc_id=doc_id,
            source_format=source_format,
            chunk_count=len(chunks),
            warnings=len(warnings),
        )
        return IngestionReport(document=stored, chunk_count=len(chunks), warnings=warnings)

    def _embed(self, texts: list[str], scope: CancellationScope) -> list[list[float]]:
        if isinstance(self._embedder, EmbeddingClient):
            return self._embedder.embed(texts, scope=scope)
        return self._embedder.embed_documents(texts)

    def _mark_failed(self, doc_id: str, exc: Exception) -> None:
        kind = exc.kind if isinstance(exc, RagError) else type(exc).__name__
        logger.error("document_ingestion_failed", doc_id=doc_id, error_kind=kind, error=str(exc))
        try:
            self._vector_store.update_document(
                doc_id, status=DocumentStatus.FAILED, error=f"{kind}: {exc}"
            )
        except RagError as storage_exc:
            logger.error(
                "document_status_update_failed",
                doc_id=doc_id,
                error_kind=storage_exc.kind,
                error=str(storage_exc),
            )

    @contextmanager
    def _document_lock(self, doc_id: str) -> Iterator[None]:
        """Serialize work on one document; the entry lives only while in use."""
        with self._locks_guard:
            entry = self._locks.setdefault(doc_id, _LockEntry())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[doc_id]
