"""Persistent store: SQLite records plus a FAISS inner-product index."""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any

import faiss
import numpy as np
import structlog
from langchain_community.docstore.in_memory import InMemoryDocstore
from langchain_community.vectorstores import FAISS
from langchain_community.vectorstores.utils import DistanceStrategy
from langchain_core.embeddings import Embeddings

from rag_gateway.errors import DocumentNotFound, StorageUnavailable
from rag_gateway.retrieval.vector_store import (
    check_document_status,
    dimension_mismatch,
    keyword_terms,
    validate_chunks,
)
from rag_gateway.types import (
    Document,
    DocumentChunk,
    DocumentStatus,
    SearchFilter,
    SimilarityResult,
    utc_now,
)

logger = structlog.get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    doc_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    source_format TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    status TEXT NOT NULL,
    error TEXT,
    chunk_count INTEGER NOT NULL DEFAULT 0,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS chunks (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    chunk_id TEXT NOT NULL UNIQUE,
    doc_id TEXT NOT NULL REFERENCES documents(doc_id) ON DELETE CASCADE,
    chunk_index INTEGER NOT NULL,
    text TEXT NOT NULL,
    start_offset INTEGER NOT NULL,
    end_offset INTEGER NOT NULL,
    metadata TEXT NOT NULL,
    embedding BLOB NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (doc_id, chunk_index)
);
CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(text, tokenize = 'unicode61');
CREATE INDEX IF NOT EXISTS idx_chunks_doc_id ON chunks(doc_id);
CREATE INDEX IF NOT EXISTS idx_documents_status ON documents(status);
"""

_RESULT_COLUMNS = """
    c.seq, c.chunk_id, c.doc_id, c.chunk_index, c.text, c.metadata, c.created_at,
    d.name AS document_name
"""


class _PrecomputedVectors(Embeddings):
    """Embedding function for an index that only receives precomputed vectors."""

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        raise NotImplementedError("FaissVectorStore is written and searched with precomputed vectors")

    def embed_query(self, text: str) -> list[float]:
        raise NotImplementedError("FaissVectorStore is written and searched with precomputed vectors")


class FaissVectorStore:
    """Document and chunk records in SQLite, vectors in a FAISS index.

    Vectors are L2-normalized before they enter the `IndexFlatIP` index, so
    inner product is cosine similarity. SQLite is the source of truth: the
    index is rebuilt from the stored embeddings when the store opens, and
    every write changes SQLite and the index under one lock and inside one
    `BEGIN IMMEDIATE` transaction. A write that fails after touching the
    index rebuilds it from the rolled-back tables. One process owns a store
    file at a time. Keyword search runs on an FTS5 table over chunk text.
    """

    supports_filter_pushdown = True

    def __init__(self, path: str | Path, *, busy_timeout_seconds: float = 5.0) -> None:
        self._path = Path(path)
        self._timeout = busy_timeout_seconds
        self._lock = threading.RLock()
        self._index: FAISS | None = None
        self._index_touched = False
        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
        self._rebuild_index()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._path, timeout=self._timeout, isolation_level=None)
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Cannot open vector store at {self._path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Vector store operation failed: {exc}") from exc
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._index_touched = False
            try:
                with self._transaction() as conn:
                    yield conn
            except BaseException:
                if self._index_touched:
                    logger.warning("faiss_index_out_of_sync", path=str(self._path))
                    self._rebuild_index()
                raise

    def upsert_document(self, document: Document) -> Document:
        check_document_status(document)
        with self._write() as conn:
            removed = self._delete_chunk_rows(conn, document.doc_id)
            conn.execute(
                """
                INSERT INTO documents(doc_id, name, source_format, size_bytes, status, error,
                                      chunk_count, metadata, created_at, updated_at)
                VALUES(?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
                ON CONFLICT(doc_id) DO UPDATE SET
                    name=excluded.name,
                    source_format=excluded.source_format,
                    size_bytes=excluded.size_bytes,
                    status=excluded.status,
                    error=excluded.error,
                    chunk_count=0,
                    metadata=excluded.metadata,
                    updated_at=excluded.updated_at
                """,
                (
                    document.doc_id,
                    document.name,
                    document.source_format,
                    document.size_bytes,
                    document.status.value,
                    document.error,
                    json.dumps(document.metadata, ensure_ascii=False),
                    document.created_at.isoformat(),
                    document.updated_at.isoformat(),
                ),
            )
            stored = self._require_document(conn, document.doc_id)
            self._remove_vectors(removed)
        return stored

    def update_document(
        self,
        doc_id: str,
        *,
        status: DocumentStatus | None = None,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Document:
        with self._write() as conn:
            document = self._fetch_document(conn, doc_id)
            if document is None:
                raise DocumentNotFound(f"Document not found: {doc_id}")
            merged = {**document.metadata, **(metadata or {})}
            now = utc_now().isoformat()
            if status is None:
                conn.execute(
                    "UPDATE documents SET metadata = ?, updated_at = ? WHERE doc_id = ?",
                    (json.dumps(merged, ensure_ascii=False), now, doc_id),
                )
                return self._require_document(conn, doc_id)

            check_document_status(replace(document, status=status))
            removed = self._delete_chunk_rows(conn, doc_id)
            conn.execute(
                """
                UPDATE documents SET status = ?, error = ?, chunk_count = 0, metadata = ?, updated_at = ?
                WHERE doc_id = ?
                """,
                (status.value, error, json.dumps(merged, ensure_ascii=False), now, doc_id),
            )
            updated = self._require_document(conn, doc_id)
            self._remove_vectors(removed)
        return updated

    def get_document(self, doc_id: str) -> Document | None:
        with self._connection() as conn:
            return self._fetch_document(conn, doc_id)

    def list_documents(self, status: DocumentStatus | None = None) -> list[Document]:
        query = "SELECT * FROM documents"
        params: tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        query += " ORDER BY created_at, doc_id"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_document(row) for row in rows]

    def upsert_chunks(self, doc_id: str, chunks: Sequence[DocumentChunk]) -> None:
        validate_chunks(doc_id, chunks)
        ordered = sorted(chunks, key=lambda chunk: chunk.index)
        with self._write() as conn:
            if self._fetch_document(conn, doc_id) is None:
                raise DocumentNotFound(f"Document not found: {doc_id}")
            if ordered:
                self._check_dimension(conn, len(ordered[0].embedding or []), replacing=doc_id)
            removed = self._delete_chunk_rows(conn, doc_id)
            entries: list[tuple[str, dict[str, Any], Sequence[float]]] = []
            for chunk in ordered:
                cursor = conn.execute(
                    """
                    INSERT INTO chunks(chunk_id, doc_id, chunk_index, text, start_offset, end_offset,
                                       metadata, embedding, created_at)
                    VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chunk.chunk_id,
                        doc_id,
                        chunk.index,
                        chunk.text,
                        chunk.start_offset,
                        chunk.end_offset,
                        json.dumps(chunk.metadata, ensure_ascii=False),
                        _encode_vector(chunk.embedding or []),
                        chunk.created_at.isoformat(),
                    ),
                )
                seq = cursor.lastrowid
                conn.execute("INSERT INTO chunks_fts(rowid, text) VALUES (?, ?)", (seq, chunk.text))
                entries.append(
                    (
                        chunk.chunk_id,
                        {
                            "chunk_id": chunk.chunk_id,
                            "doc_id": doc_id,
                            "seq": seq,
                            "metadata": dict(chunk.metadata),
                        },
                        chunk.embedding or [],
                    )
                )
            conn.execute(
                """
                UPDATE documents SET status = ?, error = NULL, chunk_count = ?, updated_at = ?
                WHERE doc_id = ?
                """,
                (DocumentStatus.COMPLETE.value, len(ordered), utc_now().isoformat(), doc_id),
            )
            self._remove_vectors(removed)
            self._add_vectors(entries)
        logger.debug("chunks_upserted", doc_id=doc_id, chunk_count=len(ordered), backend="faiss")

    def get_chunks(self, doc_id: str) -> list[DocumentChunk]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM chunks WHERE doc_id = ? ORDER BY chunk_index", (doc_id,)
            ).fetchall()
        return [_row_to_chunk(row) for row in rows]

    def similarity_search(
        self,
        query_vector: Sequence[float],
        top_k: int,
        search_filter: SearchFilter | None = None,
    ) -> list[SimilarityResult]:
        if top_k < 1:
            raise ValueError("top_k must be >= 1")
        with self._lock:
            index = self._index
            if index is None:
                return []
            if len(query_vector) != index.index.d:
                raise dimension_mismatch(len(query_vector), index.index.d)
            hits = self._nearest(index, _normalized(query_vector), top_k, search_filter)
            if search_filter is not None and search_filter.min_score is not None:
                hits = [(chunk_id, score) for chunk_id, score in hits if score >= search_filter.min_score]
            with self._connection() as conn:
                rows = self._rows_by_chunk_id(conn, [chunk_id for chunk_id, _ in hits])
        return [
            _row_to_result(rows[chunk_id], score, route="semantic")
            for chunk_id, score in hits
            if chunk_id in rows
        ]

    def keyword_search(
        self,
        query_text: str,
        top_k: int,
        search_filter: SearchFilter | None = None,
    ) -> list[SimilarityResult]:
        if top_k < 1:
            raise ValueError("top_k must be >= 1")
        terms = keyword_terms(query_text)
        if not terms:
            return []
        query = f"""
            SELECT {_RESULT_COLUMNS}, bm25(chunks_fts) AS keyword_rank
            FROM chunks_fts
            JOIN chunks c ON c.seq = chunks_fts.rowid
            JOIN documents d ON d.doc_id = c.doc_id
            WHERE chunks_fts MATCH ? AND d.status = ?
        """
        params: list[Any] = [" OR ".join(f'"{term}"' for term in terms), DocumentStatus.COMPLETE.value]
        if search_filter is not None and search_filter.document_ids:
            ids = sorted(search_filter.document_ids)
            query += f" AND c.doc_id IN ({', '.join('?' for _ in ids)})"
            params.extend(ids)
        query += " ORDER BY keyword_rank, c.seq"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()

        results: list[SimilarityResult] = []
        for row in rows:
            metadata = json.loads(row["metadata"])
            if search_filter is not None and not search_filter.matches(row["doc_id"], metadata):
                continue
            strength = max(0.0, -float(row["keyword_rank"]))
            score = strength / (1.0 + strength)
            if search_filter is not None and search_filter.min_score is not None:
                if score < search_filter.min_score:
                    break
            results.append(_row_to_result(row, score, route="keyword"))
            if len(results) == top_k:
                break
        return results

    def delete_document(self, doc_id: str) -> bool:
        with self._write() as conn:
            removed = self._delete_chunk_rows(conn, doc_id)
            existed = conn.execute("DELETE FROM documents WHERE doc_id = ?", (doc_id,)).rowcount > 0
            self._remove_vectors(removed)
        if existed:
            logger.info("document_deleted", doc_id=doc_id, chunks_removed=len(removed), backend="faiss")
        return existed

    def count_chunks(self, doc_id: str | None = None) -> int:
        with self._connection() as conn:
            if doc_id is None:
                row = conn.execute("SELECT COUNT(*) FROM chunks").fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM chunks WHERE doc_id = ?", (doc_id,)).fetchone()
        return int(row[0])

    def _rebuild_index(self) -> None:
        with self._lock:
            with self._connection() as conn:
                rows = conn.execute(
                    """
                    SELECT c.seq, c.chunk_id, c.doc_id, c.metadata, c.embedding
                    FROM chunks c JOIN documents d ON d.doc_id = c.doc_id
                    WHERE d.status = ?
                    ORDER BY c.seq
                    """,
                    (DocumentStatus.COMPLETE.value,),
                ).fetchall()
            self._index = None
            self._add_vectors(
                [
                    (
                        row["chunk_id"],
                        {
                            "chunk_id": row["chunk_id"],
                            "doc_id": row["doc_id"],
                            "seq": row["seq"],
                            "metadata": json.loads(row["metadata"]),
                        },
                        _decode_vector(row["embedding"]),
                    )
                    for row in rows
                ]
            )
        logger.info("faiss_index_rebuilt", path=str(self._path), vectors=len(rows))

    def _add_vectors(self, entries: Sequence[tuple[str, dict[str, Any], Sequence[float]]]) -> None:
        if not entries:
            return
        matrix = np.vstack([_normalized(vector) for _, _, vector in entries])
        self._index_touched = True
        if self._index is None:
            self._index = FAISS(
                embedding_function=_PrecomputedVectors(),
                index=faiss.IndexFlatIP(matrix.shape[1]),
                docstore=InMemoryDocstore(),
                index_to_docstore_id={},
                distance_strategy=DistanceStrategy.MAX_INNER_PRODUCT,
            )
        self._index.add_embeddings(
            text_embeddings=[("", row.tolist()) for row in matrix],
            metadatas=[metadata for _, metadata, _ in entries],
            ids=[chunk_id for chunk_id, _, _ in entries],
        )

    def _remove_vectors(self, chunk_ids: Sequence[str]) -> None:
        if self._index is None or not chunk_ids:
            return
        indexed = set(self._index.index_to_docstore_id.values())
        present = [chunk_id for chunk_id in chunk_ids if chunk_id in indexed]
        if not present:
            return
        self._index_touched = True
        self._index.delete(ids=present)
        if self._index.index.ntotal == 0:
            # An empty store accepts vectors of any dimension.
            self._index = None

    def _check_dimension(self, conn: sqlite3.Connection, dimension: int, *, replacing: str) -> None:
        index = self._index
        if index is None or index.index.d == dimension:
            return
        # Replacing the only document in the store may change the dimension.
        owned = conn.execute("SELECT COUNT(*) FROM chunks WHERE doc_id = ?", (replacing,)).fetchone()[0]
        if owned < index.index.ntotal:
            raise dimension_mismatch(dimension, index.index.d)

    def _nearest(
        self,
        index: FAISS,
        query: np.ndarray,
        top_k: int,
        search_filter: SearchFilter | None,
    ) -> list[tuple[str, float]]:
        """Best `top_k` chunk ids by cosine; ties go to the lower sequence."""

        total = index.index.ntotal
        predicate = _predicate(search_filter)
        fetch = min(total, top_k + 1)
        while True:
            pairs = index.similarity_search_with_score_by_vector(
                query.tolist(), k=fetch, filter=predicate, fetch_k=total
            )
            # Widen while the fetched tail still ties with the k-th score.
            if len(pairs) < fetch or fetch >= total or pairs[-1][1] != pairs[top_k - 1][1]:
                break
            fetch = min(total, fetch * 2)
        ranked = sorted(
            (
                (max(-1.0, min(1.0, float(score))), doc.metadata["seq"], doc.metadata["chunk_id"])
                for doc, score in pairs
            ),
            key=lambda item: (-item[0], item[1]),
        )
        return [(chunk_id, score) for score, _, chunk_id in ranked[:top_k]]

    @staticmethod
    def _delete_chunk_rows(conn: sqlite3.Connection, doc_id: str) -> list[str]:
        rows = conn.execute("SELECT seq, chunk_id FROM chunks WHERE doc_id = ?", (doc_id,)).fetchall()
        if rows:
            conn.executemany("DELETE FROM chunks_fts WHERE rowid = ?", [(row["seq"],) for row in rows])
            conn.execute("DELETE FROM chunks WHERE doc_id = ?", (doc_id,))
        return [row["chunk_id"] for row in rows]

    @staticmethod
    def _rows_by_chunk_id(conn: sqlite3.Connection, chunk_ids: list[str]) -> dict[str, sqlite3.Row]:
        if not chunk_ids:
            return {}
        rows = conn.execute(
            f"""
            SELECT {_RESULT_COLUMNS}
            FROM chunks c JOIN documents d ON d.doc_id = c.doc_id
            WHERE c.chunk_id IN ({', '.join('?' for _ in chunk_ids)})
            """,
            chunk_ids,
        ).fetchall()
        return {row["chunk_id"]: row for row in rows}

    @staticmethod
    def _fetch_document(conn: sqlite3.Connection, doc_id: str) -> Document | None:
        row = conn.execute("SELECT * FROM documents WHERE doc_id = ?", (doc_id,)).fetchone()
        return _row_to_document(row) if row is not None else None

    def _require_document(self, conn: sqlite3.Connection, doc_id: str) -> Document:
        document = self._fetch_document(conn, doc_id)
        if document is None:
            raise StorageUnavailable(f"Document {doc_id} vanished inside its own write transaction")
        return document


def _predicate(search_filter: SearchFilter | None) -> Callable[[dict[str, Any]], bool] | None:
    if search_filter is None or not (search_filter.document_ids or search_filter.metadata):
        return None

    def _matches(metadata: dict[str, Any]) -> bool:
        return search_filter.matches(metadata["doc_id"], metadata["metadata"])

    return _matches


def _normalized(vector: Sequence[float]) -> np.ndarray:
    array = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(array))
    return array / norm if norm > 0 else array


def _encode_vector(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype="<f8").tobytes()


def _decode_vector(blob: bytes) -> list[float]:
    return np.frombuffer(blob, dtype="<f8").tolist()


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        doc_id=row["doc_id"],
        name=row["name"],
        source_format=row["source_format"],
        size_bytes=row["size_bytes"],
        status=DocumentStatus(row["status"]),
        error=row["error"],
        chunk_count=row["chunk_count"],
        metadata=json.loads(row["metadata"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_chunk(row: sqlite3.Row) -> DocumentChunk:
    return DocumentChunk(
        chunk_id=row["chunk_id"],
        doc_id=row["doc_id"],
        index=row["chunk_index"],
        text=row["text"],
        start_offset=row["start_offset"],
        end_offset=row["end_offset"],
        metadata=json.loads(row["metadata"]),
        embedding=_decode_vector(row["embedding"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_result(row: sqlite3.Row, score: float, *, route: str) -> SimilarityResult:
    return SimilarityResult(
        chunk_id=row["chunk_id"],
        doc_id=row["doc_id"],
        document_name=row["document_name"],
        chunk_index=row["chunk_index"],
        text=row["text"],
        metadata=json.loads(row["metadata"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        score=score,
        semantic_score=score if route == "semantic" else None,
        keyword_score=score if route == "keyword" else None,
    )
