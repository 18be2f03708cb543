"""Query-time retrieval: embed, search, fuse, assemble context."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import replace

import structlog

from rag_gateway.cancellation import CancellationScope
from rag_gateway.config import RetrievalConfig
from rag_gateway.errors import EmbeddingRejected, EmbeddingUnavailable, RetrievalUnavailable
from rag_gateway.ingest.chunker import merge_chunk_texts
from rag_gateway.ingest.embedder import Embedder, EmbeddingClient
from rag_gateway.retrieval.fusion import FusionLayer, ThresholdRelevanceFilter
from rag_gateway.retrieval.vector_store import VectorIndex
from rag_gateway.types import DocumentChunk, SearchFilter, SearchMode, SimilarityResult

logger = structlog.get_logger(__name__)

_RouteSearch = Callable[[int, SearchFilter | None], list[SimilarityResult]]


class RetrievalService:
    """Answers a query from the semantic route, the keyword route or both.

    Filters are pushed into the store when it supports that. Otherwise the
    whole corpus is ranked, filtered here, and only then cut to `top_k`, so a
    restrictive filter never starves the result set. Hybrid search
    oversamples both routes and hands them to the `FusionLayer`.
    """

    def __init__(
        self,
        vector_store: VectorIndex,
        embedder: Embedder,
        config: RetrievalConfig | None = None,
        fusion: FusionLayer | None = None,
    ) -> None:
        self.vector_store = vector_store
        self.embedder = embedder
        self.config = config or RetrievalConfig()
        self.fusion = fusion or FusionLayer(self.config)

    def retrieve(
        self,
        query: str,
        top_k: int | None = None,
        filters: SearchFilter | None = None,
        *,
        mode: SearchMode | str | None = None,
        context_window: int | None = None,
        scope: CancellationScope | None = None,
    ) -> list[SimilarityResult]:
        if not query.strip():
            raise ValueError("query must not be empty")
        final_k = top_k if top_k is not None else self.config.default_top_k
        if final_k < 1:
            raise ValueError("top_k must be >= 1")
        search_mode = SearchMode(mode) if mode is not None else self.config.default_mode
        window = self.config.context_window if context_window is None else context_window
        scope = scope or CancellationScope()

        started = time.perf_counter()
        scope.check()
        if search_mode is SearchMode.SEMANTIC:
            results = self._semantic_route(query, scope)(final_k, filters)
        elif search_mode is SearchMode.KEYWORD:
            results = self._route(self.vector_store.keyword_search, query)(final_k, filters)
        else:
            results = self._hybrid(query, final_k, filters, scope)
        scope.check()

        if window > 0:
            self._attach_context(results, window)

        logger.info(
            "retrieval_completed",
            mode=search_mode.value,
            top_k=final_k,
            results=len(results),
            filtered=filters is not None and not filters.is_empty(),
            latency_ms=round((time.perf_counter() - started) * 1000.0, 2),
        )
        return results

    def _hybrid(
        self,
        query: str,
        top_k: int,
        filters: SearchFilter | None,
        scope: CancellationScope,
    ) -> list[SimilarityResult]:
        # min_score bounds the fused score, not the route scores.
        route_filter = filters
        relevance_filter = None
        if filters is not None and filters.min_score is not None:
            route_filter = replace(filters, min_score=None)
            relevance_filter = ThresholdRelevanceFilter(filters.min_score)
        candidate_k = top_k * self.config.candidate_multiplier

        semantic = self._semantic_route(query, scope)(candidate_k, route_filter)
        scope.check()
        keyword = self._route(self.vector_store.keyword_search, query)(candidate_k, route_filter)
        return self.fusion.fuse(semantic, keyword, top_k=top_k, relevance_filter=relevance_filter)

    def _semantic_route(self, query: str, scope: CancellationScope) -> _RouteSearch:
        try:
            query_vector = self._embed_query(query, scope)
        except (EmbeddingUnavailable, EmbeddingRejected) as exc:
            logger.error("query_embedding_failed", error_kind=exc.kind, error=str(exc))
            raise RetrievalUnavailable(f"Query embedding failed: {exc}") from exc
        scope.check()
        return self._route(self.vector_store.similarity_search, query_vector)

    def _route(self, search, query) -> _RouteSearch:
        def _search(top_k: int, filters: SearchFilter | None) -> list[SimilarityResult]:
            if filters is None or filters.is_empty() or self.vector_store.supports_filter_pushdown:
                return search(query, top_k, filters)
            return self._filter_client_side(search, query, top_k, filters)

        return _search

    def _embed_query(self, query: str, scope: CancellationScope) -> list[float]:
        if isinstance(self.embedder, EmbeddingClient):
            return self.embedder.embed([query], scope=scope)[0]
        return self.embedder.embed_query(query)

    def _filter_client_side(self, search, query, top_k: int, filters: SearchFilter) -> list[SimilarityResult]:
        corpus_size = max(1, self.vector_store.count_chunks())
        ranked = search(query, corpus_size, None)
        kept = [
            result
            for result in ranked
            if filters.matches(result.doc_id, result.metadata)
            and (filters.min_score is None or result.score >= filters.min_score)
        ]
        return kept[:top_k]

    def _attach_context(self, results: list[SimilarityResult], window: int) -> None:
        chunks_by_doc: dict[str, list[DocumentChunk]] = {}
        for result in results:
            if result.doc_id not in chunks_by_doc:
                chunks_by_doc[result.doc_id] = self.vector_store.get_chunks(result.doc_id)
            neighbours = [
                chunk
                for chunk in chunks_by_doc[result.doc_id]
                if abs(chunk.index - result.chunk_index) <= window
            ]
            if neighbours:
                result.context = merge_chunk_texts(neighbours)
