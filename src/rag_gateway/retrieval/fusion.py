"""Fusion strategies for hybrid (semantic + keyword) retrieval."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Protocol

import structlog

from rag_gateway.config import RetrievalConfig
from rag_gateway.types import SimilarityResult

logger = structlog.get_logger(__name__)


def merge_routes(
    semantic: list[SimilarityResult],
    keyword: list[SimilarityResult],
) -> list[SimilarityResult]:
    """Combine both routes by chunk id, keeping each route's score.

    Order is semantic hits first, then chunks only the keyword route found.
    """

    merged: dict[str, SimilarityResult] = {}
    for result in semantic:
        merged[result.chunk_id] = replace(result, semantic_score=result.score, keyword_score=None)
    for result in keyword:
        existing = merged.get(result.chunk_id)
        if existing is None:
            merged[result.chunk_id] = replace(result, semantic_score=None, keyword_score=result.score)
        else:
            existing.keyword_score = result.score
    return list(merged.values())


class Reranker(ABC):
    """Assigns the final score to merged candidates."""

    name: str

    @abstractmethod
    def score(self, candidates: list[SimilarityResult]) -> list[float]:
        """Return one final score per candidate, in candidate order."""

    def rerank(self, candidates: list[SimilarityResult]) -> list[SimilarityResult]:
        """Return candidates best first; ties keep merge order."""
        scores = self.score(candidates)
        rescored = [
            replace(candidate, score=score)
            for candidate, score in zip(candidates, scores, strict=True)
        ]
        order = sorted(range(len(rescored)), key=lambda i: (-rescored[i].score, i))
        return [rescored[i] for i in order]


class WeightedSumReranker(Reranker):
    """`w_s * semantic + w_k * keyword` with weights normalized to sum to 1."""

    name = "weighted_sum"

    def __init__(self, semantic_weight: float = 0.6, keyword_weight: float = 0.4) -> None:
        total = semantic_weight + keyword_weight
        if total <= 0:
            self.semantic_weight = self.keyword_weight = 0.5
        else:
            self.semantic_weight = semantic_weight / total
            self.keyword_weight = keyword_weight / total

    def score(self, candidates: list[SimilarityResult]) -> list[float]:
        return [
            self.semantic_weight * (candidate.semantic_score or 0.0)
            + self.keyword_weight * (candidate.keyword_score or 0.0)
            for candidate in candidates
        ]


class MaxScoreReranker(Reranker):
    name = "max_score"

    def score(self, candidates: list[SimilarityResult]) -> list[float]:
        return [
            max(candidate.semantic_score or 0.0, candidate.keyword_score or 0.0)
            for candidate in candidates
        ]


class ReciprocalRankReranker(Reranker):
    """Reciprocal-rank fusion: sum of `1 / (k + rank)` over both routes.

    A route ranks only the candidates it scored above zero.
    """

    name = "rrf"

    def __init__(self, k: int = 60) -> None:
        self.k = k

    def score(self, candidates: list[SimilarityResult]) -> list[float]:
        scores = [0.0] * len(candidates)
        for route_score in (
            lambda candidate: candidate.semantic_score,
            lambda candidate: candidate.keyword_score,
        ):
            ranked = sorted(
                (i for i, candidate in enumerate(candidates) if (route_score(candidate) or 0.0) > 0),
                key=lambda i: (-(route_score(candidates[i]) or 0.0), i),
            )
            for rank, i in enumerate(ranked, start=1):
                scores[i] += 1.0 / (self.k + rank)
        return scores


class RelevanceFilter(Protocol):
    name: str

    def filter(self, results: list[SimilarityResult]) -> list[SimilarityResult]:
        """Drop results that are not relevant enough."""


class NoopRelevanceFilter:
    name = "noop"

    def filter(self, results: list[SimilarityResult]) -> list[SimilarityResult]:
        return list(results)


class ThresholdRelevanceFilter:
    """Keeps results whose final score is at least `threshold`."""

    def __init__(self, threshold: float) -> None:
        self.threshold = threshold

    @property
    def name(self) -> str:
        return f"threshold({self.threshold:g})"

    def filter(self, results: list[SimilarityResult]) -> list[SimilarityResult]:
        kept = [result for result in results if result.score >= self.threshold]
        if len(kept) < len(results):
            logger.debug(
                "relevance_filter_applied",
                filter=self.name,
                kept=len(kept),
                removed=len(results) - len(kept),
            )
        return kept


def build_reranker(config: RetrievalConfig) -> Reranker:
    if config.rerank_strategy == "max_score":
        return MaxScoreReranker()
    if config.rerank_strategy == "rrf":
        return ReciprocalRankReranker(config.rrf_k)
    return WeightedSumReranker(config.semantic_weight, config.keyword_weight)


def build_relevance_filter(threshold: float | None) -> RelevanceFilter:
    if threshold is None:
        return NoopRelevanceFilter()
    return ThresholdRelevanceFilter(threshold)


class FusionLayer:
    """Merges route outputs, reranks them and applies the relevance filter."""

    def __init__(
        self,
        config: RetrievalConfig | None = None,
        reranker: Reranker | None = None,
        relevance_filter: RelevanceFilter | None = None,
    ) -> None:
        self.config = config or RetrievalConfig()
        self.reranker = reranker or build_reranker(self.config)
        self.relevance_filter = relevance_filter or build_relevance_filter(self.config.relevance_threshold)

    def fuse(
        self,
        semantic: list[SimilarityResult],
        keyword: list[SimilarityResult],
        *,
        top_k: int,
        relevance_filter: RelevanceFilter | None = None,
    ) -> list[SimilarityResult]:
        merged = merge_routes(semantic, keyword)
        reranked = self.reranker.rerank(merged)
        kept = (relevance_filter or self.relevance_filter).filter(reranked)
        logger.debug(
            "routes_fused",
            reranker=self.reranker.name,
            semantic=len(semantic),
            keyword=len(keyword),
            merged=len(merged),
            kept=len(kept),
        )
        return kept[:top_k]
