"""Embedding abstractions, providers and the batching/retrying client."""

from __future__ import annotations

import re
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from hashlib import blake2b
from math import sqrt
from typing import Any, Protocol

import openai
import structlog
from langchain_openai import OpenAIEmbeddings

from rag_gateway.cancellation import CancellationScope
from rag_gateway.config import EmbeddingConfig
from rag_gateway.errors import EmbeddingRejected, EmbeddingUnavailable

logger = structlog.get_logger(__name__)

_WORD_PATTERN = re.compile(r"\w+", flags=re.UNICODE)


class Embedder(ABC):
    """Embedder interface used by ingest and retrieval components."""

    @abstractmethod
    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed many documents."""

    @abstractmethod
    def embed_query(self, text: str) -> list[float]:
        """Embed one query."""


class ProviderError(Exception):
    """A provider call failed; `retryable` says whether trying again may help."""

    def __init__(self, message: str, *, retryable: bool, status_code: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class EmbeddingProvider(Protocol):
    """Raw embedding API: texts + model in, one vector per text out."""

    def embed(self, texts: list[str], model: str) -> list[list[float]]:
        """Raise `ProviderError` on failure."""


class HashingEmbeddingProvider:
    """Deterministic bag-of-words embedding without external model calls.

    Used for local runs and tests. Texts sharing words get positive cosine
    similarity; texts sharing none score near zero.
    """

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension

    def embed(self, texts: list[str], model: str = "hashing") -> list[list[float]]:
        return [self._embed(text) for text in texts]

    def _embed(self, text: str) -> list[float]:
        vector = [0.0 for _ in range(self.dimension)]
        tokens = [token.lower() for token in _WORD_PATTERN.findall(text)]
        if not tokens:
            return vector

        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            sign = -1.0 if digest[4] % 2 else 1.0
            vector[idx] += sign

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]


class OpenAIEmbeddingProvider:
    """OpenAI (or OpenAI-compatible) embeddings through LangChain.

    LangChain's own retries are disabled; `EmbeddingClient` owns the retry
    policy and needs every failure classified.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.config = config or EmbeddingConfig()
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "max_retries": 0,
            "timeout": self.config.request_timeout_seconds,
            "check_embedding_ctx_length": self.config.base_url is None,
        }
        if self.config.api_key:
            kwargs["api_key"] = self.config.api_key
        if self.config.base_url:
            kwargs["base_url"] = self.config.base_url
        if self.config.dimension:
            kwargs["dimensions"] = self.config.dimension
        self._client = OpenAIEmbeddings(**kwargs)

    def embed(self, texts: list[str], model: str) -> list[list[float]]:
        client = self._client
        if model != client.model:
            client = client.model_copy(update={"model": model})
        try:
            return client.embed_documents(texts)
        except openai.RateLimitError as exc:
            # Quota exhaustion is reported as a 429 but will not clear on retry.
            retryable = getattr(exc, "code", None) != "insufficient_quota"
            raise ProviderError(str(exc), retryable=retryable, status_code=exc.status_code) from exc
        except openai.APIConnectionError as exc:
            raise ProviderError(str(exc), retryable=True) from exc
        except openai.APIStatusError as exc:
            retryable = exc.status_code in (408, 409) or exc.status_code >= 500
            raise ProviderError(str(exc), retryable=retryable, status_code=exc.status_code) from exc
        except openai.OpenAIError as exc:
            raise ProviderError(str(exc), retryable=False) from exc


class EmbeddingClient(Embedder):
    """Order-preserving, batched, retrying embedding client.

    Inputs are split into batches of `batch_size`; batches run concurrently
    on up to `max_concurrency` threads. Transient provider errors are retried
    with exponential backoff, up to `max_attempts` calls per batch.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        config: EmbeddingConfig | None = None,
        *,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.provider = provider
        self.config = config or EmbeddingConfig()
        self._sleep = sleep
        self._dimension = self.config.dimension
        self._dimension_lock = threading.Lock()

    @property
    def dimension(self) -> int | None:
        return self._dimension

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return self.embed(texts)

    def embed_query(self, text: str) -> list[float]:
        return self.embed([text])[0]

    def embed(
        self, texts: Sequence[str], *, scope: CancellationScope | None = None
    ) -> list[list[float]]:
        """Return one vector per text, in input order.

        Raises:
            EmbeddingUnavailable: a batch kept failing transiently.
            EmbeddingRejected: the provider refused a batch permanently.
            OperationCancelled: `scope` was cancelled or its deadline passed.
        """

        if not texts:
            return []
        scope = scope or CancellationScope()
        size = self.config.batch_size
        batches = [list(texts[i : i + size]) for i in range(0, len(texts), size)]

        workers = min(self.config.max_concurrency, len(batches))
        if workers == 1:
            results = [
                self._embed_batch_with_retry(batch, number, scope)
                for number, batch in enumerate(batches)
            ]
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="embed") as pool:
                futures = [
                    pool.submit(self._embed_batch_with_retry, batch, number, scope)
                    for number, batch in enumerate(batches)
                ]
                try:
                    results = [future.result() for future in futures]
                except BaseException:
                    for future in futures:
                        future.cancel()
                    raise

        vectors = [vector for batch_vectors in results for vector in batch_vectors]
        logger.debug("embedding_completed", texts=len(texts), batches=len(batches))
        return vectors

    def _embed_batch_with_retry(
        self, batch: list[str], batch_number: int, scope: CancellationScope
    ) -> list[list[float]]:
        backoff = self.config.initial_backoff_seconds
        last_error: ProviderError | None = None

        for attempt in range(1, self.config.max_attempts + 1):
            scope.check()
            started = time.perf_counter()
            try:
                vectors = self.provider.embed(batch, self.config.model)
                self._validate(batch, vectors)
            except ProviderError as exc:
                if not exc.retryable:
                    logger.error(
                        "embedding_batch_rejected",
                        batch=batch_number,
                        attempt=attempt,
                        status_code=exc.status_code,
                        error=str(exc),
                    )
                    raise EmbeddingRejected(f"Embedding request rejected: {exc}") from exc
                last_error = exc
                if attempt == self.config.max_attempts:
                    break
                logger.warning(
                    "embedding_batch_retry",
                    batch=batch_number,
                    attempt=attempt,
                    backoff_seconds=backoff,
                    status_code=exc.status_code,
                    error=str(exc),
                )
                self._wait(backoff, scope)
                backoff = min(backoff * self.config.backoff_multiplier, self.config.max_backoff_seconds)
                continue

            logger.debug(
                "embedding_batch_succeeded",
                batch=batch_number,
                size=len(batch),
                attempt=attempt,
                latency_ms=round((time.perf_counter() - started) * 1000.0, 2),
            )
            return vectors

        logger.error(
            "embedding_batch_exhausted",
            batch=batch_number,
            attempts=self.config.max_attempts,
            error=str(last_error),
        )
        raise EmbeddingUnavailable(
            f"Embedding batch {batch_number} failed after {self.config.max_attempts} attempts: {last_error}"
        ) from last_error

    def _wait(self, seconds: float, scope: CancellationScope) -> None:
        if self._sleep is None:
            scope.sleep(seconds)
            return
        self._sleep(seconds)
        scope.check()

    def _validate(self, batch: list[str], vectors: list[list[float]]) -> None:
        if len(vectors) != len(batch):
            raise ProviderError(
                f"Provider returned {len(vectors)} vectors for {len(batch)} inputs",
                retryable=True,
            )
        with self._dimension_lock:
            for vector in vectors:
                if not vector:
                    raise EmbeddingRejected("Provider returned an empty vector")
                if self._dimension is None:
                    self._dimension = len(vector)
                elif len(vector) != self._dimension:
                    raise EmbeddingRejected(
                        f"Expected {self._dimension}-dimensional vectors, got {len(vector)}"
                    )
