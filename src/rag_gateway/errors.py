"""Error taxonomy shared by the ingestion and query paths."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rag_gateway.types import LoadedText


class RagError(Exception):
    """Base class for every failure the pipeline reports on purpose."""

    retryable: bool = False

    @property
    def kind(self) -> str:
        return type(self).__name__


class UnsupportedFormat(RagError):
    """The loader has no parser for the declared or sniffed format."""


class PartialExtraction(RagError):
    """Only part of a document could be extracted.

    The recovered text is attached so callers can decide whether to proceed.
    """

    def __init__(self, message: str, partial: LoadedText) -> None:
        super().__init__(message)
        self.partial = partial


class EmbeddingUnavailable(RagError):
    """Transient embedding failures persisted past the retry budget."""

    retryable = True


class EmbeddingRejected(RagError):
    """The embedding provider refused the request permanently."""


class RetrievalUnavailable(RagError):
    """A query could not be answered because its embedding failed."""

    retryable = True


class UnknownTool(RagError):
    """No tool is registered under the requested name."""


class InvalidArguments(RagError):
    """Tool arguments do not satisfy the tool's input schema."""


class StorageUnavailable(RagError):
    """The vector store could not complete a read or write."""

    retryable = True


class DocumentNotFound(RagError):
    """The referenced document does not exist."""


class OperationCancelled(RagError):
    """An ingestion or retrieval was aborted or ran past its deadline."""


class DimensionMismatch(RagError):
    """A vector's dimension differs from the vectors already stored."""
