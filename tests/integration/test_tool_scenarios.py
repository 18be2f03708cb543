import base64

import pytest

from rag_gateway.config import ChunkingConfig, EmbeddingConfig
from rag_gateway.gateway.registry import ToolRegistry
from rag_gateway.gateway.tools import register_builtin_tools
from rag_gateway.ingest.chunker import SlidingWindowChunker
from rag_gateway.ingest.embedder import EmbeddingClient, HashingEmbeddingProvider
from rag_gateway.ingest.loader import DocumentLoader
from rag_gateway.ingest.pipeline import IngestPipeline
from rag_gateway.retrieval.retriever import RetrievalService
from rag_gateway.retrieval.vector_store import InMemoryVectorStore


@pytest.fixture()
def gateway() -> ToolRegistry:
    store = InMemoryVectorStore()
    embedder = EmbeddingClient(HashingEmbeddingProvider(dimension=1024), EmbeddingConfig())
    pipeline = IngestPipeline(
        DocumentLoader(),
        SlidingWindowChunker(ChunkingConfig(chunk_size=500, overlap=100)),
        embedder,
        store,
    )
    registry = ToolRegistry()
    register_builtin_tools(registry, pipeline, RetrievalService(store, embedder), store)
    return registry


def _ingest(gateway: ToolRegistry, doc_id: str, text: str) -> None:
    result = gateway.execute(
        {
            "toolName": "ingest_document",
            "arguments": {"name": f"{doc_id}.txt", "content": text, "documentId": doc_id},
        }
    )
    assert result.success, result.metadata


def test_search_ranks_the_refund_chunk_first(gateway: ToolRegistry) -> None:
    _ingest(gateway, "shipping", "Shipping takes five business days.")
    _ingest(gateway, "refunds", "Customers may request a refund within thirty days.")
    _ingest(gateway, "office", "Our office is closed on weekends.")

    result = gateway.execute({"toolName": "search", "arguments": {"query": "refund policy", "topK": 3}})

    assert result.success is True
    hits = result.result["results"]
    assert 1 <= len(hits) <= 3
    assert hits[0]["documentId"] == "refunds"
    assert "refund" in hits[0]["text"]


def test_unknown_tool_scenario(gateway: ToolRegistry) -> None:
    payload = gateway.execute({"toolName": "nonexistent"}).to_payload()

    assert payload["success"] is False
    assert payload["error"] == "UnknownTool"
    assert payload["toolName"] == "nonexistent"
    assert isinstance(payload["timestamp"], int)


def test_invalid_search_arguments(gateway: ToolRegistry) -> None:
    too_many = gateway.execute({"toolName": "search", "arguments": {"query": "x", "topK": 51}})
    missing = gateway.execute({"toolName": "search", "arguments": {}})

    assert too_many.error == "InvalidArguments"
    assert "topK" in too_many.metadata["message"]
    assert missing.error == "InvalidArguments"


def test_document_lifecycle_tools(gateway: ToolRegistry) -> None:
    encoded = base64.b64encode(b"# Warranty\n\nDevices carry a two year warranty.").decode()
    ingested = gateway.execute(
        {
            "toolName": "ingest_document",
            "arguments": {"name": "warranty.md", "contentBase64": encoded, "metadata": {"team": "legal"}},
        }
    )
    assert ingested.success is True
    doc_id = ingested.result["document"]["documentId"]
    assert ingested.result["document"]["status"] == "complete"

    listed = gateway.execute({"toolName": "list_documents", "arguments": {"status": "COMPLETE"}})
    assert [doc["documentId"] for doc in listed.result["documents"]] == [doc_id]

    info = gateway.execute({"toolName": "get_document_info", "arguments": {"documentId": doc_id}})
    assert info.result["chunkCount"] == 1
    assert info.result["metadata"]["team"] == "legal"

    deleted = gateway.execute({"toolName": "delete_document", "arguments": {"documentId": doc_id}})
    assert deleted.result == {"documentId": doc_id, "deleted": True}

    search = gateway.execute({"toolName": "search", "arguments": {"query": "warranty"}})
    assert search.result["results"] == []

    missing = gateway.execute({"toolName": "get_document_info", "arguments": {"documentId": doc_id}})
    assert missing.error == "DocumentNotFound"


def test_ingest_requires_exactly_one_source(gateway: ToolRegistry) -> None:
    both = gateway.execute(
        {"toolName": "ingest_document", "arguments": {"name": "a.txt", "content": "x", "path": "/tmp/a"}}
    )
    neither = gateway.execute({"toolName": "ingest_document", "arguments": {"name": "a.txt"}})
    bad_base64 = gateway.execute(
        {"toolName": "ingest_document", "arguments": {"name": "a.txt", "contentBase64": "@@@"}}
    )

    assert both.error == neither.error == bad_base64.error == "InvalidArguments"


def test_search_threshold_and_document_filter(gateway: ToolRegistry) -> None:
    _ingest(gateway, "refunds", "Customers may request a refund within thirty days.")
    _ingest(gateway, "returns", "Returned items need a refund receipt.")

    filtered = gateway.execute(
        {"toolName": "search", "arguments": {"query": "refund", "documentIds": ["returns"]}}
    )
    strict = gateway.execute({"toolName": "search", "arguments": {"query": "refund", "threshold": 0.99}})

    assert [hit["documentId"] for hit in filtered.result["results"]] == ["returns"]
    assert strict.result["results"] == []


def test_keyword_and_hybrid_search_modes(gateway: ToolRegistry) -> None:
    _ingest(gateway, "refunds", "Customers may request a refund within thirty days.")
    _ingest(gateway, "office", "Our office is closed on weekends.")

    keyword = gateway.execute(
        {"toolName": "search", "arguments": {"query": "refund", "mode": "keyword"}}
    ).to_payload()
    hybrid = gateway.execute(
        {"toolName": "search", "arguments": {"query": "refund request", "mode": "HYBRID", "topK": 2}}
    ).to_payload()
    invalid = gateway.execute({"toolName": "search", "arguments": {"query": "refund", "mode": "fuzzy"}})

    assert keyword["success"] is True
    assert keyword["result"]["mode"] == "keyword"
    assert [hit["documentId"] for hit in keyword["result"]["results"]] == ["refunds"]
    assert keyword["result"]["results"][0]["keywordScore"] == 1.0
    assert hybrid["result"]["mode"] == "hybrid"
    top = hybrid["result"]["results"][0]
    assert top["documentId"] == "refunds"
    assert {"semanticScore", "keywordScore"} <= set(top)
    assert invalid.error == "InvalidArguments"


def test_update_document_metadata_tool(gateway: ToolRegistry) -> None:
    _ingest(gateway, "refunds", "Customers may request a refund within thirty days.")

    updated = gateway.execute(
        {
            "toolName": "update_document_metadata",
            "arguments": {"documentId": "refunds", "metadata": {"team": "billing"}},
        }
    )
    again = gateway.execute(
        {
            "toolName": "update_document_metadata",
            "arguments": {"documentId": "refunds", "metadata": {"reviewed": True}},
        }
    )
    missing = gateway.execute(
        {"toolName": "update_document_metadata", "arguments": {"documentId": "nope", "metadata": {}}}
    )
    info = gateway.execute({"toolName": "get_document_info", "arguments": {"documentId": "refunds"}})

    assert updated.success is True
    assert updated.result["metadata"] == {"team": "billing"}
    assert again.result["metadata"] == {"team": "billing", "reviewed": True}
    assert info.result["status"] == "complete"
    assert info.result["chunkCount"] == 1
    assert missing.error == "DocumentNotFound"
