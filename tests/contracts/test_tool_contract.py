import json

from rag_gateway.config import ChunkingConfig
from rag_gateway.gateway.models import ToolExecutionRequest
from rag_gateway.gateway.registry import ToolRegistry
from rag_gateway.gateway.tools import register_builtin_tools
from rag_gateway.ingest.chunker import SlidingWindowChunker
from rag_gateway.ingest.embedder import EmbeddingClient, HashingEmbeddingProvider
from rag_gateway.ingest.loader import DocumentLoader
from rag_gateway.ingest.pipeline import IngestPipeline
from rag_gateway.retrieval.retriever import RetrievalService
from rag_gateway.retrieval.vector_store import InMemoryVectorStore

_RESULT_KEYS = {"success", "result", "error", "toolName", "metadata", "timestamp"}


def _registry() -> ToolRegistry:
    store = InMemoryVectorStore()
    embedder = EmbeddingClient(HashingEmbeddingProvider(dimension=64))
    pipeline = IngestPipeline(DocumentLoader(), SlidingWindowChunker(ChunkingConfig()), embedder, store)
    registry = ToolRegistry()
    register_builtin_tools(registry, pipeline, RetrievalService(store, embedder), store)
    return registry


def test_tool_listing_shape() -> None:
    listing = [tool.model_dump(by_alias=True) for tool in _registry().list_tools()]

    assert listing
    for tool in listing:
        assert set(tool) == {"name", "description", "inputSchema"}
        assert tool["inputSchema"]["type"] == "object"
        assert tool["description"]
    json.dumps(listing)


def test_search_schema_uses_camel_case_bounds() -> None:
    tools = {tool.name: tool for tool in _registry().list_tools()}
    properties = tools["search"].input_schema["properties"]

    assert properties["topK"]["maximum"] == 50
    assert properties["topK"]["minimum"] == 1
    assert "documentIds" in properties
    assert tools["search"].input_schema["required"] == ["query"]
    assert "mode" in properties


def test_update_metadata_schema_requires_document_and_metadata() -> None:
    tools = {tool.name: tool for tool in _registry().list_tools()}
    schema = tools["update_document_metadata"].input_schema

    assert sorted(schema["required"]) == ["documentId", "metadata"]
    assert schema["properties"]["metadata"]["type"] == "object"


def test_result_envelope_is_stable_for_success_and_failure() -> None:
    registry = _registry()

    success = registry.execute({"toolName": "list_documents", "arguments": {}}).to_payload()
    failure = registry.execute({"toolName": "get_document_info", "arguments": {"documentId": "x"}}).to_payload()

    for payload in (success, failure):
        assert set(payload) == _RESULT_KEYS
        json.dumps(payload)
    assert success["error"] is None
    assert failure["result"] is None
    assert failure["error"] == "DocumentNotFound"
    assert failure["metadata"]["retryable"] is False


def test_request_serializes_with_tool_name() -> None:
    request = ToolExecutionRequest.model_validate({"tool_name": "search", "arguments": {"query": "q"}})

    assert request.model_dump(by_alias=True) == {"toolName": "search", "arguments": {"query": "q"}}
