import pytest
from pydantic import Field

from rag_gateway.errors import InvalidArguments, UnknownTool
from rag_gateway.gateway.models import ToolArguments
from rag_gateway.gateway.registry import ToolRegistry, ToolSpec


class EchoInput(ToolArguments):
    value: int = Field(ge=1)
    repeat_count: int = Field(default=1, ge=1, le=3)


def _echo_registry() -> ToolRegistry:
    registry = ToolRegistry()

    def _handler(data: EchoInput) -> str:
        return str(data.value) * data.repeat_count

    registry.register(
        ToolSpec(
            name="echo",
            description="echo positive int",
            args_schema=EchoInput,
            handler=_handler,
        )
    )
    return registry


def test_tool_registry_validation() -> None:
    registry = _echo_registry()

    assert registry.invoke("echo", {"value": 3}) == "3"
    assert registry.invoke("echo", {"value": 3, "repeatCount": 2}) == "33"

    with pytest.raises(InvalidArguments):
        registry.invoke("echo", {"value": 0})
    with pytest.raises(InvalidArguments):
        registry.invoke("echo", {"value": 1, "unexpected": True})
    with pytest.raises(UnknownTool):
        registry.invoke("missing", {})


def test_duplicate_tool_registration_rejected() -> None:
    registry = _echo_registry()

    with pytest.raises(ValueError):
        registry.register(registry.specs()[0])


def test_list_tools_exposes_camel_case_json_schema() -> None:
    definitions = _echo_registry().list_tools()

    assert [definition.name for definition in definitions] == ["echo"]
    schema = definitions[0].input_schema
    assert schema["type"] == "object"
    assert set(schema["properties"]) == {"value", "repeatCount"}
    assert schema["required"] == ["value"]


def test_tools_export_as_langchain_structured_tools() -> None:
    tools = _echo_registry().as_langchain_tools()

    assert [tool.name for tool in tools] == ["echo"]
    assert tools[0].invoke({"value": 4}) == "4"
