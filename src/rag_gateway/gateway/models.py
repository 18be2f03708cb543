"""Tool-call boundary models (JSON, camelCase)."""

from __future__ import annotations

import time
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def epoch_millis() -> int:
    return int(time.time() * 1000)


class ToolArguments(BaseModel):
    """Base for tool argument models: camelCase on the wire, no unknown keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class ToolDefinition(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    description: str
    input_schema: dict[str, Any] = Field(alias="inputSchema")


class ToolExecutionRequest(BaseModel):
    """`{toolName, arguments}`; `name` is accepted in place of `toolName`."""

    model_config = ConfigDict(populate_by_name=True)

    tool_name: str = Field(
        min_length=1,
        validation_alias=AliasChoices("toolName", "name", "tool_name"),
        serialization_alias="toolName",
    )
    arguments: dict[str, Any] = Field(default_factory=dict)

    @field_validator("arguments", mode="before")
    @classmethod
    def _null_arguments(cls, value: Any) -> Any:
        return {} if value is None else value


class ToolExecutionResult(BaseModel):
    """Outcome of one tool call. `timestamp` is epoch milliseconds."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    result: Any = None
    error: str | None = None
    tool_name: str = Field(alias="toolName")
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(default_factory=epoch_millis)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)
