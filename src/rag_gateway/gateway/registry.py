"""Tool registry and gateway built on Pydantic v2 models."""

from __future__ import annotations

from collections.abc import Callable
from time import perf_counter
from typing import Any

import structlog
from langchain_core.tools import StructuredTool
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from rag_gateway.errors import InvalidArguments, RagError, UnknownTool
from rag_gateway.gateway.models import ToolDefinition, ToolExecutionRequest, ToolExecutionResult
from rag_gateway.types import ToolTrace

logger = structlog.get_logger(__name__)

INTERNAL_ERROR = "InternalError"


class ToolSpec(BaseModel):
    """Declarative tool specification for registration and validation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    args_schema: type[BaseModel]
    handler: Callable[[Any], Any]
    tags: list[str] = Field(default_factory=list)

    def invoke(self, payload: dict[str, Any]) -> Any:
        try:
            data = self.args_schema.model_validate(payload)
        except ValidationError as exc:
            raise InvalidArguments(_describe_validation_error(self.name, exc)) from exc
        return self.handler(data)

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            input_schema=self.args_schema.model_json_schema(by_alias=True),
        )


class ToolRegistry:
    """Maps tool names to specs and executes tool-call requests.

    `execute` is the agent-facing boundary and never raises: every outcome is
    a `ToolExecutionResult`. `invoke` is the raw path used by the LangChain
    export and raises the typed errors.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._observer: Callable[[ToolTrace], None] | None = None

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def set_observer(self, observer: Callable[[ToolTrace], None] | None) -> None:
        """Set an optional callback invoked after each tool execution."""
        self._observer = observer

    def specs(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def list_tools(self) -> list[ToolDefinition]:
        return [spec.definition() for spec in self._tools.values()]

    def invoke(self, name: str, payload: dict[str, Any]) -> Any:
        spec = self._tools.get(name)
        if spec is None:
            raise UnknownTool(f"Unknown tool: {name}")
        start = perf_counter()
        try:
            output = spec.invoke(payload)
        except Exception as exc:
            kind = exc.kind if isinstance(exc, RagError) else INTERNAL_ERROR
            self._notify(name, payload, kind, start)
            raise
        self._notify(name, payload, None, start)
        return output

    def execute(self, request: ToolExecutionRequest | dict[str, Any]) -> ToolExecutionResult:
        start = perf_counter()
        if isinstance(request, dict):
            try:
                request = ToolExecutionRequest.model_validate(request)
            except ValidationError as exc:
                tool_name = str(request.get("toolName") or request.get("name") or "")
                error = InvalidArguments(_describe_validation_error("request", exc))
                return self._failure(tool_name, error.kind, str(error), start)

        tool_name = request.tool_name
        try:
            output = self.invoke(tool_name, request.arguments)
        except RagError as exc:
            logger.warning(
                "tool_execution_failed",
                tool=tool_name,
                error_kind=exc.kind,
                error=str(exc),
            )
            return self._failure(tool_name, exc.kind, str(exc), start, retryable=exc.retryable)
        except Exception:
            logger.exception("tool_execution_crashed", tool=tool_name)
            message = f"Tool '{tool_name}' failed with an internal error"
            return self._failure(tool_name, INTERNAL_ERROR, message, start)

        latency_ms = _elapsed_ms(start)
        logger.info("tool_executed", tool=tool_name, latency_ms=latency_ms)
        return ToolExecutionResult(
            success=True,
            result=output,
            tool_name=tool_name,
            metadata={"latencyMs": latency_ms},
        )

    def as_langchain_tools(self) -> list[StructuredTool]:
        tools: list[StructuredTool] = []
        for spec in self._tools.values():
            tools.append(
                StructuredTool.from_function(
                    name=spec.name,
                    description=spec.description,
                    args_schema=spec.args_schema,
                    func=self._build_function(spec),
                )
            )
        return tools

    def _build_function(self, spec: ToolSpec) -> Callable[..., Any]:
        def _callable(**kwargs: Any) -> Any:
            return self.invoke(spec.name, kwargs)

        return _callable

    def _failure(
        self,
        tool_name: str,
        kind: str,
        message: str,
        start: float,
        *,
        retryable: bool = False,
    ) -> ToolExecutionResult:
        return ToolExecutionResult(
            success=False,
            error=kind,
            tool_name=tool_name,
            metadata={
                "errorKind": kind,
                "message": message,
                "retryable": retryable,
                "latencyMs": _elapsed_ms(start),
            },
        )

    def _notify(self, name: str, payload: dict[str, Any], error_kind: str | None, start: float) -> None:
        if self._observer is None:
            return
        self._observer(
            ToolTrace(
                name=name,
                input_payload=payload,
                success=error_kind is None,
                error_kind=error_kind,
                latency_ms=_elapsed_ms(start),
            )
        )


def _elapsed_ms(start: float) -> float:
    return round((perf_counter() - start) * 1000.0, 3)


def _describe_validation_error(name: str, exc: ValidationError) -> str:
    problems = []
    for error in exc.errors(include_url=False):
        location = ".".join(str(part) for part in error.get("loc", ())) or name
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return f"Invalid arguments for {name}: " + "; ".join(problems)
