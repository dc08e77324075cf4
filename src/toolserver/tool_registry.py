"""
Tool Registry for the diagram tool server

Maps operation names to tool handlers and validates every payload against
the handler's declared parameters before the handler is invoked.

Key Features:
- Explicit registration of handlers at startup
- JSON Schema export for tool catalog introspection
- Parameter validation (required fields, types, enums, numeric ranges)
- Uniform ToolResult for synchronous callers
"""

import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from common.errors import (
    INTERNAL_ERROR_CODE,
    DiagramServerError,
    InputSchemaError,
    UnknownOperationError,
)
from common.logging import get_logger

logger = get_logger(__name__)

# progress(stage, message, details) -> awaitable
ProgressCallback = Callable[[str, str, Optional[Dict[str, Any]]], Awaitable[None]]


async def no_progress(stage: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
    return None


class ToolParameterType(str, Enum):
    """Standard parameter types for tools."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


class ToolParameter(BaseModel):
    """Tool parameter definition."""

    name: str
    type: ToolParameterType
    description: str
    required: bool = False
    default: Optional[Any] = None
    enum: Optional[List[Any]] = None
    minimum: Optional[Union[int, float]] = None
    maximum: Optional[Union[int, float]] = None
    pattern: Optional[str] = None
    items: Optional["ToolParameter"] = None  # For array types


class ToolStage(BaseModel):
    """A named step of a streamed tool run and the percentage it reports."""

    name: str
    percentage: int = Field(ge=0, le=100)


class Tool(BaseModel):
    """Tool definition."""

    name: str
    description: str
    parameters: List[ToolParameter] = Field(default_factory=list)
    stages: List[ToolStage] = Field(default_factory=list)
    examples: List[str] = Field(default_factory=list)
    category: str = "diagrams"
    version: str = "1.0.0"


@dataclass
class ToolResult:
    """Result of a synchronous tool call."""

    success: bool
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_code: Optional[str] = None
    execution_time_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "result": self.result,
            "error": self.error,
            "errorCode": self.error_code,
            "executionTimeMs": self.execution_time_ms,
        }


class ToolHandler(ABC):
    """Abstract base class for tool handlers."""

    @abstractmethod
    def get_tool_definition(self) -> Tool:
        """Get the tool definition for this handler."""

    @abstractmethod
    async def run(self, arguments: Dict[str, Any], progress: ProgressCallback) -> Dict[str, Any]:
        """Run the tool, reporting each stage through ``progress``."""

    async def execute(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Run the tool without progress reporting."""
        return await self.run(arguments, no_progress)

    def summarize(self, result: Dict[str, Any]) -> str:
        """One-line human-readable summary of a result."""
        return "Completed"


class ToolRegistry:
    """
    Registry of tool handlers keyed by operation name.

    Built explicitly at startup and passed to the transports; it holds no
    per-request state.
    """

    def __init__(self):
        self.tools: Dict[str, Tool] = {}
        self.handlers: Dict[str, ToolHandler] = {}

    def register_tool_handler(self, handler: ToolHandler) -> None:
        """Register a tool with its handler."""
        tool = handler.get_tool_definition()
        self.tools[tool.name] = tool
        self.handlers[tool.name] = handler

        logger.info(
            event="tool_handler_registered",
            tool_name=tool.name,
            handler_type=type(handler).__name__,
            parameters_count=len(tool.parameters),
        )

    def list_tools(self) -> List[Tool]:
        return list(self.tools.values())

    def get_tool(self, tool_name: str) -> Optional[Tool]:
        return self.tools.get(tool_name)

    def prepare(
        self, tool_name: str, arguments: Optional[Dict[str, Any]]
    ) -> Tuple[ToolHandler, Dict[str, Any]]:
        """
        Resolve a handler and validate its arguments.

        Returns:
            The handler and the arguments with defaults filled in

        Raises:
            UnknownOperationError: If no tool is registered under ``tool_name``
            InputSchemaError: If the arguments do not satisfy the tool's schema
        """
        if tool_name not in self.handlers:
            raise UnknownOperationError(tool_name, sorted(self.tools))

        tool = self.tools[tool_name]
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise InputSchemaError(
                tool_name, [f"expected an object, got {type(arguments).__name__}"]
            )

        errors = self._validate_arguments(tool, arguments)
        if errors:
            logger.info(event="tool_input_rejected", tool_name=tool_name, errors=errors)
            raise InputSchemaError(tool_name, errors)

        prepared = dict(arguments)
        for param in tool.parameters:
            if prepared.get(param.name) is None and param.default is not None:
                prepared[param.name] = param.default
        return self.handlers[tool_name], prepared

    async def dispatch(self, tool_name: str, arguments: Optional[Dict[str, Any]]) -> ToolResult:
        """
        Validate the input, then execute the tool exactly once.

        Schema and unknown-operation errors propagate; failures inside the
        handler are returned as an unsuccessful ToolResult.
        """
        handler, prepared = self.prepare(tool_name, arguments)
        start_time = time.perf_counter()

        try:
            result = await handler.execute(prepared)
        except DiagramServerError as e:
            execution_time = (time.perf_counter() - start_time) * 1000
            logger.info(
                event="tool_execution_failed",
                tool_name=tool_name,
                error_code=e.code,
                error=e.message,
                execution_time_ms=round(execution_time, 2),
            )
            return ToolResult(
                success=False,
                result=e.details,
                error=e.message,
                error_code=e.code,
                execution_time_ms=execution_time,
            )
        except Exception as e:
            execution_time = (time.perf_counter() - start_time) * 1000
            logger.error(
                event="tool_execution_error",
                tool_name=tool_name,
                error=str(e),
                error_type=type(e).__name__,
                execution_time_ms=round(execution_time, 2),
            )
            return ToolResult(
                success=False,
                error=str(e),
                error_code=INTERNAL_ERROR_CODE,
                execution_time_ms=execution_time,
            )

        execution_time = (time.perf_counter() - start_time) * 1000
        logger.info(
            event="tool_executed",
            tool_name=tool_name,
            execution_time_ms=round(execution_time, 2),
            success=True,
        )
        return ToolResult(success=True, result=result, execution_time_ms=execution_time)

    def input_schema(self, tool: Tool) -> Dict[str, Any]:
        """Convert tool parameters to JSON Schema format."""
        properties = {}
        required = []

        for param in tool.parameters:
            prop_schema = self._parameter_schema(param)
            properties[param.name] = prop_schema
            if param.required:
                required.append(param.name)

        return {
            "type": "object",
            "properties": properties,
            "required": required,
            "additionalProperties": False,
        }

    def _parameter_schema(self, param: ToolParameter) -> Dict[str, Any]:
        prop_schema: Dict[str, Any] = {
            "type": param.type.value,
            "description": param.description,
        }
        if param.enum:
            prop_schema["enum"] = param.enum
        if param.minimum is not None:
            prop_schema["minimum"] = param.minimum
        if param.maximum is not None:
            prop_schema["maximum"] = param.maximum
        if param.pattern:
            prop_schema["pattern"] = param.pattern
        if param.default is not None:
            prop_schema["default"] = param.default
        if param.type == ToolParameterType.ARRAY and param.items:
            prop_schema["items"] = self._parameter_schema(param.items)
        return prop_schema

    def _validate_arguments(self, tool: Tool, arguments: Dict[str, Any]) -> List[str]:
        """
        Validate tool arguments against the parameter schema.

        Returns:
            Every violation found, empty when the arguments are valid
        """
        errors = []
        known = {param.name: param for param in tool.parameters}

        for param in tool.parameters:
            if param.required and param.name not in arguments:
                errors.append(f"'{param.name}' is required")

        for param_name, value in arguments.items():
            param_def = known.get(param_name)
            if param_def is None:
                errors.append(f"'{param_name}' is not a known parameter")
                continue

            type_error = self._validate_parameter_type(param_def, value)
            if type_error:
                errors.append(f"'{param_name}' {type_error}")

        return errors

    def _validate_parameter_type(self, param: ToolParameter, value: Any) -> Optional[str]:
        """
        Validate a single parameter value.

        Returns:
            None if valid, error message if invalid
        """
        if value is None:
            if param.required:
                return "is required but got null"
            return None

        if param.type == ToolParameterType.STRING:
            if not isinstance(value, str):
                return f"expected string, got {type(value).__name__}"

            if param.pattern and not re.match(param.pattern, value):
                return f"does not match pattern {param.pattern}"

        elif param.type in (ToolParameterType.INTEGER, ToolParameterType.NUMBER):
            expected = int if param.type == ToolParameterType.INTEGER else (int, float)
            if isinstance(value, bool) or not isinstance(value, expected):
                return f"expected {param.type.value}, got {type(value).__name__}"

            if param.minimum is not None and value < param.minimum:
                return f"must be >= {param.minimum}"
            if param.maximum is not None and value > param.maximum:
                return f"must be <= {param.maximum}"

        elif param.type == ToolParameterType.BOOLEAN:
            if not isinstance(value, bool):
                return f"expected boolean, got {type(value).__name__}"

        elif param.type == ToolParameterType.ARRAY:
            if not isinstance(value, list):
                return f"expected array, got {type(value).__name__}"

            if param.items:
                for i, item in enumerate(value):
                    item_error = self._validate_parameter_type(param.items, item)
                    if item_error:
                        return f"item {i}: {item_error}"

        elif param.type == ToolParameterType.OBJECT:
            if not isinstance(value, dict):
                return f"expected object, got {type(value).__name__}"

        if param.enum and value not in param.enum:
            return f"must be one of {param.enum}, got {value!r}"

        return None
