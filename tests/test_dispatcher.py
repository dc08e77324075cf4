"""
Tests for the tool registry: input validation and single-shot dispatch.
"""

from typing import Any, Dict

import pytest

from common.errors import InputSchemaError, UnknownOperationError
from toolserver.tool_registry import (
    ProgressCallback,
    Tool,
    ToolHandler,
    ToolParameter,
    ToolParameterType,
    ToolRegistry,
    ToolResult,
)


class ExplodingTool(ToolHandler):
    def get_tool_definition(self) -> Tool:
        return Tool(name="explode", description="Always fails")

    async def run(self, arguments: Dict[str, Any], progress: ProgressCallback) -> Dict[str, Any]:
        raise RuntimeError("boom")


@pytest.fixture
def registry(components) -> ToolRegistry:
    return components.registry


class TestPrepare:
    """Schema checks happen before any handler runs."""

    def test_unknown_operation(self, registry: ToolRegistry):
        with pytest.raises(UnknownOperationError) as exc_info:
            registry.prepare("render", {})
        assert exc_info.value.details["available"] == [
            "convert",
            "optimize",
            "templates",
            "validate",
        ]

    def test_missing_required(self, registry: ToolRegistry):
        with pytest.raises(InputSchemaError) as exc_info:
            registry.prepare("validate", {})
        assert exc_info.value.field_errors == ["'code' is required"]

    def test_bad_enum(self, registry: ToolRegistry):
        with pytest.raises(InputSchemaError) as exc_info:
            registry.prepare("templates", {"complexity": "huge"})
        assert "must be one of" in exc_info.value.field_errors[0]

    def test_bool_is_not_an_integer(self, registry: ToolRegistry):
        with pytest.raises(InputSchemaError) as exc_info:
            registry.prepare("optimize", {"code": "flowchart TD", "maxSuggestions": True})
        assert exc_info.value.field_errors == ["'maxSuggestions' expected integer, got bool"]

    def test_range(self, registry: ToolRegistry):
        with pytest.raises(InputSchemaError):
            registry.prepare("optimize", {"code": "flowchart TD", "maxSuggestions": 0})

    def test_array_items(self, registry: ToolRegistry):
        with pytest.raises(InputSchemaError) as exc_info:
            registry.prepare("optimize", {"code": "flowchart TD", "goals": ["speed"]})
        assert exc_info.value.field_errors[0].startswith("'goals' item 0:")

    def test_unknown_parameter(self, registry: ToolRegistry):
        with pytest.raises(InputSchemaError) as exc_info:
            registry.prepare("validate", {"code": "pie", "colour": "red"})
        assert exc_info.value.field_errors == ["'colour' is not a known parameter"]

    def test_every_error_reported(self, registry: ToolRegistry):
        with pytest.raises(InputSchemaError) as exc_info:
            registry.prepare("convert", {"targetFormat": 3, "extra": 1})
        assert len(exc_info.value.field_errors) == 3

    def test_non_object_arguments(self, registry: ToolRegistry):
        with pytest.raises(InputSchemaError):
            registry.prepare("validate", ["flowchart TD"])

    def test_defaults_filled(self, registry: ToolRegistry):
        _, prepared = registry.prepare("convert", {"code": "flowchart TD\n    A --> B"})
        assert prepared["targetFormat"] == "auto"
        assert prepared["optimizeStructure"] is True

    def test_none_arguments_are_empty(self, registry: ToolRegistry):
        handler, prepared = registry.prepare("templates", None)
        assert prepared == {}
        assert handler.get_tool_definition().name == "templates"


class TestDispatch:
    @pytest.mark.asyncio
    async def test_validate(self, registry: ToolRegistry):
        result = await registry.dispatch("validate", {"code": "flowchart TD\n    A --> B"})

        assert result.success is True
        assert result.result["valid"] is True
        assert result.result["diagramType"] == "flowchart"
        assert result.execution_time_ms is not None

    @pytest.mark.asyncio
    async def test_source_invalid_is_a_failed_result(self, registry: ToolRegistry):
        result = await registry.dispatch("optimize", {"code": "flowchart TD\n    A -> B"})

        assert result.success is False
        assert result.error_code == "SOURCE_INVALID"
        assert result.result["validation"]["valid"] is False

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_internal_error(self):
        registry = ToolRegistry()
        registry.register_tool_handler(ExplodingTool())

        result = await registry.dispatch("explode", {})

        assert result.success is False
        assert result.error == "boom"
        assert result.error_code == "INTERNAL_ERROR"

    @pytest.mark.asyncio
    async def test_schema_errors_propagate(self, registry: ToolRegistry):
        with pytest.raises(InputSchemaError):
            await registry.dispatch("convert", {})

    def test_to_dict_is_camel_case(self):
        data = ToolResult(success=True, result={"x": 1}, execution_time_ms=1.5).to_dict()
        assert data == {
            "success": True,
            "result": {"x": 1},
            "error": None,
            "errorCode": None,
            "executionTimeMs": 1.5,
        }


class TestInputSchema:
    def test_schema_shape(self, registry: ToolRegistry):
        schema = registry.input_schema(registry.get_tool("optimize"))

        assert schema["required"] == ["code"]
        assert schema["additionalProperties"] is False
        assert schema["properties"]["maxSuggestions"] == {
            "type": "integer",
            "description": "Maximum number of suggestions to return",
            "minimum": 1,
            "maximum": 20,
            "default": 5,
        }
        assert schema["properties"]["goals"]["items"]["enum"] == [
            "readability",
            "compactness",
            "aesthetics",
            "accessibility",
        ]

    def test_custom_parameter_types(self):
        param = ToolParameter(name="n", type=ToolParameterType.NUMBER, description="n")
        registry = ToolRegistry()
        assert registry._validate_parameter_type(param, 1.5) is None
        assert registry._validate_parameter_type(param, "1.5") == "expected number, got str"
