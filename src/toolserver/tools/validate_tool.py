"""
Validate Tool

Checks diagram syntax with the hybrid validator and returns the unified
ValidationResult (valid flag, diagnostics, engine, diagram type).
"""

import asyncio
from typing import Any, Dict

from common.logging import get_logger
from common.models import Operation
from diagrams.syntax import DIAGRAM_TYPES
from diagrams.validator import DiagramValidator

from ..tool_registry import (
    ProgressCallback,
    Tool,
    ToolHandler,
    ToolParameter,
    ToolParameterType,
    ToolStage,
)

logger = get_logger(__name__)


class ValidateTool(ToolHandler):
    """Validates diagram source and reports diagnostics."""

    def __init__(self, validator: DiagramValidator):
        self.validator = validator

    def get_tool_definition(self) -> Tool:
        return Tool(
            name=Operation.VALIDATE.value,
            description=(
                "Validate diagram syntax. Returns whether the diagram is valid, a list of "
                "diagnostics with line/column and suggested fixes, and which engine "
                "(rules or grammar) checked it."
            ),
            parameters=[
                ToolParameter(
                    name="code",
                    type=ToolParameterType.STRING,
                    description="Diagram source, optionally inside a ```mermaid fence",
                    required=True,
                ),
                ToolParameter(
                    name="diagramType",
                    type=ToolParameterType.STRING,
                    description="Expected diagram type; detected from the header when omitted",
                    enum=list(DIAGRAM_TYPES),
                ),
                ToolParameter(
                    name="strict",
                    type=ToolParameterType.BOOLEAN,
                    description="Treat selected warnings (style, labels, dates) as errors",
                ),
            ],
            stages=[
                ToolStage(name="parsing", percentage=30),
                ToolStage(name="checking", percentage=70),
            ],
            examples=[
                'validate(code="flowchart TD\\n  A --> B")',
                'validate(code="pie\\n  \\"A\\" : 1", diagramType="pie", strict=true)',
            ],
        )

    async def run(self, arguments: Dict[str, Any], progress: ProgressCallback) -> Dict[str, Any]:
        code = arguments["code"]
        await progress("parsing", "Detecting the diagram type", {"codeLength": len(code)})
        result = await asyncio.to_thread(
            self.validator.validate,
            arguments.get("diagramType"),
            code,
            arguments.get("strict"),
        )
        await progress(
            "checking",
            f"Checked with the {result.engine.value} engine",
            {"engine": result.engine.value, "diagnostics": len(result.diagnostics)},
        )
        return result.to_wire()

    def summarize(self, result: Dict[str, Any]) -> str:
        errors = [d for d in result.get("diagnostics", []) if d.get("severity") == "error"]
        if result.get("valid"):
            warnings = len(result.get("diagnostics", []))
            suffix = f" with {warnings} note(s)" if warnings else ""
            return f"Valid {result.get('diagramType')} diagram{suffix}"
        return f"Invalid {result.get('diagramType')} diagram: {len(errors)} error(s)"
