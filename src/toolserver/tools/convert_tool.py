"""
Convert Tool

Converts a valid diagram to another diagram type, or picks the best-fitting
type when ``targetFormat`` is "auto".
"""

import asyncio
from typing import Any, Dict

from common.models import Operation
from diagrams.analyzer import DiagramAnalyzer
from diagrams.converter import AUTO, TARGET_FORMATS, DiagramConverter

from ..tool_registry import (
    ProgressCallback,
    Tool,
    ToolHandler,
    ToolParameter,
    ToolParameterType,
    ToolStage,
)


class ConvertTool(ToolHandler):
    """Rebuilds a diagram as another diagram type."""

    def __init__(self, converter: DiagramConverter, analyzer: DiagramAnalyzer):
        self.converter = converter
        self.analyzer = analyzer

    def get_tool_definition(self) -> Tool:
        return Tool(
            name=Operation.CONVERT.value,
            description=(
                "Convert a valid diagram to another diagram type. With targetFormat "
                "'auto' the best fit is chosen from the diagram's shape."
            ),
            parameters=[
                ToolParameter(
                    name="code",
                    type=ToolParameterType.STRING,
                    description="Diagram source to convert",
                    required=True,
                ),
                ToolParameter(
                    name="targetFormat",
                    type=ToolParameterType.STRING,
                    description="Target diagram type",
                    default=AUTO,
                    enum=[AUTO, *TARGET_FORMATS],
                ),
                ToolParameter(
                    name="optimizeStructure",
                    type=ToolParameterType.BOOLEAN,
                    description="Re-indent the result and drop duplicate links",
                    default=True,
                ),
            ],
            stages=[
                ToolStage(name="parsing", percentage=25),
                ToolStage(name="transformation", percentage=60),
                ToolStage(name="formatting", percentage=85),
            ],
            examples=[
                'convert(code="flowchart TD\\n  A --> B", targetFormat="sequence")',
                'convert(code="...")',
            ],
        )

    async def run(self, arguments: Dict[str, Any], progress: ProgressCallback) -> Dict[str, Any]:
        code = arguments["code"]
        analysis = await asyncio.to_thread(self.analyzer.analyze, code)
        await progress(
            "parsing",
            f"Read {analysis.node_count} node(s) and {analysis.edge_count} edge(s)",
            {"sourceFormat": analysis.diagram_type},
        )

        result = await asyncio.to_thread(
            self.converter.convert,
            code,
            arguments["targetFormat"],
            arguments["optimizeStructure"],
        )
        await progress(
            "transformation",
            f"Converted {result['sourceFormat']} to {result['chosenFormat']}",
            {"chosenFormat": result["chosenFormat"]},
        )

        await progress(
            "formatting",
            "Converted code validated" if result["valid"] else "Converted code has problems",
            {"valid": result["valid"]},
        )
        return result

    def summarize(self, result: Dict[str, Any]) -> str:
        return f"Converted {result.get('sourceFormat')} diagram to {result.get('chosenFormat')}"
