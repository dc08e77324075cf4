"""
Optimize Tool

Analyzes a valid diagram and returns ranked improvement suggestions plus
the rewritten code. Structure-changing rewrites only run when
``preserveSemantics`` is false.
"""

import asyncio
from typing import Any, Dict

from common.models import Operation
from diagrams.analyzer import DiagramAnalyzer
from diagrams.optimizer import GOALS, DiagramOptimizer

from ..tool_registry import (
    ProgressCallback,
    Tool,
    ToolHandler,
    ToolParameter,
    ToolParameterType,
    ToolStage,
)


class OptimizeTool(ToolHandler):
    """Suggests readability, compactness, aesthetics and accessibility improvements."""

    def __init__(self, optimizer: DiagramOptimizer, analyzer: DiagramAnalyzer):
        self.optimizer = optimizer
        self.analyzer = analyzer

    def get_tool_definition(self) -> Tool:
        return Tool(
            name=Operation.OPTIMIZE.value,
            description=(
                "Suggest improvements for a valid diagram and apply the automatic ones. "
                "Fails with SOURCE_INVALID when the diagram does not validate."
            ),
            parameters=[
                ToolParameter(
                    name="code",
                    type=ToolParameterType.STRING,
                    description="Diagram source to optimize",
                    required=True,
                ),
                ToolParameter(
                    name="goals",
                    type=ToolParameterType.ARRAY,
                    description="Optimization goals; all goals when omitted",
                    items=ToolParameter(
                        name="goal",
                        type=ToolParameterType.STRING,
                        description="Optimization goal",
                        enum=list(GOALS),
                    ),
                ),
                ToolParameter(
                    name="preserveSemantics",
                    type=ToolParameterType.BOOLEAN,
                    description="Never change the nodes and edges the diagram expresses",
                    default=True,
                ),
                ToolParameter(
                    name="maxSuggestions",
                    type=ToolParameterType.INTEGER,
                    description="Maximum number of suggestions to return",
                    default=5,
                    minimum=1,
                    maximum=20,
                ),
            ],
            stages=[
                ToolStage(name="analysis", percentage=25),
                ToolStage(name="optimization", percentage=60),
                ToolStage(name="verification", percentage=85),
            ],
            examples=[
                'optimize(code="flowchart\\n  A-->B")',
                'optimize(code="...", goals=["readability"], maxSuggestions=3)',
            ],
        )

    async def run(self, arguments: Dict[str, Any], progress: ProgressCallback) -> Dict[str, Any]:
        code = arguments["code"]
        analysis = await asyncio.to_thread(self.analyzer.analyze, code)
        await progress(
            "analysis",
            f"Analyzed {analysis.diagram_type} diagram",
            {"nodes": analysis.node_count, "edges": analysis.edge_count},
        )

        result = await asyncio.to_thread(
            self.optimizer.optimize,
            code,
            arguments.get("goals"),
            arguments["preserveSemantics"],
            arguments["maxSuggestions"],
        )
        await progress(
            "optimization",
            f"Kept {len(result['suggestions'])} of {result['totalDetected']} suggestion(s)",
            {"applied": result["applied"]},
        )

        await progress(
            "verification",
            "Original code kept" if result["reverted"] else "Optimized code verified",
            {"reverted": result["reverted"]},
        )
        result["analysis"] = analysis.to_dict()
        return result

    def summarize(self, result: Dict[str, Any]) -> str:
        count = len(result.get("suggestions", []))
        applied = len(result.get("applied", []))
        if not count:
            return "No improvements found"
        return f"{count} suggestion(s), {applied} applied automatically"
