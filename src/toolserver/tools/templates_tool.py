"""
Templates Tool

Returns catalog templates filtered by diagram type, use case and complexity,
simplest first.
"""

from typing import Any, Dict

from common.models import Complexity, Operation, UseCase
from diagrams.catalog import TemplateCatalog
from diagrams.syntax import DIAGRAM_TYPES

from ..tool_registry import (
    ProgressCallback,
    Tool,
    ToolHandler,
    ToolParameter,
    ToolParameterType,
    ToolStage,
)


class TemplatesTool(ToolHandler):
    """Serves reference diagrams from the template catalog."""

    def __init__(self, catalog: TemplateCatalog):
        self.catalog = catalog

    def get_tool_definition(self) -> Tool:
        return Tool(
            name=Operation.TEMPLATES.value,
            description=(
                "Get example diagrams. Filters are combined; omitted filters match "
                "everything. Results are ordered simple, medium, complex."
            ),
            parameters=[
                ToolParameter(
                    name="diagramType",
                    type=ToolParameterType.STRING,
                    description="Only templates of this diagram type",
                    enum=list(DIAGRAM_TYPES),
                ),
                ToolParameter(
                    name="useCase",
                    type=ToolParameterType.STRING,
                    description="Only templates for this use case",
                    enum=[u.value for u in UseCase],
                ),
                ToolParameter(
                    name="complexity",
                    type=ToolParameterType.STRING,
                    description="Only templates of this complexity",
                    enum=[c.value for c in Complexity],
                ),
                ToolParameter(
                    name="name",
                    type=ToolParameterType.STRING,
                    description="Return the single template with this name",
                ),
            ],
            stages=[
                ToolStage(name="selection", percentage=25),
                ToolStage(name="application", percentage=50),
                ToolStage(name="customization", percentage=75),
            ],
            examples=[
                'templates(diagramType="flowchart")',
                'templates(useCase="database-design", complexity="simple")',
            ],
        )

    async def run(self, arguments: Dict[str, Any], progress: ProgressCallback) -> Dict[str, Any]:
        filters = {
            key: arguments[key]
            for key in ("diagramType", "useCase", "complexity", "name")
            if arguments.get(key) is not None
        }
        await progress("selection", "Selecting matching templates", {"filters": filters})

        if "name" in filters:
            template = self.catalog.get(filters["name"])
            selected = [template] if template is not None else []
        else:
            selected = self.catalog.list(
                diagram_type=filters.get("diagramType"),
                use_case=filters.get("useCase"),
                complexity=filters.get("complexity"),
            )
        await progress(
            "application", f"Found {len(selected)} template(s)", {"count": len(selected)}
        )

        templates = [template.to_wire() for template in selected]
        await progress("customization", "Preparing template details", None)

        return {
            "templates": templates,
            "total": len(templates),
            "filters": filters,
            "catalog": self.catalog.stats(),
        }

    def summarize(self, result: Dict[str, Any]) -> str:
        total = result.get("total", 0)
        if not total:
            return "No templates match the given filters"
        names = ", ".join(t["name"] for t in result.get("templates", [])[:3])
        more = f" and {total - 3} more" if total > 3 else ""
        return f"Found {total} template(s): {names}{more}"
