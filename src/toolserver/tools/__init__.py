"""
Diagram tools: validate, templates, optimize and convert.
"""

from .convert_tool import ConvertTool
from .optimize_tool import OptimizeTool
from .templates_tool import TemplatesTool
from .validate_tool import ValidateTool

__all__ = [
    "ValidateTool",
    "TemplatesTool",
    "OptimizeTool",
    "ConvertTool",
]
