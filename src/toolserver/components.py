"""
Component wiring.

Builds the validator, analyzer, catalog, optimizer, converter, tool
registry and streaming engine once at startup and hands the same
instances to every transport.
"""

from dataclasses import dataclass
from typing import List, Optional

from common.config import Config
from common.logging import get_logger
from common.models import Operation
from diagrams.analyzer import DiagramAnalyzer
from diagrams.catalog import TemplateCatalog
from diagrams.converter import DiagramConverter
from diagrams.optimizer import DiagramOptimizer
from diagrams.validator import DiagramValidator
from streaming.engine import StreamingEngine
from streaming.session_registry import SessionRegistry

from .tool_registry import ToolRegistry
from .tools import ConvertTool, OptimizeTool, TemplatesTool, ValidateTool

logger = get_logger(__name__)


@dataclass
class Components:
    config: Config
    validator: DiagramValidator
    analyzer: DiagramAnalyzer
    catalog: TemplateCatalog
    optimizer: DiagramOptimizer
    converter: DiagramConverter
    registry: ToolRegistry
    sessions: SessionRegistry
    engine: StreamingEngine

    def self_check(self) -> List[str]:
        """
        Startup checks; an empty list means the server may start.

        Every operation must be registered, the catalog must not be empty
        and every catalog template must pass validation.
        """
        problems = []
        for operation in Operation:
            if self.registry.get_tool(operation.value) is None:
                problems.append(f"operation '{operation.value}' is not registered")

        if len(self.catalog) == 0:
            problems.append("template catalog is empty")
        for template in self.catalog:
            result = self.validator.validate(template.type, template.code)
            if not result.valid:
                first = result.errors[0]
                problems.append(
                    f"template '{template.name}' is invalid: line {first.line}: {first.message}"
                )

        if problems:
            logger.error(event="self_check_failed", problems=problems)
        else:
            logger.info(
                event="self_check_passed",
                operations=[tool.name for tool in self.registry.list_tools()],
                templates=len(self.catalog),
            )
        return problems


def build_components(config: Config, catalog: Optional[TemplateCatalog] = None) -> Components:
    """
    Construct every long-lived component from ``config``.

    Raises:
        CatalogLoadError: If the configured template file cannot be loaded
    """
    validator = DiagramValidator(default_strict=config.validation.default_strict)
    analyzer = DiagramAnalyzer()
    if catalog is None:
        catalog = TemplateCatalog.load_default(config.catalog.templates_path)
    optimizer = DiagramOptimizer(validator, analyzer)
    converter = DiagramConverter(validator, analyzer)

    registry = ToolRegistry()
    registry.register_tool_handler(ValidateTool(validator))
    registry.register_tool_handler(TemplatesTool(catalog))
    registry.register_tool_handler(OptimizeTool(optimizer, analyzer))
    registry.register_tool_handler(ConvertTool(converter, analyzer))

    sessions = SessionRegistry(idle_timeout=config.streaming.idle_connection_timeout)
    engine = StreamingEngine(registry, sessions, config.streaming)

    return Components(
        config=config,
        validator=validator,
        analyzer=analyzer,
        catalog=catalog,
        optimizer=optimizer,
        converter=converter,
        registry=registry,
        sessions=sessions,
        engine=engine,
    )
