"""Shared fixtures: explicitly constructed components, no process-wide state."""

import pytest

from common.config import Config, StreamingConfig
from common.models import Complexity, DiagramTemplate, UseCase
from diagrams.analyzer import DiagramAnalyzer
from diagrams.catalog import TemplateCatalog
from diagrams.converter import DiagramConverter
from diagrams.optimizer import DiagramOptimizer
from diagrams.validator import DiagramValidator
from toolserver.components import build_components


@pytest.fixture
def config() -> Config:
    """Default configuration with a short stall timeout for tests."""
    return Config(streaming=StreamingConfig(stall_timeout=2.0))


@pytest.fixture
def validator() -> DiagramValidator:
    return DiagramValidator()


@pytest.fixture
def analyzer() -> DiagramAnalyzer:
    return DiagramAnalyzer()


@pytest.fixture
def optimizer(validator: DiagramValidator, analyzer: DiagramAnalyzer) -> DiagramOptimizer:
    return DiagramOptimizer(validator, analyzer)


@pytest.fixture
def converter(validator: DiagramValidator, analyzer: DiagramAnalyzer) -> DiagramConverter:
    return DiagramConverter(validator, analyzer)


@pytest.fixture
def catalog() -> TemplateCatalog:
    return TemplateCatalog.load_default()


@pytest.fixture
def small_catalog() -> TemplateCatalog:
    """Four templates: flowchart simple+complex, sequence simple, er medium."""
    return TemplateCatalog(
        [
            DiagramTemplate(
                name="flow-complex",
                description="Complex flow",
                type="flowchart",
                use_case=UseCase.SOFTWARE_ARCHITECTURE,
                complexity=Complexity.COMPLEX,
                code="flowchart TD\n    A --> B",
            ),
            DiagramTemplate(
                name="flow-simple",
                description="Simple flow",
                type="flowchart",
                use_case=UseCase.BUSINESS_PROCESS,
                complexity=Complexity.SIMPLE,
                code="flowchart TD\n    A --> B",
            ),
            DiagramTemplate(
                name="er-medium",
                description="Schema",
                type="er",
                use_case=UseCase.DATABASE_DESIGN,
                complexity=Complexity.MEDIUM,
                code='erDiagram\n    A ||--o{ B : "has"',
            ),
            DiagramTemplate(
                name="sequence-simple",
                description="Call",
                type="sequence",
                use_case=UseCase.SOFTWARE_ARCHITECTURE,
                complexity=Complexity.SIMPLE,
                code="sequenceDiagram\n    A->>B: hi",
            ),
        ]
    )


@pytest.fixture
def components(config: Config):
    return build_components(config)
