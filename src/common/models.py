"""
Shared data models for the diagram tool server.

- Single responsibility per file
- Pydantic models for data validation
- Type hints throughout

Wire-facing models serialize with camelCase aliases; always dump them with
``by_alias=True``.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model that speaks camelCase on the wire and accepts snake_case in code."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Operation(str, Enum):
    """The four tool operations the server exposes."""

    VALIDATE = "validate"
    TEMPLATES = "templates"
    OPTIMIZE = "optimize"
    CONVERT = "convert"


class Severity(str, Enum):
    """Diagnostic severity; ERROR makes a document invalid."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ValidationEngine(str, Enum):
    """Which validation path produced a result."""

    RULES = "rules"
    GRAMMAR = "grammar"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"

    @property
    def rank(self) -> int:
        return _COMPLEXITY_RANK[self]


_COMPLEXITY_RANK = {Complexity.SIMPLE: 0, Complexity.MEDIUM: 1, Complexity.COMPLEX: 2}


class UseCase(str, Enum):
    SOFTWARE_ARCHITECTURE = "software-architecture"
    BUSINESS_PROCESS = "business-process"
    DATABASE_DESIGN = "database-design"
    PROJECT_MANAGEMENT = "project-management"
    GENERAL = "general"


class Diagnostic(CamelModel):
    """One structured finding about a diagram document."""

    severity: Severity
    message: str
    line: Optional[int] = Field(default=None, ge=1)
    column: Optional[int] = Field(default=None, ge=1)
    suggestion: Optional[str] = None
    rule: Optional[str] = Field(default=None, description="Identifier of the check that fired")


class ValidationResult(CamelModel):
    """Unified outcome of the grammar and rule validation paths."""

    diagnostics: List[Diagnostic] = Field(default_factory=list)
    engine: ValidationEngine
    diagram_type: str

    @computed_field  # type: ignore[prop-decorator]
    @property
    def valid(self) -> bool:
        return not any(d.severity == Severity.ERROR for d in self.diagnostics)

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == Severity.ERROR]


class DiagramTemplate(CamelModel):
    """Catalog entry; frozen once the catalog is loaded."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: str
    description: str
    type: str
    use_case: UseCase
    complexity: Complexity
    code: str
    tags: FrozenSet[str] = Field(default_factory=frozenset)

    def to_wire(self) -> Dict[str, Any]:
        data = super().to_wire()
        data["tags"] = sorted(self.tags)
        return data


# --- Streaming events -------------------------------------------------------


class EventEnvelope(CamelModel):
    """Fields every streamed event carries."""

    request_id: str
    connection_id: str
    operation: Operation
    sequence: int = Field(ge=0, description="Position of the event within its session")
    timestamp: datetime = Field(default_factory=utc_now)


class ProgressEvent(EventEnvelope):
    type: Literal["progress"] = "progress"
    stage: str
    percentage: int = Field(ge=0, le=100)
    message: str
    details: Optional[Dict[str, Any]] = None


class ResultEvent(EventEnvelope):
    type: Literal["result"] = "result"
    data: Dict[str, Any]
    summary: str


class ErrorInfo(CamelModel):
    message: str
    code: Optional[str] = None


class ErrorEvent(EventEnvelope):
    type: Literal["error"] = "error"
    error: ErrorInfo


StreamingEvent = Annotated[
    Union[ProgressEvent, ResultEvent, ErrorEvent], Field(discriminator="type")
]


# --- WebSocket channel frames ------------------------------------------------


class StreamRequestMessage(CamelModel):
    """Client frame on the streaming WebSocket."""

    operation: str = Field(..., description="'stream.<op>' or '<op>'")
    request_id: Optional[str] = None
    input: Dict[str, Any] = Field(default_factory=dict)


class RequestRejected(CamelModel):
    """Sent instead of a session when a request fails before dispatch."""

    type: Literal["rejected"] = "rejected"
    request_id: Optional[str] = None
    connection_id: str
    error: ErrorInfo
    field_errors: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)


class Heartbeat(CamelModel):
    type: Literal["heartbeat"] = "heartbeat"
    connection_id: str
    active_sessions: int = 0
    timestamp: datetime = Field(default_factory=utc_now)
