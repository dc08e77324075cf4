"""Exception hierarchy for the diagram tool server.

Every error carries a stable string ``code`` that is sent to clients
unchanged, so transports never need to inspect exception types.
"""

from typing import Any, Dict, List, Optional

from common.models import ValidationResult

INTERNAL_ERROR_CODE = "INTERNAL_ERROR"


class DiagramServerError(Exception):
    """Base exception for all server-raised failures."""

    code = INTERNAL_ERROR_CODE

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class InputSchemaError(DiagramServerError):
    """Raised when a payload does not satisfy an operation's input schema."""

    code = "INPUT_SCHEMA_ERROR"

    def __init__(self, operation: str, field_errors: List[str]):
        super().__init__(
            message=f"Invalid input for '{operation}': {'; '.join(field_errors)}",
            details={"operation": operation, "fieldErrors": field_errors},
        )
        self.operation = operation
        self.field_errors = field_errors


class UnknownOperationError(DiagramServerError):
    """Raised when an operation name is not registered."""

    code = "UNKNOWN_OPERATION"

    def __init__(self, operation: str, available: List[str]):
        super().__init__(
            message=f"Unknown operation '{operation}'. Available: {', '.join(available)}",
            details={"operation": operation, "available": available},
        )
        self.operation = operation


class ValidationEngineError(DiagramServerError):
    """Internal failure of the grammar parser or rule engine."""

    code = "VALIDATION_ENGINE_ERROR"


class SourceInvalidError(DiagramServerError):
    """Raised when optimize/convert receives a document that fails validation."""

    code = "SOURCE_INVALID"

    def __init__(self, result: ValidationResult):
        first = result.errors[0].message if result.errors else "document is invalid"
        super().__init__(
            message=f"Source diagram failed validation: {first}",
            details={"validation": result.to_wire()},
        )
        self.result = result


class SessionTimeoutError(DiagramServerError):
    """Raised when a streaming session makes no progress within the stall timeout."""

    code = "SESSION_TIMEOUT"

    def __init__(self, stall_timeout: float, stage: str):
        super().__init__(
            message=f"No progress for {stall_timeout:g}s during stage '{stage}'",
            details={"stallTimeout": stall_timeout, "stage": stage},
        )


class UnsupportedConversionError(DiagramServerError):
    """Raised when no converter exists between two diagram types."""

    code = "UNSUPPORTED_CONVERSION"

    def __init__(self, source_format: str, target_format: str):
        super().__init__(
            message=f"Cannot convert '{source_format}' diagrams to '{target_format}'",
            details={"sourceFormat": source_format, "targetFormat": target_format},
        )


class CatalogLoadError(DiagramServerError):
    """Raised when the template catalog file is missing or malformed."""

    code = "CATALOG_LOAD_ERROR"


def error_code_for(exc: BaseException) -> str:
    """Stable wire code for any exception."""
    if isinstance(exc, DiagramServerError):
        return exc.code
    return INTERNAL_ERROR_CODE
