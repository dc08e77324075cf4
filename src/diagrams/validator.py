"""
Hybrid diagram validator.

Every diagram type is validated by exactly one engine, chosen from the
static ``ENGINE_TABLE`` below: a Lark grammar for types whose syntax is
small and closed, structural rules for everything else. Both engines
report through the same Diagnostic model and neither lets an internal
failure escape: it is downgraded to a single error diagnostic.
"""

from types import MappingProxyType
from typing import List, Mapping, Optional

from common.errors import ValidationEngineError
from common.logging import get_logger, preview
from common.models import Diagnostic, Severity, ValidationEngine, ValidationResult
from diagrams import grammars
from diagrams.rules import RuleContext, rules_for
from diagrams.syntax import DIAGRAM_TYPES, detect_diagram_type, normalize_type, strip_fences

logger = get_logger(__name__)

UNKNOWN_TYPE = "unknown"

ENGINE_TABLE: Mapping[str, ValidationEngine] = MappingProxyType(
    {
        "flowchart": ValidationEngine.RULES,
        "sequence": ValidationEngine.RULES,
        "class": ValidationEngine.RULES,
        "state": ValidationEngine.RULES,
        "er": ValidationEngine.RULES,
        "gantt": ValidationEngine.RULES,
        "journey": ValidationEngine.RULES,
        "mindmap": ValidationEngine.RULES,
        "timeline": ValidationEngine.RULES,
        "pie": ValidationEngine.GRAMMAR,
        "gitgraph": ValidationEngine.GRAMMAR,
        "packet": ValidationEngine.GRAMMAR,
    }
)


def engine_for(diagram_type: Optional[str]) -> ValidationEngine:
    """Pure table lookup; unknown types fall back to the rule engine."""
    return ENGINE_TABLE.get(diagram_type or UNKNOWN_TYPE, ValidationEngine.RULES)


class DiagramValidator:
    """Validates diagram text with the engine registered for its type."""

    def __init__(self, default_strict: bool = False):
        self.default_strict = default_strict

    def validate(
        self, diagram_type: Optional[str], code: str, strict: Optional[bool] = None
    ) -> ValidationResult:
        """
        Validate a diagram.

        Args:
            diagram_type: Requested type (any accepted spelling) or None to
                detect it from the header line
            code: Diagram source, optionally wrapped in a ```mermaid fence
            strict: Escalate selected warnings to errors (rule engine only)

        Returns:
            ValidationResult whose ``engine`` names the path that ran
        """
        strict = self.default_strict if strict is None else strict
        declared = normalize_type(diagram_type)
        cleaned = strip_fences(code or "")

        if diagram_type is not None and declared is None:
            result = ValidationResult(
                diagnostics=[
                    Diagnostic(
                        severity=Severity.ERROR,
                        message=f"Unsupported diagram type '{diagram_type}'",
                        suggestion=f"Use one of: {', '.join(DIAGRAM_TYPES)}",
                        rule="diagram-type",
                    )
                ],
                engine=ValidationEngine.RULES,
                diagram_type=UNKNOWN_TYPE,
            )
            return self._finish(result, code)

        if not cleaned.strip():
            result = ValidationResult(
                diagnostics=[
                    Diagnostic(
                        severity=Severity.ERROR,
                        message="Diagram code is empty",
                        suggestion="Provide diagram source starting with a diagram keyword",
                        rule="empty",
                    )
                ],
                engine=engine_for(declared),
                diagram_type=declared or UNKNOWN_TYPE,
            )
            return self._finish(result, code)

        detected = detect_diagram_type(cleaned)
        effective = declared or detected or UNKNOWN_TYPE
        engine = engine_for(effective)

        if engine == ValidationEngine.GRAMMAR:
            diagnostics = self._run_grammar(effective, cleaned)
        else:
            diagnostics = self._run_rules(effective, declared, detected, cleaned, strict)

        result = ValidationResult(diagnostics=diagnostics, engine=engine, diagram_type=effective)
        return self._finish(result, code)

    def _run_grammar(self, diagram_type: str, code: str) -> List[Diagnostic]:
        try:
            return grammars.check(diagram_type, code)
        except ValidationEngineError as e:
            logger.error(
                event="grammar_engine_failure",
                diagram_type=diagram_type,
                error=e.message,
                details=e.details,
            )
            return [
                Diagnostic(
                    severity=Severity.ERROR,
                    message=f"Grammar validation failed internally: {e.message}",
                    rule="engine-failure",
                )
            ]

    def _run_rules(
        self,
        diagram_type: str,
        declared: Optional[str],
        detected: Optional[str],
        code: str,
        strict: bool,
    ) -> List[Diagnostic]:
        context = RuleContext.build(code, diagram_type, declared, detected)
        diagnostics: List[Diagnostic] = []
        for rule in rules_for(diagram_type):
            try:
                diagnostics.extend(rule.run(context, strict))
            except Exception as e:
                failure = ValidationEngineError(
                    f"Rule '{rule.name}' failed: {e}",
                    details={"rule": rule.name, "errorType": type(e).__name__},
                )
                logger.error(
                    event="rule_engine_failure",
                    diagram_type=diagram_type,
                    rule=rule.name,
                    error=failure.message,
                )
                diagnostics.append(
                    Diagnostic(
                        severity=Severity.ERROR,
                        message=f"Rule validation failed internally: {failure.message}",
                        rule="engine-failure",
                    )
                )
        return diagnostics

    @staticmethod
    def _finish(result: ValidationResult, code: str) -> ValidationResult:
        logger.debug(
            event="diagram_validated",
            diagram_type=result.diagram_type,
            engine=result.engine.value,
            valid=result.valid,
            diagnostics=len(result.diagnostics),
            code_length=len(code or ""),
            code_preview=preview(code or ""),
        )
        return result
