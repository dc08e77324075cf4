"""
Tests for the hybrid validator: engine dispatch, rule checks and grammar checks.
"""

import pytest

from common.errors import ValidationEngineError
from common.models import Severity, ValidationEngine
from diagrams import grammars
from diagrams.rules import Rule
from diagrams.syntax import DIAGRAM_TYPES
from diagrams.validator import ENGINE_TABLE, DiagramValidator, engine_for

GRAMMAR_TYPES = {"pie", "gitgraph", "packet"}


def rules_of(result):
    return [d.rule for d in result.diagnostics]


class TestEngineDispatch:
    """The grammar/rules partition is a fixed table."""

    def test_table_covers_every_type(self):
        assert set(ENGINE_TABLE) == set(DIAGRAM_TYPES)

    @pytest.mark.parametrize("diagram_type", DIAGRAM_TYPES)
    def test_engine_field_follows_table(self, validator: DiagramValidator, diagram_type: str):
        result = validator.validate(diagram_type, "something")
        expected = "grammar" if diagram_type in GRAMMAR_TYPES else "rules"
        assert result.engine.value == expected
        assert engine_for(diagram_type).value == expected

    def test_unknown_type_uses_rules(self):
        assert engine_for("sankey") == ValidationEngine.RULES
        assert engine_for(None) == ValidationEngine.RULES


class TestRulePath:
    def test_valid_flowchart(self, validator: DiagramValidator):
        result = validator.validate("flowchart", "flowchart TD\n A[start] --> B[end]")

        assert result.valid is True
        assert result.engine == ValidationEngine.RULES
        assert result.diagnostics == []

    def test_single_dash_arrow(self, validator: DiagramValidator):
        result = validator.validate("flowchart", "flowchart TD\n A[start] -> B[end]")

        assert result.valid is False
        assert len(result.diagnostics) == 1
        diagnostic = result.diagnostics[0]
        assert diagnostic.severity == Severity.ERROR
        assert "->" in diagnostic.message
        assert diagnostic.suggestion
        assert diagnostic.line == 2
        assert diagnostic.rule == "single-dash-arrow"

    @pytest.mark.parametrize("diagram_type", DIAGRAM_TYPES)
    @pytest.mark.parametrize("code", ["", "   ", "\n\t \n"])
    def test_whitespace_only_input(self, validator: DiagramValidator, diagram_type, code):
        result = validator.validate(diagram_type, code)

        assert result.valid is False
        assert len(result.diagnostics) == 1
        assert result.diagnostics[0].severity == Severity.ERROR

    def test_type_detected_from_header(self, validator: DiagramValidator):
        result = validator.validate(None, "sequenceDiagram\n    Alice->>Bob: Hello")
        assert result.diagram_type == "sequence"
        assert result.valid is True

    def test_markdown_fence_is_ignored(self, validator: DiagramValidator):
        code = "```mermaid\nflowchart TD\n    A --> B\n```"
        result = validator.validate(None, code)
        assert result.valid is True
        assert result.diagram_type == "flowchart"

    def test_comment_lines_are_skipped(self, validator: DiagramValidator):
        result = validator.validate(None, "flowchart TD\n    %% the start\n    A --> B")
        assert result.valid is True

    def test_unsupported_type(self, validator: DiagramValidator):
        result = validator.validate("sankey", "sankey-beta\n    a,b,1")
        assert result.valid is False
        assert result.diagram_type == "unknown"
        assert rules_of(result) == ["diagram-type"]

    def test_missing_header(self, validator: DiagramValidator):
        result = validator.validate(None, "A --> B")
        assert result.valid is False
        assert "header" in rules_of(result)

    def test_header_mismatch(self, validator: DiagramValidator):
        result = validator.validate("sequence", "flowchart TD\n    A --> B")
        assert result.valid is False
        assert "header-mismatch" in rules_of(result)

    def test_unterminated_node(self, validator: DiagramValidator):
        result = validator.validate("flowchart", "flowchart TD\n    A[start --> B")
        assert result.valid is False
        diagnostic = result.errors[0]
        assert diagnostic.message == "Unterminated node declaration"
        assert (diagnostic.line, diagnostic.column) == (2, 6)
        assert "]" in diagnostic.suggestion

    def test_unclosed_subgraph(self, validator: DiagramValidator):
        result = validator.validate(None, "flowchart TD\n    subgraph one\n    A --> B")
        assert result.valid is False
        assert result.errors[0].message == "Subgraph is never closed"
        assert result.errors[0].line == 2

    def test_unicode_arrow(self, validator: DiagramValidator):
        result = validator.validate(None, "flowchart LR\n    A → B")
        assert "unicode-arrow" in rules_of(result)
        assert result.valid is False

    def test_sequence_bare_double_arrow(self, validator: DiagramValidator):
        result = validator.validate(None, "sequenceDiagram\n    Alice>>Bob: hi")
        assert "message-arrow" in rules_of(result)

    def test_sequence_unclosed_block(self, validator: DiagramValidator):
        code = "sequenceDiagram\n    loop Every minute\n        Alice->>Bob: ping"
        result = validator.validate(None, code)
        assert "block-balance" in rules_of(result)

    def test_gantt_task_without_metadata(self, validator: DiagramValidator):
        code = "gantt\n    dateFormat YYYY-MM-DD\n    section Build\n    Write code"
        result = validator.validate(None, code)
        assert rules_of(result) == ["task-metadata"]
        assert result.errors[0].line == 4


class TestStrictMode:
    code = "flowchart\n    A --> B"

    def test_warning_by_default(self, validator: DiagramValidator):
        result = validator.validate(None, self.code)
        assert result.valid is True
        assert [d.severity for d in result.diagnostics] == [Severity.WARNING]

    def test_escalated_when_strict(self, validator: DiagramValidator):
        result = validator.validate(None, self.code, strict=True)
        assert result.valid is False
        assert result.errors[0].rule == "direction"

    def test_default_strict_from_constructor(self):
        result = DiagramValidator(default_strict=True).validate(None, self.code)
        assert result.valid is False

    def test_explicit_flag_overrides_default(self):
        result = DiagramValidator(default_strict=True).validate(None, self.code, strict=False)
        assert result.valid is True

    def test_strict_does_not_escalate_other_rules(self, validator: DiagramValidator):
        code = "classDiagram\n    class Animal {\n        +name\n    }"
        assert validator.validate(None, code, strict=True).valid is True


class TestGrammarPath:
    def test_valid_pie(self, validator: DiagramValidator):
        result = validator.validate("pie", 'pie title Pets\n    "Dogs" : 386\n    "Cats" : 85')
        assert result.valid is True
        assert result.engine == ValidationEngine.GRAMMAR

    def test_pie_syntax_error(self, validator: DiagramValidator):
        result = validator.validate("pie", 'pie\n    "Dogs" 386')
        assert result.valid is False
        assert len(result.diagnostics) == 1
        assert result.diagnostics[0].rule == "grammar"
        assert result.diagnostics[0].line == 2

    def test_valid_gitgraph(self, validator: DiagramValidator):
        code = (
            "gitGraph\n    commit\n    branch develop\n    checkout develop\n"
            "    commit\n    checkout main\n    merge develop"
        )
        assert validator.validate(None, code).valid is True

    def test_checkout_unknown_branch(self, validator: DiagramValidator):
        result = validator.validate(None, "gitGraph\n    commit\n    checkout develop")
        assert rules_of(result) == ["git-unknown-branch"]
        assert result.errors[0].line == 3

    def test_packet_overlap(self, validator: DiagramValidator):
        code = 'packet-beta\n    0-15: "Source"\n    8-31: "Destination"'
        result = validator.validate(None, code)
        assert rules_of(result) == ["packet-discontiguous"]

    def test_contiguous_packet(self, validator: DiagramValidator):
        code = 'packet-beta\n    0-15: "Source"\n    16-31: "Destination"'
        assert validator.validate("packet", code).valid is True


class TestEngineFailures:
    """Internal failures become one error diagnostic instead of propagating."""

    def test_grammar_failure_is_downgraded(self, validator: DiagramValidator, monkeypatch):
        def broken(diagram_type, code):
            raise ValidationEngineError("parser exploded")

        monkeypatch.setattr(grammars, "check", broken)
        result = validator.validate("pie", 'pie\n    "A" : 1')

        assert result.valid is False
        assert rules_of(result) == ["engine-failure"]
        assert "parser exploded" in result.diagnostics[0].message

    def test_rule_failure_is_downgraded(self, validator: DiagramValidator, monkeypatch):
        def explode(context):
            raise RuntimeError("rule exploded")

        monkeypatch.setattr(
            "diagrams.validator.rules_for", lambda diagram_type: (Rule("boom", explode),)
        )
        result = validator.validate(None, "flowchart TD\n    A --> B")

        assert result.valid is False
        assert rules_of(result) == ["engine-failure"]
