"""
Tests for the optimizer: detection, ranking, rewriting and semantic preservation.
"""

import pytest

from common.errors import SourceInvalidError
from diagrams import optimizer as optimizer_module
from diagrams.analyzer import DiagramAnalyzer
from diagrams.catalog import TemplateCatalog
from diagrams.optimizer import DiagramOptimizer, Suggestion
from diagrams.validator import DiagramValidator

MESSY_FLOWCHART = "flowchart\n  A-->B\n\n      B-->C   "


class TestOptimize:
    def test_ranked_suggestions_and_rewrites(self, optimizer: DiagramOptimizer):
        result = optimizer.optimize(MESSY_FLOWCHART)

        assert [d["id"] for d in result["details"]] == [
            "add-direction",
            "accessible-description",
            "normalize-indentation",
            "remove-blank-lines",
            "arrow-spacing",
        ]
        assert result["applied"] == [
            "normalize-indentation",
            "remove-blank-lines",
            "add-direction",
            "arrow-spacing",
        ]
        assert result["optimizedCode"] == "flowchart TD\n    A --> B\n    B --> C"
        assert result["reverted"] is False
        assert result["metrics"] == {
            "readability": 85,
            "compactness": 95,
            "aesthetics": 70,
            "accessibility": 75,
        }

    def test_max_suggestions_drops_lowest_impact(self, optimizer: DiagramOptimizer):
        result = optimizer.optimize(MESSY_FLOWCHART, max_suggestions=2)

        assert [d["id"] for d in result["details"]] == ["add-direction", "accessible-description"]
        assert result["applied"] == ["add-direction"]
        assert result["totalDetected"] == 5
        assert result["optimizedCode"].startswith("flowchart TD\n  A-->B")

    def test_goal_filter(self, optimizer: DiagramOptimizer):
        result = optimizer.optimize(MESSY_FLOWCHART, goals=["accessibility"])

        assert {d["goal"] for d in result["details"]} == {"accessibility"}
        assert list(result["metrics"]) == ["accessibility"]

    def test_declares_sequence_participants(self, optimizer: DiagramOptimizer):
        result = optimizer.optimize("sequenceDiagram\n    Alice->>Bob: hi", goals=["readability"])

        assert result["applied"] == ["declare-participants"]
        assert result["optimizedCode"] == (
            "sequenceDiagram\n    participant Alice\n    participant Bob\n    Alice->>Bob: hi"
        )

    def test_invalid_source_fails_fast(self, optimizer: DiagramOptimizer):
        with pytest.raises(SourceInvalidError) as exc_info:
            optimizer.optimize("flowchart TD\n    A -> B")
        assert exc_info.value.code == "SOURCE_INVALID"
        assert exc_info.value.details["validation"]["valid"] is False


class TestSemanticPreservation:
    duplicated = "flowchart TD\n    A --> B\n    A --> B"

    def test_structural_rewrite_skipped_when_preserving(self, optimizer: DiagramOptimizer):
        result = optimizer.optimize(self.duplicated)

        assert "remove-duplicate-edges" in [d["id"] for d in result["details"]]
        assert "remove-duplicate-edges" not in result["applied"]
        assert result["optimizedCode"].count("A --> B") == 2

    def test_structural_rewrite_applied_when_allowed(self, optimizer: DiagramOptimizer):
        result = optimizer.optimize(self.duplicated, preserve_semantics=False)

        assert result["applied"] == ["remove-duplicate-edges"]
        assert result["optimizedCode"] == "flowchart TD\n    A --> B"

    def test_unsafe_rewrite_is_reverted(self, optimizer: DiagramOptimizer, monkeypatch):
        def drop_last_line(code, analysis):
            return "\n".join(code.splitlines()[:-1])

        def detect(code, analysis):
            return [Suggestion("drop", "compactness", "high", "Drop a line", drop_last_line)]

        monkeypatch.setitem(optimizer_module.DETECTORS, "compactness", detect)
        code = "flowchart TD\n    A --> B\n    B --> C"
        result = optimizer.optimize(code, goals=["compactness"])

        assert result["reverted"] is True
        assert result["applied"] == []
        assert result["optimizedCode"] == code

    def test_preserves(self, optimizer: DiagramOptimizer):
        assert optimizer.preserves("flowchart TD\n A-->B", "flowchart TD\n    A --> B")
        assert not optimizer.preserves("flowchart TD\n A-->B", "flowchart TD\n A-->C")

    def test_catalog_round_trip(
        self,
        optimizer: DiagramOptimizer,
        validator: DiagramValidator,
        analyzer: DiagramAnalyzer,
        catalog: TemplateCatalog,
    ):
        for template in catalog:
            result = optimizer.optimize(template.code)
            optimized = result["optimizedCode"]

            assert (
                analyzer.analyze(optimized).structure_key()
                == analyzer.analyze(template.code).structure_key()
            ), template.name
            assert validator.validate(None, optimized).valid is True, template.name
