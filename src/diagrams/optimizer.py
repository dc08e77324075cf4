"""
Diagram optimizer.

Detects improvement opportunities per goal, ranks them by impact and
applies the rewrites attached to the surviving suggestions. With
``preserve_semantics`` the rewritten text must analyze to the same node and
edge structure and validate with the same outcome as the source; otherwise
the original text is returned unchanged.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from common.errors import SourceInvalidError
from common.logging import get_logger
from common.models import Complexity
from diagrams.analyzer import (
    FLOWCHART_SKIP_WORDS,
    DiagramAnalysis,
    DiagramAnalyzer,
    parse_flowchart_statement,
)
from diagrams.syntax import SEQUENCE_DECLARATION_RE, split_header, strip_fences
from diagrams.validator import DiagramValidator

logger = get_logger(__name__)

GOALS = ("readability", "compactness", "aesthetics", "accessibility")
IMPACT_RANK = {"high": 0, "medium": 1, "low": 2}
IMPACT_PENALTY = {"high": 25, "medium": 15, "low": 5}
INDENT = "    "

_SEQUENCE_BLOCKS = frozenset({"loop", "alt", "opt", "par", "critical", "break", "rect", "box"})

# Lines that open an indented block, per diagram type
_BLOCK_OPENERS: Dict[str, Callable[[str], bool]] = {
    "flowchart": lambda text: text.split()[0] == "subgraph",
    "sequence": lambda text: text.split()[0] in _SEQUENCE_BLOCKS,
    "class": lambda text: text.endswith("{"),
    "state": lambda text: text.endswith("{"),
    "er": lambda text: text.endswith("{"),
}
_BLOCK_CLOSERS = frozenset({"end", "}"})
_MIDBLOCK = frozenset({"else", "and", "option"})
_SECTIONED = frozenset({"gantt", "journey", "timeline"})

RewriteFn = Callable[[str, DiagramAnalysis], str]


@dataclass
class Suggestion:
    """One detected opportunity, optionally carrying a text rewrite."""

    id: str
    goal: str
    impact: str
    message: str
    rewrite: Optional[RewriteFn] = None
    changes_structure: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "goal": self.goal,
            "impact": self.impact,
            "message": self.message,
            "automatic": self.rewrite is not None,
        }


# --- rewrites -----------------------------------------------------------------


def _clean_lines(code: str) -> List[str]:
    return [line.rstrip() for line in strip_fences(code).strip("\n").splitlines()]


def reindent(code: str, analysis: DiagramAnalysis) -> str:
    """Header at column 0, one indent level per open block. Mindmaps are left alone."""
    lines = _clean_lines(code)
    header, _ = split_header("\n".join(lines))
    if header is None or analysis.diagram_type == "mindmap":
        return code
    opens = _BLOCK_OPENERS.get(analysis.diagram_type, lambda text: False)
    sectioned = analysis.diagram_type in _SECTIONED
    depth = 1
    result = []
    for number, raw in enumerate(lines, start=1):
        text = raw.strip()
        if number < header.number:
            result.append(raw)
            continue
        if number == header.number or not text:
            result.append(text)
            continue
        if text.startswith("%%"):
            result.append(INDENT * depth + text)
            continue
        word = text.split()[0]
        if sectioned and word == "section":
            result.append(INDENT + text)
            depth = 2
        elif text in _BLOCK_CLOSERS:
            depth = max(1, depth - 1)
            result.append(INDENT * depth + text)
        elif word in _MIDBLOCK and depth > 1:
            result.append(INDENT * (depth - 1) + text)
        else:
            result.append(INDENT * depth + text)
            if not sectioned and opens(text):
                depth += 1
    return "\n".join(result)


def remove_blank_lines(code: str, analysis: DiagramAnalysis) -> str:
    return "\n".join(line for line in _clean_lines(code) if line.strip())


def add_flowchart_direction(code: str, analysis: DiagramAnalysis) -> str:
    lines = code.splitlines()
    header, _ = split_header(code)
    if header is None:
        return code
    lines[header.number - 1] = header.text.rstrip(" ;") + " TD"
    return "\n".join(lines)


def normalize_arrow_spacing(code: str, analysis: DiagramAnalysis) -> str:
    lines = code.splitlines()
    _, body = split_header(code)
    for line in body:
        if line.first_word in FLOWCHART_SKIP_WORDS or ";" in line.text:
            continue
        statement = parse_flowchart_statement(line.text)
        if statement is None or not statement.complete or not statement.links:
            continue
        lines[line.number - 1] = line.text[: line.indent] + statement.render()
    return "\n".join(lines)


def declare_participants(code: str, analysis: DiagramAnalysis) -> str:
    lines = code.splitlines()
    header, _ = split_header(code)
    if header is None:
        return code
    declarations = [f"{INDENT}participant {node_id}" for node_id in analysis.nodes]
    return "\n".join(lines[: header.number] + declarations + lines[header.number :])


def dedupe_edges(code: str, analysis: DiagramAnalysis) -> str:
    seen = set()
    result = []
    for line in code.splitlines():
        key = " ".join(line.split())
        statement = parse_flowchart_statement(line) if key else None
        if statement is not None and statement.links:
            if key in seen:
                continue
            seen.add(key)
        result.append(line)
    return "\n".join(result)


# --- detection ----------------------------------------------------------------


def _detect_readability(code: str, analysis: DiagramAnalysis) -> List[Suggestion]:
    found = []
    ids = [node for node in analysis.nodes if not node.startswith("__")]
    styles = [
        any(re.match(r"^[a-z]+[A-Z]", node) for node in ids),
        any("_" in node for node in ids),
        any(node.isupper() and len(node) > 1 for node in ids),
    ]
    if analysis.diagram_type in ("flowchart", "class", "state") and sum(styles) > 1:
        found.append(
            Suggestion(
                "consistent-naming",
                "readability",
                "medium",
                "Use one naming convention for node ids (camelCase or snake_case)",
            )
        )
    short_ids = [node for node in ids if len(node) == 1]
    if analysis.diagram_type == "flowchart" and len(ids) > 5 and len(short_ids) > len(ids) // 2:
        found.append(
            Suggestion(
                "descriptive-ids",
                "readability",
                "low",
                "Replace single-letter node ids with descriptive names",
            )
        )
    long_labels = [label for label in analysis.nodes.values() if len(label) > 20]
    if long_labels:
        found.append(
            Suggestion(
                "shorten-labels",
                "readability",
                "medium",
                f"Shorten {len(long_labels)} label(s) longer than 20 characters",
            )
        )
    if analysis.complexity != Complexity.SIMPLE and "%%" not in code:
        found.append(
            Suggestion(
                "add-comments",
                "readability",
                "low",
                "Add %% comments to explain the sections of this diagram",
            )
        )
    if analysis.diagram_type != "mindmap" and reindent(code, analysis) != "\n".join(
        _clean_lines(code)
    ):
        found.append(
            Suggestion(
                "normalize-indentation",
                "readability",
                "medium",
                "Indent the body consistently, one level per block",
                rewrite=reindent,
            )
        )
    if (
        analysis.diagram_type == "sequence"
        and analysis.nodes
        and not any(" " in node for node in analysis.nodes)
        and not any(SEQUENCE_DECLARATION_RE.match(line) for line in code.splitlines())
    ):
        found.append(
            Suggestion(
                "declare-participants",
                "readability",
                "medium",
                "Declare participants explicitly to fix their order",
                rewrite=declare_participants,
            )
        )
    return found


def _detect_compactness(code: str, analysis: DiagramAnalysis) -> List[Suggestion]:
    found = []
    lines = strip_fences(code).strip("\n").splitlines()
    if any(not line.strip() or line != line.rstrip() for line in lines):
        found.append(
            Suggestion(
                "remove-blank-lines",
                "compactness",
                "low",
                "Remove blank lines and trailing whitespace",
                rewrite=remove_blank_lines,
            )
        )
    if analysis.diagram_type == "flowchart" and len(set(analysis.edges)) < len(analysis.edges):
        found.append(
            Suggestion(
                "remove-duplicate-edges",
                "compactness",
                "high",
                "Remove links that are declared more than once",
                rewrite=dedupe_edges,
                changes_structure=True,
            )
        )
    return found


def _detect_aesthetics(code: str, analysis: DiagramAnalysis) -> List[Suggestion]:
    found = []
    if analysis.diagram_type == "flowchart":
        if analysis.direction is None:
            found.append(
                Suggestion(
                    "add-direction",
                    "aesthetics",
                    "high",
                    "Declare a layout direction such as 'TD' or 'LR'",
                    rewrite=add_flowchart_direction,
                )
            )
        if normalize_arrow_spacing(code, analysis) != code:
            found.append(
                Suggestion(
                    "arrow-spacing",
                    "aesthetics",
                    "low",
                    "Put single spaces around links",
                    rewrite=normalize_arrow_spacing,
                )
            )
        if analysis.complexity != Complexity.SIMPLE and "classDef" not in code:
            found.append(
                Suggestion(
                    "style-classes",
                    "aesthetics",
                    "low",
                    "Use classDef styles to group related nodes visually",
                )
            )
    if analysis.branching_factor > 4:
        found.append(
            Suggestion(
                "reduce-branching",
                "aesthetics",
                "medium",
                f"A node has {analysis.branching_factor} outgoing links; "
                "group its targets in a subgraph",
            )
        )
    if analysis.max_depth > 6:
        found.append(
            Suggestion(
                "shorten-chains",
                "aesthetics",
                "medium",
                f"The longest chain has {analysis.max_depth} levels; consider 'LR' layout",
            )
        )
    return found


def _detect_accessibility(code: str, analysis: DiagramAnalysis) -> List[Suggestion]:
    found = []
    if "accTitle" not in code or "accDescr" not in code:
        found.append(
            Suggestion(
                "accessible-description",
                "accessibility",
                "high",
                "Add accTitle and accDescr so screen readers can describe the diagram",
            )
        )
    if re.search(r"\b(?:fill|color|stroke)\s*:", code):
        found.append(
            Suggestion(
                "color-contrast",
                "accessibility",
                "medium",
                "Check that custom colors keep sufficient contrast",
            )
        )
    if analysis.complexity == Complexity.COMPLEX:
        found.append(
            Suggestion(
                "split-diagram",
                "accessibility",
                "high",
                "Split this diagram into smaller diagrams that can be read separately",
            )
        )
    return found


DETECTORS: Dict[str, Callable[[str, DiagramAnalysis], List[Suggestion]]] = {
    "readability": _detect_readability,
    "compactness": _detect_compactness,
    "aesthetics": _detect_aesthetics,
    "accessibility": _detect_accessibility,
}


def rank(suggestions: List[Suggestion], limit: int) -> List[Suggestion]:
    """Order by impact (high first); ties keep detection order."""
    return sorted(suggestions, key=lambda s: IMPACT_RANK[s.impact])[:limit]


class DiagramOptimizer:
    """Suggests and applies improvements to valid diagrams."""

    def __init__(self, validator: DiagramValidator, analyzer: DiagramAnalyzer):
        self.validator = validator
        self.analyzer = analyzer

    def detect(self, code: str, goals: Iterable[str]) -> List[Suggestion]:
        """Suggestions for the requested goals, in detection order."""
        analysis = self.analyzer.analyze(code)
        requested = set(goals)
        found: List[Suggestion] = []
        for goal in GOALS:
            if goal in requested:
                found.extend(DETECTORS[goal](code, analysis))
        return found

    def optimize(
        self,
        code: str,
        goals: Optional[Iterable[str]] = None,
        preserve_semantics: bool = True,
        max_suggestions: int = 5,
    ) -> Dict[str, Any]:
        """
        Rank suggestions and apply the automatic ones that survive the cut.

        Raises:
            SourceInvalidError: If ``code`` does not validate
        """
        source_result = self.validator.validate(None, code)
        if not source_result.valid:
            raise SourceInvalidError(source_result)

        goals = list(goals) if goals else list(GOALS)
        cleaned = strip_fences(code).strip("\n")
        detected = self.detect(cleaned, goals)
        kept = rank(detected, max_suggestions)
        in_detection_order = [s for s in detected if s in kept]
        optimized, applied = self.apply(cleaned, in_detection_order, preserve_semantics)

        reverted = False
        if applied and preserve_semantics and not self.preserves(cleaned, optimized):
            logger.warning(
                event="optimization_reverted",
                applied=applied,
                reason="structure changed",
            )
            optimized, applied, reverted = cleaned, [], True

        metrics = {goal: 100 for goal in goals}
        for suggestion in detected:
            if suggestion.goal in metrics:
                metrics[suggestion.goal] = max(
                    0, metrics[suggestion.goal] - IMPACT_PENALTY[suggestion.impact]
                )

        return {
            "suggestions": [s.message for s in kept],
            "details": [s.to_dict() for s in kept],
            "optimizedCode": optimized,
            "applied": applied,
            "reverted": reverted,
            "metrics": metrics,
            "diagramType": source_result.diagram_type,
            "totalDetected": len(detected),
        }

    def apply(
        self, code: str, suggestions: List[Suggestion], preserve_semantics: bool
    ) -> Tuple[str, List[str]]:
        """Apply rewrites in the given order, skipping structural ones when preserving."""
        optimized = code
        applied = []
        for suggestion in suggestions:
            if suggestion.rewrite is None:
                continue
            if suggestion.changes_structure and preserve_semantics:
                continue
            analysis = self.analyzer.analyze(optimized)
            rewritten = suggestion.rewrite(optimized, analysis)
            if rewritten != optimized:
                optimized = rewritten
                applied.append(suggestion.id)
        return optimized, applied

    def preserves(self, original: str, optimized: str) -> bool:
        """Same analyzer structure and the same validation outcome."""
        before = self.analyzer.analyze(original).structure_key()
        after = self.analyzer.analyze(optimized).structure_key()
        if before != after:
            return False
        return self.validator.validate(None, optimized).valid == self.validator.validate(
            None, original
        ).valid
