"""
Diagram converter.

Rebuilds the analyzer's graph model of a document as another diagram type.
``auto`` picks the target from the document's shape; the choice depends only
on the text, so identical input always converts the same way.
"""

import re
from collections import defaultdict, deque
from typing import Any, Dict, List, Optional, Tuple

from common.errors import SourceInvalidError, UnsupportedConversionError
from common.logging import get_logger
from diagrams.analyzer import GRAPH_TYPES, DiagramAnalysis, DiagramAnalyzer, Edge
from diagrams.optimizer import INDENT, dedupe_edges, reindent
from diagrams.syntax import normalize_type, strip_fences
from diagrams.validator import DiagramValidator

logger = get_logger(__name__)

AUTO = "auto"
TARGET_FORMATS = ("flowchart", "sequence", "class", "er", "mindmap", "gantt")
GANTT_START_DATE = "2024-01-01"

_SPECIAL_LABELS = {"__start__": "Start", "__end__": "End"}
_RESERVED_IDS = frozenset({"end", "graph", "subgraph", "style", "class", "click", "default"})
_DURATION_RE = re.compile(r"\b(\d+)\s*(d|days?|w|weeks?|h|hours?)\b", re.IGNORECASE)


def _label(node_id: str, label: str) -> str:
    return _SPECIAL_LABELS.get(node_id, label)


class _IdMap:
    """Maps source node ids to identifiers that are safe in every target."""

    def __init__(self, transform=None):
        self._transform = transform or (lambda name: name)
        self._ids: Dict[str, str] = {}
        self._used: set = set()

    def __getitem__(self, node_id: str) -> str:
        if node_id not in self._ids:
            base = re.sub(r"\W+", "_", _SPECIAL_LABELS.get(node_id, node_id)).strip("_") or "node"
            if base[0].isdigit():
                base = f"n{base}"
            base = self._transform(base)
            if base.lower() in _RESERVED_IDS:
                base = f"{base}_"
            candidate, suffix = base, 2
            while candidate in self._used:
                candidate, suffix = f"{base}{suffix}", suffix + 1
            self._used.add(candidate)
            self._ids[node_id] = candidate
        return self._ids[node_id]


def _unique_edges(edges: List[Edge]) -> List[Edge]:
    seen = set()
    result = []
    for edge in edges:
        if edge not in seen:
            seen.add(edge)
            result.append(edge)
    return result


def _clean_text(text: str, drop: str = "") -> str:
    text = text.replace('"', "'")
    for char in drop:
        text = text.replace(char, " ")
    return " ".join(text.split())


# --- renderers ----------------------------------------------------------------


def render_flowchart(analysis: DiagramAnalysis, edges: List[Edge]) -> str:
    ids = _IdMap()
    lines = [f"flowchart {analysis.direction or 'TD'}"]
    for node_id, label in analysis.nodes.items():
        label = _clean_text(_label(node_id, label))
        safe = ids[node_id]
        lines.append(f'{INDENT}{safe}["{label}"]' if label != safe else f"{INDENT}{safe}")
    for edge in edges:
        label = _clean_text(edge.label, drop="|")
        arrow = f"-->|{label}|" if label else "-->"
        lines.append(f"{INDENT}{ids[edge.source]} {arrow} {ids[edge.target]}")
    return "\n".join(lines)


def render_sequence(analysis: DiagramAnalysis, edges: List[Edge]) -> str:
    ids = _IdMap()
    lines = ["sequenceDiagram"]
    for node_id, label in analysis.nodes.items():
        label = _clean_text(_label(node_id, label), drop=";")
        safe = ids[node_id]
        alias = f" as {label}" if label != safe else ""
        lines.append(f"{INDENT}participant {safe}{alias}")
    for edge in edges:
        text = _clean_text(edge.label, drop=";") or "next"
        lines.append(f"{INDENT}{ids[edge.source]}->>{ids[edge.target]}: {text}")
    return "\n".join(lines)


def render_class(analysis: DiagramAnalysis, edges: List[Edge]) -> str:
    ids = _IdMap(lambda name: name[0].upper() + name[1:])
    lines = ["classDiagram"]
    for node_id in analysis.nodes:
        lines.append(f"{INDENT}class {ids[node_id]}")
    for edge in edges:
        label = _clean_text(edge.label, drop=":")
        suffix = f" : {label}" if label else ""
        lines.append(f"{INDENT}{ids[edge.source]} --> {ids[edge.target]}{suffix}")
    return "\n".join(lines)


def render_er(analysis: DiagramAnalysis, edges: List[Edge]) -> str:
    ids = _IdMap(str.upper)
    lines = ["erDiagram"]
    linked = {edge.source for edge in edges} | {edge.target for edge in edges}
    for node_id in analysis.nodes:
        if node_id in linked:
            continue
        lines.extend([f"{INDENT}{ids[node_id]} {{", f"{INDENT * 2}string name", f"{INDENT}}}"])
    for edge in edges:
        label = _clean_text(edge.label, drop=":") or "relates to"
        lines.append(f'{INDENT}{ids[edge.source]} ||--o{{ {ids[edge.target]} : "{label}"')
    return "\n".join(lines)


def _children(analysis: DiagramAnalysis, edges: List[Edge]) -> Dict[str, List[str]]:
    children: Dict[str, List[str]] = defaultdict(list)
    for edge in edges:
        if edge.target not in children[edge.source]:
            children[edge.source].append(edge.target)
    return children


def render_mindmap(analysis: DiagramAnalysis, edges: List[Edge]) -> str:
    children = _children(analysis, edges)
    order = list(analysis.nodes)
    root = analysis.roots[0] if analysis.roots else (order[0] if order else None)
    lines = ["mindmap"]
    if root is None:
        return "\n".join(lines)

    def text(node_id: str) -> str:
        label = _label(node_id, analysis.nodes.get(node_id, node_id))
        return _clean_text(label, drop="()[]{}") or "node"

    lines.append(f"  root(({text(root)}))")
    seen = {root}
    # Nodes not reachable from the root hang off it directly
    reachable = _reach(root, children)
    orphans = [node for node in order if node not in reachable]
    stack: List[Tuple[str, int]] = [(node, 2) for node in reversed(orphans)]
    stack.extend((child, 2) for child in reversed(children.get(root, [])))
    while stack:
        node, depth = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        lines.append("  " * depth + text(node))
        stack.extend((child, depth + 1) for child in reversed(children.get(node, [])))
    return "\n".join(lines)


def _reach(root: str, children: Dict[str, List[str]]) -> set:
    seen = {root}
    queue = deque([root])
    while queue:
        for child in children.get(queue.popleft(), []):
            if child not in seen:
                seen.add(child)
                queue.append(child)
    return seen


def render_gantt(analysis: DiagramAnalysis, edges: List[Edge]) -> str:
    ids = _IdMap()
    predecessors: Dict[str, List[str]] = defaultdict(list)
    for edge in edges:
        if edge.source not in predecessors[edge.target] and edge.source != edge.target:
            predecessors[edge.target].append(edge.source)

    lines = ["gantt", f"{INDENT}dateFormat YYYY-MM-DD", f"{INDENT}section Tasks"]
    scheduled: set = set()
    for node_id in _schedule_order(list(analysis.nodes), predecessors):
        label = _clean_text(_label(node_id, analysis.nodes.get(node_id, node_id)), ":,#;")
        duration = _DURATION_RE.search(label)
        length = f"{duration.group(1)}{duration.group(2)[0].lower()}" if duration else "1d"
        ready = [ids[p] for p in predecessors.get(node_id, []) if p in scheduled]
        start = f"after {' '.join(ready)}" if ready else GANTT_START_DATE
        lines.append(f"{INDENT}{label or ids[node_id]} :{ids[node_id]}, {start}, {length}")
        scheduled.add(node_id)
    return "\n".join(lines)


def _schedule_order(nodes: List[str], predecessors: Dict[str, List[str]]) -> List[str]:
    """Dependencies first, source order otherwise; cycles fall back to source order."""
    remaining = list(nodes)
    done: set = set()
    order = []
    while remaining:
        ready = next(
            (n for n in remaining if all(p in done for p in predecessors.get(n, []))),
            remaining[0],
        )
        remaining.remove(ready)
        done.add(ready)
        order.append(ready)
    return order


RENDERERS = {
    "flowchart": render_flowchart,
    "sequence": render_sequence,
    "class": render_class,
    "er": render_er,
    "mindmap": render_mindmap,
    "gantt": render_gantt,
}


def choose_format(analysis: DiagramAnalysis) -> str:
    """Best-fit target for a document; first matching heuristic wins."""
    if not analysis.is_graph:
        return analysis.diagram_type
    if analysis.has_actors:
        return "sequence"
    if analysis.has_timed_stages:
        return "gantt"
    if analysis.is_tree and analysis.branching_factor > 2:
        return "mindmap"
    if analysis.node_count > 15 and analysis.edge_count > 20:
        return "class"
    if analysis.diagram_type in TARGET_FORMATS:
        return analysis.diagram_type
    return "flowchart"


class DiagramConverter:
    """Converts valid diagrams between diagram types."""

    def __init__(self, validator: DiagramValidator, analyzer: DiagramAnalyzer):
        self.validator = validator
        self.analyzer = analyzer

    def convert(
        self, code: str, target_format: str = AUTO, optimize_structure: bool = True
    ) -> Dict[str, Any]:
        """
        Convert ``code`` to ``target_format`` ("auto" to choose one).

        Raises:
            SourceInvalidError: If ``code`` does not validate
            UnsupportedConversionError: If the pair of types cannot be converted
        """
        source_result = self.validator.validate(None, code)
        if not source_result.valid:
            raise SourceInvalidError(source_result)

        cleaned = strip_fences(code).strip("\n")
        analysis = self.analyzer.analyze(cleaned)
        source_format = analysis.diagram_type
        target = self._resolve_target(target_format, analysis)

        if target == source_format:
            converted = cleaned
            if optimize_structure:
                converted = reindent(converted, analysis)
                if target == "flowchart":
                    converted = dedupe_edges(converted, analysis)
        else:
            edges = analysis.edges
            if optimize_structure and target not in ("sequence", "gantt"):
                edges = _unique_edges(edges)
            converted = RENDERERS[target](analysis, edges)

        result = self.validator.validate(target, converted)
        logger.info(
            event="diagram_converted",
            source_format=source_format,
            target_format=target,
            requested=target_format,
            valid=result.valid,
            nodes=analysis.node_count,
            edges=analysis.edge_count,
        )
        return {
            "convertedCode": converted,
            "chosenFormat": target,
            "sourceFormat": source_format,
            "valid": result.valid,
            "diagnostics": [d.to_wire() for d in result.diagnostics],
        }

    @staticmethod
    def _resolve_target(target_format: Optional[str], analysis: DiagramAnalysis) -> str:
        source = analysis.diagram_type
        if target_format is None or target_format.strip().lower() == AUTO:
            return choose_format(analysis)
        target = normalize_type(target_format)
        if target == source:
            return target
        if target not in TARGET_FORMATS or source not in GRAPH_TYPES:
            raise UnsupportedConversionError(source, target or target_format)
        return target
