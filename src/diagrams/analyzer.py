"""
Structural analysis of diagram documents.

The analyzer turns diagram text into a small graph model (ordered nodes and
labelled edges) plus shape metrics. It is the common front end of the
optimizer and the converter, and the structure it extracts is what
"semantics preserved" is measured against.
"""

import re
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional, Set, Tuple

from common.models import Complexity
from diagrams.syntax import (
    ER_RELATIONSHIP_RE,
    SEQUENCE_DECLARATION_RE,
    SEQUENCE_MESSAGE_RE,
    SourceLine,
    detect_diagram_type,
    split_header,
    strip_fences,
)

# Types whose text the analyzer turns into nodes and edges
GRAPH_TYPES = frozenset({"flowchart", "sequence", "class", "state", "er", "gantt", "mindmap"})

FLOWCHART_SKIP_WORDS = frozenset(
    {
        "subgraph",
        "end",
        "style",
        "classDef",
        "class",
        "click",
        "linkStyle",
        "direction",
        "title",
        "accTitle",
        "accTitle:",
        "accDescr",
        "accDescr:",
    }
)

_SHAPES = (
    r'\["[^"]*"\]|\("[^"]*"\)|\{"[^"]*"\}'
    r"|\(\(\(.*?\)\)\)|\(\(.*?\)\)|\(\[.*?\]\)|\[\[.*?\]\]|\[\(.*?\)\]"
    r"|\[/.*?[/\\]\]|\[\\.*?[/\\]\]|\{\{.*?\}\}"
    r"|\[.*?\]|\(.*?\)|\{.*?\}|>.*?\]"
)
_NODE_RE = re.compile(
    r"\s*(?P<id>[A-Za-z0-9_]+(?:-[A-Za-z0-9_]+)*)(?P<shape>" + _SHAPES + r")?(?P<cls>:::[\w-]+)?"
)
_AMP_RE = re.compile(r"\s*&\s*")
_ARROW_RE = re.compile(
    r"\s*(?P<arrow>(?:<|x|o)?(?:-{2,}|={2,}|-\.+-|~{3,})(?:>|x|o)?)"
    r"(?:\s*\|(?P<label>[^|]*)\|)?"
)
_TEXT_LINK_RE = re.compile(
    r"\s*(?P<open>--|==|-\.)\s+(?P<label>[^-=.>|\s][^>|]*?)\s+"
    r"(?P<close>-{2,}>|-{3,}|={2,}>|={3,}|\.+->|\.+-)"
)

# "A -- text --> B" is rendered as "A -->|text| B"
_TEXT_LINK_ARROWS = {
    "--": {True: "-->", False: "---"},
    "==": {True: "==>", False: "==="},
    "-.": {True: "-.->", False: "-.-"},
}

_CLASS_REL_RE = re.compile(
    r'^\s*(?P<a>[\w~]+)\s*(?:"[^"]*"\s*)?'
    r"(?P<rel><\|--|--\|>|\*--|--\*|o--|--o|-->|<--|\.\.\|>|<\|\.\.|\.\.>|<\.\.|--|\.\.)"
    r'\s*(?:"[^"]*"\s*)?(?P<b>[\w~]+)\s*(?::\s*(?P<label>.*))?$'
)
_CLASS_DECL_RE = re.compile(r"^\s*class\s+(?P<name>[\w~]+)")
_CLASS_MEMBER_RE = re.compile(r"^\s*(?P<name>\w+)\s*:\s*\S")

_STATE_TRANSITION_RE = re.compile(
    r"^\s*(?P<a>\[\*\]|[\w.]+)\s*-->\s*(?P<b>\[\*\]|[\w.]+)\s*(?::\s*(?P<label>.*))?$"
)
_STATE_DECL_RE = re.compile(r'^\s*state\s+(?:"(?P<desc>[^"]*)"\s+as\s+)?(?P<name>[\w.]+)')
_STATE_DESC_RE = re.compile(r"^\s*(?P<name>[\w.]+)\s*:\s*(?P<desc>.+)$")

_ER_ENTITY_RE = re.compile(r'^\s*(?P<name>"[^"]+"|[\w-]+)(?:\[[^\]]*\])?\s*\{\s*$')

_GANTT_TAGS = frozenset({"done", "active", "crit", "milestone"})
_DATE_RE = re.compile(r"\b\d{4}-\d{2}-\d{2}\b")
_DURATION_RE = re.compile(r"\b\d+\s*(?:d|days?|w|weeks?|h|hours?|months?)\b", re.IGNORECASE)
_TASK_ID_RE = re.compile(r"^[A-Za-z_][\w-]*$")

_MINDMAP_SHAPE_RE = re.compile(
    r"^(?P<id>[\w-]*)(?:\(\((?P<a>.*)\)\)|\)\)(?P<b>.*)\(\(|\)(?P<c>.*)\(|\{\{(?P<d>.*)\}\}"
    r"|\[(?P<e>.*)\]|\((?P<f>.*)\))$"
)

ACTOR_WORDS = frozenset(
    {
        "user",
        "users",
        "customer",
        "client",
        "admin",
        "administrator",
        "browser",
        "server",
        "service",
        "api",
        "backend",
        "frontend",
        "gateway",
        "database",
        "db",
        "system",
        "actor",
    }
)


class Edge(NamedTuple):
    source: str
    target: str
    label: str = ""


class NodeRef(NamedTuple):
    id: str
    label: Optional[str]


@dataclass
class FlowchartStatement:
    """One parsed flowchart statement: node groups joined by links."""

    groups: List[List[NodeRef]]
    group_texts: List[str]
    links: List[Tuple[str, str]]  # (raw link text, label)
    rest: str

    @property
    def complete(self) -> bool:
        return not self.rest

    def edges(self) -> List[Edge]:
        result = []
        for index, (_, label) in enumerate(self.links):
            for source in self.groups[index]:
                for target in self.groups[index + 1]:
                    result.append(Edge(source.id, target.id, label))
        return result

    def render(self) -> str:
        """Statement text with single spaces around every link."""
        parts = [self.group_texts[0]]
        for (link, _), text in zip(self.links, self.group_texts[1:]):
            parts.extend([link, text])
        return " ".join(parts)


@dataclass
class DiagramAnalysis:
    """Graph model and shape metrics of one document."""

    diagram_type: str
    nodes: Dict[str, str] = field(default_factory=dict)
    edges: List[Edge] = field(default_factory=list)
    statements: List[str] = field(default_factory=list)
    direction: Optional[str] = None
    actors: List[str] = field(default_factory=list)
    has_timed_stages: bool = False
    max_depth: int = 0
    branching_factor: int = 0
    cyclic: bool = False
    roots: List[str] = field(default_factory=list)
    is_tree: bool = False
    complexity: Complexity = Complexity.SIMPLE
    issues: List[str] = field(default_factory=list)
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    @property
    def edge_count(self) -> int:
        return len(self.edges)

    @property
    def has_actors(self) -> bool:
        return len(self.actors) >= 2

    @property
    def is_graph(self) -> bool:
        return self.diagram_type in GRAPH_TYPES

    def structure_key(self) -> Tuple[Any, ...]:
        """Comparable fingerprint of what the document expresses."""
        if self.is_graph:
            return (
                self.diagram_type,
                frozenset(self.nodes),
                tuple(sorted(self.edges)),
            )
        return (self.diagram_type, tuple(self.statements))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "diagramType": self.diagram_type,
            "nodeCount": self.node_count,
            "edgeCount": self.edge_count,
            "complexity": self.complexity.value,
            "structure": {
                "maxDepth": self.max_depth,
                "branchingFactor": self.branching_factor,
                "cyclic": self.cyclic,
                "isTree": self.is_tree,
            },
            "hasActors": self.has_actors,
            "hasTimedStages": self.has_timed_stages,
            "issues": list(self.issues),
        }


def _shape_label(shape: Optional[str]) -> Optional[str]:
    if not shape:
        return None
    return shape.lstrip("([{>/\\").rstrip(")]}/\\").strip().strip('"').strip() or None


def _parse_node_group(text: str, pos: int) -> Optional[Tuple[List[NodeRef], int]]:
    match = _NODE_RE.match(text, pos)
    if not match:
        return None
    refs = [NodeRef(match.group("id"), _shape_label(match.group("shape")))]
    pos = match.end()
    while True:
        amp = _AMP_RE.match(text, pos)
        if not amp:
            break
        following = _NODE_RE.match(text, amp.end())
        if not following:
            break
        refs.append(NodeRef(following.group("id"), _shape_label(following.group("shape"))))
        pos = following.end()
    return refs, pos


def parse_flowchart_statement(text: str) -> Optional[FlowchartStatement]:
    """Parse 'A[x] --> B & C -->|y| D'; None if the text starts with no node."""
    start = len(text) - len(text.lstrip())
    parsed = _parse_node_group(text, start)
    if parsed is None:
        return None
    refs, pos = parsed
    groups = [refs]
    group_texts = [text[start:pos].strip()]
    links: List[Tuple[str, str]] = []

    while True:
        link = _TEXT_LINK_RE.match(text, pos) or _ARROW_RE.match(text, pos)
        if not link:
            break
        following = _parse_node_group(text, link.end())
        if following is None:
            break
        label = (link.group("label") or "").strip()
        if "open" in link.groupdict():
            raw = _TEXT_LINK_ARROWS[link.group("open")][link.group("close").endswith(">")]
            raw += f"|{label}|"
        else:
            raw = link.group("arrow") + (f"|{label}|" if label else "")
        next_refs, next_pos = following
        group_texts.append(text[link.end() : next_pos].strip())
        links.append((raw, label))
        groups.append(next_refs)
        pos = next_pos

    return FlowchartStatement(
        groups=groups, group_texts=group_texts, links=links, rest=text[pos:].strip()
    )


def split_statements(line: str) -> List[str]:
    """Split a line on ';' outside quotes."""
    parts, current, quoted = [], [], False
    for char in line:
        if char == '"':
            quoted = not quoted
        if char == ";" and not quoted:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    parts.append("".join(current))
    return [part for part in parts if part.strip()]


class DiagramAnalyzer:
    """Extracts graph structure and metrics from diagram text."""

    def analyze(self, code: str, diagram_type: Optional[str] = None) -> DiagramAnalysis:
        cleaned = strip_fences(code)
        detected = diagram_type or detect_diagram_type(cleaned) or "unknown"
        header, body = split_header(cleaned)
        analysis = DiagramAnalysis(diagram_type=detected)
        analysis.statements = [" ".join(line.stripped.split()) for line in body]

        parser = getattr(self, f"_parse_{detected}", None)
        if parser is not None:
            parser(analysis, header, body)

        self._measure(analysis)
        return analysis

    # --- per-type parsers ---------------------------------------------------

    def _add_node(self, analysis: DiagramAnalysis, node_id: str, label: Optional[str]) -> None:
        if node_id not in analysis.nodes or (label and analysis.nodes[node_id] == node_id):
            analysis.nodes[node_id] = label or analysis.nodes.get(node_id) or node_id

    def _parse_flowchart(
        self, analysis: DiagramAnalysis, header: Optional[SourceLine], body: List[SourceLine]
    ) -> None:
        if header is not None:
            parts = header.stripped.split()
            analysis.direction = parts[1].rstrip(";").upper() if len(parts) > 1 else None
        for line in body:
            if line.first_word in FLOWCHART_SKIP_WORDS:
                continue
            for text in split_statements(line.text):
                statement = parse_flowchart_statement(text)
                if statement is None:
                    continue
                for group in statement.groups:
                    for ref in group:
                        self._add_node(analysis, ref.id, ref.label)
                analysis.edges.extend(statement.edges())

        actor_nodes = [
            node_id
            for node_id, label in analysis.nodes.items()
            if ACTOR_WORDS & set(re.findall(r"[a-z]+", f"{node_id} {label}".lower()))
        ]
        linked = {e.source for e in analysis.edges} | {e.target for e in analysis.edges}
        analysis.actors = [n for n in actor_nodes if n in linked]
        timed = [
            label
            for label in analysis.nodes.values()
            if _DATE_RE.search(label) or _DURATION_RE.search(label) or label.startswith("after ")
        ]
        analysis.has_timed_stages = len(timed) >= 2

    def _parse_sequence(
        self, analysis: DiagramAnalysis, header: Optional[SourceLine], body: List[SourceLine]
    ) -> None:
        for line in body:
            declaration = SEQUENCE_DECLARATION_RE.match(line.text)
            if declaration:
                alias = declaration.group("alias")
                self._add_node(analysis, declaration.group("id"), alias.strip() if alias else None)
                continue
            message = SEQUENCE_MESSAGE_RE.match(line.text)
            if message:
                source, target = message.group("src"), message.group("dst")
                self._add_node(analysis, source, None)
                self._add_node(analysis, target, None)
                analysis.edges.append(Edge(source, target, message.group("text").strip()))
        analysis.actors = list(analysis.nodes)

    def _parse_class(
        self, analysis: DiagramAnalysis, header: Optional[SourceLine], body: List[SourceLine]
    ) -> None:
        for line in body:
            relation = _CLASS_REL_RE.match(line.text)
            if relation:
                source = relation.group("a").split("~")[0]
                target = relation.group("b").split("~")[0]
                self._add_node(analysis, source, None)
                self._add_node(analysis, target, None)
                label = (relation.group("label") or "").strip()
                analysis.edges.append(Edge(source, target, label))
                continue
            declaration = _CLASS_DECL_RE.match(line.text)
            if declaration:
                self._add_node(analysis, declaration.group("name").split("~")[0], None)
                continue
            member = _CLASS_MEMBER_RE.match(line.text)
            if member:
                self._add_node(analysis, member.group("name"), None)

    def _parse_state(
        self, analysis: DiagramAnalysis, header: Optional[SourceLine], body: List[SourceLine]
    ) -> None:
        for line in body:
            transition = _STATE_TRANSITION_RE.match(line.text)
            if transition:
                source = transition.group("a")
                target = transition.group("b")
                source = "__start__" if source == "[*]" else source
                target = "__end__" if target == "[*]" else target
                self._add_node(analysis, source, None)
                self._add_node(analysis, target, None)
                label = (transition.group("label") or "").strip()
                analysis.edges.append(Edge(source, target, label))
                continue
            declaration = _STATE_DECL_RE.match(line.text)
            if declaration:
                self._add_node(analysis, declaration.group("name"), declaration.group("desc"))
                continue
            description = _STATE_DESC_RE.match(line.text)
            if description:
                self._add_node(analysis, description.group("name"), description.group("desc"))

    def _parse_er(
        self, analysis: DiagramAnalysis, header: Optional[SourceLine], body: List[SourceLine]
    ) -> None:
        for line in body:
            relation = ER_RELATIONSHIP_RE.match(line.text)
            if relation:
                source = relation.group("left").strip('"')
                target = relation.group("right").strip('"')
                self._add_node(analysis, source, None)
                self._add_node(analysis, target, None)
                label = (relation.group("label") or "").strip().strip('"')
                analysis.edges.append(Edge(source, target, label))
                continue
            entity = _ER_ENTITY_RE.match(line.text)
            if entity:
                self._add_node(analysis, entity.group("name").strip('"'), None)

    def _parse_gantt(
        self, analysis: DiagramAnalysis, header: Optional[SourceLine], body: List[SourceLine]
    ) -> None:
        tasks: List[Dict[str, Any]] = []
        section = None
        previous: Optional[str] = None
        for line in body:
            if line.first_word == "section":
                section = line.stripped[len("section") :].strip()
                continue
            if line.first_word in ("dateFormat", "axisFormat", "title", "excludes", "includes"):
                analysis.extras[line.first_word] = line.stripped[len(line.first_word) :].strip()
                continue
            if ":" not in line.text or line.first_word.endswith(":"):
                continue
            name, meta = line.text.split(":", 1)
            items = [item.strip() for item in meta.split(",") if item.strip()]
            tags = [item for item in items if item in _GANTT_TAGS]
            items = [item for item in items if item not in _GANTT_TAGS]
            task_id = None
            if len(items) >= 3 and _TASK_ID_RE.match(items[0]):
                task_id, items = items[0], items[1:]
            task_id = task_id or f"task{len(tasks) + 1}"
            start = items[0] if len(items) >= 2 else None
            duration = items[-1] if items else None

            self._add_node(analysis, task_id, name.strip())
            if start and start.startswith("after "):
                for dependency in start[len("after ") :].split():
                    analysis.edges.append(Edge(dependency, task_id))
            elif start is None and previous is not None:
                analysis.edges.append(Edge(previous, task_id))
            tasks.append(
                {
                    "id": task_id,
                    "name": name.strip(),
                    "section": section,
                    "start": start,
                    "duration": duration,
                    "tags": tags,
                }
            )
            previous = task_id
        analysis.extras["tasks"] = tasks
        analysis.has_timed_stages = bool(tasks)

    def _parse_mindmap(
        self, analysis: DiagramAnalysis, header: Optional[SourceLine], body: List[SourceLine]
    ) -> None:
        stack: List[Tuple[int, str]] = []
        seen: Dict[str, int] = defaultdict(int)
        for line in body:
            text = line.stripped
            if text.startswith("::icon") or text.startswith(":::"):
                continue
            match = _MINDMAP_SHAPE_RE.match(text)
            label = text
            if match:
                label = next(g for g in match.groups()[1:] if g is not None) or match.group("id")
            label = label.strip().strip('"')
            seen[label] += 1
            node_id = label if seen[label] == 1 else f"{label}#{seen[label]}"
            self._add_node(analysis, node_id, label)
            while stack and stack[-1][0] >= line.indent:
                stack.pop()
            if stack:
                analysis.edges.append(Edge(stack[-1][1], node_id))
            stack.append((line.indent, node_id))

    # --- metrics -------------------------------------------------------------

    def _measure(self, analysis: DiagramAnalysis) -> None:
        children: Dict[str, List[str]] = defaultdict(list)
        indegree: Dict[str, int] = {node: 0 for node in analysis.nodes}
        for edge in analysis.edges:
            if edge.target not in children[edge.source]:
                children[edge.source].append(edge.target)
            indegree[edge.target] = indegree.get(edge.target, 0) + 1
            indegree.setdefault(edge.source, 0)

        nodes = list(indegree)
        analysis.roots = [node for node in nodes if indegree[node] == 0]
        analysis.branching_factor = max((len(c) for c in children.values()), default=0)
        analysis.cyclic = self._has_cycle(nodes, children)
        analysis.max_depth = self._depth(nodes, analysis.roots, children)
        reachable = self._reachable(analysis.roots, children)
        analysis.is_tree = (
            bool(nodes)
            and not analysis.cyclic
            and len(analysis.roots) == 1
            and all(indegree[node] <= 1 for node in nodes)
            and reachable == set(nodes)
        )

        score = 0
        score += 2 if analysis.node_count > 15 else 1 if analysis.node_count > 8 else 0
        score += 2 if analysis.edge_count > 20 else 1 if analysis.edge_count > 10 else 0
        score += 2 if analysis.max_depth > 6 else 1 if analysis.max_depth > 3 else 0
        score += 1 if analysis.branching_factor > 4 else 0
        score += 1 if analysis.cyclic else 0
        if score >= 6:
            analysis.complexity = Complexity.COMPLEX
        elif score >= 3:
            analysis.complexity = Complexity.MEDIUM
        else:
            analysis.complexity = Complexity.SIMPLE

        if analysis.edges:
            linked = {e.source for e in analysis.edges} | {e.target for e in analysis.edges}
            isolated = [node for node in analysis.nodes if node not in linked]
            if isolated:
                analysis.issues.append(f"isolated nodes: {', '.join(isolated)}")
        if analysis.cyclic and analysis.diagram_type not in ("sequence", "state"):
            analysis.issues.append("cycle detected")
        if analysis.max_depth > 6:
            analysis.issues.append(f"deep chain of {analysis.max_depth} levels")
        if analysis.branching_factor > 4:
            analysis.issues.append(f"node with {analysis.branching_factor} outgoing links")

    @staticmethod
    def _has_cycle(nodes: List[str], children: Dict[str, List[str]]) -> bool:
        state: Dict[str, int] = {}
        for root in nodes:
            if root in state:
                continue
            stack = [(root, iter(children.get(root, [])))]
            state[root] = 1
            while stack:
                node, remaining = stack[-1]
                child = next(remaining, None)
                if child is None:
                    state[node] = 2
                    stack.pop()
                elif state.get(child) == 1:
                    return True
                elif child not in state:
                    state[child] = 1
                    stack.append((child, iter(children.get(child, []))))
        return False

    @staticmethod
    def _depth(nodes: List[str], roots: List[str], children: Dict[str, List[str]]) -> int:
        """Number of levels in a breadth-first walk from the roots."""
        if not nodes:
            return 0
        level = {root: 1 for root in (roots or nodes[:1])}
        queue = deque(level)
        while queue:
            node = queue.popleft()
            for child in children.get(node, []):
                if child not in level:
                    level[child] = level[node] + 1
                    queue.append(child)
        return max(level.values())

    @staticmethod
    def _reachable(roots: List[str], children: Dict[str, List[str]]) -> Set[str]:
        seen: Set[str] = set(roots)
        queue = deque(roots)
        while queue:
            for child in children.get(queue.popleft(), []):
                if child not in seen:
                    seen.add(child)
                    queue.append(child)
        return seen
