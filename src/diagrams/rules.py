"""
Structural rules for diagram types validated without a formal grammar.

Each diagram type owns a fixed, ordered tuple of rules (``RULE_TABLE``).
Rules are plain functions over a ``RuleContext`` that yield Diagnostics.
A rule flagged ``escalates`` has its warnings promoted to errors in strict
mode; no other rule is affected by strictness.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from common.models import Diagnostic, Severity
from diagrams.syntax import (
    ER_RELATIONSHIP_RE,
    FLOWCHART_DIRECTIONS,
    SEQUENCE_DECLARATION_RE,
    SEQUENCE_MESSAGE_RE,
    SourceLine,
    header_keyword,
    mask_brackets,
    mask_text,
    split_header,
)


@dataclass
class RuleContext:
    """Everything a rule may look at for one document."""

    code: str
    diagram_type: str
    declared_type: Optional[str]
    detected_type: Optional[str]
    header: Optional[SourceLine]
    body: List[SourceLine] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        code: str,
        diagram_type: str,
        declared_type: Optional[str],
        detected_type: Optional[str],
    ) -> "RuleContext":
        header, body = split_header(code)
        return cls(
            code=code,
            diagram_type=diagram_type,
            declared_type=declared_type,
            detected_type=detected_type,
            header=header,
            body=body,
        )


RuleCheck = Callable[[RuleContext], Iterable[Diagnostic]]


@dataclass(frozen=True)
class Rule:
    name: str
    check: RuleCheck
    escalates: bool = False

    def run(self, context: RuleContext, strict: bool) -> List[Diagnostic]:
        diagnostics = []
        for diagnostic in self.check(context):
            if strict and self.escalates and diagnostic.severity == Severity.WARNING:
                diagnostic = diagnostic.model_copy(update={"severity": Severity.ERROR})
            diagnostics.append(diagnostic.model_copy(update={"rule": self.name}))
        return diagnostics


def _error(
    line: Optional[SourceLine],
    message: str,
    suggestion: Optional[str] = None,
    column: Optional[int] = None,
) -> Diagnostic:
    return Diagnostic(
        severity=Severity.ERROR,
        message=message,
        line=line.number if line else None,
        column=column,
        suggestion=suggestion,
    )


def _warning(
    line: Optional[SourceLine],
    message: str,
    suggestion: Optional[str] = None,
    column: Optional[int] = None,
) -> Diagnostic:
    return Diagnostic(
        severity=Severity.WARNING,
        message=message,
        line=line.number if line else None,
        column=column,
        suggestion=suggestion,
    )


def _balance(
    body: List[SourceLine],
    opens: Callable[[SourceLine], bool],
    closes: Callable[[SourceLine], bool],
    what: str,
    closer: str,
) -> Iterator[Diagnostic]:
    """Report unclosed and stray block delimiters."""
    stack: List[SourceLine] = []
    for line in body:
        if opens(line):
            stack.append(line)
        elif closes(line):
            if stack:
                stack.pop()
            else:
                yield _error(
                    line,
                    f"'{closer}' without a matching {what}",
                    f"Remove this '{closer}' or open a {what} before it",
                )
    for line in stack:
        yield _error(
            line,
            f"{what.capitalize()} is never closed",
            f"Add '{closer}' after the last line of the {what}",
        )


# --- Common rules -------------------------------------------------------------


def check_header(context: RuleContext) -> Iterator[Diagnostic]:
    if context.detected_type is not None:
        return
    found = header_keyword(context.header) if context.header else ""
    yield _error(
        context.header,
        f"Missing or unknown diagram type declaration '{found}'" if found
        else "Missing diagram type declaration",
        "Start the document with a diagram keyword such as 'flowchart TD' or 'sequenceDiagram'",
        column=1 if context.header else None,
    )


def check_header_mismatch(context: RuleContext) -> Iterator[Diagnostic]:
    declared, detected = context.declared_type, context.detected_type
    if declared and detected and declared != detected:
        yield _error(
            context.header,
            f"Document declares a '{detected}' diagram but '{declared}' was requested",
            f"Change the header to a {declared} diagram or request '{detected}' validation",
            column=1,
        )


_UNICODE_ARROWS = ("→", "⟶", "⇒", "➔")


def check_unicode_arrows(context: RuleContext) -> Iterator[Diagnostic]:
    for line in context.body:
        masked = mask_text(line.text)
        for arrow in _UNICODE_ARROWS:
            column = masked.find(arrow)
            if column >= 0:
                yield _error(
                    line,
                    f"Unicode arrow '{arrow}' is not valid Mermaid syntax",
                    "Use '-->' for arrows",
                    column=column + 1,
                )
                break


# Which bracket pairs must balance on a single line, per diagram type
_LINE_PAIRS: Dict[str, str] = {
    "flowchart": "()[]{}",
    "class": "()[]",
    "state": "",
    "er": "",
    "sequence": "",
}
_QUOTE_CHECKED = frozenset({"flowchart", "class", "state", "er", "sequence"})


def check_unterminated_nodes(context: RuleContext) -> Iterator[Diagnostic]:
    pairs = _LINE_PAIRS.get(context.diagram_type)
    if pairs is None:
        return
    openers = {pairs[i]: pairs[i + 1] for i in range(0, len(pairs), 2)}
    closers = set(openers.values())
    check_quotes = context.diagram_type in _QUOTE_CHECKED

    for line in context.body:
        stack: List[Tuple[str, int]] = []
        in_quote: Optional[int] = None
        for index, char in enumerate(line.text):
            if char == '"':
                in_quote = None if in_quote is not None else index
            elif in_quote is not None:
                continue
            elif char in openers:
                stack.append((char, index))
            elif char in closers and stack and openers[stack[-1][0]] == char:
                stack.pop()
        if check_quotes and in_quote is not None:
            yield _error(
                line,
                "Unterminated string",
                "Close the string with a double quote",
                column=in_quote + 1,
            )
        elif stack:
            opener, index = stack[0]
            yield _error(
                line,
                "Unterminated node declaration",
                f"Close '{opener}' with '{openers[opener]}'",
                column=index + 1,
            )


# --- Flowchart ---------------------------------------------------------------

_SINGLE_DASH_RE = re.compile(r"(?<![-.=<])->")


def check_single_dash_arrow(context: RuleContext) -> Iterator[Diagnostic]:
    for line in context.body:
        masked = mask_brackets(mask_text(line.text))
        match = _SINGLE_DASH_RE.search(masked)
        if match:
            yield _error(
                line,
                "Malformed arrow '->'; flowchart links need two dashes",
                "Use '-->' instead of '->'",
                column=match.start() + 1,
            )


def check_direction(context: RuleContext) -> Iterator[Diagnostic]:
    if context.header is None or context.detected_type != "flowchart":
        return
    parts = context.header.stripped.split()
    if len(parts) < 2:
        yield _warning(
            context.header,
            "Flowchart has no direction",
            f"Add a direction such as '{parts[0]} TD'",
        )
    elif parts[1].rstrip(";").upper() not in FLOWCHART_DIRECTIONS:
        yield _error(
            context.header,
            f"Unknown flowchart direction '{parts[1]}'",
            "Use one of TB, TD, BT, RL or LR",
            column=context.header.text.find(parts[1]) + 1,
        )


def check_subgraphs(context: RuleContext) -> Iterator[Diagnostic]:
    return _balance(
        context.body,
        opens=lambda line: line.first_word == "subgraph",
        closes=lambda line: line.stripped == "end",
        what="subgraph",
        closer="end",
    )


# --- Sequence ----------------------------------------------------------------

_BARE_DOUBLE_ARROW_RE = re.compile(r"(?<!-)>>")
_SEQUENCE_BLOCKS = frozenset({"loop", "alt", "opt", "par", "critical", "break", "rect", "box"})


def check_sequence_arrows(context: RuleContext) -> Iterator[Diagnostic]:
    for line in context.body:
        head = mask_text(line.text).split(":", 1)[0]
        match = _BARE_DOUBLE_ARROW_RE.search(head)
        if match:
            yield _error(
                line,
                "Malformed message arrow '>>'",
                "Use '->>' for a solid arrow or '-->>' for a dotted arrow",
                column=match.start() + 1,
            )


def check_declared_participants(context: RuleContext) -> Iterator[Diagnostic]:
    declared = set()
    for line in context.body:
        match = SEQUENCE_DECLARATION_RE.match(line.text)
        if match:
            declared.add(match.group("id"))
    if not declared:
        return

    reported = set()
    for line in context.body:
        match = SEQUENCE_MESSAGE_RE.match(line.text)
        if not match:
            continue
        for name in (match.group("src"), match.group("dst")):
            if name not in declared and name not in reported:
                reported.add(name)
                yield _warning(
                    line,
                    f"Participant '{name}' is used but never declared",
                    f"Add 'participant {name}' before its first message",
                )


def check_sequence_blocks(context: RuleContext) -> Iterator[Diagnostic]:
    return _balance(
        context.body,
        opens=lambda line: line.first_word in _SEQUENCE_BLOCKS,
        closes=lambda line: line.stripped == "end",
        what="block",
        closer="end",
    )


# --- Class -------------------------------------------------------------------

_CLASS_DECL_RE = re.compile(r"^\s*class\s+([A-Za-z_][\w]*)")


def check_class_names(context: RuleContext) -> Iterator[Diagnostic]:
    for line in context.body:
        match = _CLASS_DECL_RE.match(line.text)
        if match and match.group(1)[0].islower():
            name = match.group(1)
            yield _warning(
                line,
                f"Class name '{name}' should start with an upper-case letter",
                f"Rename it to '{name[0].upper() + name[1:]}'",
                column=match.start(1) + 1,
            )


def _opens_brace_block(line: SourceLine) -> bool:
    return mask_text(line.text).rstrip().endswith("{")


def check_class_bodies(context: RuleContext) -> Iterator[Diagnostic]:
    return _balance(
        context.body,
        opens=_opens_brace_block,
        closes=lambda line: line.stripped == "}",
        what="class body",
        closer="}",
    )


# --- ER ----------------------------------------------------------------------

ER_ENTITY_OPEN_RE = re.compile(r'^\s*("[^"]+"|[\w-]+)(\[[^\]]*\])?\s*\{\s*$')


def check_er_blocks(context: RuleContext) -> Iterator[Diagnostic]:
    return _balance(
        context.body,
        opens=lambda line: bool(ER_ENTITY_OPEN_RE.match(line.text)),
        closes=lambda line: line.stripped == "}",
        what="entity block",
        closer="}",
    )


def check_er_labels(context: RuleContext) -> Iterator[Diagnostic]:
    for line in context.body:
        match = ER_RELATIONSHIP_RE.match(line.text)
        if match and not (match.group("label") or "").strip():
            yield _warning(
                line,
                "Relationship has no label",
                f"{line.stripped} : relates_to",
            )


# --- Gantt -------------------------------------------------------------------

GANTT_KEYWORDS = frozenset(
    {
        "title",
        "dateFormat",
        "axisFormat",
        "tickInterval",
        "section",
        "excludes",
        "includes",
        "todayMarker",
        "weekday",
        "weekend",
        "displayMode",
        "inclusiveEndDates",
        "topAxis",
        "accTitle",
        "accTitle:",
        "accDescr",
        "accDescr:",
    }
)


def check_gantt_tasks(context: RuleContext) -> Iterator[Diagnostic]:
    for line in context.body:
        if line.first_word in GANTT_KEYWORDS or ":" in line.text:
            continue
        yield _error(
            line,
            f"Task '{line.stripped}' is missing ':' and its metadata",
            f"{line.stripped} :t1, 2024-01-01, 3d",
        )


def check_gantt_date_format(context: RuleContext) -> Iterator[Diagnostic]:
    if not any(line.first_word == "dateFormat" for line in context.body):
        yield _warning(
            context.header,
            "Gantt chart has no dateFormat",
            "Add 'dateFormat YYYY-MM-DD' after the header",
        )


COMMON_RULES: Tuple[Rule, ...] = (
    Rule("header", check_header),
    Rule("header-mismatch", check_header_mismatch),
    Rule("unicode-arrow", check_unicode_arrows),
    Rule("unterminated-node", check_unterminated_nodes),
)

RULE_TABLE: Dict[str, Tuple[Rule, ...]] = {
    "flowchart": COMMON_RULES
    + (
        Rule("single-dash-arrow", check_single_dash_arrow),
        Rule("direction", check_direction, escalates=True),
        Rule("subgraph-balance", check_subgraphs),
    ),
    "sequence": COMMON_RULES
    + (
        Rule("message-arrow", check_sequence_arrows),
        Rule("undeclared-participant", check_declared_participants, escalates=True),
        Rule("block-balance", check_sequence_blocks),
    ),
    "class": COMMON_RULES
    + (
        Rule("class-name-case", check_class_names, escalates=True),
        Rule("class-body-balance", check_class_bodies),
    ),
    "er": COMMON_RULES
    + (
        Rule("entity-block-balance", check_er_blocks),
        Rule("relationship-label", check_er_labels, escalates=True),
    ),
    "gantt": COMMON_RULES
    + (
        Rule("task-metadata", check_gantt_tasks),
        Rule("date-format", check_gantt_date_format, escalates=True),
    ),
    "state": COMMON_RULES,
    "journey": COMMON_RULES,
    "mindmap": COMMON_RULES,
    "timeline": COMMON_RULES,
}


def rules_for(diagram_type: str) -> Tuple[Rule, ...]:
    """Ordered rules for a type; unknown types get the common rules only."""
    return RULE_TABLE.get(diagram_type, COMMON_RULES)
