"""
Lexical helpers shared by the validator, analyzer, optimizer and converter.

Line numbers are always 1-based and refer to the text the caller passed in:
fence removal blanks lines instead of deleting them.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

# Header keyword (lower-cased) -> canonical diagram type
HEADER_KEYWORDS: Dict[str, str] = {
    "flowchart": "flowchart",
    "graph": "flowchart",
    "sequencediagram": "sequence",
    "classdiagram": "class",
    "statediagram": "state",
    "statediagram-v2": "state",
    "erdiagram": "er",
    "gantt": "gantt",
    "journey": "journey",
    "mindmap": "mindmap",
    "timeline": "timeline",
    "pie": "pie",
    "gitgraph": "gitgraph",
    "packet-beta": "packet",
    "packet": "packet",
}

# Accepted spellings of a diagram type in request payloads
TYPE_ALIASES: Dict[str, str] = {
    **HEADER_KEYWORDS,
    "sequence": "sequence",
    "class": "class",
    "state": "state",
    "er": "er",
    "entity-relationship": "er",
}

DIAGRAM_TYPES: Tuple[str, ...] = (
    "flowchart",
    "sequence",
    "class",
    "state",
    "er",
    "gantt",
    "journey",
    "mindmap",
    "timeline",
    "pie",
    "gitgraph",
    "packet",
)

FLOWCHART_DIRECTIONS = frozenset({"TB", "TD", "BT", "RL", "LR"})

_FENCE_RE = re.compile(r"^\s*```\s*(mermaid)?\s*$", re.IGNORECASE)
_QUOTED_RE = re.compile(r'"[^"]*"')
_PIPE_LABEL_RE = re.compile(r"\|[^|]*\|")

# Sequence message: source, arrow, optional activation marker, target, text
SEQUENCE_ARROW = r"<<-{1,2}>>|-{1,2}>>|-{1,2}>|-{1,2}x|-{1,2}\)"
SEQUENCE_MESSAGE_RE = re.compile(
    r"^\s*(?P<src>[^\s:+\-<>]+(?:\s+[^\s:+\-<>]+)*?)\s*"
    r"(?P<arrow>" + SEQUENCE_ARROW + r")\s*[+-]?\s*"
    r"(?P<dst>[^\s:+\-<>]+(?:\s+[^\s:+\-<>]+)*?)\s*:(?P<text>.*)$"
)
SEQUENCE_DECLARATION_RE = re.compile(
    r"^\s*(?P<kind>participant|actor)\s+(?P<id>[^\s]+)(?:\s+as\s+(?P<alias>.+?))?\s*$"
)
ER_RELATIONSHIP_RE = re.compile(
    r'^\s*(?P<left>"[^"]+"|[\w-]+)\s*(?P<card>[|}{o]{1,2}(?:--|\.\.)[|}{o]{1,2})\s*'
    r'(?P<right>"[^"]+"|[\w-]+)\s*(?::\s*(?P<label>.*))?$'
)


@dataclass(frozen=True)
class SourceLine:
    """A significant line: not blank and not a %% comment."""

    number: int
    text: str

    @property
    def stripped(self) -> str:
        return self.text.strip()

    @property
    def first_word(self) -> str:
        parts = self.stripped.split(None, 1)
        return parts[0] if parts else ""

    @property
    def indent(self) -> int:
        return len(self.text) - len(self.text.lstrip(" \t"))


def strip_fences(code: str) -> str:
    """Blank out Markdown ```mermaid fence lines, keeping line numbering intact."""
    lines = code.splitlines()
    return "\n".join("" if _FENCE_RE.match(line) else line for line in lines)


def blank_comments(code: str) -> str:
    """Blank out %% comment and directive lines, keeping line numbering intact."""
    return "\n".join("" if line.lstrip().startswith("%%") else line for line in code.splitlines())


def significant_lines(code: str) -> List[SourceLine]:
    result = []
    for number, text in enumerate(code.splitlines(), start=1):
        stripped = text.strip()
        if not stripped or stripped.startswith("%%"):
            continue
        result.append(SourceLine(number=number, text=text.rstrip()))
    return result


def split_header(code: str) -> Tuple[Optional[SourceLine], List[SourceLine]]:
    """Return the header line and the remaining significant lines."""
    lines = significant_lines(code)
    if not lines:
        return None, []
    return lines[0], lines[1:]


def header_keyword(line: SourceLine) -> str:
    """Header keyword with any trailing ':' removed (as in 'gitGraph LR:')."""
    return line.first_word.rstrip(":").lower()


def detect_diagram_type(code: str) -> Optional[str]:
    header, _ = split_header(code)
    if header is None:
        return None
    return HEADER_KEYWORDS.get(header_keyword(header))


def normalize_type(name: Optional[str]) -> Optional[str]:
    if name is None:
        return None
    return TYPE_ALIASES.get(name.strip().lower())


def mask_text(line: str) -> str:
    """Replace quoted strings and |edge labels| with spaces, preserving columns."""

    def _blank(match: "re.Match[str]") -> str:
        return " " * len(match.group(0))

    return _PIPE_LABEL_RE.sub(_blank, _QUOTED_RE.sub(_blank, line))


def mask_brackets(line: str) -> str:
    """Blank the contents of [..], (..) and {..} groups, preserving columns."""
    out = []
    depth = 0
    for char in line:
        if char in "[({":
            depth += 1
            out.append(char)
        elif char in "])}" and depth:
            depth -= 1
            out.append(char)
        else:
            out.append(" " if depth else char)
    return "".join(out)
