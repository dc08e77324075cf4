"""
Formal grammars for the diagram types validated by a parser.

Each grammar is Lark EBNF compiled once with the LALR parser. After a
successful parse a small semantic pass walks the tree; anything the grammar
cannot express (unknown branches, overlapping packet ranges) is reported
there.
"""

from functools import lru_cache
from typing import Callable, Dict, Iterable, List, Optional, Set

from lark import Lark, Token, Tree
from lark.exceptions import UnexpectedCharacters, UnexpectedEOF, UnexpectedInput, UnexpectedToken

from common.errors import ValidationEngineError
from common.logging import get_logger
from common.models import Diagnostic, Severity
from diagrams.syntax import blank_comments

logger = get_logger(__name__)

_COMMON = r"""
    LINE_TEXT: /[^\r\n]+/
    ACC_BLOCK: /\{[^}]*\}/
    _NL: /(\r?\n[\t ]*)+/

    %import common.ESCAPED_STRING
    %import common.NUMBER
    %import common.INT
    %import common.WS_INLINE
    %ignore WS_INLINE
"""

PIE_GRAMMAR = r"""
    start: _NL? header (_NL statement)* _NL?

    header: "pie" SHOW_DATA? header_title?
    header_title: "title" LINE_TEXT
    SHOW_DATA: "showData"

    ?statement: slice
              | title
              | acc_title
              | acc_descr

    slice: ESCAPED_STRING ":" NUMBER
    title: "title" LINE_TEXT
    acc_title: "accTitle" ":" LINE_TEXT
    acc_descr: "accDescr" ":" LINE_TEXT
             | "accDescr" ACC_BLOCK
""" + _COMMON

GITGRAPH_GRAMMAR = r"""
    start: _NL? header (_NL statement)* _NL?

    header: "gitGraph" ORIENTATION? ":"?
    ORIENTATION: "LR" | "TB" | "BT"

    ?statement: commit
              | branch
              | checkout
              | merge
              | cherry_pick
              | title
              | acc_title
              | acc_descr

    commit: "commit" (opt_id | opt_tag | opt_type | opt_msg)*
    branch: "branch" REF opt_order?
    checkout: ("checkout" | "switch") REF
    merge: "merge" REF (opt_id | opt_tag | opt_type)*
    cherry_pick: "cherry-pick" (opt_id | opt_tag | opt_parent)+

    opt_id: "id" ":" ESCAPED_STRING
    opt_tag: "tag" ":" ESCAPED_STRING
    opt_msg: "msg" ":" ESCAPED_STRING
    opt_parent: "parent" ":" ESCAPED_STRING
    opt_type: "type" ":" COMMIT_TYPE
    opt_order: "order" ":" INT

    COMMIT_TYPE: "NORMAL" | "REVERSE" | "HIGHLIGHT"
    REF: /[A-Za-z0-9_][\w\-.\/]*/

    title: "title" LINE_TEXT
    acc_title: "accTitle" ":" LINE_TEXT
    acc_descr: "accDescr" ":" LINE_TEXT
             | "accDescr" ACC_BLOCK
""" + _COMMON

PACKET_GRAMMAR = r"""
    start: _NL? header (_NL statement)* _NL?

    header: PACKET_KEYWORD
    PACKET_KEYWORD: "packet-beta" | "packet"

    ?statement: block
              | title
              | acc_title
              | acc_descr

    block: INT "-" INT ":" ESCAPED_STRING -> range_block
         | INT ":" ESCAPED_STRING -> bit_block
         | "+" INT ":" ESCAPED_STRING -> sized_block

    title: "title" LINE_TEXT
    acc_title: "accTitle" ":" LINE_TEXT
    acc_descr: "accDescr" ":" LINE_TEXT
             | "accDescr" ACC_BLOCK
""" + _COMMON

GRAMMARS: Dict[str, str] = {
    "pie": PIE_GRAMMAR,
    "gitgraph": GITGRAPH_GRAMMAR,
    "packet": PACKET_GRAMMAR,
}

_FRIENDLY_TERMINALS = {
    "_NL": "a line break",
    "$END": "end of input",
    "ESCAPED_STRING": "a quoted string",
    "NUMBER": "a number",
    "INT": "an integer",
    "REF": "a branch name",
    "LINE_TEXT": "text",
    "ACC_BLOCK": "a { ... } block",
    "COMMIT_TYPE": "NORMAL, REVERSE or HIGHLIGHT",
    "ORIENTATION": "LR, TB or BT",
}

PIE_SLICE_SOFT_LIMIT = 7


@lru_cache(maxsize=None)
def get_parser(diagram_type: str) -> Lark:
    """Build (once per process) the LALR parser for a grammar-backed type."""
    grammar = GRAMMARS[diagram_type]
    logger.debug(event="grammar_compiled", diagram_type=diagram_type)
    return Lark(grammar, parser="lalr", start="start", propagate_positions=True)


def _describe_expected(parser: Lark, names: Iterable[str]) -> List[str]:
    described = set()
    for name in names:
        if name in _FRIENDLY_TERMINALS:
            described.add(_FRIENDLY_TERMINALS[name])
            continue
        try:
            terminal = parser.get_terminal(name)
        except KeyError:
            described.add(name.lower())
            continue
        if terminal.pattern.type == "str":
            described.add(f"'{terminal.pattern.value}'")
        else:
            described.add(name.lower())
    return sorted(described)


def _parse_error_to_diagnostic(parser: Lark, exc: UnexpectedInput) -> Diagnostic:
    line = exc.line if isinstance(exc.line, int) and exc.line > 0 else None
    column = exc.column if isinstance(exc.column, int) and exc.column > 0 else None

    if isinstance(exc, UnexpectedToken):
        expected = exc.expected
        if exc.token.type == "$END":
            message = "Unexpected end of input"
        elif exc.token.type == "_NL":
            message = "Unexpected line break"
        else:
            message = f"Unexpected '{str(exc.token).strip() or exc.token.type}'"
    elif isinstance(exc, UnexpectedCharacters):
        expected = exc.allowed or set()
        message = f"Unexpected character '{exc.char}'"
    elif isinstance(exc, UnexpectedEOF):
        expected = exc.expected
        message = "Unexpected end of input"
    else:
        expected = set()
        message = "Syntax error"

    described = _describe_expected(parser, expected or [])
    suggestion = f"Expected {', '.join(described)}" if described else None
    if line is not None:
        message = f"{message} at line {line}"
    return Diagnostic(
        severity=Severity.ERROR,
        message=message,
        line=line,
        column=column,
        suggestion=suggestion,
        rule="grammar",
    )


def _token_pos(node: Tree) -> Dict[str, Optional[int]]:
    if not node.meta.empty:
        return {"line": node.meta.line, "column": node.meta.column}
    for token in node.scan_values(lambda v: isinstance(v, Token)):
        return {"line": token.line, "column": token.column}
    return {"line": None, "column": None}


def _unquote(token: Token) -> str:
    return str(token)[1:-1]


def _option(node: Tree, name: str) -> Optional[Token]:
    for child in node.children:
        if isinstance(child, Tree) and child.data == name:
            return child.children[0]
    return None


def _check_pie(tree: Tree) -> List[Diagnostic]:
    slices = list(tree.find_data("slice"))
    diagnostics = []
    if not slices:
        diagnostics.append(
            Diagnostic(
                severity=Severity.WARNING,
                message="Pie chart has no slices",
                suggestion='Add slices such as "Label" : 42',
                rule="pie-empty",
            )
        )
    elif len(slices) > PIE_SLICE_SOFT_LIMIT:
        diagnostics.append(
            Diagnostic(
                severity=Severity.INFO,
                message=f"Pie chart has {len(slices)} slices; more than "
                f"{PIE_SLICE_SOFT_LIMIT} is hard to read",
                suggestion="Group small slices into an 'Other' slice",
                rule="pie-too-many-slices",
            )
        )
    return diagnostics


def _check_gitgraph(tree: Tree) -> List[Diagnostic]:
    branches: Set[str] = {"main"}
    commit_ids: Set[str] = set()
    current = "main"
    diagnostics: List[Diagnostic] = []

    def error(node: Tree, message: str, suggestion: str, rule: str) -> None:
        diagnostics.append(
            Diagnostic(
                severity=Severity.ERROR,
                message=message,
                suggestion=suggestion,
                rule=rule,
                **_token_pos(node),
            )
        )

    def record_id(node: Tree) -> None:
        commit_id = _option(node, "opt_id")
        if commit_id is None:
            return
        value = _unquote(commit_id)
        if value in commit_ids:
            error(node, f"Duplicate commit id '{value}'", "Use a unique id", "git-duplicate-id")
        commit_ids.add(value)

    for node in tree.children:
        if not isinstance(node, Tree):
            continue
        if node.data == "commit":
            record_id(node)
        elif node.data == "branch":
            name = str(node.children[0])
            if name in branches:
                error(
                    node,
                    f"Branch '{name}' already exists",
                    f"Use 'checkout {name}' to switch to it",
                    "git-duplicate-branch",
                )
            branches.add(name)
            current = name
        elif node.data == "checkout":
            name = str(node.children[0])
            if name not in branches:
                error(
                    node,
                    f"Cannot checkout unknown branch '{name}'",
                    f"Create it first with 'branch {name}'",
                    "git-unknown-branch",
                )
            else:
                current = name
        elif node.data == "merge":
            name = str(node.children[0])
            if name not in branches:
                error(
                    node,
                    f"Cannot merge unknown branch '{name}'",
                    f"Create it first with 'branch {name}'",
                    "git-unknown-branch",
                )
            elif name == current:
                error(
                    node,
                    f"Cannot merge branch '{name}' into itself",
                    "Checkout the target branch before merging",
                    "git-self-merge",
                )
            record_id(node)
        elif node.data == "cherry_pick":
            picked = _option(node, "opt_id")
            if picked is not None and _unquote(picked) not in commit_ids:
                error(
                    node,
                    f"Cannot cherry-pick unknown commit '{_unquote(picked)}'",
                    "Reference the id of an earlier commit",
                    "git-unknown-commit",
                )
    return diagnostics


def _check_packet(tree: Tree) -> List[Diagnostic]:
    next_bit = 0
    diagnostics: List[Diagnostic] = []

    for node in tree.children:
        if not isinstance(node, Tree) or node.data not in (
            "range_block",
            "bit_block",
            "sized_block",
        ):
            continue
        numbers = [int(child) for child in node.children if child.type == "INT"]
        if node.data == "range_block":
            start, end = numbers
        elif node.data == "bit_block":
            start = end = numbers[0]
        else:
            if numbers[0] == 0:
                diagnostics.append(
                    Diagnostic(
                        severity=Severity.ERROR,
                        message="Block size must be greater than zero",
                        suggestion="Use '+1' or larger",
                        rule="packet-empty-block",
                        **_token_pos(node),
                    )
                )
                continue
            start, end = next_bit, next_bit + numbers[0] - 1

        if end < start:
            diagnostics.append(
                Diagnostic(
                    severity=Severity.ERROR,
                    message=f"Block end {end} is before its start {start}",
                    suggestion=f"Write the range as {end}-{start}",
                    rule="packet-reversed-range",
                    **_token_pos(node),
                )
            )
            continue
        if start != next_bit:
            problem = "overlaps the previous block" if start < next_bit else "leaves a gap"
            diagnostics.append(
                Diagnostic(
                    severity=Severity.ERROR,
                    message=f"Block starting at bit {start} {problem}",
                    suggestion=f"Start this block at bit {next_bit}",
                    rule="packet-discontiguous",
                    **_token_pos(node),
                )
            )
        next_bit = end + 1
    return diagnostics


SEMANTIC_CHECKS: Dict[str, Callable[[Tree], List[Diagnostic]]] = {
    "pie": _check_pie,
    "gitgraph": _check_gitgraph,
    "packet": _check_packet,
}


def check(diagram_type: str, code: str) -> List[Diagnostic]:
    """
    Run the grammar path for one document.

    Syntax errors become exactly one error Diagnostic. Any other failure
    inside the parser is raised as ValidationEngineError for the caller to
    downgrade.
    """
    parser = get_parser(diagram_type)
    try:
        tree = parser.parse(blank_comments(code))
    except UnexpectedInput as e:
        return [_parse_error_to_diagnostic(parser, e)]
    except Exception as e:
        raise ValidationEngineError(
            f"Parser for '{diagram_type}' failed: {e}",
            details={"diagramType": diagram_type, "errorType": type(e).__name__},
        ) from e

    try:
        return SEMANTIC_CHECKS[diagram_type](tree)
    except Exception as e:
        raise ValidationEngineError(
            f"Semantic check for '{diagram_type}' failed: {e}",
            details={"diagramType": diagram_type, "errorType": type(e).__name__},
        ) from e
