"""
Dollar-delimited template engine.

Supported:
- Variables: $name$, dotted names: $author.name$
- Conditionals: $if(name)$ ... $else$ ... $endif$
- Loops: $for(items)$ ... $sep$ ... $endfor$ (inside the body, $items$ is the current element)
- Escaped dollar: $$ renders a literal "$"

A conditional or loop whose opening tag and closing tag are each followed by a
newline swallows both newlines, so blocks written on lines of their own do not
leave blank lines behind.

Templates are compiled once with compile_template() and can be rendered any
number of times. Rendering never fails: missing values render as "".
"""
from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union
import logging
import re

logger = logging.getLogger(__name__)

# Control constructs nested deeper than this are rejected at compile time,
# which keeps the recursive evaluator well inside the interpreter stack.
MAX_NESTING = 64

EXCERPT_LENGTH = 40

RESERVED = ("if", "endif", "else", "for", "endfor", "sep")

# -----------------------------
# Errors
# -----------------------------
class ParseFailure(ValueError):
    """Raised when template source cannot be compiled."""

    def __init__(self, source: str, offset: int, message: Optional[str] = None):
        self.offset = offset
        self.line = _line_number(source, offset)
        self.excerpt = source[offset:offset + EXCERPT_LENGTH]
        self.at_end = offset >= len(source)
        if message is None:
            if self.at_end:
                message = "parse failure at the end of the template"
            else:
                message = f"parse failure on line {self.line} near '{self.excerpt}'"
        super().__init__(message)


class NestingTooDeep(ParseFailure):
    def __init__(self, source: str, offset: int):
        super().__init__(
            source,
            offset,
            f"control structures nested deeper than {MAX_NESTING} levels on line {_line_number(source, offset)}",
        )


_NEWLINE_RE = re.compile(r"\r\n|\r|\n")

def _line_number(source: str, offset: int) -> int:
    return len(_NEWLINE_RE.findall(source, 0, offset)) + 1

# -----------------------------
# AST nodes
# -----------------------------
Reference = Tuple[str, ...]

@dataclass(frozen=True)
class Literal:
    text: str

@dataclass(frozen=True)
class Variable:
    reference: Reference

@dataclass(frozen=True)
class Conditional:
    reference: Reference
    then: "Template"
    otherwise: Optional["Template"] = None

@dataclass(frozen=True)
class Loop:
    reference: Reference
    body: "Template"
    separator: Optional["Template"] = None


Node = Union[Literal, Variable, Conditional, Loop]


@dataclass(frozen=True)
class Template:
    nodes: Tuple[Node, ...] = ()

    def render(self, context: Mapping) -> str:
        return render(self, context)

# -----------------------------
# Parsing
# -----------------------------
_REFERENCE_RE = re.compile(r"[A-Za-z0-9_-]+(?:\.[A-Za-z0-9_-]+)*")
_RESERVED_RE = re.compile(r"(?:%s)\$" % "|".join(RESERVED))
_LITERAL_RE = re.compile(r"[^$]+")

# (opening keyword, middle tag, closing tag, node class)
_IF = ("if", "$else$", "$endif$", Conditional)
_FOR = ("for", "$sep$", "$endfor$", Loop)


class _Parser:
    """Recursive-descent parser with ordered choice.

    Alternatives are tried in a fixed order at each position: conditional,
    loop, variable, escaped dollar, literal run. Parsed sub-templates are
    memoised by start offset, so falling back from the newline-swallowing
    form of a block to the plain form does not reparse its body.
    """

    def __init__(self, source: str):
        self.source = source
        self._templates: Dict[int, Tuple[Tuple[Node, ...], int]] = {}

    def parse(self) -> Template:
        nodes, end = self._template(0, 0)
        if end != len(self.source):
            raise ParseFailure(self.source, end)
        return Template(nodes)

    def _template(self, pos: int, depth: int) -> Tuple[Tuple[Node, ...], int]:
        if depth > MAX_NESTING:
            raise NestingTooDeep(self.source, pos)
        cached = self._templates.get(pos)
        if cached is not None:
            return cached
        start = pos
        nodes: List[Node] = []
        while pos < len(self.source):
            step = (
                self._block(pos, depth, _IF)
                or self._block(pos, depth, _FOR)
                or self._variable(pos)
                or self._escaped_dollar(pos)
                or self._literal(pos)
            )
            if step is None:
                break
            node, pos = step
            nodes.append(node)
        result = (tuple(nodes), pos)
        self._templates[start] = result
        return result

    def _newline(self, pos: int) -> Optional[int]:
        m = _NEWLINE_RE.match(self.source, pos)
        return m.end() if m else None

    def _reference(self, pos: int) -> Optional[Tuple[Reference, int]]:
        m = _REFERENCE_RE.match(self.source, pos)
        if not m:
            return None
        return tuple(m.group(0).split(".")), m.end()

    def _block(self, pos: int, depth: int, kind) -> Optional[Tuple[Node, int]]:
        keyword, middle, closer, node_type = kind
        opener = "$" + keyword + "("
        if not self.source.startswith(opener, pos):
            return None
        found = self._reference(pos + len(opener))
        if found is None:
            return None
        reference, after = found
        if not self.source.startswith(")$", after):
            return None
        after += 2

        # Newline after the opening tag only counts if the closing tag has one too.
        parts = None
        nl_end = self._newline(after)
        if nl_end is not None:
            parts = self._block_rest(nl_end, depth, middle, closer, swallow_newline=True)
        if parts is None:
            parts = self._block_rest(after, depth, middle, closer, swallow_newline=False)
        if parts is None:
            return None
        first, second, end = parts
        return node_type(reference, first, second), end

    def _block_rest(self, pos: int, depth: int, middle: str, closer: str, swallow_newline: bool):
        nodes, pos = self._template(pos, depth + 1)
        first = Template(nodes)
        second = None
        if self.source.startswith(middle, pos):
            nodes, pos = self._template(pos + len(middle), depth + 1)
            second = Template(nodes)
        if not self.source.startswith(closer, pos):
            return None
        pos += len(closer)
        if swallow_newline:
            pos = self._newline(pos)
            if pos is None:
                return None
        return first, second, pos

    def _variable(self, pos: int) -> Optional[Tuple[Node, int]]:
        if not self.source.startswith("$", pos):
            return None
        # $else$, $endif$ ... are control tags, never variables.
        if _RESERVED_RE.match(self.source, pos + 1):
            return None
        found = self._reference(pos + 1)
        if found is None:
            return None
        reference, end = found
        if not self.source.startswith("$", end):
            return None
        return Variable(reference), end + 1

    def _escaped_dollar(self, pos: int) -> Optional[Tuple[Node, int]]:
        if self.source.startswith("$$", pos):
            return Literal("$"), pos + 2
        return None

    def _literal(self, pos: int) -> Optional[Tuple[Node, int]]:
        m = _LITERAL_RE.match(self.source, pos)
        if not m:
            return None
        return Literal(m.group(0)), m.end()


def compile_template(source: str) -> Template:
    """Compile template source into a reusable Template.

    Raises ParseFailure (with .line, .excerpt and .offset) on malformed input.
    """
    template = _Parser(source).parse()
    logger.debug("Compiled template: %d top-level nodes", len(template.nodes))
    return template

# -----------------------------
# Values and lookup
# -----------------------------
def _is_sequence(val: Any) -> bool:
    return isinstance(val, (list, tuple))

def is_truthy(val: Any) -> bool:
    # Only null, false and the empty list are falsy; "", 0 and {} are truthy.
    if val is None or val is False:
        return False
    if _is_sequence(val) and len(val) == 0:
        return False
    return True

def to_text(val: Any) -> str:
    if val is True:
        return "true"
    if val is False:
        return "false"
    if isinstance(val, str):
        return val
    if _is_sequence(val):
        return "".join(to_text(item) for item in val if is_truthy(item))
    if isinstance(val, Mapping):
        return "true"
    return str(val)

def resolve(reference: Reference, context: Any) -> Any:
    cur = context
    for part in reference:
        if not isinstance(cur, Mapping) or part not in cur:
            return None
        cur = cur[part]
    return cur

def bind(reference: Reference, value: Any, context: Any) -> None:
    """Set the slot named by reference; does nothing if the path is missing."""
    cur = context
    for part in reference[:-1]:
        if not isinstance(cur, Mapping) or part not in cur:
            return
        cur = cur[part]
    if isinstance(cur, MutableMapping):
        cur[reference[-1]] = value

def trim(s: str) -> str:
    """Drop one leading and one trailing line break, but only if s starts with one."""
    if not s.startswith(("\r", "\n")):
        return s
    m = _NEWLINE_RE.match(s)
    s = s[m.end():]
    for nl in ("\r\n", "\n", "\r"):
        if s.endswith(nl):
            return s[:-len(nl)]
    return s

# -----------------------------
# Rendering
# -----------------------------
def _render_loop(node: Loop, context: Any) -> str:
    value = resolve(node.reference, context)
    if not is_truthy(value):
        return ""
    items = value if _is_sequence(value) else [value]
    last = len(items) - 1
    out: List[str] = []
    for i, item in enumerate(items):
        bind(node.reference, item, context)
        try:
            out.append(_render_nodes(node.body.nodes, context))
            if node.separator is not None and i < last:
                out.append(_render_nodes(node.separator.nodes, context))
        finally:
            bind(node.reference, value, context)
    return trim("".join(out))

def _render_nodes(nodes: Tuple[Node, ...], context: Any) -> str:
    out: List[str] = []
    for node in nodes:
        if isinstance(node, Literal):
            out.append(node.text)
        elif isinstance(node, Variable):
            val = resolve(node.reference, context)
            if is_truthy(val):
                out.append(to_text(val))
        elif isinstance(node, Conditional):
            if is_truthy(resolve(node.reference, context)):
                out.append(trim(_render_nodes(node.then.nodes, context)))
            elif node.otherwise is not None:
                out.append(trim(_render_nodes(node.otherwise.nodes, context)))
        elif isinstance(node, Loop):
            out.append(_render_loop(node, context))
    return "".join(out)

def render(template: Template, context: Mapping) -> str:
    """Render a compiled template against context.

    Loops temporarily rebind their reference inside context; the original
    values are back in place when this returns. Do not share one context
    between concurrent renders.
    """
    return _render_nodes(template.nodes, context)

def render_template(source: str, context: Mapping) -> str:
    return render(compile_template(source), context)
