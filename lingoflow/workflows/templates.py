# /lingoflow/workflows/templates.py

"""
Prompt template model.

A template string is compiled once into an ordered tuple of nodes:

- ``Literal``: text copied verbatim
- ``Slot``: ``{{name}}``, replaced by the resolved value of ``name``
- ``Conditional``: ``{{#if name}}...{{else}}...{{/if}}``, choosing a branch on
  whether ``name`` resolves to a present value (branches may nest)

Rendering walks the nodes against a resolver callable, so substitution is a
pure function of whatever the resolver reads. Only compilation scans the
source text.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Tuple, Union

_TAG_RE = re.compile(r"\{\{\s*(#if\s+[A-Za-z_][\w.]*|else|/if|[A-Za-z_][\w.]*)\s*\}\}")


class TemplateSyntaxError(ValueError):
    """Unbalanced or misplaced conditional tags."""


@dataclass(frozen=True)
class Literal:
    text: str


@dataclass(frozen=True)
class Slot:
    name: str


@dataclass(frozen=True)
class Conditional:
    field: str
    then: Tuple["TemplateNode", ...]
    otherwise: Tuple["TemplateNode", ...] = ()


TemplateNode = Union[Literal, Slot, Conditional]
Resolver = Callable[[str], Any]


def is_present(value: Any) -> bool:
    """Whether a value counts as set for ``{{#if}}`` purposes."""
    if value is None:
        return False
    if isinstance(value, (str, list, dict, tuple)) and len(value) == 0:
        return False
    return True


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


class _Frame:
    def __init__(self, field: str):
        self.field = field
        self.then: List[TemplateNode] = []
        self.otherwise: List[TemplateNode] = []
        self.in_else = False

    @property
    def target(self) -> List[TemplateNode]:
        return self.otherwise if self.in_else else self.then


@dataclass(frozen=True)
class Template:
    source: str
    nodes: Tuple[TemplateNode, ...]

    def render(self, resolve: Resolver) -> str:
        return _render_nodes(self.nodes, resolve)

    @property
    def slot_names(self) -> List[str]:
        names: List[str] = []
        _collect_names(self.nodes, names)
        return names


def compile_template(source: str) -> Template:
    """
    Compiles a template string into a Template.

    Args:
        source: Template text using ``{{slot}}`` and ``{{#if x}}..{{else}}..{{/if}}``

    Returns:
        The compiled Template

    Raises:
        TemplateSyntaxError: on a stray ``{{else}}``/``{{/if}}`` or an unclosed ``{{#if}}``
    """
    root: List[TemplateNode] = []
    stack: List[_Frame] = []

    def emit(node: TemplateNode):
        (stack[-1].target if stack else root).append(node)

    position = 0
    for match in _TAG_RE.finditer(source):
        if match.start() > position:
            emit(Literal(source[position:match.start()]))
        position = match.end()

        tag = match.group(1)
        if tag.startswith("#if"):
            stack.append(_Frame(tag[3:].strip()))
        elif tag == "else":
            if not stack or stack[-1].in_else:
                raise TemplateSyntaxError(f"Unexpected {{{{else}}}} at offset {match.start()}")
            stack[-1].in_else = True
        elif tag == "/if":
            if not stack:
                raise TemplateSyntaxError(f"Unexpected {{{{/if}}}} at offset {match.start()}")
            frame = stack.pop()
            emit(Conditional(frame.field, tuple(frame.then), tuple(frame.otherwise)))
        else:
            emit(Slot(tag))

    if position < len(source):
        emit(Literal(source[position:]))

    if stack:
        raise TemplateSyntaxError(f"Unclosed {{{{#if {stack[-1].field}}}}}")

    return Template(source=source, nodes=tuple(root))


def _render_nodes(nodes: Tuple[TemplateNode, ...], resolve: Resolver) -> str:
    parts: List[str] = []
    for node in nodes:
        if isinstance(node, Literal):
            parts.append(node.text)
        elif isinstance(node, Slot):
            parts.append(stringify(resolve(node.name)))
        else:
            branch = node.then if is_present(resolve(node.field)) else node.otherwise
            parts.append(_render_nodes(branch, resolve))
    return "".join(parts)


def _collect_names(nodes: Tuple[TemplateNode, ...], names: List[str]):
    for node in nodes:
        if isinstance(node, Slot):
            names.append(node.name)
        elif isinstance(node, Conditional):
            names.append(node.field)
            _collect_names(node.then, names)
            _collect_names(node.otherwise, names)
