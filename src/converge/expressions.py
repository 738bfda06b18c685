"""Interpolation expressions and deferred references.

Attribute strings may contain ``${...}`` expressions:

- ``${var.location}``: a variable, substituted when the graph is built
- ``${count.index}`` / ``${each.key}`` / ``${each.value}``: the instance
  key of an expanded block, substituted when the graph is built
- ``${azure_virtual_network.hub.id}``: an attribute of another resource,
  kept as a deferred ``Template`` and resolved only when that resource has
  been applied
- ``${azure_subnet.app[0].id}``, ``${azure_subnet.app["web"].id}``,
  ``${azure_subnet.app[*].id}``: instance and splat references

``$${`` escapes a literal ``${``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from .address import ResourceAddress

_INTERPOLATION = re.compile(r"\$\$\{|\$\{([^}]*)\}")
_TOKEN = re.compile(
    r'\s*(?:(?P<ident>[A-Za-z_][A-Za-z0-9_-]*)'
    r'|\[\s*(?P<index>\d+|"(?:[^"\\]|\\.)*"|\*)\s*\]'
    r'|(?P<dot>\.))'
)

STATIC_ROOTS = ("var", "count", "each")


class ExpressionError(Exception):
    """Raised when an interpolation expression is malformed."""

    pass


class UnresolvedReferenceError(Exception):
    """Raised when a reference cannot be resolved to a value."""

    def __init__(self, message: str, reference: str | None = None) -> None:
        super().__init__(message)
        self.reference = reference


class _Unknown:
    """Placeholder for a value only known after apply."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __deepcopy__(self, memo: dict[int, Any]) -> _Unknown:
        return self

    def __copy__(self) -> _Unknown:
        return self

    def __reduce__(self) -> str:
        return "UNKNOWN"


UNKNOWN = _Unknown()

PathStep = str | int


@dataclass(frozen=True)
class Reference:
    """A reference to an attribute of another resource.

    Attributes:
        target: Referenced resource. Without index for plain blocks and for
            splat references.
        path: Attribute path inside the referenced resource.
        splat: True for ``type.name[*]`` references (list over instances).
        expression: Original expression text, for error messages.
    """

    target: ResourceAddress
    path: tuple[PathStep, ...] = ()
    splat: bool = False
    expression: str = field(default="", compare=False)

    def __str__(self) -> str:
        return self.expression or str(self.target)


@dataclass(frozen=True)
class Template:
    """A string with at least one deferred resource reference.

    This is the thunk evaluated at execution time: ``resolve`` substitutes
    the referenced values through a caller-supplied lookup.
    """

    parts: tuple[str | Reference, ...]

    @property
    def references(self) -> tuple[Reference, ...]:
        return tuple(p for p in self.parts if isinstance(p, Reference))

    def resolve(self, lookup: Callable[[Reference], Any]) -> Any:
        if len(self.parts) == 1 and isinstance(self.parts[0], Reference):
            return lookup(self.parts[0])

        rendered: list[str] = []
        for part in self.parts:
            if isinstance(part, Reference):
                value = lookup(part)
                if value is UNKNOWN or contains_unknown(value):
                    return UNKNOWN
                rendered.append(render(value))
            else:
                rendered.append(part)
        return "".join(rendered)

    def __str__(self) -> str:
        return "".join(
            f"${{{part}}}" if isinstance(part, Reference) else part.replace("${", "$${")
            for part in self.parts
        )


@dataclass(frozen=True)
class EvaluationContext:
    """Static values available while building one node."""

    variables: dict[str, Any] = field(default_factory=dict)
    count_index: int | None = None
    each_key: str | None = None
    each_value: Any = None


def render(value: Any) -> str:
    """Render a resolved value for string interpolation."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, dict | list):
        return json.dumps(value, sort_keys=True)
    return str(value)


def traverse(value: Any, path: tuple[PathStep, ...], expression: str = "") -> Any:
    """Walk ``path`` into nested mappings and lists.

    Raises:
        UnresolvedReferenceError: If a step does not exist.
    """
    current = value
    for step in path:
        if current is UNKNOWN:
            return UNKNOWN
        try:
            if isinstance(step, int):
                current = current[step]
            elif isinstance(current, dict):
                current = current[step]
            else:
                raise TypeError(f"cannot read '{step}' from {type(current).__name__}")
        except (KeyError, IndexError, TypeError) as e:
            raise UnresolvedReferenceError(
                f"Cannot resolve '{expression or '.'.join(map(str, path))}': {e}",
                reference=expression,
            ) from e
    return current


def _tokenize(expression: str) -> list[tuple[str, Any]]:
    tokens: list[tuple[str, Any]] = []
    pos = 0
    text = expression.strip()
    while pos < len(text):
        match = _TOKEN.match(text, pos)
        if match is None or match.end() == pos:
            raise ExpressionError(f"Invalid expression '{expression}' at offset {pos}")
        pos = match.end()
        if match.group("ident") is not None:
            tokens.append(("ident", match.group("ident")))
        elif match.group("index") is not None:
            raw = match.group("index")
            if raw == "*":
                tokens.append(("splat", "*"))
            elif raw.startswith('"'):
                tokens.append(("index", json.loads(raw)))
            else:
                tokens.append(("index", int(raw)))
        else:
            tokens.append(("dot", "."))
    return tokens


def _path_steps(tokens: list[tuple[str, Any]], expression: str) -> tuple[PathStep, ...]:
    """Convert ``.a.b[0]`` token sequences into path steps."""
    steps: list[PathStep] = []
    expect_ident = False
    for kind, value in tokens:
        if expect_ident:
            if kind != "ident":
                raise ExpressionError(f"Expected attribute name after '.' in '{expression}'")
            steps.append(value)
            expect_ident = False
        elif kind == "dot":
            expect_ident = True
        elif kind == "index":
            steps.append(value)
        else:
            raise ExpressionError(f"Unexpected '{value}' in '{expression}'")
    if expect_ident:
        raise ExpressionError(f"Expression '{expression}' ends with '.'")
    return tuple(steps)


def _evaluate_static(
    root: str, tokens: list[tuple[str, Any]], expression: str, context: EvaluationContext
) -> Any:
    rest = tokens[1:]
    if root == "var":
        if len(rest) < 2 or rest[0][0] != "dot" or rest[1][0] != "ident":
            raise ExpressionError(f"Expected 'var.<name>' in '{expression}'")
        name = rest[1][1]
        if name not in context.variables:
            raise UnresolvedReferenceError(
                f"Unknown variable '{name}' in '${{{expression}}}'", reference=expression
            )
        return traverse(context.variables[name], _path_steps(rest[2:], expression), expression)

    if root == "count":
        if rest != [("dot", "."), ("ident", "index")]:
            raise ExpressionError(f"Expected 'count.index' in '{expression}'")
        if context.count_index is None:
            raise UnresolvedReferenceError(
                f"'count.index' used in a block without count: '${{{expression}}}'",
                reference=expression,
            )
        return context.count_index

    # each.key / each.value[...]
    if len(rest) < 2 or rest[0][0] != "dot" or rest[1][1] not in ("key", "value"):
        raise ExpressionError(f"Expected 'each.key' or 'each.value' in '{expression}'")
    if context.each_key is None:
        raise UnresolvedReferenceError(
            f"'each' used in a block without forEach: '${{{expression}}}'",
            reference=expression,
        )
    if rest[1][1] == "key":
        if len(rest) > 2:
            raise ExpressionError(f"'each.key' takes no attribute path: '{expression}'")
        return context.each_key
    return traverse(context.each_value, _path_steps(rest[2:], expression), expression)


def parse_reference(expression: str) -> Reference:
    """Parse a resource reference expression (without ``${}``).

    Raises:
        ExpressionError: If the expression is not a resource reference.
    """
    tokens = _tokenize(expression)
    if (
        len(tokens) < 3
        or tokens[0][0] != "ident"
        or tokens[1][0] != "dot"
        or tokens[2][0] != "ident"
    ):
        raise ExpressionError(f"Expected '<type>.<name>' reference in '{expression}'")

    resource_type = tokens[0][1]
    name = tokens[2][1]
    rest = tokens[3:]
    index: int | str | None = None
    splat = False
    if rest and rest[0][0] in ("index", "splat"):
        if rest[0][0] == "splat":
            splat = True
        else:
            index = rest[0][1]
        rest = rest[1:]

    return Reference(
        target=ResourceAddress(resource_type, name, index),
        path=_path_steps(rest, expression),
        splat=splat,
        expression=expression.strip(),
    )


def compile_string(text: str, context: EvaluationContext) -> Any:
    """Compile one attribute string.

    Static expressions are substituted immediately. Returns a ``Template``
    when resource references remain, the raw value when the whole string is
    a single static expression, and a plain string otherwise.
    """
    parts: list[Any] = []
    pos = 0
    for match in _INTERPOLATION.finditer(text):
        if match.start() > pos:
            parts.append(text[pos : match.start()])
        pos = match.end()
        if match.group(0) == "$${":
            parts.append("${")
            continue

        expression = match.group(1)
        tokens = _tokenize(expression)
        if not tokens or tokens[0][0] != "ident":
            raise ExpressionError(f"Invalid expression '${{{expression}}}'")

        root = tokens[0][1]
        if root in STATIC_ROOTS:
            value = _evaluate_static(root, tokens, expression, context)
            parts.append(_StaticValue(value))
        else:
            parts.append(parse_reference(expression))
    if pos < len(text):
        parts.append(text[pos:])

    # Whole string is one static expression: keep its type
    if len(parts) == 1 and isinstance(parts[0], _StaticValue):
        return parts[0].value

    # Fold static values into literal text
    folded: list[str | Reference] = []
    for part in parts:
        if isinstance(part, _StaticValue):
            part = render(part.value)
        if isinstance(part, str) and folded and isinstance(folded[-1], str):
            folded[-1] = folded[-1] + part
        else:
            folded.append(part)

    if not any(isinstance(p, Reference) for p in folded):
        return "".join(p for p in folded if isinstance(p, str))
    return Template(tuple(folded))


@dataclass(frozen=True)
class _StaticValue:
    value: Any


def compile_value(value: Any, context: EvaluationContext) -> Any:
    """Compile a nested attribute value (mappings, lists, scalars)."""
    if isinstance(value, str):
        return compile_string(value, context)
    if isinstance(value, dict):
        return {str(k): compile_value(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [compile_value(v, context) for v in value]
    return value


def iter_templates(value: Any) -> Iterator[Template]:
    if isinstance(value, Template):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_templates(item)
    elif isinstance(value, list):
        for item in value:
            yield from iter_templates(item)


def collect_references(value: Any) -> list[Reference]:
    """All deferred references inside a nested value."""
    return [ref for template in iter_templates(value) for ref in template.references]


def resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Evaluate every ``Template`` inside a nested value."""
    if isinstance(value, Template):
        return value.resolve(lookup)
    if isinstance(value, dict):
        return {k: resolve_value(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, lookup) for v in value]
    return value


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def to_display(value: Any) -> Any:
    """Replace templates and UNKNOWN with printable strings."""
    if isinstance(value, Template):
        return str(value)
    if value is UNKNOWN:
        return repr(UNKNOWN)
    if isinstance(value, dict):
        return {k: to_display(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_display(v) for v in value]
    return value
