from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from functools import lru_cache
from typing import Union

from packaging.markers import InvalidMarker, Marker
from packaging.specifiers import InvalidSpecifier, Specifier
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion

from pyenvsync.errors import ConstraintError

# The fixed fact schema a marker may reference (PEP 508 environment markers).
MARKER_VARIABLES: frozenset[str] = frozenset({
    "extra",
    "implementation_name",
    "implementation_version",
    "os_name",
    "platform_machine",
    "platform_python_implementation",
    "platform_release",
    "platform_system",
    "platform_version",
    "python_full_version",
    "python_version",
    "sys_platform",
})

VERSION_VARIABLES: frozenset[str] = frozenset({
    "implementation_version",
    "platform_release",
    "python_full_version",
    "python_version",
})

_NEGATED_OPS: dict[str, str] = {
    "==": "!=",
    "!=": "==",
    "<": ">=",
    ">=": "<",
    ">": "<=",
    "<=": ">",
    "in": "not in",
    "not in": "in",
    "===": "!=",
}


class _MarkerBase:
    """Shared behaviour of every node in the marker tree."""

    def evaluate(self, environment: Mapping[str, str]) -> bool:
        raise NotImplementedError

    def variables(self) -> frozenset[str]:
        raise NotImplementedError

    def is_always_true(self) -> bool:
        return False

    def is_always_false(self) -> bool:
        return False

    def canonical(self) -> "MarkerExpr":
        """Re-parses the rendered form, so equal regions compare equal structurally."""
        return parse_marker(str(self))


@dataclass(frozen=True, slots=True)
class MarkerTrue(_MarkerBase):
    def evaluate(self, environment: Mapping[str, str]) -> bool:
        return True

    def variables(self) -> frozenset[str]:
        return frozenset()

    def is_always_true(self) -> bool:
        return True

    def __str__(self) -> str:
        return ""


@dataclass(frozen=True, slots=True)
class MarkerFalse(_MarkerBase):
    def evaluate(self, environment: Mapping[str, str]) -> bool:
        return False

    def variables(self) -> frozenset[str]:
        return frozenset()

    def is_always_false(self) -> bool:
        return True

    def __str__(self) -> str:
        # PEP 508 has no literal false; this comparison never holds.
        return 'python_version < "0"'


@dataclass(frozen=True, slots=True)
class MarkerCompare(_MarkerBase):
    """
    A single comparison between a fact and a literal.

    Attributes:
        variable (str): One of MARKER_VARIABLES.
        op (str): A PEP 508 comparison operator.
        value (str): The literal being compared against.
        reversed (bool): True when the literal is written on the left, as in
            `"arm" in platform_machine`.
    """
    variable: str
    op: str
    value: str
    reversed: bool = False

    def evaluate(self, environment: Mapping[str, str]) -> bool:
        fact = str(environment.get(self.variable, ""))
        value = self.value
        if self.variable == "extra":
            fact = canonicalize_name(fact) if fact else fact
            value = canonicalize_name(value)
        lhs, rhs = (value, fact) if self.reversed else (fact, value)
        return _compare(lhs, self.op, rhs, version_like=self.variable in VERSION_VARIABLES)

    def variables(self) -> frozenset[str]:
        return frozenset({self.variable})

    def __str__(self) -> str:
        if self.reversed:
            return f'"{self.value}" {self.op} {self.variable}'
        return f'{self.variable} {self.op} "{self.value}"'


@dataclass(frozen=True, slots=True)
class MarkerAnd(_MarkerBase):
    children: tuple["MarkerExpr", ...]

    def evaluate(self, environment: Mapping[str, str]) -> bool:
        return all(c.evaluate(environment) for c in self.children)

    def variables(self) -> frozenset[str]:
        return frozenset().union(*(c.variables() for c in self.children))

    def __str__(self) -> str:
        return " and ".join(f"({c})" if _renders_as_or(c) else str(c) for c in self.children)


@dataclass(frozen=True, slots=True)
class MarkerOr(_MarkerBase):
    children: tuple["MarkerExpr", ...]

    def evaluate(self, environment: Mapping[str, str]) -> bool:
        return any(c.evaluate(environment) for c in self.children)

    def variables(self) -> frozenset[str]:
        return frozenset().union(*(c.variables() for c in self.children))

    def __str__(self) -> str:
        return " or ".join(str(c) for c in self.children)


@dataclass(frozen=True, slots=True)
class MarkerNot(_MarkerBase):
    """
    Negation of a compound marker. PEP 508 has no `not`, so the rendered
    form pushes the negation down to the comparisons.
    """
    child: "MarkerExpr"

    def evaluate(self, environment: Mapping[str, str]) -> bool:
        return not self.child.evaluate(environment)

    def variables(self) -> frozenset[str]:
        return self.child.variables()

    def __str__(self) -> str:
        return str(_push_negation(self.child))


MarkerExpr = Union[MarkerTrue, MarkerFalse, MarkerCompare, MarkerAnd, MarkerOr, MarkerNot]


def _renders_as_or(expr: MarkerExpr) -> bool:
    if isinstance(expr, MarkerNot):
        expr = _push_negation(expr.child)
    return isinstance(expr, MarkerOr)


TRUE = MarkerTrue()
FALSE = MarkerFalse()


# --------------------------------------------------------------------------- #
# Constructors
# --------------------------------------------------------------------------- #

def _sorted_unique(children: Sequence[MarkerExpr]) -> tuple[MarkerExpr, ...]:
    seen: dict[str, MarkerExpr] = {}
    for c in children:
        seen.setdefault(str(c), c)
    return tuple(seen[k] for k in sorted(seen))


def marker_and(*operands: MarkerExpr) -> MarkerExpr:
    flat: list[MarkerExpr] = []
    for op in operands:
        if op.is_always_false():
            return FALSE
        if op.is_always_true():
            continue
        if isinstance(op, MarkerAnd):
            flat.extend(op.children)
        else:
            flat.append(op)
    children = _sorted_unique(flat)
    if not children:
        return TRUE
    if len(children) == 1:
        return children[0]
    return MarkerAnd(children)


def marker_or(*operands: MarkerExpr) -> MarkerExpr:
    flat: list[MarkerExpr] = []
    for op in operands:
        if op.is_always_true():
            return TRUE
        if op.is_always_false():
            continue
        if isinstance(op, MarkerOr):
            flat.extend(op.children)
        else:
            flat.append(op)
    children = _sorted_unique(flat)
    if not children:
        return FALSE
    if len(children) == 1:
        return children[0]
    return MarkerOr(children)


def marker_not(operand: MarkerExpr) -> MarkerExpr:
    if operand.is_always_true():
        return FALSE
    if operand.is_always_false():
        return TRUE
    if isinstance(operand, MarkerNot):
        return operand.child
    if isinstance(operand, MarkerCompare) and operand.op in _NEGATED_OPS:
        return _push_negation(operand)
    return MarkerNot(operand)


def _push_negation(expr: MarkerExpr) -> MarkerExpr:
    match expr:
        case MarkerTrue():
            return FALSE
        case MarkerFalse():
            return TRUE
        case MarkerNot(child=child):
            return child
        case MarkerAnd(children=children):
            return marker_or(*(_push_negation(c) for c in children))
        case MarkerOr(children=children):
            return marker_and(*(_push_negation(c) for c in children))
        case MarkerCompare(op="~=") as cmp:
            # ~=V means >=V and ==prefix.*; its negation is <V or !=prefix.*
            prefix = ".".join(cmp.value.split(".")[:-1])
            return marker_or(
                MarkerCompare(cmp.variable, "<", cmp.value, cmp.reversed),
                MarkerCompare(cmp.variable, "!=", f"{prefix}.*", cmp.reversed))
        case MarkerCompare() as cmp:
            return MarkerCompare(cmp.variable, _NEGATED_OPS[cmp.op], cmp.value, cmp.reversed)
    raise TypeError(f"not a marker expression: {expr!r}")


# --------------------------------------------------------------------------- #
# Evaluation
# --------------------------------------------------------------------------- #

def _compare(lhs: str, op: str, rhs: str, *, version_like: bool) -> bool:
    if op == "in":
        return lhs in rhs
    if op == "not in":
        return lhs not in rhs
    if version_like:
        try:
            spec = Specifier(f"{op}{rhs}")
        except InvalidSpecifier:
            spec = None
        if spec is not None:
            try:
                return spec.contains(lhs, prereleases=True)
            except InvalidVersion:
                pass
    match op:
        case "==" | "===":
            return lhs == rhs
        case "!=":
            return lhs != rhs
        case "<":
            return lhs < rhs
        case "<=":
            return lhs <= rhs
        case ">":
            return lhs > rhs
        case ">=":
            return lhs >= rhs
        case "~=":
            return lhs == rhs
    raise ConstraintError(f"unsupported marker operator {op!r}")


# --------------------------------------------------------------------------- #
# Parsing
# --------------------------------------------------------------------------- #

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<lparen>\()|
        (?P<rparen>\))|
        (?P<op>===|==|!=|<=|>=|~=|<|>|not\s+in\b|in\b)|
        (?P<bool>and\b|or\b)|
        (?P<string>'[^']*'|"[^"]*")|
        (?P<name>[A-Za-z_][A-Za-z0-9_.]*)
    )""",
    re.VERBOSE)

# Legacy spellings accepted by packaging and mapped onto the fixed schema.
_ALIASES: dict[str, str] = {
    "os.name": "os_name",
    "sys.platform": "sys_platform",
    "platform.version": "platform_version",
    "platform.machine": "platform_machine",
    "platform.python_implementation": "platform_python_implementation",
    "python_implementation": "platform_python_implementation",
}


def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise ConstraintError(f"invalid marker {text!r} at position {pos}")
        kind = m.lastgroup
        value = m.group(kind)
        if kind == "op":
            value = re.sub(r"\s+", " ", value)
        tokens.append((kind, value))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, tokens: list[tuple[str, str]], text: str):
        self._tokens = tokens
        self._pos = 0
        self._text = text

    def _peek(self) -> tuple[str, str] | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _take(self, kind: str) -> str:
        tok = self._peek()
        if tok is None or tok[0] != kind:
            raise ConstraintError(f"invalid marker {self._text!r}: expected {kind}")
        self._pos += 1
        return tok[1]

    def parse(self) -> MarkerExpr:
        expr = self._or()
        if self._peek() is not None:
            raise ConstraintError(f"invalid marker {self._text!r}: trailing input")
        return expr

    def _or(self) -> MarkerExpr:
        operands = [self._and()]
        while self._peek() == ("bool", "or"):
            self._pos += 1
            operands.append(self._and())
        return marker_or(*operands)

    def _and(self) -> MarkerExpr:
        operands = [self._atom()]
        while self._peek() == ("bool", "and"):
            self._pos += 1
            operands.append(self._atom())
        return marker_and(*operands)

    def _atom(self) -> MarkerExpr:
        tok = self._peek()
        if tok is not None and tok[0] == "lparen":
            self._pos += 1
            expr = self._or()
            self._take("rparen")
            return expr
        left_kind, left = self._value()
        op = self._take("op")
        right_kind, right = self._value()
        if left_kind == "name" and right_kind == "string":
            return MarkerCompare(left, op, right)
        if left_kind == "string" and right_kind == "name":
            return MarkerCompare(right, op, left, reversed=True)
        raise ConstraintError(f"invalid marker {self._text!r}: comparison needs one variable and one literal")

    def _value(self) -> tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise ConstraintError(f"invalid marker {self._text!r}: unexpected end")
        kind, raw = tok
        self._pos += 1
        if kind == "string":
            return "string", raw[1:-1]
        if kind == "name":
            name = _ALIASES.get(raw, raw)
            if name not in MARKER_VARIABLES:
                raise ConstraintError(f"invalid marker {self._text!r}: unknown variable {raw!r}")
            return "name", name
        raise ConstraintError(f"invalid marker {self._text!r}: unexpected {raw!r}")


@lru_cache(maxsize=4096)
def parse_marker(text: str | None) -> MarkerExpr:
    """
    Parses a PEP 508 marker string into the closed marker tree.

    The text is validated with `packaging.markers.Marker` first so that the
    accepted grammar matches the rest of the ecosystem. An empty string is
    the always-true marker.

    Args:
        text (str | None): The marker, e.g. `sys_platform == "linux"`.

    Returns:
        MarkerExpr: The parsed, simplified tree.

    Raises:
        ConstraintError: If the marker is malformed.
    """
    text = (text or "").strip()
    if not text:
        return TRUE
    if text == str(FALSE):
        return FALSE
    try:
        Marker(text)
    except InvalidMarker as e:
        raise ConstraintError(f"invalid marker {text!r}: {e}") from e
    return _Parser(_tokenize(text), text).parse()


def marker_from_packaging(marker: Marker | None) -> MarkerExpr:
    return TRUE if marker is None else parse_marker(str(marker))
