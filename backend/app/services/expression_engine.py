"""
expression_engine.py — Predicate evaluator for configuration rules

Two predicate shapes are supported, both evaluated against a variable context
(a mapping of variable name → scalar value, e.g. {"post_type": "STEEL",
"height": 6}):

  - AttributeFilter   — JSON object, variable → allowed value list
                        {"post_type": ["WOOD", "STEEL"], "style": "standard"}
                        Conjunction over keys; empty / absent ⇒ true.
  - ConditionFormula  — boolean expression string
                        [height] == 6 AND [rail_count] == 3 OR [height] == 8
                        AND binds tighter than OR; parentheses group.

A variable missing from the context makes the predicate that references it
false; it is never an error.  A formula that cannot be parsed raises
ConfigurationError from compile_formula(), i.e. at rule-load time.
"""
from __future__ import annotations

import functools
import json
import logging
import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from app.services.errors import ConfigurationError, RuleIssue

logger = logging.getLogger("fence-config.expressions")

VariableContext = Mapping[str, Any]

_MISSING = object()


# ---------------------------------------------------------------------------
# Value normalisation
# ---------------------------------------------------------------------------

def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


def values_equal(left: Any, right: Any) -> bool:
    """
    Loose scalar equality used by both predicate shapes.

    Numbers compare numerically ("6" == 6), booleans compare with their
    "true"/"false" spellings, everything else compares as exact strings.
    """
    if left is None or right is None:
        return False
    if isinstance(left, bool) or isinstance(right, bool):
        lb, rb = _as_bool(left), _as_bool(right)
        return lb is not None and lb == rb
    ln, rn = _as_number(left), _as_number(right)
    if ln is not None and rn is not None:
        return ln == rn
    return str(left) == str(right)


def _ordered(compare: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def _compare(left: Any, right: Any) -> bool:
        ln, rn = _as_number(left), _as_number(right)
        if ln is None or rn is None:
            return False
        return compare(ln, rn)
    return _compare


# Comparison operator registry.  The tokenizer is built from these keys, so a
# new operator is added here and nowhere else.
COMPARISON_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": values_equal,
    "!=": lambda left, right: not values_equal(left, right),
    "<":  _ordered(operator.lt),
    "<=": _ordered(operator.le),
    ">":  _ordered(operator.gt),
    ">=": _ordered(operator.ge),
}


# ---------------------------------------------------------------------------
# Attribute filters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AttributeFilter:
    """Conjunctive variable → allowed-values predicate."""
    conditions: Tuple[Tuple[str, Tuple[Any, ...]], ...] = ()

    @classmethod
    def from_json(cls, raw: Any) -> "AttributeFilter":
        if raw is None or isinstance(raw, AttributeFilter):
            return raw or cls()
        if isinstance(raw, str):
            if not raw.strip():
                return cls()
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise ConfigurationError(
                    [RuleIssue(message=f"attribute filter is not valid JSON: {exc}", field="attribute_filter")]
                ) from exc
        if not isinstance(raw, Mapping):
            raise ConfigurationError(
                [RuleIssue(message=f"attribute filter must be an object, got {type(raw).__name__}", field="attribute_filter")]
            )
        conditions = []
        for key in sorted(raw):
            allowed = raw[key]
            if isinstance(allowed, (list, tuple, set, frozenset)):
                values = tuple(allowed)
            else:
                values = (allowed,)
            conditions.append((str(key), values))
        return cls(conditions=tuple(conditions))

    @property
    def is_empty(self) -> bool:
        return not self.conditions

    @property
    def variables(self) -> List[str]:
        return [key for key, _ in self.conditions]

    def canonical(self) -> str:
        """Stable text form, used as part of the eligibility dedup key."""
        if self.is_empty:
            return ""
        return json.dumps({k: list(v) for k, v in self.conditions}, sort_keys=True, default=str)

    def matches(self, context: VariableContext) -> bool:
        for key, allowed in self.conditions:
            value = context.get(key, _MISSING)
            if value is _MISSING or value is None:
                return False
            if not any(values_equal(value, candidate) for candidate in allowed):
                return False
        return True

    def to_json(self) -> Dict[str, List[Any]]:
        return {k: list(v) for k, v in self.conditions}


# ---------------------------------------------------------------------------
# Condition formulas — tokenizer
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _Token:
    kind: str      # var | string | number | op | lparen | rparen | and | or | bool | ident
    value: Any
    pos: int


_OPERATOR_PATTERN = "|".join(
    re.escape(op) for op in sorted(COMPARISON_OPERATORS, key=len, reverse=True)
)

_TOKEN_RE = re.compile(
    r"""
      (?P<var>\[\s*[^\[\]]+?\s*\])
    | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    | (?P<number>-?\d+(?:\.\d+)?)
    | (?P<op>""" + _OPERATOR_PATTERN + r""")
    | (?P<lparen>\()
    | (?P<rparen>\))
    | (?P<word>[A-Za-z_][A-Za-z0-9_]*)
    """,
    re.VERBOSE,
)

_KEYWORDS = {"AND": "and", "OR": "or"}
_BOOLEAN_WORDS = {"TRUE": True, "FALSE": False}


def _formula_error(source: str, message: str, pos: Optional[int] = None) -> ConfigurationError:
    where = f" at position {pos}" if pos is not None else ""
    return ConfigurationError(
        [RuleIssue(message=f"invalid condition formula {source!r}: {message}{where}", field="condition_formula")]
    )


def _tokenize(source: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    length = len(source)
    while pos < length:
        if source[pos].isspace():
            pos += 1
            continue
        match = _TOKEN_RE.match(source, pos)
        if not match:
            raise _formula_error(source, f"unexpected character {source[pos]!r}", pos)
        kind = match.lastgroup
        text = match.group(kind)
        if kind == "var":
            tokens.append(_Token("var", text[1:-1].strip(), pos))
        elif kind == "string":
            body = text[1:-1]
            tokens.append(_Token("string", re.sub(r"\\(.)", r"\1", body), pos))
        elif kind == "number":
            value: Union[int, float] = float(text) if "." in text else int(text)
            tokens.append(_Token("number", value, pos))
        elif kind == "word":
            upper = text.upper()
            if upper in _KEYWORDS:
                tokens.append(_Token(_KEYWORDS[upper], upper, pos))
            elif upper in _BOOLEAN_WORDS:
                tokens.append(_Token("bool", _BOOLEAN_WORDS[upper], pos))
            else:
                tokens.append(_Token("ident", text, pos))
        else:
            tokens.append(_Token(kind, text, pos))
        pos = match.end()
    return tokens


# ---------------------------------------------------------------------------
# Condition formulas — syntax tree
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Variable:
    name: str

    def resolve(self, context: VariableContext) -> Any:
        return context.get(self.name, _MISSING)


@dataclass(frozen=True)
class Literal:
    value: Any

    def resolve(self, context: VariableContext) -> Any:
        return self.value


Operand = Union[Variable, Literal]


@dataclass(frozen=True)
class Comparison:
    op: str
    left: Operand
    right: Operand

    def evaluate(self, context: VariableContext) -> bool:
        left = self.left.resolve(context)
        right = self.right.resolve(context)
        if left is _MISSING or right is _MISSING or left is None or right is None:
            return False
        return COMPARISON_OPERATORS[self.op](left, right)


@dataclass(frozen=True)
class BoolOp:
    op: str                       # "AND" | "OR"
    operands: Tuple[Any, ...]

    def evaluate(self, context: VariableContext) -> bool:
        if self.op == "AND":
            return all(node.evaluate(context) for node in self.operands)
        return any(node.evaluate(context) for node in self.operands)


class _Parser:
    """
    Recursive-descent parser.

        expr       := and_expr ( OR and_expr )*
        and_expr   := primary ( AND primary )*
        primary    := "(" expr ")" | comparison
        comparison := operand OP operand
    """

    def __init__(self, source: str, tokens: List[_Token]):
        self.source = source
        self.tokens = tokens
        self.index = 0

    def _peek(self) -> Optional[_Token]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _advance(self) -> _Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _error(self, message: str) -> ConfigurationError:
        token = self._peek()
        pos = token.pos if token else len(self.source)
        return _formula_error(self.source, message, pos)

    def parse(self):
        node = self._expr()
        if self._peek() is not None:
            raise self._error(f"unexpected token {self._peek().value!r}")
        return node

    def _expr(self):
        operands = [self._and_expr()]
        while self._peek() is not None and self._peek().kind == "or":
            self._advance()
            operands.append(self._and_expr())
        return operands[0] if len(operands) == 1 else BoolOp("OR", tuple(operands))

    def _and_expr(self):
        operands = [self._primary()]
        while self._peek() is not None and self._peek().kind == "and":
            self._advance()
            operands.append(self._primary())
        return operands[0] if len(operands) == 1 else BoolOp("AND", tuple(operands))

    def _primary(self):
        token = self._peek()
        if token is None:
            raise self._error("unexpected end of formula")
        if token.kind == "lparen":
            self._advance()
            node = self._expr()
            closing = self._peek()
            if closing is None or closing.kind != "rparen":
                raise self._error("expected ')'")
            self._advance()
            return node
        return self._comparison()

    def _comparison(self) -> Comparison:
        left = self._operand()
        token = self._peek()
        if token is None or token.kind != "op":
            raise self._error("expected comparison operator")
        op = self._advance().value
        right = self._operand()
        return Comparison(op, left, right)

    def _operand(self) -> Operand:
        token = self._peek()
        if token is None:
            raise self._error("expected variable or literal")
        if token.kind in ("var", "ident"):
            self._advance()
            if not token.value:
                raise self._error("empty variable name")
            return Variable(token.value)
        if token.kind in ("string", "number", "bool"):
            self._advance()
            return Literal(token.value)
        raise self._error(f"expected variable or literal, got {token.value!r}")


# ---------------------------------------------------------------------------
# Compiled formulas
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConditionFormula:
    """A parsed, immutable boolean expression.  A blank formula always holds."""
    source: str
    root: Any = None

    @property
    def is_unconditional(self) -> bool:
        return self.root is None

    def evaluate(self, context: VariableContext) -> bool:
        if self.root is None:
            return True
        return self.root.evaluate(context)

    @property
    def variables(self) -> List[str]:
        found: List[str] = []

        def _walk(node):
            if isinstance(node, BoolOp):
                for child in node.operands:
                    _walk(child)
            elif isinstance(node, Comparison):
                for side in (node.left, node.right):
                    if isinstance(side, Variable) and side.name not in found:
                        found.append(side.name)

        _walk(self.root)
        return found


@functools.lru_cache(maxsize=1024)
def _compile_cached(source: str) -> ConditionFormula:
    if not source.strip():
        return ConditionFormula(source=source)
    tokens = _tokenize(source)
    return ConditionFormula(source=source, root=_Parser(source, tokens).parse())


def compile_formula(source: Optional[str]) -> ConditionFormula:
    """
    Parse a condition formula.

    Raises ConfigurationError for malformed text.  None / blank compiles to an
    unconditional formula.
    """
    return _compile_cached(source or "")


def referenced_variables(predicate: Any) -> List[str]:
    """Variable names a predicate reads, in first-seen order."""
    if predicate is None:
        return []
    if isinstance(predicate, (ConditionFormula, str)):
        formula = predicate if isinstance(predicate, ConditionFormula) else compile_formula(predicate)
        return formula.variables
    return AttributeFilter.from_json(predicate).variables


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------

Predicate = Union[None, Mapping[str, Any], AttributeFilter, str, ConditionFormula]


def evaluate(predicate: Predicate, context: VariableContext) -> bool:
    """
    Evaluate either predicate shape against ``context``.

    - None / {}                → True
    - dict / AttributeFilter   → attribute-filter semantics
    - str / ConditionFormula   → boolean-expression semantics
    """
    if predicate is None:
        return True
    if isinstance(predicate, ConditionFormula):
        return predicate.evaluate(context)
    if isinstance(predicate, str):
        return compile_formula(predicate).evaluate(context)
    if isinstance(predicate, (AttributeFilter, Mapping)):
        return AttributeFilter.from_json(predicate).matches(context)
    raise TypeError(f"Unsupported predicate type: {type(predicate).__name__}")
