"""Calculated-field formula evaluator.

Grammar (deliberately tiny, no functions, comparisons or strings):

    expr    := term (("+" | "-") term)*
    term    := factor (("*" | "/") factor)*
    factor  := ("+" | "-") factor | NUMBER | FIELD_CODE | "(" expr ")"
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Tuple

from condition_eval import to_number


Issue = Dict[str, Any]

FORMULA_FORMATS = {"number", "currency", "percent"}
DEFAULT_DEPTH_LIMIT = 32
MAX_TOKENS = 1000

_TOKEN_RE = re.compile(
    r"\s*(?:(?P<number>\d+(?:\.\d*)?|\.\d+)|(?P<ident>[A-Za-z_][A-Za-z0-9_]*)|(?P<op>[-+*/()]))"
)


@dataclass
class FormulaEvalError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


class FormulaSyntaxError(FormulaEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("FORMULA_SYNTAX_ERROR", message, path)


class FormulaDepthError(FormulaEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("FORMULA_DEPTH_EXCEEDED", message, path)


class FormulaTooLongError(FormulaEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("FORMULA_TOO_LONG", message, path)


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


# AST nodes are plain tuples: ("num", float) | ("ref", code) | ("neg", node)
# | ("sum", [(sign, node), ...]) | ("prod", [(op, node), ...]).
# Operator chains are flat lists so nesting only grows with parentheses and
# unary signs, both bounded by the depth limit.
Node = Tuple[Any, ...]


def _tokenize(text: str) -> List[Tuple[str, str, int]]:
    tokens: List[Tuple[str, str, int]] = []
    pos = 0
    length = len(text)
    while pos < length:
        if text[pos:].strip() == "":
            break
        match = _TOKEN_RE.match(text, pos)
        if not match:
            raise FormulaSyntaxError(f"Unexpected character {text[pos:].lstrip()[:1]!r}", f"col {pos + 1}")
        kind = match.lastgroup or "op"
        tokens.append((kind, match.group(kind), match.start(kind)))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, text: str, depth_limit: int, max_tokens: int = MAX_TOKENS) -> None:
        self.tokens = _tokenize(text)
        if len(self.tokens) > max_tokens:
            raise FormulaTooLongError(f"Formula has more than {max_tokens} tokens", "$")
        self.idx = 0
        self.depth_limit = depth_limit

    def _peek(self) -> Tuple[str, str, int] | None:
        return self.tokens[self.idx] if self.idx < len(self.tokens) else None

    def _take(self) -> Tuple[str, str, int]:
        tok = self.tokens[self.idx]
        self.idx += 1
        return tok

    def parse(self) -> Node:
        if not self.tokens:
            raise FormulaSyntaxError("Formula is empty", "$")
        node = self._expr(1)
        tok = self._peek()
        if tok is not None:
            raise FormulaSyntaxError(f"Unexpected token {tok[1]!r}", f"col {tok[2] + 1}")
        return node

    def _check_depth(self, depth: int) -> None:
        if depth > self.depth_limit:
            raise FormulaDepthError("Depth limit exceeded", "$")

    def _expr(self, depth: int) -> Node:
        self._check_depth(depth)
        parts = [("+", self._term(depth))]
        while True:
            tok = self._peek()
            if tok is None or tok[0] != "op" or tok[1] not in "+-":
                return parts[0][1] if len(parts) == 1 else ("sum", parts)
            self._take()
            parts.append((tok[1], self._term(depth)))

    def _term(self, depth: int) -> Node:
        parts = [("*", self._factor(depth))]
        while True:
            tok = self._peek()
            if tok is None or tok[0] != "op" or tok[1] not in "*/":
                return parts[0][1] if len(parts) == 1 else ("prod", parts)
            self._take()
            parts.append((tok[1], self._factor(depth)))

    def _factor(self, depth: int) -> Node:
        tok = self._peek()
        if tok is None:
            raise FormulaSyntaxError("Unexpected end of formula", "$")
        kind, text, pos = tok
        if kind == "number":
            self._take()
            return ("num", float(text))
        if kind == "ident":
            self._take()
            return ("ref", text)
        if text in "+-":
            self._take()
            self._check_depth(depth + 1)
            inner = self._factor(depth + 1)
            return ("neg", inner) if text == "-" else inner
        if text == "(":
            self._take()
            node = self._expr(depth + 1)
            closing = self._peek()
            if closing is None or closing[1] != ")":
                raise FormulaSyntaxError("Missing closing parenthesis", f"col {pos + 1}")
            self._take()
            return node
        raise FormulaSyntaxError(f"Unexpected token {text!r}", f"col {pos + 1}")


def parse_formula(text: str, depth_limit: int = DEFAULT_DEPTH_LIMIT, max_tokens: int = MAX_TOKENS) -> Node:
    if not isinstance(text, str):
        raise FormulaSyntaxError("Formula must be a string", "$")
    return _Parser(text, depth_limit, max_tokens).parse()


def _collect_refs(node: Node, out: List[str]) -> None:
    kind = node[0]
    if kind == "ref":
        if node[1] not in out:
            out.append(node[1])
    elif kind == "neg":
        _collect_refs(node[1], out)
    elif kind in ("sum", "prod"):
        for _, part in node[1]:
            _collect_refs(part, out)


def formula_references(text: str) -> List[str]:
    """Field codes referenced by a formula, in first-use order."""
    refs: List[str] = []
    _collect_refs(parse_formula(text), refs)
    return refs


@dataclass
class FormulaResult:
    value: float | None = None
    error: FormulaEvalError | None = None
    warnings: List[Issue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


class _DivideByZero(Exception):
    pass


def _eval_node(node: Node, record: dict, numeric_fields: set | None, warnings: List[Issue]) -> float:
    kind = node[0]
    if kind == "num":
        return node[1]
    if kind == "ref":
        code = node[1]
        if numeric_fields is not None and code not in numeric_fields:
            warnings.append(_issue("FORMULA_MISSING_OPERAND", f"{code} is not a numeric field", code))
            return 0.0
        if code not in record or record.get(code) in (None, ""):
            warnings.append(_issue("FORMULA_MISSING_OPERAND", f"{code} has no value", code))
            return 0.0
        number = to_number(record.get(code))
        if number is None:
            warnings.append(_issue("FORMULA_NON_NUMERIC_OPERAND", f"{code} is not numeric", code))
            return 0.0
        return number
    if kind == "neg":
        return -_eval_node(node[1], record, numeric_fields, warnings)
    if kind == "sum":
        total = 0.0
        for sign, part in node[1]:
            value = _eval_node(part, record, numeric_fields, warnings)
            total = total + value if sign == "+" else total - value
        return total
    result = None
    for op, part in node[1]:
        value = _eval_node(part, record, numeric_fields, warnings)
        if result is None:
            result = value
        elif op == "*":
            result = result * value
        elif value == 0:
            raise _DivideByZero()
        else:
            result = result / value
    return result


def evaluate(
    formula: str,
    record: dict,
    numeric_fields: Iterable[str] | None = None,
    depth_limit: int = DEFAULT_DEPTH_LIMIT,
) -> FormulaResult:
    """Evaluate a formula against sibling field values.

    Never raises. Missing or non-numeric operands count as 0 and are reported
    as warnings; division by zero and syntax problems come back as `error`
    with `value=None` so the field renders blank.
    """
    warnings: List[Issue] = []
    try:
        ast = parse_formula(formula, depth_limit=depth_limit)
    except FormulaEvalError as exc:
        return FormulaResult(None, exc, warnings)
    numeric = set(numeric_fields) if numeric_fields is not None else None
    try:
        value = _eval_node(ast, record if isinstance(record, dict) else {}, numeric, warnings)
    except _DivideByZero:
        return FormulaResult(None, FormulaEvalError("FORMULA_DIVIDE_BY_ZERO", "Division by zero", "$"), warnings)
    if not math.isfinite(value):
        return FormulaResult(None, FormulaEvalError("FORMULA_NON_FINITE", "Result is not finite", "$"), warnings)
    return FormulaResult(value, None, warnings)


def round_value(value: float | None, decimals: int = 2) -> float | None:
    if value is None:
        return None
    quantum = Decimal(1).scaleb(-max(0, int(decimals)))
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def format_value(value: float | None, formula_format: str = "number", decimals: int = 2) -> str:
    """Presentation only: blank for no value, grouping for number/currency."""
    if value is None:
        return ""
    decimals = max(0, int(decimals))
    if formula_format == "percent":
        places = max(0, decimals - 2)
        scaled = Decimal(repr(value)) * 100
        return f"{scaled.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP):.{places}f}%"
    rounded = Decimal(repr(value)).quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)
    return f"{rounded:,.{decimals}f}"
