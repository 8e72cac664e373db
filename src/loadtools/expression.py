"""Restricted expression language for mapping formulas, conditions and business rules.

Expressions are parsed once with :mod:`ast` in ``eval`` mode, checked against a
whitelist, then evaluated by walking the tree. Nothing is ever passed to
``eval``/``exec``.

Allowed:
  - field access: bare names (``status``), ``row['status']``,
    ``row.get('status', 'X')``
  - literals, list/tuple/set literals for membership tests
  - comparisons, ``in``/``not in``, ``is None``/``is not None``
  - ``and``/``or``/``not``, ternary ``a if cond else b``
  - arithmetic ``+ - * / // %``; ``+`` adds when both sides are numbers or
    numeric text and concatenates otherwise (``concat()`` always joins text)
  - helper calls: num, str, upper, lower, trim, len, substr, coalesce, round, concat
"""

from __future__ import annotations

import ast
import operator
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from loadtools.csvpipe.formats import to_decimal
from loadtools.errors import LoadToolsError


class ExpressionError(LoadToolsError):
    pass


class ExpressionSecurityError(ExpressionError):
    """Expression contains a forbidden construct."""


class ExpressionSyntaxError(ExpressionError):
    """Expression is not valid syntax."""


class ExpressionEvaluationError(ExpressionError):
    """Expression is valid but failed against a record (missing field, bad operand...)."""


_COMPARISON_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_BINARY_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS: Dict[type, Callable[[Any], Any]] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_CONSTANT_NAMES = {"True": True, "False": False, "None": None}

# number vs numeric text compares numerically
_NUMERIC_COMPARISONS = (ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE)


# ---------------------------------------------------------------------
# Helper functions callable from expressions
# ---------------------------------------------------------------------

def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _substr(value: Any, start: Any, length: Any = None) -> str:
    # 1-based like SQL SUBSTR
    s = _text(value)
    begin = max(int(start) - 1, 0)
    if length is None:
        return s[begin:]
    return s[begin:begin + int(length)]


def _coalesce(*values: Any) -> Any:
    for v in values:
        if v is not None and _text(v).strip() != "":
            return v
    return None


def _round(value: Any, places: Any = 0) -> Decimal:
    return to_decimal(value).quantize(Decimal(1).scaleb(-int(places)), rounding=ROUND_HALF_UP)


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "num": to_decimal,
    "str": _text,
    "upper": lambda v: _text(v).upper(),
    "lower": lambda v: _text(v).lower(),
    "trim": lambda v: _text(v).strip(),
    "len": lambda v: len(_text(v)),
    "substr": _substr,
    "coalesce": _coalesce,
    "round": _round,
    "concat": lambda *values: "".join(_text(v) for v in values),
}


# ---------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------

class _ExpressionValidator(ast.NodeVisitor):
    def __init__(self) -> None:
        self.errors: List[str] = []
        self.fields: List[str] = []
        self._in_call_func = False

    def _is_row_derived(self, node: ast.expr) -> bool:
        if isinstance(node, ast.Name) and node.id == "row":
            return True
        if isinstance(node, ast.Subscript):
            return self._is_row_derived(node.value)
        return self._is_row_get(node)

    @staticmethod
    def _is_row_get(node: ast.expr) -> bool:
        return (
            isinstance(node, ast.Call)
            and isinstance(node.func, ast.Attribute)
            and isinstance(node.func.value, ast.Name)
            and node.func.value.id == "row"
            and node.func.attr == "get"
        )

    @staticmethod
    def _is_none(node: ast.expr) -> bool:
        return isinstance(node, ast.Constant) and node.value is None

    def visit_Name(self, node: ast.Name) -> None:
        if node.id in FUNCTIONS and not self._in_call_func:
            self.errors.append(f"Function {node.id!r} must be called")
        elif node.id not in FUNCTIONS and node.id not in _CONSTANT_NAMES and node.id != "row":
            self.fields.append(node.id)

    def visit_Subscript(self, node: ast.Subscript) -> None:
        if isinstance(node.slice, ast.Slice):
            self.errors.append("Slice syntax is forbidden")
        if not self._is_row_derived(node.value):
            self.errors.append("Subscript access is only allowed on row data")
        self.generic_visit(node)

    def visit_Slice(self, node: ast.Slice) -> None:
        self.errors.append("Slice syntax is forbidden")

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if isinstance(node.value, ast.Name) and node.value.id == "row" and node.attr == "get":
            if not self._in_call_func:
                self.errors.append("Bare 'row.get' is forbidden; call it")
        else:
            self.errors.append(f"Forbidden attribute access: {node.attr!r}")

    def visit_Call(self, node: ast.Call) -> None:
        if node.keywords:
            self.errors.append("Keyword arguments are forbidden")
        if self._is_row_get(node):
            if not 1 <= len(node.args) <= 2:
                self.errors.append(f"row.get() takes 1 or 2 arguments, got {len(node.args)}")
        elif not (isinstance(node.func, ast.Name) and node.func.id in FUNCTIONS):
            self.errors.append(f"Forbidden function call: {ast.dump(node.func)}")
            return
        self._in_call_func = True
        self.visit(node.func)
        self._in_call_func = False
        for arg in node.args:
            self.visit(arg)

    def visit_Compare(self, node: ast.Compare) -> None:
        operands = [node.left, *node.comparators]
        for i, op in enumerate(node.ops):
            if type(op) not in _COMPARISON_OPS:
                self.errors.append(f"Forbidden comparison operator: {type(op).__name__}")
            elif isinstance(op, (ast.Is, ast.IsNot)):
                if not (self._is_none(operands[i]) or self._is_none(operands[i + 1])):
                    self.errors.append("'is' and 'is not' are only allowed for None checks")
        self.generic_visit(node)

    def visit_BinOp(self, node: ast.BinOp) -> None:
        if type(node.op) not in _BINARY_OPS:
            self.errors.append(f"Forbidden binary operator: {type(node.op).__name__}")
        self.generic_visit(node)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> None:
        if type(node.op) not in _UNARY_OPS:
            self.errors.append(f"Forbidden unary operator: {type(node.op).__name__}")
        self.generic_visit(node)

    def visit_Constant(self, node: ast.Constant) -> None:
        if node.value is not None and not isinstance(node.value, (str, int, float, bool)):
            self.errors.append(f"Forbidden constant type: {type(node.value).__name__}")

    def generic_visit(self, node: ast.AST) -> None:
        allowed = (
            ast.Expression, ast.BoolOp, ast.IfExp, ast.List, ast.Tuple, ast.Set,
            ast.Load, ast.And, ast.Or, ast.cmpop, ast.operator, ast.unaryop,
            ast.Compare, ast.BinOp, ast.UnaryOp, ast.Subscript, ast.Call,
        )
        if not isinstance(node, allowed):
            self.errors.append(f"Forbidden construct: {type(node).__name__}")
            return
        super().generic_visit(node)


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def _numeric(value: Any) -> Decimal:
    try:
        return to_decimal(value)
    except ValueError as e:
        raise ExpressionEvaluationError(str(e)) from e


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _as_number(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return to_decimal(value)
    except ValueError:
        return None


def _coerce_pair(left: Any, right: Any) -> Tuple[Any, Any]:
    if isinstance(left, str) and _is_number(right):
        number = _as_number(left)
        return (left, right) if number is None else (number, right)
    if isinstance(right, str) and _is_number(left):
        number = _as_number(right)
        return (left, right) if number is None else (left, number)
    return left, right


class _ExpressionEvaluator(ast.NodeVisitor):
    def __init__(self, row: Mapping[str, Any]) -> None:
        self._row = row

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in _CONSTANT_NAMES:
            return _CONSTANT_NAMES[node.id]
        if node.id == "row":
            return self._row
        if node.id in FUNCTIONS:
            return FUNCTIONS[node.id]
        if node.id not in self._row:
            raise ExpressionEvaluationError(f"Field {node.id!r} not found in record")
        return self._row[node.id]

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.visit(node.value)
        key = self.visit(node.slice)
        try:
            return value[key]
        except KeyError as e:
            raise ExpressionEvaluationError(f"Field {key!r} not found in record") from e
        except (IndexError, TypeError) as e:
            raise ExpressionEvaluationError(f"Cannot access {key!r}: {e}") from e

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        return self._row.get

    def visit_Call(self, node: ast.Call) -> Any:
        func = self.visit(node.func)
        args = [self.visit(arg) for arg in node.args]
        try:
            return func(*args)
        except (TypeError, ValueError, ArithmeticError) as e:
            raise ExpressionEvaluationError(f"call failed: {e}") from e

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            a, b = _coerce_pair(left, right) if isinstance(op, _NUMERIC_COMPARISONS) else (left, right)
            try:
                if not _COMPARISON_OPS[type(op)](a, b):
                    return False
            except TypeError as e:
                raise ExpressionEvaluationError(
                    f"cannot compare {type(left).__name__} and {type(right).__name__}"
                ) from e
            left = right
        return True

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        result = None
        for value in node.values:
            result = self.visit(value)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        if isinstance(node.op, ast.Add) and (isinstance(left, str) or isinstance(right, str)):
            lnum, rnum = _as_number(left), _as_number(right)
            if lnum is None or rnum is None:
                return _text(left) + _text(right)
            left, right = lnum, rnum
        try:
            return _BINARY_OPS[type(node.op)](_numeric(left), _numeric(right))
        except ArithmeticError as e:
            raise ExpressionEvaluationError(f"arithmetic error in {type(node.op).__name__}: {e}") from e

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        return _UNARY_OPS[type(node.op)](_numeric(operand))

    def visit_List(self, node: ast.List) -> Any:
        return [self.visit(elt) for elt in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> Any:
        return tuple(self.visit(elt) for elt in node.elts)

    def visit_Set(self, node: ast.Set) -> Any:
        return {self.visit(elt) for elt in node.elts}

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        if self.visit(node.test):
            return self.visit(node.body)
        return self.visit(node.orelse)


class Expression:
    """
    Pre-parsed expression.

        expr = Expression("status == 'A'")
        expr.evaluate({"status": "A"})   # True
    """

    def __init__(self, source: str) -> None:
        self._source = source
        try:
            self._ast = ast.parse(source, mode="eval")
        except SyntaxError as e:
            raise ExpressionSyntaxError(f"Invalid syntax in {source!r}: {e.msg}") from e

        validator = _ExpressionValidator()
        validator.visit(self._ast)
        if validator.errors:
            raise ExpressionSecurityError(f"{source!r}: " + "; ".join(validator.errors))
        self.fields = tuple(dict.fromkeys(validator.fields))

    @property
    def source(self) -> str:
        return self._source

    def evaluate(self, row: Mapping[str, Any]) -> Any:
        return _ExpressionEvaluator(row).visit(self._ast)

    def __repr__(self) -> str:
        return f"Expression({self._source!r})"
