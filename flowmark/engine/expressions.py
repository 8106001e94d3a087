"""Condition evaluation over instance variables.

Expressions use Python syntax restricted to literals, names, attribute and
item access, arithmetic, comparisons, boolean logic and a handful of pure
builtins. ``&&``/``||`` and ``true``/``false``/``null`` are accepted for
conditions authored in designer tools.
"""

from __future__ import annotations

import ast
import operator
import re
from functools import lru_cache
from typing import Any, Callable, Mapping, Protocol

from ..exceptions import ExpressionError

_MISSING = object()

_BIN_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS: dict[type, Callable[[Any], Any]] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARE_OPS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": len,
    "abs": abs,
    "min": min,
    "max": max,
    "int": int,
    "float": float,
    "str": str,
    "bool": bool,
    "round": round,
}

_CONSTANTS = {"true": True, "false": False, "null": None, "none": None}

_LOGICAL_TOKENS = re.compile(r"&&|\|\|")


class ExpressionEvaluator(Protocol):
    def evaluate(self, expression: str, scope: Mapping[str, Any]) -> Any:
        """Return the value of ``expression`` within ``scope``."""

    def evaluate_condition(self, expression: str, scope: Mapping[str, Any]) -> bool:
        """Return the truthiness of ``expression`` within ``scope``."""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _coerce_pair(left: Any, right: Any) -> tuple[Any, Any]:
    """Compare numeric strings against numbers numerically."""
    if _is_number(left) and isinstance(right, str):
        try:
            return left, float(right)
        except ValueError:
            return left, right
    if isinstance(left, str) and _is_number(right):
        try:
            return float(left), right
        except ValueError:
            return left, right
    return left, right


@lru_cache(maxsize=512)
def _parse(expression: str) -> ast.Expression:
    source = _LOGICAL_TOKENS.sub(lambda m: " and " if m.group() == "&&" else " or ", expression)
    try:
        return ast.parse(source.strip(), mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(expression, f"syntax error: {exc.msg}") from exc


class SafeExpressionEvaluator:
    """Evaluate expressions by walking the AST; nothing is ``eval``-ed."""

    def evaluate(self, expression: str, scope: Mapping[str, Any]) -> Any:
        tree = _parse(expression)
        try:
            return self._eval(tree.body, scope, expression)
        except ExpressionError:
            raise
        except (TypeError, ValueError, ZeroDivisionError, KeyError, IndexError) as exc:
            raise ExpressionError(expression, str(exc)) from exc

    def evaluate_condition(self, expression: str, scope: Mapping[str, Any]) -> bool:
        return bool(self.evaluate(expression, scope))

    # ------------------------------------------------------------------
    def _eval(self, node: ast.AST, scope: Mapping[str, Any], expression: str) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            value = scope.get(node.id, _MISSING)
            if value is _MISSING:
                value = _CONSTANTS.get(node.id.lower(), _MISSING)
            if value is _MISSING:
                raise ExpressionError(expression, f"name '{node.id}' is not defined")
            return value
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result: Any = True
                for value_node in node.values:
                    result = self._eval(value_node, scope, expression)
                    if not result:
                        return result
                return result
            result = False
            for value_node in node.values:
                result = self._eval(value_node, scope, expression)
                if result:
                    return result
            return result
        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
            return _UNARY_OPS[type(node.op)](self._eval(node.operand, scope, expression))
        if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
            left = self._eval(node.left, scope, expression)
            right = self._eval(node.right, scope, expression)
            return _BIN_OPS[type(node.op)](left, right)
        if isinstance(node, ast.Compare):
            left = self._eval(node.left, scope, expression)
            for op, comparator in zip(node.ops, node.comparators):
                func = _COMPARE_OPS.get(type(op))
                if func is None:
                    raise ExpressionError(expression, f"unsupported operator {type(op).__name__}")
                right = self._eval(comparator, scope, expression)
                if not func(*_coerce_pair(left, right)):
                    return False
                left = right
            return True
        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_"):
                raise ExpressionError(expression, f"access to '{node.attr}' is not allowed")
            target = self._eval(node.value, scope, expression)
            if isinstance(target, Mapping):
                if node.attr not in target:
                    raise ExpressionError(expression, f"key '{node.attr}' is not defined")
                return target[node.attr]
            raise ExpressionError(expression, f"cannot read '{node.attr}' of {type(target).__name__}")
        if isinstance(node, ast.Subscript):
            target = self._eval(node.value, scope, expression)
            key = self._eval(node.slice, scope, expression)
            return target[key]
        if isinstance(node, (ast.List, ast.Tuple)):
            items = [self._eval(e, scope, expression) for e in node.elts]
            return items if isinstance(node, ast.List) else tuple(items)
        if isinstance(node, ast.IfExp):
            if self._eval(node.test, scope, expression):
                return self._eval(node.body, scope, expression)
            return self._eval(node.orelse, scope, expression)
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
            func = _FUNCTIONS.get(node.func.id)
            if func is None or node.keywords:
                raise ExpressionError(expression, f"call to '{node.func.id}' is not allowed")
            return func(*[self._eval(a, scope, expression) for a in node.args])
        raise ExpressionError(expression, f"unsupported syntax {type(node).__name__}")


def build_scope(variables: Mapping[str, Any], input: Mapping[str, Any]) -> dict[str, Any]:
    """Variables are visible by name and through ``var``/``variables``."""
    scope = dict(variables)
    scope.update({"var": variables, "variables": variables, "input": input})
    return scope
