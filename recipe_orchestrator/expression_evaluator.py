"""Sandboxed evaluation of step ``when`` conditions.

Conditions are parsed with :mod:`ast` and interpreted node by node against a
fixed variable scope. Nothing is ever passed to ``eval``; any node type outside
the whitelist below is rejected.

Supported syntax::

    isProduction                       # variable truthiness
    framework == 'react' and useTs     # comparisons, boolean operators
    count >= 3 || !skipTests           # JS-style operators are accepted
    {{options.db}} === "postgres"      # {{var}} references, dotted lookup
    'admin' in roles and len(roles) > 1

Unknown variables evaluate to ``None`` so an unset flag is simply false.
"""

import ast
import operator
import re
from typing import Any


class ExpressionError(Exception):
    """Raised when a condition cannot be parsed or evaluated."""

    pass


# String literals are left untouched when rewriting JS-style operators
_STRING_LITERAL = re.compile(r"""('(?:\\.|[^'\\])*'|"(?:\\.|[^"\\])*")""")

_REWRITES = [
    (re.compile(r"\{\{\s*(\w+(?:\.\w+)*)\s*\}\}"), r"\1"),
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\btrue\b"), "True"),
    (re.compile(r"\bfalse\b"), "False"),
    (re.compile(r"\b(?:null|undefined)\b"), "None"),
]

_COMPARISONS = {
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

_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}

_SAFE_FUNCTIONS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "lower": lambda s: str(s).lower(),
    "upper": lambda s: str(s).upper(),
}

MAX_EXPRESSION_LENGTH = 1000


def _rewrite(expression: str) -> str:
    parts = _STRING_LITERAL.split(expression)
    # Odd indexes are the captured string literals
    for i in range(0, len(parts), 2):
        segment = parts[i]
        for pattern, replacement in _REWRITES:
            segment = pattern.sub(replacement, segment)
        parts[i] = segment
    return "".join(parts).strip()


def compile_condition(expression: str) -> ast.Expression:
    """Parse a condition into an AST, rejecting unsupported syntax.

    Raises:
        ExpressionError: If the expression is malformed or uses unsupported syntax
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ExpressionError("Condition must be a non-empty string")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError(f"Condition exceeds {MAX_EXPRESSION_LENGTH} characters")

    source = _rewrite(expression)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid condition syntax: {expression!r} ({e.msg})") from e

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ExpressionError(f"Unsupported syntax in condition {expression!r}: {type(node).__name__}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _SAFE_FUNCTIONS:
                raise ExpressionError(f"Function calls are not allowed in condition {expression!r}")
            if node.keywords:
                raise ExpressionError(f"Keyword arguments are not allowed in condition {expression!r}")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ExpressionError(f"Private attribute access is not allowed: {node.attr}")
    return tree


def evaluate_condition(expression: str, variables: dict[str, Any]) -> bool:
    """Evaluate a condition against ``variables`` and return its truthiness.

    Raises:
        ExpressionError: If the expression is invalid or evaluation fails
    """
    tree = compile_condition(expression)
    try:
        return bool(_Evaluator(variables).visit(tree.body))
    except ExpressionError:
        raise
    except (TypeError, ValueError, ZeroDivisionError, KeyError, IndexError) as e:
        raise ExpressionError(f"Cannot evaluate condition {expression!r}: {e}") from e


class _Evaluator:
    def __init__(self, variables: dict[str, Any]):
        self.variables = variables

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")
        return method(node)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in _SAFE_FUNCTIONS:
            return _SAFE_FUNCTIONS[node.id]
        return self.variables.get(node.id)

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        value = self.visit(node.value)
        if isinstance(value, dict):
            return value.get(node.attr)
        # Only mapping lookups are supported; "length" mirrors common recipe usage
        if node.attr == "length" and isinstance(value, (str, list, tuple)):
            return len(value)
        return None

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.visit(node.value)
        key = self.visit(node.slice)
        if value is None:
            return None
        if isinstance(value, dict):
            return value.get(key)
        if isinstance(value, (list, tuple, str)) and isinstance(key, int):
            return value[key] if -len(value) <= key < len(value) else None
        raise ExpressionError(f"Cannot index {type(value).__name__} with {key!r}")

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.visit(value)
            if result:
                return result
        return result

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        func = _BINARY_OPERATORS.get(type(node.op))
        if func is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        return func(self.visit(node.left), self.visit(node.right))

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not _COMPARISONS[type(op)](left, right):
                return False
            left = right
        return True

    def visit_Call(self, node: ast.Call) -> Any:
        func = _SAFE_FUNCTIONS[node.func.id]  # type: ignore[attr-defined]
        return func(*(self.visit(arg) for arg in node.args))

    def visit_List(self, node: ast.List) -> list[Any]:
        return [self.visit(element) for element in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple[Any, ...]:
        return tuple(self.visit(element) for element in node.elts)


_ALLOWED_NODES = (
    ast.Expression,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.Subscript,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.UAdd,
    ast.BinOp,
    *_BINARY_OPERATORS,
    ast.Compare,
    *_COMPARISONS,
    ast.Call,
    ast.List,
    ast.Tuple,
)
