"""Static result-type inference for expression nodes.

Types are coarse CEL-like names: bool, int, double, string, list, map,
null, dyn. Anything read from a live object is dyn unless the
reference declares a value_type.
"""

from typing import Any

from expressions.functions import (
    FUNCTION_RESULT_TYPES, GLOBAL_FUNCTIONS, METHOD_RESULT_TYPES, PREDICATE_METHODS, STRING_METHODS,
)
from expressions.nodes import (
    Binary, Call, Conditional, Expr, Fallback, Index, Lambda, ListExpr,
    Literal, Logical, Member, MethodCall, Template, Unary, Var,
)
from references import Reference

NUMERIC = ('int', 'double')
_COMPARISONS = ('==', '!=', '<', '<=', '>', '>=', 'in')


def literal_type(value: Any) -> str:
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'bool'
    if isinstance(value, int):
        return 'int'
    if isinstance(value, float):
        return 'double'
    if isinstance(value, str):
        return 'string'
    if isinstance(value, (list, tuple)):
        return 'list'
    if isinstance(value, dict):
        return 'map'
    return 'dyn'


def is_fallback_or(node: Logical) -> bool:
    """True when ``||`` acts as a value fallback rather than boolean or."""
    return node.op == '||' and infer_type(node.left) != 'bool'


def infer_type(node: Expr) -> str:
    if isinstance(node, Literal):
        return literal_type(node.value)
    if isinstance(node, Reference):
        return node.value_type
    if isinstance(node, (Var, Index, Lambda)):
        return 'dyn'
    if isinstance(node, Member):
        return 'int' if node.name == 'length' else 'dyn'
    if isinstance(node, Unary):
        return 'bool' if node.op == '!' else infer_type(node.operand)
    if isinstance(node, Binary):
        if node.op in _COMPARISONS:
            return 'bool'
        left, right = infer_type(node.left), infer_type(node.right)
        if node.op == '+' and 'string' in (left, right):
            return 'string'
        if node.op == '+' and left == right == 'list':
            return 'list'
        if left in NUMERIC and right in NUMERIC:
            if node.op == '/' or 'double' in (left, right):
                return 'double'
            return 'int'
        return 'dyn'
    if isinstance(node, Logical):
        if node.op == '&&' or not is_fallback_or(node):
            return 'bool'
        return _merge(infer_type(node.left), infer_type(node.right))
    if isinstance(node, Fallback):
        return _merge(infer_type(node.left), infer_type(node.right))
    if isinstance(node, Conditional):
        return _merge(infer_type(node.then), infer_type(node.otherwise))
    if isinstance(node, Call):
        if node.func in ('Math.min', 'Math.max', 'Math.abs'):
            types = {infer_type(a) for a in node.args}
            return types.pop() if len(types) == 1 else 'dyn'
        canonical = GLOBAL_FUNCTIONS.get(node.func, node.func)
        return FUNCTION_RESULT_TYPES.get(canonical, 'dyn')
    if isinstance(node, MethodCall):
        canonical = STRING_METHODS.get(node.method) or PREDICATE_METHODS.get(node.method, '')
        if canonical == 'contains' and infer_type(node.target) == 'list':
            return 'bool'
        return METHOD_RESULT_TYPES.get(canonical, 'dyn')
    if isinstance(node, Template):
        return 'string'
    if isinstance(node, ListExpr):
        return 'list'
    return 'dyn'


def _merge(a: str, b: str) -> str:
    if a == b:
        return a
    if a == 'null':
        return b
    if b == 'null':
        return a
    if a in NUMERIC and b in NUMERIC:
        return 'double'
    return 'dyn'
