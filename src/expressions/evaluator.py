"""Direct evaluation of expression trees.

Used when graph-driver applies resources itself: references are resolved
against live objects and the expression is evaluated in-process with
JavaScript-like semantics (truthiness for ``||``/``&&``, nullishness for
``??``, optional access yields None).

Only whitelisted methods and functions run; there is no general-purpose
evaluation of author code.
"""

import math
import operator
import re
from typing import Any, Callable, Optional

from common import CompileError, EvaluationError, UnresolvedReferenceError, get_path
from expressions.functions import normalize_function, normalize_method
from expressions.nodes import (
    Binary, Call, Conditional, Expr, Fallback, Index, Lambda, ListExpr,
    Literal, Logical, Member, MethodCall, Template, Unary, Var,
)
from references import Reference

# resolve(reference, optional) -> value
Resolver = Callable[[Reference, bool], Any]


def truthy(value: Any) -> bool:
    """JavaScript truthiness: empty lists and maps are truthy."""
    if value is None or value is False:
        return False
    if isinstance(value, bool):
        return True
    if isinstance(value, (int, float)):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value != ''
    return True


def to_text(value: Any) -> str:
    """String conversion used by templates and string()."""
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _add(a: Any, b: Any) -> Any:
    if isinstance(a, str) or isinstance(b, str):
        return to_text(a) + to_text(b)
    return a + b


def _div(a: Any, b: Any) -> Any:
    if b == 0:
        raise ZeroDivisionError("division by zero")
    return a / b


def _mod(a: Any, b: Any) -> Any:
    if b == 0:
        raise ZeroDivisionError("modulo by zero")
    return math.fmod(a, b) if isinstance(a, float) or isinstance(b, float) else int(math.fmod(a, b))


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    return item in container


_BINARY_OPS: dict[str, Callable[[Any, Any], Any]] = {
    '+': _add,
    '-': operator.sub,
    '*': operator.mul,
    '/': _div,
    '%': _mod,
    '==': operator.eq,
    '!=': operator.ne,
    '<': operator.lt,
    '<=': operator.le,
    '>': operator.gt,
    '>=': operator.ge,
    'in': lambda a, b: _contains(b, a),
}


def _index_of(target: Any, item: Any) -> int:
    if isinstance(target, str):
        return target.find(item)
    try:
        return list(target).index(item)
    except ValueError:
        return -1


def _last_index_of(target: Any, item: Any) -> int:
    if isinstance(target, str):
        return target.rfind(item)
    items = list(target)
    for i in range(len(items) - 1, -1, -1):
        if items[i] == item:
            return i
    return -1


def _substring(target: str, start: int = 0, end: Optional[int] = None) -> str:
    return target[int(start):] if end is None else target[int(start):int(end)]


def _split(target: str, sep: str, limit: Optional[int] = None) -> list:
    parts = target.split(sep) if sep != '' else list(target)
    return parts if limit is None else parts[:int(limit)]


def _join(target: list, sep: str = ',') -> str:
    return sep.join(to_text(v) for v in target)


_METHODS: dict[str, Callable[..., Any]] = {
    'contains': _contains,
    'startsWith': lambda s, p: s.startswith(p),
    'endsWith': lambda s, p: s.endswith(p),
    'lowerAscii': lambda s: s.lower(),
    'upperAscii': lambda s: s.upper(),
    'trim': lambda s: s.strip(),
    'substring': _substring,
    'split': _split,
    'join': _join,
    'indexOf': _index_of,
    'lastIndexOf': _last_index_of,
    'replace': lambda s, old, new: s.replace(old, new),
    'matches': lambda s, pattern: re.search(pattern, s) is not None,
    'size': len,
}


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(float(value.strip()))
    return int(value)


def _js_round(value: float) -> int:
    return math.floor(value + 0.5)


_FUNCTIONS: dict[str, Callable[..., Any]] = {
    'size': len,
    'string': to_text,
    'int': _to_int,
    'double': float,
    'bool': truthy,
    'Math.min': min,
    'Math.max': max,
    'Math.abs': abs,
    'Math.floor': math.floor,
    'Math.ceil': math.ceil,
    'Math.round': _js_round,
}


class Evaluator:
    """Evaluates a node tree given a reference resolver."""

    def __init__(self, resolve: Resolver):
        self.resolve = resolve
        self.scope: dict[str, Any] = {}
        self._dispatch = {
            Literal: lambda n: n.value,
            Reference: lambda n: self.resolve(n, False),
            Var: self._var,
            Member: self._member,
            Index: self._index,
            Unary: self._unary,
            Binary: self._binary,
            Logical: self._logical,
            Fallback: self._fallback,
            Conditional: self._conditional,
            Call: self._call,
            MethodCall: self._method_call,
            Template: self._template,
            ListExpr: lambda n: [self.eval(i) for i in n.items],
        }

    def eval(self, node: Expr) -> Any:
        handler = self._dispatch.get(type(node))
        if handler is None:
            raise EvaluationError(f"Cannot evaluate {type(node).__name__} here")
        return handler(node)

    def eval_optional(self, node: Expr) -> Any:
        """Evaluate, mapping an unresolvable bare reference to None."""
        if isinstance(node, Reference):
            return self.resolve(node, True)
        return self.eval(node)

    def _var(self, node: Var) -> Any:
        if node.name not in self.scope:
            raise EvaluationError(f"Unknown identifier '{node.name}'")
        return self.scope[node.name]

    def _member(self, node: Member) -> Any:
        obj = self.eval_optional(node.obj) if node.optional else self.eval(node.obj)
        if obj is None:
            if node.optional:
                return None
            raise EvaluationError(f"Cannot read '{node.name}' of null")
        if node.name == 'length':
            return len(obj)
        if isinstance(obj, dict):
            return obj.get(node.name)
        raise EvaluationError(f"Cannot read '{node.name}' of {type(obj).__name__}")

    def _index(self, node: Index) -> Any:
        obj = self.eval_optional(node.obj) if node.optional else self.eval(node.obj)
        if obj is None:
            if node.optional:
                return None
            raise EvaluationError("Cannot index null")
        key = self.eval(node.index)
        if isinstance(obj, (list, str)):
            if isinstance(key, float) and key.is_integer():
                key = int(key)
            if not isinstance(key, int) or isinstance(key, bool):
                raise EvaluationError(f"List index must be an integer, got {key!r}")
            return obj[key] if -len(obj) <= key < len(obj) else None
        if isinstance(obj, dict):
            return obj.get(key)
        raise EvaluationError(f"Cannot index {type(obj).__name__}")

    def _unary(self, node: Unary) -> Any:
        value = self.eval(node.operand)
        if node.op == '!':
            return not truthy(value)
        if node.op == '-':
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise EvaluationError(f"Cannot negate {value!r}")
            return -value
        raise EvaluationError(f"Unsupported unary operator '{node.op}'")

    def _binary(self, node: Binary) -> Any:
        fn = _BINARY_OPS.get(node.op)
        if fn is None:
            raise EvaluationError(f"Unsupported operator '{node.op}'")
        left = self.eval(node.left)
        right = self.eval(node.right)
        try:
            return fn(left, right)
        except (TypeError, ZeroDivisionError) as e:
            raise EvaluationError(f"Cannot evaluate {left!r} {node.op} {right!r}: {e}") from e

    def _logical(self, node: Logical) -> Any:
        left = self.eval_optional(node.left) if node.op == '||' else self.eval(node.left)
        if node.op == '&&':
            return self.eval(node.right) if truthy(left) else left
        return left if truthy(left) else self.eval(node.right)

    def _fallback(self, node: Fallback) -> Any:
        left = self.eval_optional(node.left)
        return left if left is not None else self.eval(node.right)

    def _conditional(self, node: Conditional) -> Any:
        return self.eval(node.then) if truthy(self.eval(node.test)) else self.eval(node.otherwise)

    def _call(self, node: Call) -> Any:
        try:
            name = normalize_function(node.func)
        except CompileError as e:
            raise EvaluationError(str(e)) from e
        if name == 'has':
            if len(node.args) != 1:
                raise EvaluationError("has() takes exactly one argument")
            return self.eval_optional(node.args[0]) is not None
        args = [self.eval(a) for a in node.args]
        try:
            return _FUNCTIONS[name](*args)
        except (TypeError, ValueError) as e:
            raise EvaluationError(f"{node.func}() failed: {e}") from e

    def _method_call(self, node: MethodCall) -> Any:
        try:
            method = normalize_method(node.method)
        except CompileError as e:
            raise EvaluationError(str(e)) from e
        target = self.eval(node.target)

        if method in ('exists', 'all', 'exists_one', 'filter', 'map', 'find', 'flatMap'):
            if len(node.args) != 1 or not isinstance(node.args[0], Lambda):
                raise EvaluationError(f"{node.method}() requires a single arrow-function argument")
            return self._apply_predicate(method, target, node.args[0])

        if target is None:
            raise EvaluationError(f"Cannot call {node.method}() on null")
        args = [self.eval(a) for a in node.args]
        try:
            return _METHODS[method](target, *args)
        except (TypeError, ValueError, AttributeError, re.error) as e:
            raise EvaluationError(f"{node.method}() failed: {e}") from e

    def _apply_predicate(self, method: str, items: Any, fn: Lambda) -> Any:
        if items is None:
            items = []
        if isinstance(items, dict):
            items = list(items.keys())
        results = [(item, self._call_lambda(fn, item)) for item in items]

        if method == 'exists':
            return any(truthy(r) for _, r in results)
        if method == 'all':
            return all(truthy(r) for _, r in results)
        if method == 'exists_one':
            return sum(1 for _, r in results if truthy(r)) == 1
        if method == 'filter':
            return [item for item, r in results if truthy(r)]
        if method == 'map':
            return [r for _, r in results]
        if method == 'find':
            return next((item for item, r in results if truthy(r)), None)
        flat = []
        for _, r in results:
            flat.extend(r if isinstance(r, list) else [r])
        return flat

    def _call_lambda(self, fn: Lambda, value: Any) -> Any:
        previous = self.scope.get(fn.param, _UNSET)
        self.scope[fn.param] = value
        try:
            return self.eval(fn.body)
        finally:
            if previous is _UNSET:
                del self.scope[fn.param]
            else:
                self.scope[fn.param] = previous

    def _template(self, node: Template) -> str:
        return ''.join(p if isinstance(p, str) else to_text(self.eval(p)) for p in node.parts)


_UNSET = object()


def evaluate(node: Expr, resolve: Resolver) -> Any:
    """Evaluate node, resolving references through resolve.

    Raises:
        UnresolvedReferenceError: If a required reference has no live value
        EvaluationError: If the expression fails to evaluate
    """
    return Evaluator(resolve).eval(node)


def resolver_from_mapping(values: dict) -> Resolver:
    """Build a resolver over {resource_id: live_object}."""

    def resolve(reference: Reference, optional: bool) -> Any:
        obj = values.get(reference.resource_id)
        if obj is None:
            if optional:
                return None
            raise UnresolvedReferenceError(
                f"No value for '{reference.resource_id}'", reference.resource_id, reference.field_path)
        if not reference.field_path:
            return obj
        try:
            return get_path(obj, reference.field_path)
        except KeyError:
            if optional:
                return None
            raise UnresolvedReferenceError(
                f"Field '{reference.field_path}' not found on '{reference.resource_id}'",
                reference.resource_id, reference.field_path) from None

    return resolve
