"""Expression node model.

Expressions are explicit trees of frozen dataclasses. They are composed
with Python operators (``ref > 0``, ``a + b``, ``a & b``) and the builder
functions below, or produced by the parser from text.

Equality (``==``) keeps its dataclass meaning so nodes stay hashable;
use ``.eq()`` / ``.ne()`` to build comparison nodes.
"""

from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Union

Span = Optional[tuple[int, int]]


class Expr:
    """Base class for expression nodes."""

    def children(self) -> Iterator['Expr']:
        return iter(())

    # Comparisons
    def eq(self, other: Any) -> 'Binary':
        return Binary('==', self, to_expr(other))

    def ne(self, other: Any) -> 'Binary':
        return Binary('!=', self, to_expr(other))

    def __lt__(self, other: Any) -> 'Binary':
        return Binary('<', self, to_expr(other))

    def __le__(self, other: Any) -> 'Binary':
        return Binary('<=', self, to_expr(other))

    def __gt__(self, other: Any) -> 'Binary':
        return Binary('>', self, to_expr(other))

    def __ge__(self, other: Any) -> 'Binary':
        return Binary('>=', self, to_expr(other))

    # Arithmetic
    def __add__(self, other: Any) -> 'Binary':
        return Binary('+', self, to_expr(other))

    def __radd__(self, other: Any) -> 'Binary':
        return Binary('+', to_expr(other), self)

    def __sub__(self, other: Any) -> 'Binary':
        return Binary('-', self, to_expr(other))

    def __rsub__(self, other: Any) -> 'Binary':
        return Binary('-', to_expr(other), self)

    def __mul__(self, other: Any) -> 'Binary':
        return Binary('*', self, to_expr(other))

    def __rmul__(self, other: Any) -> 'Binary':
        return Binary('*', to_expr(other), self)

    def __truediv__(self, other: Any) -> 'Binary':
        return Binary('/', self, to_expr(other))

    def __mod__(self, other: Any) -> 'Binary':
        return Binary('%', self, to_expr(other))

    def __neg__(self) -> 'Unary':
        return Unary('-', self)

    # Boolean connectives
    def __and__(self, other: Any) -> 'Logical':
        return Logical('&&', self, to_expr(other))

    def __rand__(self, other: Any) -> 'Logical':
        return Logical('&&', to_expr(other), self)

    def __or__(self, other: Any) -> 'Logical':
        return Logical('||', self, to_expr(other))

    def __ror__(self, other: Any) -> 'Logical':
        return Logical('||', to_expr(other), self)

    def __invert__(self) -> 'Unary':
        return Unary('!', self)

    # Access
    def field(self, name: str) -> 'Member':
        return Member(self, name)

    def opt(self, name: str) -> 'Member':
        """Optional (short-circuiting) member access."""
        return Member(self, name, optional=True)

    def __getitem__(self, index: Any) -> 'Index':
        return Index(self, to_expr(index))

    def opt_index(self, index: Any) -> 'Index':
        return Index(self, to_expr(index), optional=True)

    def call(self, method: str, *args: Any) -> 'MethodCall':
        return MethodCall(self, method, tuple(to_expr(a) for a in args))

    def size(self) -> 'Call':
        return Call('size', (self,))

    def contains(self, value: Any) -> 'MethodCall':
        return self.call('contains', value)

    def is_in(self, values: Any) -> 'Binary':
        return Binary('in', self, to_expr(values))

    def or_else(self, default: Any) -> 'Fallback':
        """Nullish fallback (``??``)."""
        return Fallback(self, to_expr(default))


@dataclass(frozen=True, eq=True)
class Literal(Expr):
    value: Any
    span: Span = field(default=None, compare=False, repr=False)

    def __hash__(self):
        try:
            return hash(('Literal', self.value))
        except TypeError:
            return hash(('Literal', repr(self.value)))


@dataclass(frozen=True)
class Var(Expr):
    """A lambda parameter."""
    name: str
    span: Span = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Member(Expr):
    obj: Expr
    name: str
    optional: bool = False
    span: Span = field(default=None, compare=False, repr=False)

    def children(self) -> Iterator[Expr]:
        yield self.obj


@dataclass(frozen=True)
class Index(Expr):
    obj: Expr
    index: Expr
    optional: bool = False
    span: Span = field(default=None, compare=False, repr=False)

    def children(self) -> Iterator[Expr]:
        yield self.obj
        yield self.index


@dataclass(frozen=True)
class Unary(Expr):
    op: str
    operand: Expr
    span: Span = field(default=None, compare=False, repr=False)

    def children(self) -> Iterator[Expr]:
        yield self.operand


@dataclass(frozen=True)
class Binary(Expr):
    """Arithmetic, comparison and membership operators."""
    op: str
    left: Expr
    right: Expr
    span: Span = field(default=None, compare=False, repr=False)

    def children(self) -> Iterator[Expr]:
        yield self.left
        yield self.right


@dataclass(frozen=True)
class Logical(Expr):
    """``&&`` or ``||``. A ``||`` whose left side is not boolean is a fallback."""
    op: str
    left: Expr
    right: Expr
    span: Span = field(default=None, compare=False, repr=False)

    def children(self) -> Iterator[Expr]:
        yield self.left
        yield self.right


@dataclass(frozen=True)
class Fallback(Expr):
    """Nullish coalescing (``left ?? right``)."""
    left: Expr
    right: Expr
    span: Span = field(default=None, compare=False, repr=False)

    def children(self) -> Iterator[Expr]:
        yield self.left
        yield self.right


@dataclass(frozen=True)
class Conditional(Expr):
    test: Expr
    then: Expr
    otherwise: Expr
    span: Span = field(default=None, compare=False, repr=False)

    def children(self) -> Iterator[Expr]:
        yield self.test
        yield self.then
        yield self.otherwise


@dataclass(frozen=True)
class Call(Expr):
    """Global function call, e.g. ``size(x)`` or ``Math.max(a, b)``."""
    func: str
    args: tuple = ()
    span: Span = field(default=None, compare=False, repr=False)

    def children(self) -> Iterator[Expr]:
        yield from self.args


@dataclass(frozen=True)
class MethodCall(Expr):
    target: Expr
    method: str
    args: tuple = ()
    span: Span = field(default=None, compare=False, repr=False)

    def children(self) -> Iterator[Expr]:
        yield self.target
        yield from self.args


@dataclass(frozen=True)
class Lambda(Expr):
    """Single-parameter predicate/projection, ``x => body``."""
    param: str
    body: Expr
    span: Span = field(default=None, compare=False, repr=False)

    def children(self) -> Iterator[Expr]:
        yield self.body


@dataclass(frozen=True)
class Template(Expr):
    """String template; parts are plain strings or expressions."""
    parts: tuple
    span: Span = field(default=None, compare=False, repr=False)

    def children(self) -> Iterator[Expr]:
        for part in self.parts:
            if isinstance(part, Expr):
                yield part


@dataclass(frozen=True)
class ListExpr(Expr):
    items: tuple
    span: Span = field(default=None, compare=False, repr=False)

    def children(self) -> Iterator[Expr]:
        yield from self.items


def to_expr(value: Any) -> Expr:
    """Wrap a plain Python value as an expression node."""
    if isinstance(value, Expr):
        return value
    if isinstance(value, (list, tuple)):
        items = tuple(to_expr(v) for v in value)
        if any(not isinstance(i, Literal) for i in items):
            return ListExpr(items)
    return Literal(value)


def lit(value: Any) -> Literal:
    return Literal(value)


def var(name: str) -> Var:
    return Var(name)


def cond(test: Any, then: Any, otherwise: Any) -> Conditional:
    """Ternary ``test ? then : otherwise``."""
    return Conditional(to_expr(test), to_expr(then), to_expr(otherwise))


def not_(value: Any) -> Unary:
    return Unary('!', to_expr(value))


def all_of(*values: Any) -> Expr:
    """Join values with ``&&``."""
    if not values:
        return Literal(True)
    result = to_expr(values[0])
    for value in values[1:]:
        result = Logical('&&', result, to_expr(value))
    return result


def any_of(*values: Any) -> Expr:
    """Join values with ``||``."""
    if not values:
        return Literal(False)
    result = to_expr(values[0])
    for value in values[1:]:
        result = Logical('||', result, to_expr(value))
    return result


def fallback(value: Any, default: Any) -> Fallback:
    return Fallback(to_expr(value), to_expr(default))


def call(func: str, *args: Any) -> Call:
    return Call(func, tuple(to_expr(a) for a in args))


def lam(param: str, body: Any) -> Lambda:
    return Lambda(param, to_expr(body))


def template(*parts: Union[str, Any]) -> Template:
    """Build a string template from text and expression parts.

    Example:
        template('http://', svc.status('loadBalancer.ingress[0].ip'), ':80')
    """
    return Template(tuple(p if isinstance(p, (str, Expr)) else Literal(p) for p in parts))


def walk(node: Expr) -> Iterator[Expr]:
    """Yield node and all its descendants, depth first."""
    yield node
    for child in node.children():
        yield from walk(child)
