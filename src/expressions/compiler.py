"""CEL compiler.

Turns expressions that embed references into CEL text for the in-cluster
control loop. Emission is bottom-up with precedence-aware parentheses:

    resources.web.status.readyReplicas > 0
    schema.spec.name + "-svc"
    resources.db.status.host != null ? resources.db.status.host : "localhost"

Values embedded in manifests are serialized as ``${...}`` interpolation
strings; templates keep their text, e.g. ``http://${resources.svc.spec.clusterIP}:80``.

For the direct target the original value is returned untouched (still
holding references) after the same checks, so unsupported constructs fail
at graph-build time either way.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from common import CompileError, ExpressionSyntaxError, is_identifier, join_path
from expressions.detect import DEFAULT_MAX_DEPTH, Detection, Diagnostic, detect
from expressions.functions import MATH_FUNCTIONS, normalize_function, normalize_method
from expressions.inference import infer_type, is_fallback_or
from expressions.nodes import (
    Binary, Call, Conditional, Expr, Fallback, Index, Lambda, ListExpr,
    Literal, Logical, Member, MethodCall, Template, Unary, Var,
)
from expressions.parser import has_interpolation, parse_interpolated
from expressions.source_map import SourceMap, SourceMapEntry
from expressions.validation import ValidationContext, validate_expression
from references import SCHEMA, Reference

logger = logging.getLogger(__name__)

TARGETS = ('cel', 'direct')

_BINARY_PRECEDENCE = {
    '==': 4, '!=': 4, '<': 4, '<=': 4, '>': 4, '>=': 4, 'in': 4,
    '+': 5, '-': 5,
    '*': 6, '/': 6, '%': 6,
}
_TERNARY = 1
_UNARY = 7
_POSTFIX = 8
_PRIMARY = 9


@dataclass(frozen=True)
class CompiledExpression:
    """CEL text for one expression.

    Attributes:
        expression_text: The CEL expression
        result_type: Inferred result type
        interpolation: Form embedded in manifests (``${...}`` or a mixed string)
    """
    expression_text: str
    result_type: str = 'dyn'
    interpolation: str = ''

    def __str__(self) -> str:
        return self.interpolation or f'${{{self.expression_text}}}'


@dataclass
class CompileResult:
    """Outcome of compile_expression().

    result_value is the CompiledExpression for a single expression, the
    value with every expression replaced by its interpolation string for
    containers, or the untouched input when no conversion was needed (and
    always for the direct target).
    """
    result_value: Any
    requires_conversion: bool
    referenced_resource_ids: set[str] = field(default_factory=set)
    references: list[Reference] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    source_map: SourceMap = field(default_factory=SourceMap)

    @property
    def warnings(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if not d.blocking]


def literal_text(value: Any) -> str:
    """Render a Python value as a CEL literal."""
    if value is None:
        return 'null'
    if value is True:
        return 'true'
    if value is False:
        return 'false'
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise CompileError(f"Cannot represent {value} in CEL")
        return repr(value)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, (list, tuple)):
        return '[' + ', '.join(literal_text(v) for v in value) + ']'
    if isinstance(value, dict):
        items = ', '.join(f'{json.dumps(str(k), ensure_ascii=False)}: {literal_text(v)}' for k, v in value.items())
        return '{' + items + '}'
    raise CompileError(f"Cannot represent {type(value).__name__} value in CEL")


def reference_text(reference: Reference) -> str:
    """``schema.<path>`` or ``resources.<id>.<path>``."""
    if reference.resource_id == SCHEMA:
        root = 'schema'
    elif is_identifier(reference.resource_id):
        root = f'resources.{reference.resource_id}'
    else:
        root = f'resources[{json.dumps(reference.resource_id)}]'
    if not reference.field_path:
        return root
    path = join_path(reference.segments)
    return f'{root}{path}' if path.startswith('[') else f'{root}.{path}'


def precedence(node: Expr) -> int:
    if isinstance(node, (Conditional, Fallback)):
        return _TERNARY
    if isinstance(node, Logical):
        if is_fallback_or(node):
            return _TERNARY
        return 2 if node.op == '||' else 3
    if isinstance(node, Binary):
        return _BINARY_PRECEDENCE[node.op]
    if isinstance(node, Unary):
        return _UNARY
    if isinstance(node, Literal):
        if isinstance(node.value, (int, float)) and not isinstance(node.value, bool) and node.value < 0:
            return _UNARY
        return _PRIMARY
    if isinstance(node, Call):
        if node.func in ('Math.min', 'Math.max', 'Math.abs'):
            return _TERNARY
        return _PRIMARY
    if isinstance(node, (Member, Index, MethodCall)):
        if isinstance(node, MethodCall) and node.method in ('includes', 'contains') \
                and infer_type(node.target) == 'list':
            return _BINARY_PRECEDENCE['in']
        return _POSTFIX
    if isinstance(node, Template):
        return 5 if len(node.parts) > 1 else _PRIMARY
    return _PRIMARY


class CelEmitter:
    """Writes CEL text for a node tree and records a source map."""

    def __init__(self, path: str = ''):
        self.buf = ''
        self.path = path
        self.scope: list[str] = []
        self.source_map = SourceMap()
        self._dispatch = {
            Literal: self._literal,
            Reference: self._reference,
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
            ListExpr: self._list,
        }

    def write(self, text: str) -> None:
        self.buf += text

    def emit(self, node: Expr, min_prec: int = 0) -> None:
        wrap = precedence(node) < min_prec
        if wrap:
            self.write('(')
        start = len(self.buf)
        handler = self._dispatch.get(type(node))
        if handler is None:
            if isinstance(node, Lambda):
                raise CompileError("Arrow functions are only allowed as method arguments")
            raise CompileError(f"Unsupported expression node: {type(node).__name__}")
        handler(node)
        end = len(self.buf)
        self.source_map.add(SourceMapEntry(
            type(node).__name__, node.span, start, end, self.buf[start:end], self.path))
        if wrap:
            self.write(')')

    def _literal(self, node: Literal) -> None:
        self.write(literal_text(node.value))

    def _reference(self, node: Reference) -> None:
        self.write(reference_text(node))

    def _var(self, node: Var) -> None:
        if node.name not in self.scope:
            raise CompileError(f"Unknown identifier '{node.name}'")
        self.write(node.name)

    def _member(self, node: Member) -> None:
        if node.name == 'length':
            self.write('size(')
            self.emit(node.obj)
            self.write(')')
            return
        self.emit(node.obj, _POSTFIX)
        if is_identifier(node.name):
            self.write(('.?' if node.optional else '.') + node.name)
        else:
            self.write(('[?' if node.optional else '[') + json.dumps(node.name) + ']')

    def _index(self, node: Index) -> None:
        self.emit(node.obj, _POSTFIX)
        self.write('[?' if node.optional else '[')
        self.emit(node.index)
        self.write(']')

    def _unary(self, node: Unary) -> None:
        if node.op not in ('!', '-'):
            raise CompileError(f"Unsupported unary operator '{node.op}'")
        self.write(node.op)
        self.emit(node.operand, _UNARY)

    def _binary(self, node: Binary) -> None:
        prec = _BINARY_PRECEDENCE.get(node.op)
        if prec is None:
            raise CompileError(f"Unsupported operator '{node.op}'")
        self.emit(node.left, prec)
        self.write(f' {node.op} ')
        self.emit(node.right, prec + 1)

    def _logical(self, node: Logical) -> None:
        if node.op == '||' and is_fallback_or(node):
            self._emit_fallback(node.left, node.right)
            return
        if node.op == '||':
            right_type = infer_type(node.right)
            if right_type not in ('bool', 'dyn'):
                raise CompileError(
                    "Unsupported pattern: '||' with a boolean left operand and a "
                    f"{right_type} right operand; use a ternary instead"
                )
        prec = 2 if node.op == '||' else 3
        self.emit(node.left, prec)
        self.write(f' {node.op} ')
        self.emit(node.right, prec + 1)

    def _fallback(self, node: Fallback) -> None:
        self._emit_fallback(node.left, node.right)

    def _emit_fallback(self, left: Expr, right: Expr) -> None:
        self.emit(left, 5)
        self.write(' != null ? ')
        self.emit(left, 2)
        self.write(' : ')
        self.emit(right, _TERNARY)

    def _conditional(self, node: Conditional) -> None:
        self.emit(node.test, 2)
        self.write(' ? ')
        self.emit(node.then, 2)
        self.write(' : ')
        self.emit(node.otherwise, _TERNARY)

    def _call(self, node: Call) -> None:
        name = normalize_function(node.func)
        if name in MATH_FUNCTIONS:
            self._math(node)
            return
        if len(node.args) != 1:
            raise CompileError(f"{node.func}() takes exactly one argument, got {len(node.args)}")
        if name == 'has':
            arg = node.args[0]
            if not (isinstance(arg, Member) or (isinstance(arg, Reference) and arg.field_path)):
                raise CompileError("has() requires a field selection argument")
        self.write(f'{name}(')
        self.emit(node.args[0])
        self.write(')')

    def _math(self, node: Call) -> None:
        args = node.args
        if node.func in ('Math.min', 'Math.max'):
            if not args:
                raise CompileError(f"{node.func}() requires at least one argument")
            self.emit(_fold_min_max(node.func, args), _TERNARY)
            return
        if len(args) != 1:
            raise CompileError(f"{node.func}() takes exactly one argument")
        x = args[0]
        if node.func == 'Math.abs':
            self.emit(Conditional(Binary('<', x, Literal(0)), Unary('-', x), x))
        elif node.func == 'Math.floor':
            self.emit(Call('int', (x,)))
        elif node.func == 'Math.ceil':
            self.emit(Call('int', (Binary('+', x, Literal(0.999999)),)))
        else:
            self.emit(Call('int', (Binary('+', x, Literal(0.5)),)))

    def _method_call(self, node: MethodCall) -> None:
        method = normalize_method(node.method)

        if method in ('exists', 'all', 'exists_one', 'filter', 'map', 'find', 'flatMap'):
            if len(node.args) != 1 or not isinstance(node.args[0], Lambda):
                raise CompileError(f"{node.method}() requires a single arrow-function argument")
            fn = node.args[0]
            self.emit(node.target, _POSTFIX)
            macro = {'find': 'filter', 'flatMap': 'map'}.get(method, method)
            self.write(f'.{macro}({fn.param}, ')
            self.scope.append(fn.param)
            try:
                self.emit(fn.body)
            finally:
                self.scope.pop()
            self.write(')')
            if method == 'find':
                self.write('[0]')
            elif method == 'flatMap':
                self.write('.flatten()')
            return

        if method == 'size':
            if node.args:
                raise CompileError("size() takes no arguments")
            self.write('size(')
            self.emit(node.target)
            self.write(')')
            return

        if method == 'contains' and infer_type(node.target) == 'list':
            if len(node.args) != 1:
                raise CompileError(f"{node.method}() takes exactly one argument")
            self.emit(node.args[0], 5)
            self.write(' in ')
            self.emit(node.target, 5)
            return

        if method in ('lowerAscii', 'upperAscii', 'trim') and node.args:
            raise CompileError(f"{node.method}() takes no arguments")

        self.emit(node.target, _POSTFIX)
        self.write(f'.{method}(')
        for i, arg in enumerate(node.args):
            if i:
                self.write(', ')
            self.emit(arg)
        self.write(')')

    def _template(self, node: Template) -> None:
        pieces = [_as_string(p) for p in node.parts if not (isinstance(p, str) and p == '')]
        if not pieces:
            self.write('""')
            return
        for i, piece in enumerate(pieces):
            if i:
                self.write(' + ')
            self.emit(piece, 6)

    def _list(self, node: ListExpr) -> None:
        self.write('[')
        for i, item in enumerate(node.items):
            if i:
                self.write(', ')
            self.emit(item)
        self.write(']')


def _fold_min_max(func: str, args: tuple) -> Expr:
    first = args[0]
    if len(args) == 1:
        return first
    rest = _fold_min_max(func, args[1:])
    op = '<' if func == 'Math.min' else '>'
    return Conditional(Binary(op, first, rest), first, rest)


def _as_string(part: Union[str, Expr]) -> Expr:
    if isinstance(part, str):
        return Literal(part)
    part_type = infer_type(part)
    if part_type in ('string', 'dyn'):
        return part
    return Call('string', (part,))


def _template_text(value: Any) -> str:
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def compile_node(node: Expr, path: str = '') -> tuple[CompiledExpression, SourceMap]:
    """Compile one expression tree to CEL.

    Raises:
        CompileError: If the expression cannot be represented
    """
    emitter = CelEmitter(path)
    emitter.emit(node)
    text = emitter.buf
    result_type = infer_type(node)

    if isinstance(node, Template) and any(isinstance(p, str) for p in node.parts):
        mixed = ''
        for part in node.parts:
            if isinstance(part, str):
                mixed += part
            elif isinstance(part, Literal):
                mixed += _template_text(part.value)
            else:
                mixed += '${' + compile_node(part, path)[0].expression_text + '}'
        interpolation = mixed
    else:
        interpolation = '${' + text + '}'

    return CompiledExpression(text, result_type, interpolation), emitter.source_map


def _coerce_context(context: Union[None, str, ValidationContext]) -> Optional[ValidationContext]:
    if context is None or isinstance(context, ValidationContext):
        return context
    return ValidationContext(context)


class _Converter:
    """Replaces every expression inside a value with its compiled form."""

    def __init__(self, resource_ids: Optional[set[str]], context: Optional[ValidationContext],
                 strict: bool, max_depth: int):
        self.resource_ids = resource_ids
        self.context = context
        self.strict = strict
        self.max_depth = max_depth
        self.source_map = SourceMap()
        self.diagnostics: list[Diagnostic] = []

    def compile_leaf(self, node: Expr, path: str) -> CompiledExpression:
        compiled, source_map = compile_node(node, path)
        self.source_map.extend(source_map)
        if self.context is not None:
            found = validate_expression(node, self.context, strict=self.strict)
            self.diagnostics.extend(Diagnostic(d.severity, d.message, path or d.path, d.code) for d in found)
        return compiled

    def convert(self, value: Any, path: list, depth: int) -> Any:
        if depth > self.max_depth:
            return value
        location = join_path(path)
        if isinstance(value, Expr):
            if not detect(value, self.max_depth).has_references:
                return value
            return self.compile_leaf(value, location)
        if isinstance(value, str):
            if not has_interpolation(value):
                return value
            try:
                parsed = parse_interpolated(value, self.resource_ids)
            except ExpressionSyntaxError:
                return value
            if isinstance(parsed, str) or not detect(parsed, self.max_depth).has_references:
                return value
            return self.compile_leaf(parsed, location)
        if isinstance(value, dict):
            return {k: self._embed(self.convert(v, path + [str(k)], depth + 1)) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._embed(self.convert(v, path + [i], depth + 1)) for i, v in enumerate(value)]
        return value

    @staticmethod
    def _embed(value: Any) -> Any:
        return str(value) if isinstance(value, CompiledExpression) else value


def compile_expression(
    value: Any,
    target: str = 'cel',
    context: Union[None, str, ValidationContext] = None,
    strict: bool = False,
    resource_ids: Optional[set[str]] = None,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> CompileResult:
    """Compile an author value for the given target.

    Args:
        value: Expression node, ``${...}`` string, or a container of them
        target: 'cel' for the control loop, 'direct' for in-process evaluation
        context: Validation context ('status', 'condition', 'resource-field')
        strict: Turn context findings into blocking errors
        resource_ids: Known graph ids, so bare ids in text are references
        max_depth: Nesting bound for scanning containers

    Returns:
        CompileResult; reference-free input comes back unchanged with
        requires_conversion=False

    Raises:
        CompileError: If an expression is unrepresentable, or strict
            validation found blocking problems
    """
    if target not in TARGETS:
        raise CompileError(f"Unknown compile target '{target}'. Valid: {', '.join(TARGETS)}")

    detection: Detection = detect(value, max_depth, resource_ids)
    if not detection.has_references:
        return CompileResult(value, False, set(), [], list(detection.diagnostics), SourceMap())

    converter = _Converter(resource_ids, _coerce_context(context), strict, max_depth)
    converted = converter.convert(value, [], 0)
    diagnostics = list(detection.diagnostics) + converter.diagnostics

    blocking = [d for d in diagnostics if d.blocking]
    if blocking:
        raise CompileError('; '.join(str(d) for d in blocking))

    result_value = value if target == 'direct' else converted
    return CompileResult(
        result_value=result_value,
        requires_conversion=True,
        referenced_resource_ids=detection.resource_ids,
        references=list(detection.references),
        diagnostics=diagnostics,
        source_map=converter.source_map,
    )


def compile(value: Any, target: str = 'cel') -> Any:  # noqa: A001
    """Shorthand returning only the compiled value (or the original)."""
    return compile_expression(value, target).result_value


def to_cel(value: Any) -> str:
    """CEL text for a single expression.

    Raises:
        CompileError: If the value holds no expression
    """
    result = compile_expression(value, 'cel').result_value
    if not isinstance(result, CompiledExpression):
        raise CompileError("Value does not contain a single expression")
    return result.expression_text
