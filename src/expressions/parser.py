"""Parser for the textual expression form.

Accepts a JavaScript-like syntax:

    resources.web.status.readyReplicas > 0
    schema.spec.replicas ?? 1
    resources.svc.status?.loadBalancer?.ingress[0].ip || 'pending'
    resources.pods.status.items.filter(p => p.ready).size() > 2
    `http://${resources.svc.spec.clusterIP}:${schema.spec.port}`

Roots are ``resources.<id>`` and ``schema``; when the parser is given the
graph's resource ids a bare ``<id>`` is also a root. Plain dotted steps
after a root fold into one Reference path until the first optional or
computed access.

Strings embedding ``${...}`` are handled by parse_interpolated().
"""

import dataclasses
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union

from common import ExpressionSyntaxError, join_path
from expressions.nodes import (
    Binary, Call, Conditional, Expr, Fallback, Index, Lambda, ListExpr,
    Literal, Logical, Member, MethodCall, Template, Unary, Var,
)
from references import SCHEMA, Reference

_OPERATORS = (
    '===', '!==', '=>', '==', '!=', '<=', '>=', '&&', '||', '??', '?.',
    '?', '(', ')', '[', ']', ',', ':', '.', '!', '<', '>', '+', '-', '*', '/', '%',
)

_BINARY_PRECEDENCE = {
    '??': 3, '||': 3,
    '&&': 4,
    '==': 8, '!=': 8, '===': 8, '!==': 8,
    '<': 9, '<=': 9, '>': 9, '>=': 9, 'in': 9,
    '+': 11, '-': 11,
    '*': 12, '/': 12, '%': 12,
}
_TERNARY_PRECEDENCE = 2

_KEYWORD_LITERALS = {'true': True, 'false': False, 'null': None, 'undefined': None}
_ESCAPES = {'n': '\n', 't': '\t', 'r': '\r', '0': '\0', 'b': '\b', 'f': '\f', 'v': '\v'}


@dataclass
class Token:
    kind: str  # num, str, template, ident, op, eof
    value: Any
    start: int
    end: int


def _skip_quoted(text: str, i: int) -> int:
    """Return the index just past the string literal starting at text[i]."""
    quote = text[i]
    i += 1
    while i < len(text):
        ch = text[i]
        if ch == '\\':
            i += 2
            continue
        if quote == '`' and text.startswith('${', i):
            i = _skip_braces(text, i + 2)
            continue
        if ch == quote:
            return i + 1
        i += 1
    raise ExpressionSyntaxError("Unterminated string literal", text, i)


def _skip_braces(text: str, i: int) -> int:
    """Return the index just past the '}' closing a '${' whose body starts at i."""
    depth = 1
    while i < len(text):
        ch = text[i]
        if ch in ('"', "'", '`'):
            i = _skip_quoted(text, i)
            continue
        if ch == '{':
            depth += 1
        elif ch == '}':
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    raise ExpressionSyntaxError("Unterminated '${' interpolation", text, i)


def find_interpolations(text: str) -> list[tuple[int, int]]:
    """Return (start, end) spans of every ``${...}`` in text.

    start indexes the '$', end is one past the closing brace.
    """
    spans = []
    pos = 0
    while True:
        start = text.find('${', pos)
        if start == -1:
            return spans
        end = _skip_braces(text, start + 2)
        spans.append((start, end))
        pos = end


def has_interpolation(text: str) -> bool:
    return '${' in text


def _read_string(text: str, i: int) -> tuple[str, int]:
    quote = text[i]
    out = []
    i += 1
    while i < len(text):
        ch = text[i]
        if ch == '\\':
            if i + 1 >= len(text):
                break
            nxt = text[i + 1]
            if nxt == 'u' and i + 5 < len(text):
                out.append(chr(int(text[i + 2:i + 6], 16)))
                i += 6
                continue
            out.append(_ESCAPES.get(nxt, nxt))
            i += 2
            continue
        if ch == quote:
            return ''.join(out), i + 1
        out.append(ch)
        i += 1
    raise ExpressionSyntaxError("Unterminated string literal", text, i)


def _read_template(text: str, i: int) -> tuple[list, int]:
    """Split a backtick template into ('text', s) and ('expr', src, offset) parts."""
    parts: list = []
    buf = []
    i += 1
    while i < len(text):
        ch = text[i]
        if ch == '\\' and i + 1 < len(text):
            buf.append(_ESCAPES.get(text[i + 1], text[i + 1]))
            i += 2
            continue
        if ch == '`':
            if buf:
                parts.append(('text', ''.join(buf)))
            return parts, i + 1
        if text.startswith('${', i):
            if buf:
                parts.append(('text', ''.join(buf)))
                buf = []
            end = _skip_braces(text, i + 2)
            parts.append(('expr', text[i + 2:end - 1], i + 2))
            i = end
            continue
        buf.append(ch)
        i += 1
    raise ExpressionSyntaxError("Unterminated template literal", text, i)


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue
        start = i
        if ch.isdigit() or (ch == '.' and i + 1 < n and text[i + 1].isdigit()):
            while i < n and (text[i].isdigit() or text[i] == '.'):
                i += 1
            if i < n and text[i] in 'eE':
                i += 1
                if i < n and text[i] in '+-':
                    i += 1
                while i < n and text[i].isdigit():
                    i += 1
            raw = text[start:i]
            try:
                value = int(raw) if raw.isdigit() else float(raw)
            except ValueError as e:
                raise ExpressionSyntaxError(f"Invalid number '{raw}'", text, start) from e
            tokens.append(Token('num', value, start, i))
        elif ch in ('"', "'"):
            value, i = _read_string(text, i)
            tokens.append(Token('str', value, start, i))
        elif ch == '`':
            parts, i = _read_template(text, i)
            tokens.append(Token('template', parts, start, i))
        elif ch.isalpha() or ch in '_$':
            while i < n and (text[i].isalnum() or text[i] in '_$'):
                i += 1
            tokens.append(Token('ident', text[start:i], start, i))
        else:
            for op in _OPERATORS:
                if text.startswith(op, i):
                    tokens.append(Token('op', op, start, i + len(op)))
                    i += len(op)
                    break
            else:
                raise ExpressionSyntaxError(f"Unexpected character '{ch}'", text, i)
    tokens.append(Token('eof', None, n, n))
    return tokens


def _with_span(node: Expr, start: int, end: int) -> Expr:
    return dataclasses.replace(node, span=(start, end))


class Parser:
    """Pratt parser producing expression nodes."""

    def __init__(self, text: str, resource_ids: Optional[Iterable[str]] = None, offset: int = 0):
        self.text = text
        self.offset = offset
        self.tokens = tokenize(text)
        self.pos = 0
        self.resource_ids = set(resource_ids or ())
        self.scope: list[str] = []

    # Token helpers

    def peek(self, ahead: int = 0) -> Token:
        idx = min(self.pos + ahead, len(self.tokens) - 1)
        return self.tokens[idx]

    def next(self) -> Token:
        tok = self.tokens[self.pos]
        if tok.kind != 'eof':
            self.pos += 1
        return tok

    def at_op(self, op: str, ahead: int = 0) -> bool:
        tok = self.peek(ahead)
        return tok.kind == 'op' and tok.value == op

    def expect_op(self, op: str) -> Token:
        tok = self.next()
        if tok.kind != 'op' or tok.value != op:
            raise self.error(f"Expected '{op}'", tok)
        return tok

    def expect_ident(self) -> Token:
        tok = self.next()
        if tok.kind != 'ident':
            raise self.error("Expected identifier", tok)
        return tok

    def error(self, message: str, tok: Token) -> ExpressionSyntaxError:
        found = 'end of expression' if tok.kind == 'eof' else repr(tok.value)
        return ExpressionSyntaxError(f"{message}, found {found}", self.text, tok.start + self.offset)

    def span(self, start: int, end: int) -> tuple[int, int]:
        return (start + self.offset, end + self.offset)

    def last_end(self) -> int:
        return self.tokens[self.pos - 1].end if self.pos else 0

    # Grammar

    def parse(self) -> Expr:
        node = self.parse_expr(0)
        tok = self.peek()
        if tok.kind != 'eof':
            raise self.error("Unexpected token", tok)
        return node

    def parse_expr(self, min_prec: int) -> Expr:
        start = self.peek().start
        left = self.parse_unary()
        while True:
            tok = self.peek()
            if tok.kind == 'op' and tok.value == '?':
                if _TERNARY_PRECEDENCE < min_prec:
                    break
                self.next()
                then = self.parse_expr(0)
                self.expect_op(':')
                otherwise = self.parse_expr(_TERNARY_PRECEDENCE)
                left = Conditional(left, then, otherwise, span=self.span(start, self.last_end()))
                continue

            op = tok.value if tok.kind == 'op' or (tok.kind == 'ident' and tok.value == 'in') else None
            prec = _BINARY_PRECEDENCE.get(op) if op else None
            if prec is None or prec < min_prec:
                break
            self.next()
            right = self.parse_expr(prec + 1)
            span = self.span(start, self.last_end())
            if op in ('&&', '||'):
                left = Logical(op, left, right, span=span)
            elif op == '??':
                left = Fallback(left, right, span=span)
            else:
                left = Binary({'===': '==', '!==': '!='}.get(op, op), left, right, span=span)
        return left

    def parse_unary(self) -> Expr:
        tok = self.peek()
        if tok.kind == 'op' and tok.value in ('!', '-', '+'):
            self.next()
            operand = self.parse_unary()
            if tok.value == '+':
                return operand
            if tok.value == '-' and isinstance(operand, Literal) and isinstance(operand.value, (int, float)):
                return Literal(-operand.value, span=self.span(tok.start, self.last_end()))
            return Unary(tok.value, operand, span=self.span(tok.start, self.last_end()))
        return self.parse_postfix(self.parse_primary())

    def parse_args(self) -> tuple:
        self.expect_op('(')
        args = []
        if not self.at_op(')'):
            while True:
                args.append(self.parse_expr(0))
                if self.at_op(','):
                    self.next()
                    continue
                break
        self.expect_op(')')
        return tuple(args)

    def parse_lambda(self, param: str, start: int) -> Lambda:
        self.expect_op('=>')
        self.scope.append(param)
        try:
            body = self.parse_expr(_TERNARY_PRECEDENCE)
        finally:
            self.scope.pop()
        return Lambda(param, body, span=self.span(start, self.last_end()))

    def parse_primary(self) -> Expr:
        tok = self.next()
        span = self.span(tok.start, tok.end)

        if tok.kind in ('num', 'str'):
            return Literal(tok.value, span=span)

        if tok.kind == 'template':
            return self.parse_template(tok)

        if tok.kind == 'op':
            if tok.value == '(':
                if self.peek().kind == 'ident' and self.at_op(')', 1) and self.at_op('=>', 2):
                    param = self.next().value
                    self.next()
                    return self.parse_lambda(param, tok.start)
                inner = self.parse_expr(0)
                self.expect_op(')')
                return inner
            if tok.value == '[':
                items = []
                if not self.at_op(']'):
                    while True:
                        items.append(self.parse_expr(0))
                        if self.at_op(','):
                            self.next()
                            continue
                        break
                self.expect_op(']')
                return ListExpr(tuple(items), span=self.span(tok.start, self.last_end()))
            raise self.error("Unexpected token", tok)

        if tok.kind != 'ident':
            raise self.error("Unexpected token", tok)

        name = tok.value
        if self.at_op('=>'):
            return self.parse_lambda(name, tok.start)
        if name in _KEYWORD_LITERALS:
            return Literal(_KEYWORD_LITERALS[name], span=span)
        if name in self.scope:
            return Var(name, span=span)
        if name == 'resources' and (self.at_op('.') or self.at_op('[')):
            return self.parse_resource_root(tok)
        if name == 'schema':
            return Reference(SCHEMA, '', span=span)
        if name == 'Math' and self.at_op('.'):
            self.next()
            func = self.expect_ident()
            return Call(f'Math.{func.value}', self.parse_args(), span=self.span(tok.start, self.last_end()))
        if self.at_op('('):
            return Call(name, self.parse_args(), span=self.span(tok.start, self.last_end()))
        if name in self.resource_ids:
            return Reference(name, '', span=span)
        return Var(name, span=span)

    def parse_resource_root(self, tok: Token) -> Reference:
        if self.at_op('.'):
            self.next()
            resource_id = self.expect_ident().value
        else:
            self.next()
            key = self.next()
            if key.kind != 'str':
                raise self.error("Expected quoted resource id", key)
            resource_id = key.value
            self.expect_op(']')
        return Reference(resource_id, '', span=self.span(tok.start, self.last_end()))

    def parse_template(self, tok: Token) -> Template:
        parts: list = []
        for part in tok.value:
            if part[0] == 'text':
                parts.append(part[1])
            else:
                _, src, local_offset = part
                sub = Parser(src, self.resource_ids, offset=self.offset + local_offset)
                sub.scope = list(self.scope)
                parts.append(sub.parse())
        return Template(tuple(parts), span=self.span(tok.start, tok.end))

    def parse_postfix(self, node: Expr) -> Expr:
        start = node.span[0] - self.offset if node.span else self.peek().start
        while True:
            tok = self.peek()
            if tok.kind != 'op':
                return node

            if tok.value in ('.', '?.'):
                optional = tok.value == '?.'
                self.next()
                if optional and self.at_op('['):
                    self.next()
                    index = self.parse_expr(0)
                    self.expect_op(']')
                    node = Index(node, index, optional=True, span=self.span(start, self.last_end()))
                    continue
                name = self.expect_ident().value
                if self.at_op('('):
                    args = self.parse_args()
                    node = MethodCall(node, name, args, span=self.span(start, self.last_end()))
                elif isinstance(node, Reference) and not optional and name != 'length':
                    node = _with_span(_extend(node, name), start + self.offset, self.last_end() + self.offset)
                else:
                    node = Member(node, name, optional=optional, span=self.span(start, self.last_end()))
                continue

            if tok.value == '[':
                self.next()
                index = self.parse_expr(0)
                self.expect_op(']')
                end = self.last_end()
                if (isinstance(node, Reference) and isinstance(index, Literal)
                        and isinstance(index.value, (int, str)) and not isinstance(index.value, bool)):
                    node = _with_span(_extend(node, index.value), start + self.offset, end + self.offset)
                else:
                    node = Index(node, index, span=self.span(start, end))
                continue

            return node


def _extend(reference: Reference, segment: Union[str, int]) -> Reference:
    return Reference(reference.resource_id, join_path(reference.segments + [segment]), reference.value_type)


def parse_expression(text: str, resource_ids: Optional[Iterable[str]] = None, offset: int = 0) -> Expr:
    """Parse expression text into a node tree.

    Raises:
        ExpressionSyntaxError: If the text is not a valid expression
    """
    if not text.strip():
        raise ExpressionSyntaxError("Empty expression", text, offset)
    return Parser(text, resource_ids, offset).parse()


def parse_interpolated(text: str, resource_ids: Optional[Iterable[str]] = None) -> Union[str, Expr]:
    """Parse a string that may embed ``${...}`` expressions.

    Returns the string unchanged when it has no interpolation, the bare
    expression when one interpolation spans the whole string, and a
    Template otherwise.
    """
    spans = find_interpolations(text)
    if not spans:
        return text
    if len(spans) == 1 and spans[0] == (0, len(text)):
        return parse_expression(text[2:-1], resource_ids, offset=2)

    parts: list = []
    pos = 0
    for start, end in spans:
        if start > pos:
            parts.append(text[pos:start])
        parts.append(parse_expression(text[start + 2:end - 1], resource_ids, offset=start + 2))
        pos = end
    if pos < len(text):
        parts.append(text[pos:])
    return Template(tuple(parts), span=(0, len(text)))
