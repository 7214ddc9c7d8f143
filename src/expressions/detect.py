"""Reference detection.

Walks an arbitrary author value (dicts, lists, expression nodes, strings
with ``${...}``) and reports every Reference reachable from it. The walk
is bounded by a maximum depth and tracks visited containers so cyclic
object graphs terminate.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from common import ConstructionError, ExpressionSyntaxError, join_path
from expressions.nodes import Expr
from expressions.parser import has_interpolation, parse_interpolated
from references import MARKER_KEYS, SCHEMA, Reference

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 64


@dataclass(frozen=True)
class Diagnostic:
    """An advisory or blocking finding about an expression.

    Attributes:
        severity: 'warning' (advisory) or 'error' (blocking)
        message: Human-readable description
        path: Location within the scanned value, if known
        code: Short machine-readable identifier
    """
    severity: str
    message: str
    path: str = ''
    code: str = ''

    @property
    def blocking(self) -> bool:
        return self.severity == 'error'

    def __str__(self) -> str:
        where = f" at {self.path}" if self.path else ''
        return f"{self.severity}{where}: {self.message}"


@dataclass
class Detection:
    """Result of scanning a value for references."""
    has_references: bool
    references: list[Reference] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def resource_ids(self) -> set[str]:
        """Concrete resource ids referenced (schema excluded)."""
        return {r.resource_id for r in self.references if r.resource_id != SCHEMA}

    @property
    def references_schema(self) -> bool:
        return any(r.resource_id == SCHEMA for r in self.references)


def _check_marker_collision(reference: Reference, location: str) -> None:
    for seg in reference.segments:
        if seg in MARKER_KEYS:
            raise ConstructionError(
                f"Field path '{reference.describe()}' uses reserved key '{seg}'"
                + (f" (at {location})" if location else '')
            )


class _Walker:
    def __init__(self, max_depth: int, resource_ids: Optional[set[str]]):
        self.max_depth = max_depth
        self.resource_ids = resource_ids
        self.visited: set[int] = set()
        self.references: list[Reference] = []
        self.seen: set[tuple[str, str]] = set()
        self.diagnostics: list[Diagnostic] = []

    def add(self, reference: Reference, location: str) -> None:
        _check_marker_collision(reference, location)
        key = (reference.resource_id, reference.field_path)
        if key not in self.seen:
            self.seen.add(key)
            self.references.append(reference)

    def walk(self, value: Any, path: list, depth: int) -> None:
        location = join_path(path)
        if depth > self.max_depth:
            self.diagnostics.append(Diagnostic(
                'warning', f"Maximum scan depth {self.max_depth} exceeded", location, 'max-depth'))
            return

        if isinstance(value, Reference):
            self.add(value, location)
            return

        if isinstance(value, Expr):
            if id(value) in self.visited:
                return
            self.visited.add(id(value))
            for child in value.children():
                self.walk(child, path, depth + 1)
            return

        if isinstance(value, str):
            if has_interpolation(value):
                self.walk_text(value, path, depth)
            return

        if isinstance(value, dict):
            if id(value) in self.visited:
                return
            self.visited.add(id(value))
            for key, item in value.items():
                if key in MARKER_KEYS:
                    raise ConstructionError(
                        f"Key '{key}' at '{join_path(path + [key])}' is reserved for reference markers")
                self.walk(item, path + [str(key)], depth + 1)
            return

        if isinstance(value, (list, tuple)):
            if id(value) in self.visited:
                return
            self.visited.add(id(value))
            for i, item in enumerate(value):
                self.walk(item, path + [i], depth + 1)

    def walk_text(self, text: str, path: list, depth: int) -> None:
        try:
            parsed = parse_interpolated(text, self.resource_ids)
        except ExpressionSyntaxError as e:
            self.diagnostics.append(Diagnostic('warning', f"Not an expression, kept as text: {e}",
                                               join_path(path), 'unparsed-text'))
            return
        if isinstance(parsed, Expr):
            self.walk(parsed, path, depth + 1)


def detect(value: Any, max_depth: int = DEFAULT_MAX_DEPTH,
           resource_ids: Optional[set[str]] = None) -> Detection:
    """Report every Reference reachable from value.

    Pure and idempotent: scanning the same value twice yields the same
    references in the same order.

    Args:
        value: Any author value
        max_depth: Nesting bound for the walk
        resource_ids: Known graph ids, so ``${web.status.x}`` text resolves

    Raises:
        ConstructionError: If a path or key collides with a marker key
    """
    walker = _Walker(max_depth, resource_ids)
    walker.walk(value, [], 0)
    return Detection(
        has_references=bool(walker.references),
        references=walker.references,
        diagnostics=walker.diagnostics,
    )
