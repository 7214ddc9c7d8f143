"""Context-specific expression checks.

Separate from parsing: an expression can be well-formed and still be a
poor fit for where it is used. Findings are advisory unless strict.
"""

from dataclasses import dataclass
from typing import Optional

from expressions.detect import Diagnostic
from expressions.inference import infer_type
from expressions.nodes import Expr, walk
from references import SCHEMA, Reference

CONTEXTS = ('status', 'condition', 'resource-field')


@dataclass(frozen=True)
class ValidationContext:
    """Where an expression is used.

    Attributes:
        kind: 'status' (status projection), 'condition' (include/ready
            conditions) or 'resource-field' (value inside a manifest)
        resource_id: Owning resource, for resource-field and condition checks
    """
    kind: str
    resource_id: Optional[str] = None

    def __post_init__(self):
        if self.kind not in CONTEXTS:
            raise ValueError(f"Unknown validation context '{self.kind}'. Valid: {', '.join(CONTEXTS)}")


def _severity(strict: bool) -> str:
    return 'error' if strict else 'warning'


def validate_expression(node: Expr, context: ValidationContext, strict: bool = False) -> list[Diagnostic]:
    """Return diagnostics for node in the given context."""
    references = [n for n in walk(node) if isinstance(n, Reference)]
    diagnostics: list[Diagnostic] = []

    if context.kind == 'condition':
        result_type = infer_type(node)
        if result_type == 'dyn':
            diagnostics.append(Diagnostic(
                'warning', "Condition result type cannot be verified as boolean", code='maybe-not-boolean'))
        elif result_type != 'bool':
            diagnostics.append(Diagnostic(
                _severity(strict), f"Condition must evaluate to a boolean, got {result_type}",
                code='not-boolean'))

    elif context.kind == 'status':
        reads_status = any(
            r.resource_id != SCHEMA and r.segments[:1] == ['status'] for r in references
        )
        if not reads_status:
            diagnostics.append(Diagnostic(
                _severity(strict), "Status expression does not reference any resource status field",
                code='no-status-field'))

    elif context.kind == 'resource-field' and context.resource_id:
        for r in references:
            if r.resource_id == context.resource_id:
                diagnostics.append(Diagnostic(
                    'error', f"Resource '{context.resource_id}' references its own field '{r.field_path}'",
                    code='self-reference'))

    return diagnostics
