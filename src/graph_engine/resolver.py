"""Cross-level reference substitution.

Before a resource is applied, every Reference and expression embedded in
its manifest is replaced with a concrete value:

- resource references read the live object of an already-deployed
  dependency (cached for the rest of the deploy);
- schema references read the input spec;
- external references read the declared object from the cluster.
"""

import logging
from typing import Any, Optional

from cluster import ClusterApi
from common import ApiError, ExpressionSyntaxError, UnresolvedReferenceError, get_path
from expressions.detect import detect
from expressions.evaluator import evaluate, truthy
from expressions.nodes import Expr
from expressions.parser import has_interpolation, parse_interpolated
from references import SCHEMA, ExternalRef, Reference

logger = logging.getLogger(__name__)


class ReferenceResolver:
    """Resolves references for one deploy.

    Attributes:
        spec: Input spec values (schema references read spec.<path>)
        live: Resource id -> last observed live object
    """

    def __init__(self, cluster: ClusterApi, spec: Optional[dict] = None,
                 externals: Optional[dict[str, ExternalRef]] = None,
                 resource_ids: Optional[set[str]] = None):
        self.cluster = cluster
        self.spec = dict(spec or {})
        self.externals = dict(externals or {})
        self.resource_ids = set(resource_ids or ()) | set(self.externals)
        self.live: dict[str, dict] = {}

    def record(self, resource_id: str, obj: dict) -> None:
        """Cache the live object for resource_id."""
        self.live[resource_id] = obj

    async def load_externals(self) -> list[str]:
        """Read every declared external resource.

        Missing or unreadable externals are left unresolved; references to
        them fail only when actually needed.

        Returns:
            Ids that could not be read
        """
        missing = []
        for rid, external in self.externals.items():
            try:
                self.live[rid] = await self.cluster.read(
                    external.api_version, external.kind, external.name, external.namespace)
            except ApiError as e:
                logger.warning("External resource '%s' (%s/%s) not readable: %s",
                               rid, external.kind, external.name, e)
                missing.append(rid)
        return missing

    def _root(self, reference: Reference) -> Any:
        if reference.is_schema:
            return {'spec': self.spec}
        return self.live.get(reference.resource_id)

    def resolve(self, reference: Reference, optional: bool = False) -> Any:
        """Value of reference from live state.

        Raises:
            UnresolvedReferenceError: If the object or field is missing and
                the access is not optional
        """
        root = self._root(reference)
        if root is None:
            if optional:
                return None
            raise UnresolvedReferenceError(
                f"Cannot resolve {reference.describe()}: '{reference.resource_id}' has no live object",
                reference.resource_id, reference.field_path)
        if not reference.field_path:
            return root
        try:
            return get_path(root, reference.field_path)
        except KeyError:
            if optional:
                return None
            label = 'schema' if reference.resource_id == SCHEMA else f"'{reference.resource_id}'"
            raise UnresolvedReferenceError(
                f"Cannot resolve {reference.describe()}: field '{reference.field_path}' not found on {label}",
                reference.resource_id, reference.field_path) from None

    def _parse(self, text: str) -> Any:
        try:
            return parse_interpolated(text, self.resource_ids)
        except ExpressionSyntaxError:
            return text

    def value_of(self, value: Any) -> Any:
        """Evaluate a single expression node or ``${...}`` string.

        Strings whose ``${...}`` holds no reference are kept as text.
        """
        if isinstance(value, Expr):
            return evaluate(value, self.resolve)
        if isinstance(value, str) and has_interpolation(value):
            parsed = self._parse(value)
            if isinstance(parsed, Expr) and detect(parsed).has_references:
                return evaluate(parsed, self.resolve)
        return value

    def substitute(self, value: Any) -> Any:
        """Copy of value with every embedded expression evaluated.

        Raises:
            UnresolvedReferenceError: If a required reference has no value
            EvaluationError: If an expression fails to evaluate
        """
        if isinstance(value, dict):
            return {k: self.substitute(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.substitute(v) for v in value]
        return self.value_of(value)

    def condition_holds(self, condition: Any) -> bool:
        """Evaluate an includeWhen/readyWhen condition.

        Plain booleans pass through; strings without ``${}`` are literal
        and count as true when non-empty.
        """
        if isinstance(condition, str) and has_interpolation(condition):
            parsed = self._parse(condition)
            if isinstance(parsed, Expr):
                return truthy(evaluate(parsed, self.resolve))
        return truthy(self.value_of(condition))
