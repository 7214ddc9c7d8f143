"""Reference markers and accessor objects.

A Reference stands in for "field F of resource R" while a graph is being
built. Accessors hand out references through explicit builder methods:

    web = graph.add('web', deployment_manifest)
    web.status('readyReplicas')          # Reference('web', 'status.readyReplicas')
    graph.spec.ref('spec.replicas')      # Reference(SCHEMA, 'spec.replicas')

Accessors never raise on field access; paths colliding with internal
marker keys are rejected when the value is scanned (see expressions.detect).
"""

from dataclasses import dataclass, field
from typing import Optional

from common import join_path, split_path
from expressions.nodes import Expr, Span

SCHEMA = '__schema__'
MARKER_KEYS = frozenset({'__ref__', '__expr__'})


@dataclass(frozen=True)
class Reference(Expr):
    """Marker for a field of a graph resource or of the graph's input spec.

    Attributes:
        resource_id: Resource id, or SCHEMA for the graph's own input spec
        field_path: Dotted/bracketed path within the resource
        value_type: Expected type when known ('dyn' otherwise)
    """
    resource_id: str
    field_path: str = ''
    value_type: str = 'dyn'
    span: Span = field(default=None, compare=False, repr=False)

    @property
    def is_schema(self) -> bool:
        return self.resource_id == SCHEMA

    @property
    def segments(self) -> list:
        return split_path(self.field_path) if self.field_path else []

    def child(self, path: str, value_type: str = 'dyn') -> 'Reference':
        """Reference to a field beneath this one."""
        if not self.field_path:
            return Reference(self.resource_id, path, value_type)
        if path.startswith('['):
            return Reference(self.resource_id, f'{self.field_path}{path}', value_type)
        segments = self.segments + split_path(path)
        return Reference(self.resource_id, join_path(segments), value_type)

    def __getitem__(self, index) -> 'Reference':
        if isinstance(index, int):
            return self.child(f'[{index}]')
        if isinstance(index, str):
            return Reference(self.resource_id, join_path(self.segments + [index]), 'dyn')
        return super().__getitem__(index)

    def describe(self) -> str:
        if self.is_schema:
            return f'schema.{self.field_path}' if self.field_path else 'schema'
        return f'{self.resource_id}.{self.field_path}' if self.field_path else self.resource_id


def ref(resource_id: str, path: str = '', value_type: str = 'dyn') -> Reference:
    """Build a reference to `path` on resource `resource_id`."""
    return Reference(resource_id, path, value_type)


def schema_ref(path: str, value_type: str = 'dyn') -> Reference:
    """Build a reference into the graph's input spec."""
    return Reference(SCHEMA, path, value_type)


class ResourceAccessor:
    """Hands out references to one resource's fields."""

    def __init__(self, resource_id: str, kind: str = '', api_version: str = ''):
        self.id = resource_id
        self.kind = kind
        self.api_version = api_version

    def ref(self, path: str = '', value_type: str = 'dyn') -> Reference:
        return Reference(self.id, path, value_type)

    def spec(self, path: str = '', value_type: str = 'dyn') -> Reference:
        return self.ref(_prefixed('spec', path), value_type)

    def status(self, path: str = '', value_type: str = 'dyn') -> Reference:
        return self.ref(_prefixed('status', path), value_type)

    def metadata(self, path: str = '', value_type: str = 'dyn') -> Reference:
        return self.ref(_prefixed('metadata', path), value_type)

    def __repr__(self) -> str:
        return f"ResourceAccessor({self.id}, kind={self.kind})"


class SchemaAccessor(ResourceAccessor):
    """Accessor for the graph's own input spec."""

    def __init__(self):
        super().__init__(SCHEMA)

    def __repr__(self) -> str:
        return "SchemaAccessor()"


@dataclass
class ExternalRef:
    """A resource that exists outside the graph and is read, never applied."""
    id: str
    api_version: str
    kind: str
    name: str
    namespace: Optional[str] = None

    def to_manifest(self) -> dict:
        metadata = {'name': self.name}
        if self.namespace:
            metadata['namespace'] = self.namespace
        return {'apiVersion': self.api_version, 'kind': self.kind, 'metadata': metadata}


class ExternalAccessor(ResourceAccessor):
    """Accessor for an externally declared resource."""

    def __init__(self, external: ExternalRef):
        super().__init__(external.id, external.kind, external.api_version)
        self.external = external


def _prefixed(prefix: str, path: str) -> str:
    if not path:
        return prefix
    if path.startswith('['):
        return f'{prefix}{path}'
    return f'{prefix}.{path}'
