"""Resource graph definitions.

A ResourceGraph is the authoring container: resources with their
manifests, externally declared resources, an input schema, and a status
projection. Graphs are built in code:

    graph = ResourceGraph('webapp', spec={'image': 'string | default=nginx'})
    web = graph.add('web', {'apiVersion': 'apps/v1', 'kind': 'Deployment', ...})
    graph.status['ready'] = web.status('readyReplicas') > 0

or loaded from YAML in the same shape as the control-loop definition:

    name: webapp
    schema:
      spec:
        image: string | default=nginx
    resources:
      - id: web
        readyWhen:
          - ${web.status.readyReplicas > 0}
        template:
          apiVersion: apps/v1
          kind: Deployment
          ...
    status:
      ready: ${web.status.readyReplicas > 0}
"""

import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from common import ConstructionError, ExpressionSyntaxError, to_pascal_case
from config import ConfigError
from expressions.detect import detect
from expressions.nodes import Expr
from expressions.parser import has_interpolation, parse_interpolated
from references import ExternalAccessor, ExternalRef, ResourceAccessor, SchemaAccessor

logger = logging.getLogger(__name__)

SCHEMA_API_VERSION = 'v1alpha1'
_MARKER_KEYS = ('default', 'required', 'description', 'enum', 'minimum', 'maximum')


@dataclass
class Resource:
    """A resource placed into a graph.

    Attributes:
        id: Graph-unique identifier used by references
        manifest: Desired object; may embed references and expressions
        include_when: Conditions over the input spec; all must hold for the
            resource to be created
        ready_when: Extra readiness conditions over the resource itself
        readiness: Registry key overriding the manifest's kind for readiness
    """
    id: str
    manifest: dict
    include_when: list = field(default_factory=list)
    ready_when: list = field(default_factory=list)
    readiness: Optional[str] = None

    @property
    def kind(self) -> str:
        return self.manifest.get('kind', '')

    @property
    def api_version(self) -> str:
        return self.manifest.get('apiVersion', '')

    @property
    def name(self) -> Any:
        return (self.manifest.get('metadata') or {}).get('name')

    @property
    def namespace(self) -> Any:
        return (self.manifest.get('metadata') or {}).get('namespace')

    def __repr__(self) -> str:
        return f"Resource({self.id}, kind={self.kind})"


def parse_field_type(declaration: str) -> tuple[str, dict]:
    """Split 'integer | default=3 required=true' into ('integer', {'default': 3, 'required': True}).

    Marker values are parsed as YAML scalars so numbers and booleans keep
    their types; string defaults may be quoted.
    """
    type_part, _, marker_part = declaration.partition('|')
    field_type = type_part.strip()
    markers: dict[str, Any] = {}
    for token in _split_markers(marker_part):
        key, sep, raw = token.partition('=')
        if not sep:
            raise ConfigError(f"Invalid schema marker '{token}' in '{declaration}'")
        key = key.strip()
        if key not in _MARKER_KEYS:
            raise ConfigError(f"Unknown schema marker '{key}' in '{declaration}'")
        raw = raw.strip()
        if field_type == 'string' and key == 'default' and not raw.startswith(('"', "'")):
            markers[key] = raw
        else:
            try:
                markers[key] = yaml.safe_load(raw)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid value for '{key}' in '{declaration}': {e}") from e
    return field_type, markers


def _split_markers(text: str) -> list[str]:
    tokens = []
    buf = ''
    quote = None
    for ch in text:
        if quote:
            buf += ch
            if ch == quote:
                quote = None
        elif ch in ('"', "'"):
            quote = ch
            buf += ch
        elif ch.isspace() or ch == '|':
            if buf:
                tokens.append(buf)
                buf = ''
        else:
            buf += ch
    if buf:
        tokens.append(buf)
    return tokens


@dataclass
class GraphSchema:
    """Input schema for a graph (the generated custom resource's spec).

    Attributes:
        kind: Custom resource kind (PascalCase)
        api_version: Version of the generated resource
        spec: Field name -> declaration ('string | default=x') or nested mapping
    """
    kind: str
    api_version: str = SCHEMA_API_VERSION
    spec: dict = field(default_factory=dict)

    def defaults(self) -> dict:
        return _collect_defaults(self.spec)

    def apply_defaults(self, values: Optional[dict]) -> dict:
        """Merge user values over schema defaults.

        Raises:
            ConfigError: If a required field is missing
        """
        merged = _deep_merge(self.defaults(), copy.deepcopy(values or {}))
        missing = _missing_required(self.spec, merged, '')
        if missing:
            raise ConfigError(f"Missing required spec field(s): {', '.join(missing)}")
        return merged

    def to_dict(self) -> dict:
        return {'apiVersion': self.api_version, 'kind': self.kind, 'spec': copy.deepcopy(self.spec)}


def _collect_defaults(spec: dict) -> dict:
    out: dict[str, Any] = {}
    for key, decl in spec.items():
        if isinstance(decl, dict):
            nested = _collect_defaults(decl)
            if nested:
                out[key] = nested
        elif isinstance(decl, str):
            _, markers = parse_field_type(decl)
            if 'default' in markers:
                out[key] = markers['default']
    return out


def _missing_required(spec: dict, values: dict, prefix: str) -> list[str]:
    missing = []
    for key, decl in spec.items():
        path = f'{prefix}{key}'
        if isinstance(decl, dict):
            missing.extend(_missing_required(decl, values.get(key) or {}, f'{path}.'))
        elif isinstance(decl, str):
            _, markers = parse_field_type(decl)
            if markers.get('required') and key not in values:
                missing.append(path)
    return missing


def _deep_merge(base: dict, override: dict) -> dict:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class ResourceGraph:
    """A named graph of resources plus its schema and status projection."""

    def __init__(self, name: str, spec: Optional[dict] = None, kind: Optional[str] = None,
                 source_path: Optional[Path] = None):
        if not name:
            raise ConstructionError("Resource graph requires a name")
        self.name = name
        self.schema = GraphSchema(kind=kind or to_pascal_case(name), spec=dict(spec or {}))
        self.resources: list[Resource] = []
        self.externals: dict[str, ExternalRef] = {}
        self.status: dict = {}
        self.source_path = source_path
        self._spec_accessor = SchemaAccessor()

    @property
    def spec(self) -> SchemaAccessor:
        """Accessor for the graph's own input spec."""
        return self._spec_accessor

    @property
    def resource_ids(self) -> list[str]:
        return [r.id for r in self.resources]

    def _check_new_id(self, resource_id: str) -> None:
        if not resource_id:
            raise ConstructionError("Resource id must not be empty")
        if resource_id in self.resource_ids or resource_id in self.externals:
            raise ConstructionError(f"Duplicate resource id: '{resource_id}'")

    def add(self, resource_id: str, manifest: dict, include_when: Optional[list] = None,
            ready_when: Optional[list] = None, readiness: Optional[str] = None) -> ResourceAccessor:
        """Place a resource in the graph and return its accessor.

        Raises:
            ConstructionError: On duplicate ids or manifests without apiVersion/kind
        """
        self._check_new_id(resource_id)
        if not isinstance(manifest, dict) or not manifest.get('kind') or not manifest.get('apiVersion'):
            raise ConstructionError(f"Resource '{resource_id}' manifest requires apiVersion and kind")
        resource = Resource(
            id=resource_id,
            manifest=manifest,
            include_when=list(include_when or []),
            ready_when=list(ready_when or []),
            readiness=readiness,
        )
        self.resources.append(resource)
        return ResourceAccessor(resource_id, resource.kind, resource.api_version)

    def external(self, resource_id: str, api_version: str, kind: str, name: str,
                 namespace: Optional[str] = None) -> ExternalAccessor:
        """Declare a resource that exists outside the graph."""
        self._check_new_id(resource_id)
        external = ExternalRef(resource_id, api_version, kind, name, namespace)
        self.externals[resource_id] = external
        return ExternalAccessor(external)

    def get(self, resource_id: str) -> Resource:
        """Get a resource by id.

        Raises:
            KeyError: If the id is not in the graph
        """
        for resource in self.resources:
            if resource.id == resource_id:
                return resource
        raise KeyError(resource_id)

    def accessor(self, resource_id: str) -> ResourceAccessor:
        if resource_id in self.externals:
            return ExternalAccessor(self.externals[resource_id])
        resource = self.get(resource_id)
        return ResourceAccessor(resource.id, resource.kind, resource.api_version)

    def __len__(self) -> int:
        return len(self.resources)

    def __repr__(self) -> str:
        return f"ResourceGraph({self.name}, resources={len(self.resources)})"

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'ResourceGraph':
        """Create a graph from its YAML/dict form.

        ``${...}`` strings become expression nodes; both ``resources.<id>.x``
        and bare ``<id>.x`` roots are accepted.

        Raises:
            ConfigError: If the definition is invalid
        """
        where = f" in {source_path}" if source_path else ''
        if not isinstance(data, dict):
            raise ConfigError(f"Graph definition{where} must be a mapping")
        if 'name' not in data:
            raise ConfigError(f"Graph definition{where} missing required field: name")

        schema = data.get('schema') or {}
        if not isinstance(schema, dict):
            raise ConfigError(f"Graph '{data['name']}'{where}: schema must be a mapping")
        graph = cls(data['name'], spec=schema.get('spec'), kind=schema.get('kind'), source_path=source_path)
        if schema.get('apiVersion'):
            graph.schema.api_version = schema['apiVersion']

        entries = data.get('resources') or []
        if not isinstance(entries, list):
            raise ConfigError(f"Graph '{graph.name}'{where}: resources must be a list")
        for i, entry in enumerate(entries):
            if not isinstance(entry, dict) or not entry.get('id'):
                raise ConfigError(f"Graph '{graph.name}'{where}: resource {i} missing required field: id")
        ids = {entry['id'] for entry in entries}

        try:
            for entry in entries:
                rid = entry['id']
                if 'externalRef' in entry:
                    ext = entry['externalRef'] or {}
                    metadata = ext.get('metadata') or {}
                    if not ext.get('apiVersion') or not ext.get('kind') or not metadata.get('name'):
                        raise ConfigError(
                            f"Resource '{rid}'{where}: externalRef requires apiVersion, kind and metadata.name")
                    graph.external(rid, ext['apiVersion'], ext['kind'], metadata['name'], metadata.get('namespace'))
                    continue
                if 'template' not in entry:
                    raise ConfigError(f"Resource '{rid}'{where} missing required field: template")
                graph.add(
                    rid,
                    _parse_value(entry['template'], ids),
                    include_when=[_parse_condition(c, ids) for c in entry.get('includeWhen') or []],
                    ready_when=[_parse_condition(c, ids) for c in entry.get('readyWhen') or []],
                    readiness=entry.get('readiness'),
                )
            graph.status = _parse_value(data.get('status') or {}, ids)
        except (ExpressionSyntaxError, ConstructionError) as e:
            raise ConfigError(f"Graph '{graph.name}'{where}: {e}") from e
        return graph


def _parse_value(value: Any, ids: set[str]) -> Any:
    """Replace ``${...}`` strings holding references with expression nodes."""
    if isinstance(value, str) and has_interpolation(value):
        try:
            parsed = parse_interpolated(value, ids)
        except ExpressionSyntaxError:
            # shell-style text such as ${HOME:-/tmp}
            logger.debug("Keeping unparseable interpolation as text: %s", value)
            return value
        if isinstance(parsed, Expr) and detect(parsed).has_references:
            return parsed
        return value
    if isinstance(value, dict):
        return {k: _parse_value(v, ids) for k, v in value.items()}
    if isinstance(value, list):
        return [_parse_value(v, ids) for v in value]
    return value


def _parse_condition(value: Any, ids: set[str]) -> Any:
    if isinstance(value, str) and has_interpolation(value):
        return parse_interpolated(value, ids)
    return value


class GraphLoader:
    """Loads graph definitions from a directory of YAML files."""

    def __init__(self, graphs_dir: Path):
        self.graphs_dir = Path(graphs_dir)

    def list_graphs(self) -> list[str]:
        """List available graph names."""
        if not self.graphs_dir.exists():
            return []
        return sorted(f.stem for f in self.graphs_dir.glob('*.yaml') if f.is_file())

    def load(self, name: str) -> ResourceGraph:
        """Load a graph by file name (without .yaml extension).

        Raises:
            ConfigError: If the graph is not found or invalid
        """
        path = self.graphs_dir / f'{name}.yaml'
        if not path.exists():
            available = self.list_graphs()
            raise ConfigError(
                f"Graph '{name}' not found at {path}. "
                f"Available: {', '.join(available) if available else 'none'}"
            )
        return load_graph(path)


def load_graph(path: Path) -> ResourceGraph:
    """Load a graph definition from a YAML file.

    Raises:
        ConfigError: If the file is missing or invalid
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Graph file not found: {path}")
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in graph {path}: {e}") from e
    return ResourceGraph.from_dict(data, source_path=path)
