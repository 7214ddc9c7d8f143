"""Control-loop serialization.

Turns a ResourceGraph into a ResourceGraphDefinition manifest for the kro
controller. Every compiled expression is embedded as an interpolation
string (``${resources.web.status.readyReplicas > 0}``); templates become
mixed strings.
"""

import logging
from typing import Any, Optional

import yaml

from common import to_kebab_case
from expressions.compiler import CompiledExpression, compile_expression, literal_text
from expressions.validation import ValidationContext
from manifest import ResourceGraph

logger = logging.getLogger(__name__)

KRO_GROUP = 'kro.run'
KRO_API_VERSION = f'{KRO_GROUP}/v1alpha1'
RGD_KIND = 'ResourceGraphDefinition'


def _compiled(value: Any, ids: set[str], context: Optional[ValidationContext] = None) -> Any:
    result = compile_expression(value, 'cel', context=context, resource_ids=ids)
    out = result.result_value
    return str(out) if isinstance(out, CompiledExpression) else out


def _condition(value: Any, ids: set[str], resource_id: str) -> str:
    out = _compiled(value, ids, ValidationContext('condition', resource_id))
    if isinstance(out, str):
        return out
    return '${' + literal_text(out) + '}'


def rgd_name(graph: ResourceGraph) -> str:
    return to_kebab_case(graph.name)


def serialize_graph(graph: ResourceGraph) -> dict:
    """ResourceGraphDefinition manifest for graph.

    Raises:
        CompileError: If an expression cannot be represented
    """
    ids = set(graph.resource_ids) | set(graph.externals)
    resources = []
    for resource in graph.resources:
        entry: dict[str, Any] = {
            'id': resource.id,
            'template': _compiled(resource.manifest, ids, ValidationContext('resource-field', resource.id)),
        }
        if resource.include_when:
            entry['includeWhen'] = [_condition(c, ids, resource.id) for c in resource.include_when]
        if resource.ready_when:
            entry['readyWhen'] = [_condition(c, ids, resource.id) for c in resource.ready_when]
        resources.append(entry)
    for external in graph.externals.values():
        resources.append({'id': external.id, 'externalRef': external.to_manifest()})

    schema: dict[str, Any] = {
        'apiVersion': graph.schema.api_version,
        'kind': graph.schema.kind,
        'spec': dict(graph.schema.spec),
    }
    if graph.status:
        schema['status'] = _compiled(graph.status, ids, ValidationContext('status'))

    return {
        'apiVersion': KRO_API_VERSION,
        'kind': RGD_KIND,
        'metadata': {'name': rgd_name(graph)},
        'spec': {'schema': schema, 'resources': resources},
    }


def build_instance(graph: ResourceGraph, name: str, spec: Optional[dict] = None,
                   namespace: Optional[str] = None) -> dict:
    """Instance of the graph's generated custom resource.

    Raises:
        ConfigError: If a required spec field is missing
    """
    metadata = {'name': name}
    if namespace:
        metadata['namespace'] = namespace
    return {
        'apiVersion': f'{KRO_GROUP}/{graph.schema.api_version}',
        'kind': graph.schema.kind,
        'metadata': metadata,
        'spec': graph.schema.apply_defaults(spec),
    }


def to_yaml(graph: ResourceGraph) -> str:
    """ResourceGraphDefinition as a YAML document."""
    return yaml.safe_dump(serialize_graph(graph), sort_keys=False, default_flow_style=False, width=10000)
