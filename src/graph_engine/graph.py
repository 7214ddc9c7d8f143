"""Dependency graph construction.

Scans each resource's manifest and the status projection for references,
turns them into dependent -> dependency edges, rejects cycles, and
partitions resources into levels:

    level(n) = 0                          if n has no dependencies
    level(n) = 1 + max(level(d) for d)    otherwise

Resources sharing a level have no ordering constraint between them.
References to ids outside the graph are recorded as external and do not
affect leveling.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from common import CircularDependencyError, ConstructionError
from expressions.compiler import compile_expression
from expressions.detect import Diagnostic, detect
from expressions.validation import ValidationContext
from manifest import Resource, ResourceGraph
from references import SCHEMA, ExternalRef

logger = logging.getLogger(__name__)


@dataclass
class ResourceNode:
    """A resource in the dependency graph.

    Attributes:
        id: Resource id
        kind: Manifest kind
        manifest: Desired object (may still hold references)
        dependencies: Ids of in-graph resources this one references
        level: Execution wave (0 for resources without dependencies)
        external_refs: Ids referenced that are not part of the graph
    """
    id: str
    kind: str
    manifest: dict
    dependencies: set[str] = field(default_factory=set)
    level: int = 0
    external_refs: set[str] = field(default_factory=set)
    include_when: list = field(default_factory=list)
    ready_when: list = field(default_factory=list)
    readiness: Optional[str] = None

    @property
    def api_version(self) -> str:
        return self.manifest.get('apiVersion', '')

    def __repr__(self) -> str:
        return f"ResourceNode({self.id}, kind={self.kind}, level={self.level})"


@dataclass
class DependencyGraph:
    """Nodes, edges and level partition for one deploy.

    Invariants: acyclic; every edge endpoint is a key of nodes.
    """
    name: str
    nodes: dict[str, ResourceNode]
    edges: set[tuple[str, str]]
    levels: list[list[str]]
    status: Any = None
    status_dependencies: set[str] = field(default_factory=set)
    external_refs: dict[str, set[str]] = field(default_factory=dict)
    externals: dict[str, ExternalRef] = field(default_factory=dict)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    source: Optional[ResourceGraph] = field(default=None, repr=False)

    def get_node(self, resource_id: str) -> ResourceNode:
        """Get a node by id.

        Raises:
            KeyError: If the id is not in the graph
        """
        return self.nodes[resource_id]

    def level_of(self, resource_id: str) -> int:
        return self.nodes[resource_id].level

    @property
    def max_level(self) -> int:
        return len(self.levels) - 1

    def dependents_of(self, resource_id: str) -> set[str]:
        """Every resource that transitively depends on resource_id."""
        direct: dict[str, set[str]] = {}
        for dependent, dependency in self.edges:
            direct.setdefault(dependency, set()).add(dependent)
        found: set[str] = set()
        stack = [resource_id]
        while stack:
            current = stack.pop()
            for dependent in direct.get(current, ()):
                if dependent not in found:
                    found.add(dependent)
                    stack.append(dependent)
        return found

    def create_order(self) -> list[ResourceNode]:
        """Nodes in level order (dependencies first)."""
        return [self.nodes[rid] for level in self.levels for rid in level]

    def destroy_order(self) -> list[ResourceNode]:
        """Reverse of create_order."""
        return list(reversed(self.create_order()))

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self.nodes


def find_cycle(dependencies: dict[str, set[str]]) -> Optional[list[str]]:
    """Return one cycle as [a, b, ..., a], or None when acyclic.

    Depth-first traversal with a recursion-stack set.
    """
    visited: set[str] = set()
    in_stack: set[str] = set()
    stack: list[str] = []

    def visit(node: str) -> Optional[list[str]]:
        visited.add(node)
        in_stack.add(node)
        stack.append(node)
        for dep in sorted(dependencies.get(node, ())):
            if dep in in_stack:
                return stack[stack.index(dep):] + [dep]
            if dep not in visited:
                cycle = visit(dep)
                if cycle:
                    return cycle
        stack.pop()
        in_stack.discard(node)
        return None

    for node in dependencies:
        if node not in visited:
            cycle = visit(node)
            if cycle:
                return cycle
    return None


def compute_levels(dependencies: dict[str, set[str]]) -> dict[str, int]:
    """Level of each node; dependencies must be acyclic."""
    levels: dict[str, int] = {}

    def level(node: str) -> int:
        if node not in levels:
            deps = dependencies.get(node, set())
            levels[node] = 0 if not deps else 1 + max(level(d) for d in deps)
        return levels[node]

    for node in dependencies:
        level(node)
    return levels


def _check_conditions(resource: Resource, ids: set[str], diagnostics: list[Diagnostic]) -> None:
    for condition in resource.include_when:
        detection = detect(condition, resource_ids=ids)
        if detection.resource_ids:
            raise ConstructionError(
                f"includeWhen for '{resource.id}' may only reference schema fields, "
                f"found: {', '.join(sorted(detection.resource_ids))}"
            )
        result = compile_expression(condition, 'cel', context=ValidationContext('condition', resource.id),
                                    resource_ids=ids)
        diagnostics.extend(result.diagnostics)

    for condition in resource.ready_when:
        detection = detect(condition, resource_ids=ids)
        others = detection.resource_ids - {resource.id}
        if others or detection.references_schema:
            raise ConstructionError(
                f"readyWhen for '{resource.id}' may only reference '{resource.id}' itself"
            )
        result = compile_expression(condition, 'cel', context=ValidationContext('condition', resource.id),
                                    resource_ids=ids)
        diagnostics.extend(result.diagnostics)


def build_graph(
    resources: Union[ResourceGraph, list[Resource]],
    status: Any = None,
    externals: Optional[dict[str, ExternalRef]] = None,
    name: str = '',
    strict: bool = False,
) -> DependencyGraph:
    """Build the dependency graph for a set of resources.

    Args:
        resources: A ResourceGraph, or a list of Resource
        status: Status projection (taken from the ResourceGraph when omitted)
        externals: Declared external resources
        name: Graph name
        strict: Treat advisory expression findings as errors

    Returns:
        DependencyGraph with levels computed

    Raises:
        CircularDependencyError: If references form a cycle
        ConstructionError: On duplicate ids or disallowed conditions
        CompileError: If an expression cannot be compiled
    """
    source = None
    if isinstance(resources, ResourceGraph):
        source = resources
        name = name or source.name
        status = source.status if status is None else status
        externals = source.externals if externals is None else externals
        resources = source.resources
    externals = dict(externals or {})

    nodes: dict[str, ResourceNode] = {}
    for resource in resources:
        if resource.id in nodes:
            raise ConstructionError(f"Duplicate resource id: '{resource.id}'")
        if resource.id == SCHEMA:
            raise ConstructionError(f"Resource id '{SCHEMA}' is reserved")
        nodes[resource.id] = ResourceNode(
            id=resource.id,
            kind=resource.kind,
            manifest=resource.manifest,
            include_when=list(resource.include_when),
            ready_when=list(resource.ready_when),
            readiness=resource.readiness,
        )

    ids = set(nodes) | set(externals)
    diagnostics: list[Diagnostic] = []
    edges: set[tuple[str, str]] = set()
    external_refs: dict[str, set[str]] = {}

    for resource in resources:
        node = nodes[resource.id]
        detection = detect(resource.manifest, resource_ids=ids)
        diagnostics.extend(detection.diagnostics)
        for dep in detection.resource_ids:
            if dep in nodes:
                node.dependencies.add(dep)
                edges.add((resource.id, dep))
            else:
                node.external_refs.add(dep)
        if node.external_refs:
            external_refs[resource.id] = set(node.external_refs)

    cycle = find_cycle({rid: n.dependencies for rid, n in nodes.items()})
    if cycle:
        raise CircularDependencyError(cycle)

    for resource in resources:
        result = compile_expression(resource.manifest, 'cel', resource_ids=ids, strict=strict,
                                    context=ValidationContext('resource-field', resource.id))
        diagnostics.extend(d for d in result.diagnostics if d not in diagnostics)
        _check_conditions(resource, ids, diagnostics)

    status_dependencies: set[str] = set()
    if status:
        detection = detect(status, resource_ids=ids)
        for dep in detection.resource_ids:
            if dep in nodes:
                status_dependencies.add(dep)
            else:
                external_refs.setdefault('status', set()).add(dep)
        compile_expression(status, 'cel', resource_ids=ids, strict=strict)

    for rid, refs in external_refs.items():
        undeclared = refs - set(externals)
        if undeclared:
            diagnostics.append(Diagnostic(
                'warning', f"'{rid}' references undeclared resource(s): {', '.join(sorted(undeclared))}",
                rid, 'undeclared-external'))

    level_map = compute_levels({rid: n.dependencies for rid, n in nodes.items()})
    levels: list[list[str]] = []
    for rid, node in nodes.items():
        node.level = level_map[rid]
        while len(levels) <= node.level:
            levels.append([])
        levels[node.level].append(rid)

    for diagnostic in diagnostics:
        logger.debug("Graph '%s': %s", name, diagnostic)

    return DependencyGraph(
        name=name,
        nodes=nodes,
        edges=edges,
        levels=levels,
        status=status,
        status_dependencies=status_dependencies,
        external_refs=external_refs,
        externals=externals,
        diagnostics=diagnostics,
        source=source,
    )
