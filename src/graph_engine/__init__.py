"""Dependency graphs and the deployment engine."""

from graph_engine.graph import DependencyGraph, ResourceNode, build_graph
from graph_engine.state import (
    DeployedResource,
    DeploymentErrorRecord,
    DeploymentResult,
    RollbackResult,
)
from graph_engine.events import DeploymentEvent
from graph_engine.serialize import serialize_graph, to_yaml
from graph_engine.engine import DeploymentEngine, deploy

__all__ = [
    'DependencyGraph',
    'ResourceNode',
    'build_graph',
    'DeployedResource',
    'DeploymentErrorRecord',
    'DeploymentResult',
    'RollbackResult',
    'DeploymentEvent',
    'serialize_graph',
    'to_yaml',
    'DeploymentEngine',
    'deploy',
]
