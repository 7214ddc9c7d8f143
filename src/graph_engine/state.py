"""Deployment state and results.

Tracks per-resource status (pending, applying, deployed, ready, failed,
skipped, excluded) for one deploy call and optionally persists it to
{state_dir}/{graph}/{deployment_id}.json after each level.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

RESOURCE_STATUSES = ('pending', 'applying', 'deployed', 'ready', 'failed', 'skipped', 'excluded')
RESULT_STATUSES = ('success', 'partial', 'failed')


def new_deployment_id() -> str:
    return f'deploy-{uuid.uuid4().hex[:12]}'


@dataclass
class DeployedResource:
    """Per-resource deploy state.

    Attributes:
        id: Resource id (matches ResourceNode.id)
        kind: Manifest kind
        name: metadata.name after substitution
        namespace: metadata.namespace after substitution
        manifest: Manifest as sent to the cluster
        status: One of RESOURCE_STATUSES
        deployed_at: Timestamp of the successful apply
        ready_at: Timestamp readiness was observed
        error: Error message if failed or skipped
    """
    id: str
    kind: str
    name: Optional[str] = None
    namespace: Optional[str] = None
    manifest: dict = field(default_factory=dict)
    api_version: str = ''
    status: str = 'pending'
    deployed_at: Optional[float] = None
    ready_at: Optional[float] = None
    error: Optional[str] = None

    def mark_applying(self) -> None:
        self.status = 'applying'

    def mark_deployed(self, manifest: dict) -> None:
        self.status = 'deployed'
        self.manifest = manifest
        metadata = manifest.get('metadata') or {}
        self.name = metadata.get('name')
        self.namespace = metadata.get('namespace')
        self.api_version = manifest.get('apiVersion', self.api_version)
        self.deployed_at = time.time()

    def mark_ready(self) -> None:
        self.status = 'ready'
        self.ready_at = time.time()

    def fail(self, error: str) -> None:
        self.status = 'failed'
        self.error = error

    def skip(self, error: str) -> None:
        self.status = 'skipped'
        self.error = error

    def exclude(self) -> None:
        self.status = 'excluded'

    @property
    def settled(self) -> bool:
        return self.status not in ('pending', 'applying')

    @property
    def was_applied(self) -> bool:
        return self.deployed_at is not None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'id': self.id,
            'kind': self.kind,
            'status': self.status,
        }
        if self.api_version:
            d['api_version'] = self.api_version
        if self.name is not None:
            d['name'] = self.name
        if self.namespace is not None:
            d['namespace'] = self.namespace
        if self.deployed_at is not None:
            d['deployed_at'] = self.deployed_at
        if self.ready_at is not None:
            d['ready_at'] = self.ready_at
        if self.error is not None:
            d['error'] = self.error
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'DeployedResource':
        return cls(
            id=data['id'],
            kind=data.get('kind', ''),
            name=data.get('name'),
            namespace=data.get('namespace'),
            api_version=data.get('api_version', ''),
            status=data.get('status', 'pending'),
            deployed_at=data.get('deployed_at'),
            ready_at=data.get('ready_at'),
            error=data.get('error'),
        )


@dataclass
class DeploymentErrorRecord:
    """An error recorded against a resource during deploy.

    phase is one of: apply, readiness, dependency, resolve, status, timeout,
    cancelled, rollback, internal (an unexpected error that aborted the run).
    """
    resource_id: str
    phase: str
    error: Exception
    timestamp: float = field(default_factory=time.time)

    @property
    def message(self) -> str:
        return str(self.error)

    def to_dict(self) -> dict:
        return {
            'resource_id': self.resource_id,
            'phase': self.phase,
            'error': type(self.error).__name__,
            'message': self.message,
            'timestamp': self.timestamp,
        }


@dataclass
class RollbackResult:
    """Outcome of a best-effort rollback."""
    deployment_id: str
    rolled_back: list[str] = field(default_factory=list)
    errors: list[DeploymentErrorRecord] = field(default_factory=list)
    status: str = 'success'
    duration: float = 0.0

    def to_dict(self) -> dict:
        return {
            'deployment_id': self.deployment_id,
            'rolled_back': list(self.rolled_back),
            'errors': [e.to_dict() for e in self.errors],
            'status': self.status,
            'duration': round(self.duration, 3),
        }


@dataclass
class DeploymentResult:
    """Durable output of one deploy call."""
    id: str
    resources: list[DeployedResource]
    dependency_graph: Any
    duration: float
    status: str
    errors: list[DeploymentErrorRecord] = field(default_factory=list)
    status_values: dict = field(default_factory=dict)
    rollback: Optional[RollbackResult] = None
    mode: str = 'direct'

    @property
    def success(self) -> bool:
        return self.status == 'success'

    def get(self, resource_id: str) -> DeployedResource:
        """Get a resource's record.

        Raises:
            KeyError: If the resource is not part of this result
        """
        for resource in self.resources:
            if resource.id == resource_id:
                return resource
        raise KeyError(resource_id)

    def errors_for(self, resource_id: str) -> list[DeploymentErrorRecord]:
        return [e for e in self.errors if e.resource_id == resource_id]

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'id': self.id,
            'mode': self.mode,
            'status': self.status,
            'duration': round(self.duration, 3),
            'resources': [r.to_dict() for r in self.resources],
            'errors': [e.to_dict() for e in self.errors],
        }
        if self.status_values:
            d['status_values'] = self.status_values
        if self.rollback is not None:
            d['rollback'] = self.rollback.to_dict()
        return d


class DeploymentState:
    """Deployment-level state with save/load.

    Each task in a level owns exactly one entry of the resource map.
    """

    def __init__(self, graph_name: str, deployment_id: Optional[str] = None):
        self.graph_name = graph_name or 'graph'
        self.deployment_id = deployment_id or new_deployment_id()
        self._resources: dict[str, DeployedResource] = {}
        self.errors: list[DeploymentErrorRecord] = []
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None
        self.completed_levels = 0

    def add_resource(self, resource_id: str, kind: str, api_version: str = '') -> DeployedResource:
        state = DeployedResource(id=resource_id, kind=kind, api_version=api_version)
        self._resources[resource_id] = state
        return state

    def get_resource(self, resource_id: str) -> DeployedResource:
        """Get resource state by id.

        Raises:
            KeyError: If resource not registered
        """
        return self._resources[resource_id]

    @property
    def resources(self) -> dict[str, DeployedResource]:
        return dict(self._resources)

    def record_error(self, resource_id: str, phase: str, error: Exception) -> DeploymentErrorRecord:
        record = DeploymentErrorRecord(resource_id, phase, error)
        self.errors.append(record)
        return record

    def start(self) -> None:
        self.started_at = time.time()

    def finish(self) -> None:
        self.completed_at = time.time()

    @property
    def duration(self) -> float:
        if self.started_at is None:
            return 0.0
        return (self.completed_at or time.time()) - self.started_at

    def with_status(self, *statuses: str) -> list[DeployedResource]:
        return [r for r in self._resources.values() if r.status in statuses]

    def overall_status(self, wait_for_ready: bool = True) -> str:
        """success if no errors; failed if nothing reached the goal state; partial otherwise."""
        if not self.errors:
            return 'success'
        goal = ('ready',) if wait_for_ready else ('deployed', 'ready')
        if not self.with_status(*goal):
            return 'failed'
        return 'partial'

    def state_path(self, state_dir: Path) -> Path:
        return Path(state_dir) / self.graph_name / f'{self.deployment_id}.json'

    def save(self, state_dir: Path) -> Path:
        """Save state to JSON file.

        Returns:
            Path where state was saved
        """
        path = self.state_path(state_dir)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            'graph': self.graph_name,
            'deployment_id': self.deployment_id,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'completed_levels': self.completed_levels,
            'resources': {rid: r.to_dict() for rid, r in self._resources.items()},
            'errors': [e.to_dict() for e in self.errors],
        }
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        logger.debug("Saved deployment state to %s", path)
        return path

    @classmethod
    def load(cls, path: Path) -> 'DeploymentState':
        """Load state from JSON file.

        Recorded errors are kept as messages only.

        Raises:
            FileNotFoundError: If state file doesn't exist
        """
        with open(path, encoding='utf-8') as f:
            data = json.load(f)

        state = cls(data.get('graph', 'graph'), data.get('deployment_id'))
        state.started_at = data.get('started_at')
        state.completed_at = data.get('completed_at')
        state.completed_levels = data.get('completed_levels', 0)
        for rid, resource_data in data.get('resources', {}).items():
            state._resources[rid] = DeployedResource.from_dict(resource_data)
        for error in data.get('errors', []):
            state.errors.append(DeploymentErrorRecord(
                error['resource_id'], error['phase'], RuntimeError(error.get('message', '')),
                error.get('timestamp', 0.0)))
        logger.debug("Loaded deployment state from %s", path)
        return state
