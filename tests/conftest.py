"""Shared pytest fixtures for graph-driver tests."""

import copy
import sys
from pathlib import Path
from typing import Callable, Optional

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from cluster import object_key  # noqa: E402
from common import ApiError  # noqa: E402
from config import DeployOptions, ReadinessConfig, RetryPolicy  # noqa: E402


class FakeCluster:
    """In-memory ClusterApi.

    Objects are keyed by (apiVersion, kind, namespace, name). Tests can
    queue failures per operation and object name, and install status hooks
    that decide what a read returns.

    Attributes:
        objects: Stored objects
        calls: Log of (operation, kind, name) in call order
        failures: (operation, name) -> list of errors raised in order
        status_hooks: name -> fn(obj) returning the status to report on read
    """

    def __init__(self):
        self.objects: dict[tuple, dict] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.failures: dict[tuple[str, str], list[Exception]] = {}
        self.status_hooks: dict[str, Callable[[dict], Optional[dict]]] = {}

    @staticmethod
    def _key(api_version, kind, name, namespace):
        return (api_version, kind, namespace or '', name)

    def fail(self, operation: str, name: str, status_code: Optional[int], times: int = 1) -> None:
        """Queue `times` ApiErrors for operation on the object called name."""
        queue = self.failures.setdefault((operation, name), [])
        for _ in range(times):
            queue.append(ApiError(f"injected {operation} failure", status_code=status_code))

    def disconnect(self, operation: str, name: str, times: int = 1) -> None:
        """Queue `times` ConnectionErrors, as a transport that does not wrap them would raise."""
        queue = self.failures.setdefault((operation, name), [])
        for _ in range(times):
            queue.append(ConnectionError(f"connection reset during {operation}"))

    def set_status(self, name: str, status: dict) -> None:
        """Report a fixed status for name on every read."""
        self.status_hooks[name] = lambda obj: status

    def add(self, manifest: dict) -> dict:
        """Seed an existing object."""
        api_version, kind, name, namespace = object_key(manifest)
        obj = copy.deepcopy(manifest)
        self.objects[self._key(api_version, kind, name, namespace)] = obj
        return obj

    def _maybe_fail(self, operation: str, name: str) -> None:
        queue = self.failures.get((operation, name))
        if queue:
            raise queue.pop(0)

    def names(self, operation: str) -> list[str]:
        return [name for op, _, name in self.calls if op == operation]

    async def read(self, api_version, kind, name, namespace=None):
        self.calls.append(('read', kind, name))
        self._maybe_fail('read', name)
        obj = self.objects.get(self._key(api_version, kind, name, namespace))
        if obj is None:
            raise ApiError(f"{kind} {name} not found", status_code=404)
        obj = copy.deepcopy(obj)
        hook = self.status_hooks.get(name)
        if hook is not None:
            status = hook(obj)
            if status is not None:
                obj['status'] = status
        return obj

    async def create(self, manifest):
        api_version, kind, name, namespace = object_key(manifest)
        self.calls.append(('create', kind, name))
        self._maybe_fail('create', name)
        key = self._key(api_version, kind, name, namespace)
        if key in self.objects:
            raise ApiError(f"{kind} {name} already exists", status_code=409)
        obj = copy.deepcopy(manifest)
        obj.setdefault('metadata', {})['uid'] = f'uid-{name}'
        self.objects[key] = obj
        return copy.deepcopy(obj)

    async def patch(self, manifest):
        api_version, kind, name, namespace = object_key(manifest)
        self.calls.append(('patch', kind, name))
        self._maybe_fail('patch', name)
        key = self._key(api_version, kind, name, namespace)
        merged = {**self.objects.get(key, {}), **copy.deepcopy(manifest)}
        self.objects[key] = merged
        return copy.deepcopy(merged)

    async def delete(self, api_version, kind, name, namespace=None):
        self.calls.append(('delete', kind, name))
        self._maybe_fail('delete', name)
        key = self._key(api_version, kind, name, namespace)
        if key not in self.objects:
            raise ApiError(f"{kind} {name} not found", status_code=404)
        del self.objects[key]

    async def list(self, api_version, kind, namespace=None, label_selector=None):
        self.calls.append(('list', kind, ''))
        return [copy.deepcopy(o) for k, o in self.objects.items()
                if k[0] == api_version and k[1] == kind and (namespace is None or k[2] == namespace)]


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def fast_options():
    """Deploy options with zero delays so tests run instantly."""
    return DeployOptions(
        retry=RetryPolicy(max_retries=3, initial_delay=0.0, max_delay=0.0),
        readiness=ReadinessConfig(poll_interval=0.0, timeout=0.05),
    )


@pytest.fixture
def events():
    """Collects progress events; pass events.append as the callback."""
    return []


def deployment(name: str, replicas: int = 1, image: str = 'nginx') -> dict:
    return {
        'apiVersion': 'apps/v1',
        'kind': 'Deployment',
        'metadata': {'name': name},
        'spec': {
            'replicas': replicas,
            'selector': {'matchLabels': {'app': name}},
            'template': {
                'metadata': {'labels': {'app': name}},
                'spec': {'containers': [{'name': name, 'image': image}]},
            },
        },
    }


def service(name: str, app: str, port: int = 80) -> dict:
    return {
        'apiVersion': 'v1',
        'kind': 'Service',
        'metadata': {'name': name},
        'spec': {'selector': {'app': app}, 'ports': [{'port': port}]},
    }


def config_map(name: str, data: Optional[dict] = None) -> dict:
    return {'apiVersion': 'v1', 'kind': 'ConfigMap', 'metadata': {'name': name}, 'data': data or {}}
