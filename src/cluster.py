"""Cluster API capability.

The deployment engine talks to the cluster only through the ClusterApi
protocol. HttpClusterClient is a small REST implementation on top of
requests; tests use an in-memory fake.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import requests
import urllib3

from common import ApiError

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_DIR = Path('/var/run/secrets/kubernetes.io/serviceaccount')

CLUSTER_SCOPED_KINDS = frozenset({
    'Namespace', 'Node', 'PersistentVolume', 'StorageClass', 'ClusterRole', 'ClusterRoleBinding',
    'CustomResourceDefinition', 'ResourceGraphDefinition', 'PriorityClass', 'IngressClass',
    'MutatingWebhookConfiguration', 'ValidatingWebhookConfiguration', 'APIService',
})

_IRREGULAR_PLURALS = {
    'Endpoints': 'endpoints',
    'Ingress': 'ingresses',
    'IngressClass': 'ingressclasses',
    'NetworkPolicy': 'networkpolicies',
    'PodSecurityPolicy': 'podsecuritypolicies',
    'PriorityClass': 'priorityclasses',
    'StorageClass': 'storageclasses',
}


@runtime_checkable
class ClusterApi(Protocol):
    """Read/create/patch/delete/list for typed cluster objects.

    Every method raises ApiError on failure; a 404 from read() means the
    object does not exist.
    """

    async def read(self, api_version: str, kind: str, name: str, namespace: Optional[str] = None) -> dict:
        ...

    async def create(self, manifest: dict) -> dict:
        ...

    async def patch(self, manifest: dict) -> dict:
        ...

    async def delete(self, api_version: str, kind: str, name: str, namespace: Optional[str] = None) -> None:
        ...

    async def list(self, api_version: str, kind: str, namespace: Optional[str] = None,
                   label_selector: Optional[str] = None) -> list[dict]:
        ...


def is_namespaced(kind: str) -> bool:
    return kind not in CLUSTER_SCOPED_KINDS


def plural_for(kind: str) -> str:
    """REST resource name for a kind ('Deployment' -> 'deployments')."""
    if kind in _IRREGULAR_PLURALS:
        return _IRREGULAR_PLURALS[kind]
    lower = kind.lower()
    if lower.endswith('y') and lower[-2:-1] not in 'aeiou':
        return lower[:-1] + 'ies'
    if lower.endswith(('s', 'x', 'ch', 'sh')):
        return lower + 'es'
    return lower + 's'


def resource_path(api_version: str, kind: str, namespace: Optional[str] = None,
                  name: Optional[str] = None) -> str:
    """Build the REST path for a kind, e.g. /apis/apps/v1/namespaces/default/deployments/web."""
    base = '/api/v1' if api_version == 'v1' else f'/apis/{api_version}'
    path = base
    if namespace and is_namespaced(kind):
        path += f'/namespaces/{namespace}'
    path += f'/{plural_for(kind)}'
    if name:
        path += f'/{name}'
    return path


def object_key(manifest: dict) -> tuple[str, str, str, Optional[str]]:
    """(apiVersion, kind, name, namespace) of a manifest."""
    metadata = manifest.get('metadata') or {}
    return (
        manifest.get('apiVersion', ''),
        manifest.get('kind', ''),
        metadata.get('name', ''),
        metadata.get('namespace'),
    )


class HttpClusterClient:
    """ClusterApi over the Kubernetes REST API.

    Blocking requests calls run in a worker thread via asyncio.to_thread.

    Attributes:
        server: API server base URL (https://host:port)
        token: Bearer token
        verify: CA bundle path, or False to skip TLS verification
        timeout: Per-request timeout in seconds
    """

    def __init__(self, server: str, token: Optional[str] = None, verify=True, timeout: float = 30.0):
        self.server = server.rstrip('/')
        self.token = token
        self.verify = verify
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers['Accept'] = 'application/json'
        if token:
            self.session.headers['Authorization'] = f'Bearer {token}'
        if verify is False:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    @classmethod
    def in_cluster(cls) -> 'HttpClusterClient':
        """Client for the service account mounted into a pod.

        Raises:
            ApiError: If not running inside a cluster
        """
        host = os.environ.get('KUBERNETES_SERVICE_HOST')
        port = os.environ.get('KUBERNETES_SERVICE_PORT', '443')
        token_file = SERVICE_ACCOUNT_DIR / 'token'
        if not host or not token_file.exists():
            raise ApiError("Not running in a cluster: KUBERNETES_SERVICE_HOST or service account token missing")
        ca_file = SERVICE_ACCOUNT_DIR / 'ca.crt'
        return cls(
            f'https://{host}:{port}',
            token=token_file.read_text().strip(),
            verify=str(ca_file) if ca_file.exists() else True,
        )

    def _request(self, method: str, path: str, body: Optional[dict] = None,
                 params: Optional[dict] = None, content_type: str = 'application/json') -> dict:
        url = f'{self.server}{path}'
        logger.debug("%s %s", method, url)
        try:
            resp = self.session.request(
                method, url, json=body, params=params, verify=self.verify, timeout=self.timeout,
                headers={'Content-Type': content_type} if body is not None else None,
            )
        except requests.exceptions.Timeout as e:
            raise ApiError(f"Timeout calling {method} {path}") from e
        except requests.exceptions.RequestException as e:
            raise ApiError(f"Cannot reach cluster API at {self.server}: {e}") from e

        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = {}
            message = payload.get('message') or resp.text[:200] or resp.reason
            raise ApiError(f"{method} {path} failed ({resp.status_code}): {message}",
                           status_code=resp.status_code, body=payload)
        if not resp.content:
            return {}
        return resp.json()

    async def read(self, api_version: str, kind: str, name: str, namespace: Optional[str] = None) -> dict:
        return await asyncio.to_thread(self._request, 'GET', resource_path(api_version, kind, namespace, name))

    async def create(self, manifest: dict) -> dict:
        api_version, kind, _, namespace = object_key(manifest)
        return await asyncio.to_thread(
            self._request, 'POST', resource_path(api_version, kind, namespace), manifest)

    async def patch(self, manifest: dict) -> dict:
        api_version, kind, name, namespace = object_key(manifest)
        return await asyncio.to_thread(
            self._request, 'PATCH', resource_path(api_version, kind, namespace, name), manifest,
            None, 'application/merge-patch+json')

    async def delete(self, api_version: str, kind: str, name: str, namespace: Optional[str] = None) -> None:
        await asyncio.to_thread(
            self._request, 'DELETE', resource_path(api_version, kind, namespace, name),
            {'propagationPolicy': 'Foreground'})

    async def list(self, api_version: str, kind: str, namespace: Optional[str] = None,
                   label_selector: Optional[str] = None) -> list[dict]:
        params = {'labelSelector': label_selector} if label_selector else None
        result = await asyncio.to_thread(
            self._request, 'GET', resource_path(api_version, kind, namespace), None, params)
        return result.get('items', [])
