"""Applying single resources and waiting for their readiness."""

import asyncio
import logging
from typing import Callable, Optional

from cluster import ClusterApi, is_namespaced, object_key
from common import ApiError, ApplyError, GraphDriverError, ReadinessTimeoutError
from config import ReadinessConfig, RetryPolicy
from graph_engine.events import EventEmitter
from graph_engine.retry import NETWORK_ERRORS, with_retry
from readiness import ReadinessVerdict

logger = logging.getLogger(__name__)


def with_namespace(manifest: dict, namespace: str) -> dict:
    """Copy of manifest with metadata.namespace defaulted for namespaced kinds."""
    if not namespace or not is_namespaced(manifest.get('kind', '')):
        return manifest
    metadata = dict(manifest.get('metadata') or {})
    if metadata.get('namespace'):
        return manifest
    metadata['namespace'] = namespace
    return {**manifest, 'metadata': metadata}


def _event_details(verdict: ReadinessVerdict) -> dict:
    # message travels as the event message, not as a detail
    details = verdict.to_dict()
    details.pop('message', None)
    return details


class ResourceApplier:
    """Create-or-update, readiness polling and delete against a ClusterApi."""

    def __init__(self, cluster: ClusterApi, retry: Optional[RetryPolicy] = None,
                 readiness: Optional[ReadinessConfig] = None, log=None):
        self.cluster = cluster
        self.retry = retry or RetryPolicy()
        self.readiness = readiness or ReadinessConfig()
        self.log = log or logger

    async def _create_or_update(self, manifest: dict) -> dict:
        api_version, kind, name, namespace = object_key(manifest)
        try:
            await self.cluster.read(api_version, kind, name, namespace)
        except ApiError as e:
            if not e.not_found:
                raise
            self.log.debug("Creating %s/%s", kind, name)
            return await self.cluster.create(manifest)
        self.log.debug("Patching existing %s/%s", kind, name)
        return await self.cluster.patch(manifest)

    async def apply(self, resource_id: str, manifest: dict) -> dict:
        """Idempotently apply manifest: read; 404 -> create; otherwise patch.

        Transient failures are retried per the retry policy.

        Returns:
            The object returned by the cluster

        Raises:
            ApplyError: When the apply fails permanently or retries are exhausted
        """
        _, kind, name, _ = object_key(manifest)
        if not name:
            raise ApplyError(f"Resource '{resource_id}' has no metadata.name", resource_id)
        try:
            return await with_retry(self._create_or_update, manifest, policy=self.retry,
                                    label=f'Apply {kind}/{name}')
        except ApiError as e:
            raise ApplyError(f"Failed to apply {kind}/{name}: {e}", resource_id,
                             transient=e.transient, status_code=e.status_code) from e
        except NETWORK_ERRORS as e:
            raise ApplyError(f"Failed to apply {kind}/{name}: {e}", resource_id, transient=True) from e

    async def wait_ready(
        self,
        resource_id: str,
        manifest: dict,
        evaluate: Callable[[dict], ReadinessVerdict],
        emitter: EventEmitter,
        on_observed: Optional[Callable[[dict], None]] = None,
        extra_check: Optional[Callable[[dict], Optional[str]]] = None,
    ) -> dict:
        """Poll until evaluate() reports ready.

        Args:
            resource_id: Graph id, for events and errors
            manifest: Applied manifest (identifies the object)
            evaluate: Readiness evaluator for the kind
            emitter: Receives resource-status/resource-ready/resource-warning
            on_observed: Called with every successfully read object
            extra_check: Returns a message while additional conditions do
                not hold, None once they do

        Returns:
            The live object observed ready

        Raises:
            ReadinessTimeoutError: When the readiness timeout elapses
        """
        api_version, kind, name, namespace = object_key(manifest)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.readiness.timeout
        last_message = ''

        while True:
            try:
                obj = await self.cluster.read(api_version, kind, name, namespace)
            except (GraphDriverError,) + NETWORK_ERRORS as e:
                last_message = f"Read failed: {e}"
                emitter.emit('resource-warning', last_message, resource_id)
            else:
                if on_observed is not None:
                    on_observed(obj)
                verdict = self._evaluate(resource_id, obj, evaluate, emitter)
                if verdict is not None:
                    if verdict.ready and extra_check is not None:
                        pending = extra_check(obj)
                        if pending:
                            verdict = ReadinessVerdict(False, pending, reason='ReadyWhenPending')
                    if verdict.ready:
                        emitter.emit('resource-ready', verdict.message, resource_id, **_event_details(verdict))
                        return obj
                    last_message = verdict.message
                    emitter.emit('resource-status', verdict.message, resource_id, **_event_details(verdict))

            if loop.time() >= deadline:
                raise ReadinessTimeoutError(resource_id, self.readiness.timeout, last_message)
            await asyncio.sleep(min(self.readiness.poll_interval, max(deadline - loop.time(), 0)))

    def _evaluate(self, resource_id: str, obj: dict, evaluate, emitter: EventEmitter) -> Optional[ReadinessVerdict]:
        try:
            return evaluate(obj)
        except Exception as e:
            emitter.emit('resource-warning', f"Readiness evaluator failed: {e}", resource_id)
            self.log.warning("Readiness evaluator for '%s' raised: %s", resource_id, e)
            return None

    async def delete(self, manifest: dict) -> bool:
        """Delete the object; a 404 counts as already deleted.

        Returns:
            True if the object was deleted, False if it did not exist
        """
        api_version, kind, name, namespace = object_key(manifest)
        try:
            await with_retry(self.cluster.delete, api_version, kind, name, namespace,
                             policy=self.retry, label=f'Delete {kind}/{name}')
        except ApiError as e:
            if e.not_found:
                return False
            raise
        return True
