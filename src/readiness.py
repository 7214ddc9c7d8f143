"""Readiness evaluation for live cluster objects.

Each evaluator is a pure function mapping an observed object to a
ReadinessVerdict. Evaluators are looked up by kind in a ReadinessRegistry
when a resource is applied, never attached to the resource itself.

Kinds without a dedicated evaluator fall back to "exists, no fatal
status condition".
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadinessVerdict:
    """Ready/not-ready decision with a reason.

    Attributes:
        ready: True when the object is ready for dependents
        message: Human-readable explanation
        reason: Short CamelCase cause when not ready
        details: Observed values backing the decision
    """
    ready: bool
    message: str
    reason: Optional[str] = None
    details: dict = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'ready': self.ready, 'message': self.message}
        if self.reason:
            d['reason'] = self.reason
        if self.details:
            d['details'] = self.details
        return d


Evaluator = Callable[[dict], ReadinessVerdict]

_BUILTIN: dict[str, Evaluator] = {}


def readiness_evaluator(*kinds: str):
    """Decorator to register a built-in evaluator for one or more kinds."""
    def decorator(fn: Evaluator) -> Evaluator:
        for kind in kinds:
            _BUILTIN[kind] = fn
        return fn
    return decorator


def _ready(message: str, **details) -> ReadinessVerdict:
    return ReadinessVerdict(True, message, details=details)


def _not_ready(reason: str, message: str, **details) -> ReadinessVerdict:
    return ReadinessVerdict(False, message, reason=reason, details=details)


def _status(obj: dict) -> Optional[dict]:
    status = obj.get('status') if isinstance(obj, dict) else None
    return status if isinstance(status, dict) else None


def _conditions(status: dict) -> list[dict]:
    conditions = status.get('conditions')
    if not isinstance(conditions, list):
        return []
    return [c for c in conditions if isinstance(c, dict)]


def find_condition(status: dict, condition_type: str) -> Optional[dict]:
    for condition in _conditions(status):
        if condition.get('type') == condition_type:
            return condition
    return None


def _name(obj: dict) -> str:
    return (obj.get('metadata') or {}).get('name', '<unnamed>')


def _desired_replicas(obj: dict) -> int:
    replicas = (obj.get('spec') or {}).get('replicas')
    return 1 if replicas is None else int(replicas)


@readiness_evaluator('Deployment')
def deployment_ready(obj: dict) -> ReadinessVerdict:
    status = _status(obj)
    if status is None:
        return _not_ready('StatusMissing', 'Deployment status not available yet')

    expected = _desired_replicas(obj)
    ready = status.get('readyReplicas', 0) or 0
    available = status.get('availableReplicas', 0) or 0
    if ready == expected and available == expected:
        return _ready(f'Deployment has {ready}/{expected} ready replicas and {available}/{expected} available')
    return _not_ready(
        'ReplicasNotReady',
        f'Waiting for replicas: {ready}/{expected} ready, {available}/{expected} available',
        expected=expected, ready=ready, available=available,
        updated=status.get('updatedReplicas', 0) or 0,
    )


@readiness_evaluator('ReplicaSet')
def replicaset_ready(obj: dict) -> ReadinessVerdict:
    status = _status(obj)
    if status is None:
        return _not_ready('StatusMissing', 'ReplicaSet status not available yet')
    expected = _desired_replicas(obj)
    ready = status.get('readyReplicas', 0) or 0
    if ready == expected:
        return _ready(f'ReplicaSet has {ready}/{expected} ready replicas')
    return _not_ready('ReplicasNotReady', f'ReplicaSet has {ready}/{expected} ready replicas',
                      expected=expected, ready=ready)


@readiness_evaluator('StatefulSet')
def statefulset_ready(obj: dict) -> ReadinessVerdict:
    status = _status(obj)
    if status is None:
        return _not_ready('StatusMissing', 'StatefulSet status not available yet')

    expected = _desired_replicas(obj)
    ready = status.get('readyReplicas', 0) or 0
    strategy = ((obj.get('spec') or {}).get('updateStrategy') or {}).get('type', 'RollingUpdate')
    if strategy == 'OnDelete':
        if ready == expected:
            return _ready(f'StatefulSet (OnDelete) has {ready}/{expected} ready replicas')
        return _not_ready('ReplicasNotReady', f'StatefulSet has {ready}/{expected} ready replicas',
                          expected=expected, ready=ready, strategy=strategy)

    current = status.get('currentReplicas', 0) or 0
    updated = status.get('updatedReplicas', 0) or 0
    if ready == expected and current == expected and updated == expected:
        return _ready(f'StatefulSet has {ready}/{expected} ready replicas')
    return _not_ready(
        'ReplicasNotReady',
        f'StatefulSet rolling update: {ready} ready, {current} current, {updated} updated of {expected}',
        expected=expected, ready=ready, current=current, updated=updated, strategy=strategy,
    )


@readiness_evaluator('DaemonSet')
def daemonset_ready(obj: dict) -> ReadinessVerdict:
    status = _status(obj)
    if status is None:
        return _not_ready('StatusMissing', 'DaemonSet status not available yet')
    desired = status.get('desiredNumberScheduled', 0) or 0
    ready = status.get('numberReady', 0) or 0
    if desired > 0 and ready == desired:
        return _ready(f'DaemonSet has {ready}/{desired} pods ready')
    return _not_ready('PodsNotReady', f'DaemonSet has {ready}/{desired} pods ready',
                      desired=desired, ready=ready)


@readiness_evaluator('Service')
def service_ready(obj: dict) -> ReadinessVerdict:
    spec = obj.get('spec') or {}
    service_type = spec.get('type', 'ClusterIP')

    if service_type == 'LoadBalancer':
        ingress = ((_status(obj) or {}).get('loadBalancer') or {}).get('ingress') or []
        if ingress and (ingress[0].get('ip') or ingress[0].get('hostname')):
            address = ingress[0].get('ip') or ingress[0].get('hostname')
            return _ready(f'LoadBalancer service has external address {address}')
        return _not_ready('LoadBalancerPending', 'Waiting for load balancer to assign an external address',
                          service_type=service_type)

    if service_type == 'ExternalName':
        if spec.get('externalName'):
            return _ready(f"ExternalName service points to {spec['externalName']}")
        return _not_ready('ExternalNameMissing', 'ExternalName service has no externalName set',
                          service_type=service_type)

    return _ready(f'{service_type} service is ready')


@readiness_evaluator('Ingress')
def ingress_ready(obj: dict) -> ReadinessVerdict:
    ingress = ((_status(obj) or {}).get('loadBalancer') or {}).get('ingress') or []
    if ingress and (ingress[0].get('ip') or ingress[0].get('hostname')):
        return _ready('Ingress has a load balancer address')
    return _not_ready('LoadBalancerPending', 'Waiting for ingress controller to assign an address')


@readiness_evaluator('Job')
def job_ready(obj: dict) -> ReadinessVerdict:
    status = _status(obj)
    if status is None:
        return _not_ready('StatusMissing', 'Job status not available yet')

    spec = obj.get('spec') or {}
    completions = spec.get('completions', 1)
    completions = 1 if completions is None else completions
    backoff_limit = spec.get('backoffLimit', 6)
    succeeded = status.get('succeeded', 0) or 0
    failed = status.get('failed', 0) or 0

    if failed > backoff_limit:
        return _not_ready('JobFailed', f'Job failed {failed} times (backoff limit {backoff_limit})',
                          failed=failed, backoff_limit=backoff_limit)

    if spec.get('completionMode') == 'Indexed':
        done = succeeded == completions
    else:
        done = succeeded >= completions
    if done:
        return _ready(f'Job completed {succeeded}/{completions}')
    return _not_ready('JobRunning', f'Job has {succeeded}/{completions} completions',
                      succeeded=succeeded, completions=completions,
                      active=status.get('active', 0) or 0, failed=failed)


@readiness_evaluator('CronJob')
def cronjob_ready(obj: dict) -> ReadinessVerdict:
    if not isinstance(obj, dict):
        return _not_ready('EvaluationError', f'Cannot evaluate CronJob readiness: {obj!r}')

    spec = obj.get('spec') or {}
    if spec.get('suspend'):
        return _ready('CronJob is suspended and ready')

    status = _status(obj)
    if status is None:
        return _not_ready('StatusMissing', 'CronJob status not available yet')

    active = len(status.get('active') or [])
    if status.get('lastScheduleTime'):
        return _ready(f'CronJob is ready with {active} active jobs')
    return _not_ready('NotScheduled', 'CronJob has not been scheduled yet', active=active)


@readiness_evaluator('Pod')
def pod_ready(obj: dict) -> ReadinessVerdict:
    status = _status(obj)
    if status is None:
        return _not_ready('StatusMissing', 'Pod status not available yet')
    phase = status.get('phase')
    if phase == 'Succeeded':
        return _ready('Pod completed successfully')
    containers = status.get('containerStatuses') or []
    ready_count = sum(1 for c in containers if c.get('ready'))
    if phase == 'Running' and containers and ready_count == len(containers):
        return _ready(f'Pod is running with {ready_count}/{len(containers)} containers ready')
    return _not_ready('PodNotReady', f'Pod phase {phase or "Unknown"}, {ready_count}/{len(containers)} containers ready',
                      phase=phase, ready_containers=ready_count, total_containers=len(containers))


@readiness_evaluator('PersistentVolumeClaim')
def pvc_ready(obj: dict) -> ReadinessVerdict:
    phase = (_status(obj) or {}).get('phase')
    if phase == 'Bound':
        return _ready('PersistentVolumeClaim is bound')
    return _not_ready('NotBound', f'PersistentVolumeClaim phase is {phase or "Unknown"}', phase=phase)


@readiness_evaluator('Namespace')
def namespace_ready(obj: dict) -> ReadinessVerdict:
    phase = (_status(obj) or {}).get('phase')
    if phase == 'Active':
        return _ready('Namespace is active')
    return _not_ready('NotActive', f'Namespace phase is {phase or "Unknown"}', phase=phase)


@readiness_evaluator('HorizontalPodAutoscaler')
def hpa_ready(obj: dict) -> ReadinessVerdict:
    status = _status(obj)
    if status is not None and status.get('currentReplicas') is not None:
        return _ready(f"HorizontalPodAutoscaler is tracking {status['currentReplicas']} replicas")
    return _not_ready('MetricsPending', 'HorizontalPodAutoscaler has not observed replicas yet')


@readiness_evaluator('PodDisruptionBudget')
def pdb_ready(obj: dict) -> ReadinessVerdict:
    status = _status(obj)
    if status is None:
        return _not_ready('StatusMissing', 'PodDisruptionBudget status not available yet')
    expected = status.get('expectedPods', 0) or 0
    healthy = status.get('currentHealthy', 0) or 0
    desired = status.get('desiredHealthy', 0) or 0
    if expected == 0 or healthy >= desired:
        return _ready(f'PodDisruptionBudget has {healthy}/{desired} healthy pods')
    return _not_ready('InsufficientHealthyPods', f'PodDisruptionBudget has {healthy}/{desired} healthy pods',
                      current_healthy=healthy, desired_healthy=desired, expected_pods=expected)


@readiness_evaluator('CustomResourceDefinition')
def crd_ready(obj: dict) -> ReadinessVerdict:
    status = _status(obj) or {}
    established = find_condition(status, 'Established')
    names = find_condition(status, 'NamesAccepted')
    if (established or {}).get('status') == 'True' and (names or {}).get('status') == 'True':
        return _ready('CustomResourceDefinition is established')
    return _not_ready('ConditionsNotMet', 'Waiting for CustomResourceDefinition to be established',
                      established=(established or {}).get('status'), names_accepted=(names or {}).get('status'))


@readiness_evaluator('ConfigMap', 'Secret', 'ServiceAccount', 'Role', 'RoleBinding',
                     'ClusterRole', 'ClusterRoleBinding', 'NetworkPolicy', 'StorageClass')
def exists_ready(obj: dict) -> ReadinessVerdict:
    return _ready(f"{obj.get('kind', 'Resource')} exists")


@readiness_evaluator('ResourceGraphDefinition')
def rgd_ready(obj: dict) -> ReadinessVerdict:
    status = _status(obj)
    if status is None:
        if (obj.get('metadata') or {}).get('uid'):
            return _not_ready('StatusPending', 'ResourceGraphDefinition exists but the controller has not set status')
        return _not_ready('StatusMissing', 'Waiting for the controller to initialize status')

    conditions = _conditions(status)
    failed = next((c for c in conditions if c.get('status') == 'False'), None)
    state = status.get('state')
    if state == 'failed' or failed:
        return _not_ready('RGDProcessingFailed',
                          f"ResourceGraphDefinition processing failed: {(failed or {}).get('message', 'Unknown error')}",
                          state=state, conditions=conditions)

    required = ('ReconcilerReady', 'GraphVerified', 'CustomResourceDefinitionSynced')
    if state == 'Active' and all((find_condition(status, t) or {}).get('status') == 'True' for t in required):
        return _ready('ResourceGraphDefinition is active and ready')
    return _not_ready('ReconciliationPending',
                      f"Waiting for ResourceGraphDefinition to become active (current state: {state or 'unknown'})",
                      state=state, conditions=conditions)


def kro_instance_ready(obj: dict) -> ReadinessVerdict:
    """Readiness for an instance of a graph's generated custom resource."""
    kind = obj.get('kind', 'instance')
    status = _status(obj) or {}
    state = status.get('state')
    ready_condition = find_condition(status, 'Ready') or {}

    if state == 'ACTIVE' and ready_condition.get('status') == 'True':
        return _ready(f'{kind} instance is active and all resources are ready')
    if state == 'FAILED':
        failed = next((c for c in _conditions(status) if c.get('status') == 'False'), {})
        return _not_ready('KroInstanceFailed', f"{kind} instance failed: {failed.get('message', 'Unknown error')}",
                          state=state, observed_generation=status.get('observedGeneration'))
    return _not_ready('KroInstanceProgressing',
                      f"{kind} instance progressing - State: {state or 'Unknown'}, "
                      f"Ready: {ready_condition.get('status', 'Unknown')}",
                      state=state, observed_generation=status.get('observedGeneration'))


FATAL_CONDITIONS = ('Failed', 'Stalled', 'Degraded')


def generic_ready(obj: dict) -> ReadinessVerdict:
    """Fallback: the object exists and reports no fatal condition."""
    kind = obj.get('kind', 'Resource')
    status = _status(obj)
    if status is None:
        return _ready(f'{kind} {_name(obj)} exists')

    for condition_type in FATAL_CONDITIONS:
        condition = find_condition(status, condition_type)
        if condition and condition.get('status') == 'True':
            return _not_ready(condition.get('reason') or condition_type,
                              condition.get('message') or f'{kind} reports {condition_type}')

    for condition_type in ('Ready', 'Available'):
        condition = find_condition(status, condition_type)
        if condition is not None:
            if condition.get('status') == 'True':
                return _ready(f'{kind} {_name(obj)} is {condition_type.lower()}')
            return _not_ready(condition.get('reason') or f'Not{condition_type}',
                              condition.get('message') or f'{kind} {condition_type} condition is {condition.get("status")}')

    return _ready(f'{kind} {_name(obj)} exists')


class ReadinessRegistry:
    """Maps kinds (optionally qualified by apiVersion) to evaluators."""

    def __init__(self, fallback: Evaluator = generic_ready, builtins: bool = True):
        self._evaluators: dict[str, Evaluator] = dict(_BUILTIN) if builtins else {}
        self.fallback = fallback

    @staticmethod
    def _key(kind: str, api_version: Optional[str] = None) -> str:
        return f'{api_version}/{kind}' if api_version else kind

    def register(self, kind: str, evaluator: Evaluator, api_version: Optional[str] = None) -> None:
        self._evaluators[self._key(kind, api_version)] = evaluator

    def unregister(self, kind: str, api_version: Optional[str] = None) -> None:
        self._evaluators.pop(self._key(kind, api_version), None)

    def resolve(self, kind: str, api_version: Optional[str] = None) -> Evaluator:
        """Most specific evaluator for kind, else the fallback."""
        if api_version and self._key(kind, api_version) in self._evaluators:
            return self._evaluators[self._key(kind, api_version)]
        return self._evaluators.get(kind, self.fallback)

    def has(self, kind: str, api_version: Optional[str] = None) -> bool:
        return self._key(kind, api_version) in self._evaluators or kind in self._evaluators

    def evaluate(self, obj: dict) -> ReadinessVerdict:
        evaluator = self.resolve(obj.get('kind', ''), obj.get('apiVersion'))
        return evaluator(obj)

    @property
    def kinds(self) -> list[str]:
        return sorted(self._evaluators)


def default_registry() -> ReadinessRegistry:
    """A fresh registry holding every built-in evaluator."""
    return ReadinessRegistry()
