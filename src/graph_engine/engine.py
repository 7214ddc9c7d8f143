"""Deployment engine.

Entry point for applying a graph to a cluster. Builds the dependency
graph, picks the strategy for options.mode, enforces the overall timeout,
optionally rolls back, and reports progress through the callback:

    started -> progress... -> completed | failed

Construction and configuration errors are raised (after the terminal
'failed' event); deploy-time errors are recorded in the result.
"""

import asyncio
import logging
from typing import Optional, Union

from cluster import ClusterApi, HttpClusterClient
from common import CompileError, ConstructionError, DeploymentTimeoutError
from config import ConfigError, DeployOptions
from graph_engine.applier import ResourceApplier
from graph_engine.events import EventEmitter
from graph_engine.graph import DependencyGraph, build_graph
from graph_engine.resolver import ReferenceResolver
from graph_engine.rollback import rollback
from graph_engine.state import DeploymentResult, DeploymentState, new_deployment_id
from graph_engine.strategies import STRATEGIES, DeployContext
from manifest import ResourceGraph
from readiness import ReadinessRegistry, default_registry

logger = logging.getLogger(__name__)


class DeploymentLogAdapter(logging.LoggerAdapter):
    """Prefixes every message with the deployment id."""

    def process(self, msg, kwargs):
        return f"[{self.extra['deployment_id']}] {msg}", kwargs


class DeploymentEngine:
    """Deploys resource graphs through a ClusterApi.

    Attributes:
        cluster: Cluster capability used for every read and write
        registry: Readiness evaluators keyed by kind
        logger: Base logger; each deploy wraps it with its deployment id
    """

    def __init__(self, cluster: ClusterApi, registry: Optional[ReadinessRegistry] = None,
                 logger: Optional[logging.Logger] = None):
        self.cluster = cluster
        self.registry = registry or default_registry()
        self.logger = logger or logging.getLogger(__name__)

    async def deploy(
        self,
        graph: Union[ResourceGraph, DependencyGraph],
        options: Optional[DeployOptions] = None,
        spec: Optional[dict] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DeploymentResult:
        """Deploy graph and return the outcome.

        Args:
            graph: ResourceGraph (built into a DependencyGraph here) or a
                prebuilt DependencyGraph
            options: Deploy options (defaults when omitted)
            spec: Input spec values; schema defaults fill the gaps
            cancel_event: Checked between levels; once set, no new level starts

        Returns:
            DeploymentResult with status success, partial or failed

        Raises:
            ConstructionError: If the graph is invalid (cycle, bad condition)
            CompileError: If an expression cannot be compiled
            ConfigError: If the mode is unknown or a required spec field is missing
            Exception: Any unexpected error during execution, re-raised after
                the state is saved and a failed event is emitted
        """
        options = options or DeployOptions()
        deployment_id = new_deployment_id()
        log = DeploymentLogAdapter(self.logger, {'deployment_id': deployment_id})
        emitter = EventEmitter(options.progress_callback, deployment_id, log)
        name = getattr(graph, 'name', '') or 'graph'

        emitter.emit('started', f"Deploying '{name}' in {options.mode} mode", mode=options.mode)
        log.info("Deploying '%s' (%s mode)", name, options.mode)

        try:
            strategy_cls = STRATEGIES.get(options.mode)
            if strategy_cls is None:
                raise ConfigError(f"Unknown deploy mode '{options.mode}'. Valid: {', '.join(STRATEGIES)}")
            dependency_graph = graph if isinstance(graph, DependencyGraph) else build_graph(graph)
            state = DeploymentState(name, deployment_id)
            applier = ResourceApplier(self.cluster, options.retry, options.readiness, log)
            resolver = ReferenceResolver(self.cluster, spec, dependency_graph.externals,
                                         set(dependency_graph.nodes))
            ctx = DeployContext(
                graph=dependency_graph, options=options, state=state, emitter=emitter,
                applier=applier, resolver=resolver, registry=self.registry, log=log,
                spec=dict(spec or {}), cancel_event=cancel_event,
            )
            strategy = strategy_cls()
            strategy.prepare(ctx)
        except (ConstructionError, CompileError, ConfigError) as e:
            log.error("Deployment of '%s' rejected: %s", name, e)
            emitter.emit('failed', f"Deployment rejected: {e}", error=type(e).__name__)
            raise

        state.start()
        try:
            if options.timeout:
                await asyncio.wait_for(strategy.execute(ctx), options.timeout)
            else:
                await strategy.execute(ctx)
        except asyncio.TimeoutError:
            error = DeploymentTimeoutError(options.timeout)
            log.error("%s", error)
            self._settle_unfinished(state, error, 'timeout', options.wait_for_ready)
        except Exception as e:
            log.exception("Deployment of '%s' aborted by unexpected error", name)
            self._settle_unfinished(state, e, 'internal', wait_for_ready=True)
            state.finish()
            ctx.save_state()
            emitter.emit('failed', f"Deployment of '{name}' failed: {e}", status='failed',
                         error=type(e).__name__, errors=[r.to_dict() for r in state.errors])
            raise
        state.finish()

        status = state.overall_status(options.wait_for_ready)
        if ctx.cancelled and status == 'success':
            status = 'partial'

        rollback_result = None
        if status != 'success' and options.rollback_on_failure:
            rollback_result = await rollback(state, applier, emitter, log)

        ctx.save_state()
        result = DeploymentResult(
            id=deployment_id,
            resources=list(state.resources.values()),
            dependency_graph=dependency_graph,
            duration=state.duration,
            status=status,
            errors=list(state.errors),
            status_values=ctx.status_values,
            rollback=rollback_result,
            mode=options.mode,
        )

        if status == 'success':
            log.info("Deployment of '%s' succeeded in %.1fs", name, result.duration)
            emitter.emit('completed', f"Deployment of '{name}' completed", status=status,
                         duration=round(result.duration, 3))
        else:
            log.warning("Deployment of '%s' %s with %d error(s)", name, status, len(result.errors))
            emitter.emit('failed', f"Deployment of '{name}' {status}", status=status,
                         errors=[e.to_dict() for e in result.errors])
        return result

    @staticmethod
    def _settle_unfinished(state: DeploymentState, error: Exception, phase: str, wait_for_ready: bool) -> None:
        """Close out resources left open when execution stops early.

        Pending resources are skipped; applying ones (and deployed ones
        awaiting readiness) are failed. Each gets an error record under
        phase; with nothing open the record is filed against the graph.
        """
        # a deployed resource is still in flight while its readiness is awaited
        open_statuses = ('pending', 'applying', 'deployed') if wait_for_ready else ('pending', 'applying')
        unsettled = state.with_status(*open_statuses)
        for resource in unsettled:
            if resource.status == 'pending':
                resource.skip(str(error))
            else:
                resource.fail(str(error))
            state.record_error(resource.id, phase, error)
        if not unsettled:
            state.record_error(state.graph_name, phase, error)


async def deploy(
    graph: Union[ResourceGraph, DependencyGraph],
    options: Optional[DeployOptions] = None,
    spec: Optional[dict] = None,
    cluster: Optional[ClusterApi] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> DeploymentResult:
    """Deploy graph with a one-off engine.

    Uses the in-cluster service account when no cluster is given.
    """
    engine = DeploymentEngine(cluster or HttpClusterClient.in_cluster())
    return await engine.deploy(graph, options, spec=spec, cancel_event=cancel_event)
