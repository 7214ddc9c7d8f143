"""Deployment strategies.

DirectStrategy applies every resource itself, level by level.
ControlLoopStrategy hands the whole graph to the kro controller as a
ResourceGraphDefinition plus one instance, and waits on both.

Both follow the same two-step protocol: prepare() runs synchronously
before anything is applied and may raise construction or configuration
errors; execute() applies and records every deploy-time failure in the
shared DeploymentState instead of raising.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from common import ConstructionError, DependencyFailedError, GraphDriverError, to_kebab_case
from config import DeployOptions
from graph_engine.applier import ResourceApplier, with_namespace
from graph_engine.events import EventEmitter
from graph_engine.graph import DependencyGraph, ResourceNode
from graph_engine.resolver import ReferenceResolver
from graph_engine.serialize import build_instance, serialize_graph
from graph_engine.state import DeploymentState
from readiness import ReadinessRegistry, kro_instance_ready

logger = logging.getLogger(__name__)


@dataclass
class DeployContext:
    """Everything one deploy call shares between engine and strategy."""
    graph: DependencyGraph
    options: DeployOptions
    state: DeploymentState
    emitter: EventEmitter
    applier: ResourceApplier
    resolver: ReferenceResolver
    registry: ReadinessRegistry
    log: Any = None
    spec: dict = field(default_factory=dict)
    cancel_event: Optional[asyncio.Event] = None
    cancelled: bool = False
    status_values: dict = field(default_factory=dict)

    def cancel_requested(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def save_state(self) -> None:
        if self.options.state_dir is None:
            return
        try:
            self.state.save(self.options.state_dir)
        except OSError as e:
            self.log.warning("Could not save deployment state: %s", e)


def _effective_spec(graph: DependencyGraph, spec: Optional[dict]) -> dict:
    if graph.source is not None:
        return graph.source.schema.apply_defaults(spec)
    return dict(spec or {})


class DirectStrategy:
    """Applies resources level by level with in-process substitution."""

    mode = 'direct'

    def prepare(self, ctx: DeployContext) -> None:
        ctx.spec = _effective_spec(ctx.graph, ctx.spec)
        ctx.resolver.spec = ctx.spec
        for node in ctx.graph.create_order():
            ctx.state.add_resource(node.id, node.kind, node.api_version)

    async def execute(self, ctx: DeployContext) -> None:
        graph = ctx.graph
        state = ctx.state
        failed: set[str] = set()
        excluded: set[str] = set()

        missing = await ctx.resolver.load_externals()
        for rid in missing:
            ctx.emitter.emit('resource-warning', f"External resource '{rid}' could not be read", rid)

        total = len(graph.levels)
        for index, level in enumerate(graph.levels):
            if ctx.cancel_requested():
                ctx.cancelled = True
                self._skip_remaining(ctx, graph.levels[index:], 'Deployment cancelled')
                ctx.emitter.emit('progress', f"Cancelled before level {index + 1}/{total}")
                break

            runnable = []
            for rid in level:
                node = graph.nodes[rid]
                entry = state.get_resource(rid)
                failed_deps = node.dependencies & failed
                if failed_deps:
                    error = DependencyFailedError(rid, list(failed_deps))
                    entry.skip(str(error))
                    state.record_error(rid, 'dependency', error)
                    failed.add(rid)
                elif node.dependencies & excluded:
                    entry.exclude()
                    excluded.add(rid)
                else:
                    runnable.append(node)

            names = ', '.join(n.id for n in runnable) or 'nothing to apply'
            ctx.emitter.emit('progress', f"Deploying level {index + 1}/{total}: {names}",
                             level=index, resources=[n.id for n in runnable])
            await asyncio.gather(*(self._deploy_resource(ctx, node) for node in runnable))

            for node in runnable:
                entry = state.get_resource(node.id)
                if entry.status == 'failed':
                    failed.add(node.id)
                elif entry.status == 'excluded':
                    excluded.add(node.id)

            state.completed_levels = index + 1
            ctx.save_state()

            level_failed = any(state.get_resource(n.id).status == 'failed' for n in runnable)
            if level_failed and not ctx.options.continue_on_failure and index + 1 < total:
                self._skip_remaining(ctx, graph.levels[index + 1:],
                                     f'Deployment stopped after failure in level {index + 1}')
                ctx.emitter.emit('progress', f"Stopping after failure in level {index + 1}/{total}")
                break

        self._evaluate_status(ctx)

    @staticmethod
    def _skip_remaining(ctx: DeployContext, levels: list[list[str]], reason: str) -> None:
        for level in levels:
            for rid in level:
                entry = ctx.state.get_resource(rid)
                if not entry.settled:
                    entry.skip(reason)

    async def _deploy_resource(self, ctx: DeployContext, node: ResourceNode) -> None:
        entry = ctx.state.get_resource(node.id)
        phase = 'resolve'
        try:
            if node.include_when and not all(ctx.resolver.condition_holds(c) for c in node.include_when):
                entry.exclude()
                ctx.emitter.emit('progress', f"Skipping '{node.id}': includeWhen is false", node.id)
                return

            entry.mark_applying()
            manifest = with_namespace(ctx.resolver.substitute(node.manifest), ctx.options.namespace)
            phase = 'apply'
            live = await ctx.applier.apply(node.id, manifest)
            ctx.resolver.record(node.id, live)
            entry.mark_deployed(manifest)
            ctx.emitter.emit('progress', f"Applied {node.kind}/{entry.name}", node.id)

            if not ctx.options.wait_for_ready:
                return
            phase = 'readiness'
            await ctx.applier.wait_ready(
                node.id, manifest, self._evaluator(ctx, node), ctx.emitter,
                on_observed=lambda obj: ctx.resolver.record(node.id, obj),
                extra_check=self._ready_when_check(ctx, node),
            )
            entry.mark_ready()
        except GraphDriverError as e:
            entry.fail(str(e))
            ctx.state.record_error(node.id, phase, e)
            ctx.log.error("Resource '%s' failed during %s: %s", node.id, phase, e)

    @staticmethod
    def _evaluator(ctx: DeployContext, node: ResourceNode):
        if node.readiness:
            return ctx.registry.resolve(node.readiness)
        return ctx.registry.resolve(node.kind, node.api_version)

    @staticmethod
    def _ready_when_check(ctx: DeployContext, node: ResourceNode):
        if not node.ready_when:
            return None

        def check(obj: dict) -> Optional[str]:
            for condition in node.ready_when:
                try:
                    if not ctx.resolver.condition_holds(condition):
                        return f"Waiting for readyWhen condition on '{node.id}'"
                except GraphDriverError as e:
                    return f"readyWhen condition not evaluable yet: {e}"
            return None

        return check

    @staticmethod
    def _evaluate_status(ctx: DeployContext) -> None:
        status = ctx.graph.status
        if not status:
            return
        if not isinstance(status, dict):
            status = {'value': status}
        for key, value in status.items():
            try:
                ctx.status_values[key] = ctx.resolver.substitute(value)
            except GraphDriverError as e:
                ctx.emitter.emit('resource-warning', f"Status field '{key}' could not be evaluated: {e}",
                                 field=key)


class ControlLoopStrategy:
    """Delegates reconciliation to the kro controller."""

    mode = 'control-loop'
    definition_id = 'definition'
    instance_id = 'instance'

    def prepare(self, ctx: DeployContext) -> None:
        source = ctx.graph.source
        if source is None:
            raise ConstructionError("Control-loop mode requires a ResourceGraph, not a bare resource list")
        self.rgd = serialize_graph(source)
        self.instance = build_instance(source, to_kebab_case(source.name), ctx.spec, ctx.options.namespace)
        ctx.spec = self.instance['spec']
        ctx.state.add_resource(self.definition_id, self.rgd['kind'], self.rgd['apiVersion'])
        ctx.state.add_resource(self.instance_id, self.instance['kind'], self.instance['apiVersion'])

    async def execute(self, ctx: DeployContext) -> None:
        rgd_ok = await self._apply(ctx, self.definition_id, self.rgd,
                                   ctx.registry.resolve('ResourceGraphDefinition'))
        ctx.state.completed_levels = 1
        ctx.save_state()
        if not rgd_ok:
            error = DependencyFailedError(self.instance_id, [self.definition_id])
            ctx.state.get_resource(self.instance_id).skip(str(error))
            ctx.state.record_error(self.instance_id, 'dependency', error)
            return
        if ctx.cancel_requested():
            ctx.cancelled = True
            ctx.state.get_resource(self.instance_id).skip('Deployment cancelled')
            return

        await self._apply(ctx, self.instance_id, self.instance, kro_instance_ready)
        ctx.state.completed_levels = 2
        ctx.save_state()

        live = ctx.resolver.live.get(self.instance_id) or {}
        status = live.get('status') or {}
        ctx.status_values.update({k: v for k, v in status.items() if k not in ('state', 'conditions')})

    async def _apply(self, ctx: DeployContext, rid: str, manifest: dict, evaluate) -> bool:
        entry = ctx.state.get_resource(rid)
        phase = 'apply'
        try:
            entry.mark_applying()
            live = await ctx.applier.apply(rid, manifest)
            ctx.resolver.record(rid, live)
            entry.mark_deployed(manifest)
            ctx.emitter.emit('progress', f"Applied {manifest['kind']}/{manifest['metadata']['name']}", rid)
            if ctx.options.wait_for_ready:
                phase = 'readiness'
                await ctx.applier.wait_ready(rid, manifest, evaluate, ctx.emitter,
                                             on_observed=lambda obj: ctx.resolver.record(rid, obj))
                entry.mark_ready()
        except GraphDriverError as e:
            entry.fail(str(e))
            ctx.state.record_error(rid, phase, e)
            ctx.log.error("%s '%s' failed during %s: %s", manifest['kind'], rid, phase, e)
            return False
        return True


STRATEGIES = {
    DirectStrategy.mode: DirectStrategy,
    ControlLoopStrategy.mode: ControlLoopStrategy,
}
