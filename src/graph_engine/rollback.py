"""Best-effort rollback of applied resources."""

import logging
import time

from common import GraphDriverError
from graph_engine.applier import ResourceApplier
from graph_engine.events import EventEmitter
from graph_engine.state import DeploymentErrorRecord, DeploymentState, RollbackResult

logger = logging.getLogger(__name__)


async def rollback(state: DeploymentState, applier: ResourceApplier, emitter: EventEmitter,
                   log=None) -> RollbackResult:
    """Delete every applied resource in reverse apply order.

    Deletion failures are collected in the result; nothing is raised.
    """
    log = log or logger
    started = time.time()
    result = RollbackResult(deployment_id=state.deployment_id)
    applied = [r for r in state.resources.values() if r.was_applied]
    emitter.emit('rollback', f"Rolling back {len(applied)} resource(s)", count=len(applied))

    for resource in reversed(applied):
        try:
            await applier.delete(resource.manifest)
        except GraphDriverError as e:
            log.warning("Rollback of '%s' failed: %s", resource.id, e)
            result.errors.append(DeploymentErrorRecord(resource.id, 'rollback', e))
            emitter.emit('rollback', f"Failed to delete {resource.kind}/{resource.name}: {e}", resource.id)
            continue
        result.rolled_back.append(resource.id)
        emitter.emit('rollback', f"Deleted {resource.kind}/{resource.name}", resource.id)

    if result.errors:
        result.status = 'partial' if result.rolled_back else 'failed'
    result.duration = time.time() - started
    log.info("Rollback %s: %d deleted, %d failed", result.status, len(result.rolled_back), len(result.errors))
    return result
