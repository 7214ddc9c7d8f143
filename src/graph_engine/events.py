"""Progress events emitted during a deploy."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    'started', 'progress', 'resource-status', 'resource-ready', 'resource-warning',
    'completed', 'failed', 'rollback',
)


@dataclass
class DeploymentEvent:
    type: str
    message: str
    resource_id: Optional[str] = None
    deployment_id: Optional[str] = None
    details: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'type': self.type, 'message': self.message, 'timestamp': self.timestamp}
        if self.resource_id:
            d['resource_id'] = self.resource_id
        if self.deployment_id:
            d['deployment_id'] = self.deployment_id
        if self.details:
            d['details'] = self.details
        return d


ProgressCallback = Callable[[DeploymentEvent], None]


class EventEmitter:
    """Delivers events to an optional callback.

    A raising callback is logged and otherwise ignored so that reporting
    never changes deploy behaviour.
    """

    def __init__(self, callback: Optional[ProgressCallback], deployment_id: str, log=None):
        self.callback = callback
        self.deployment_id = deployment_id
        self.log = log or logger
        self.history: list[DeploymentEvent] = []

    def emit(self, event_type: str, message: str, resource_id: Optional[str] = None, **details) -> DeploymentEvent:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        event = DeploymentEvent(event_type, message, resource_id, self.deployment_id, details)
        self.history.append(event)
        if self.callback is not None:
            try:
                self.callback(event)
            except Exception as e:
                self.log.warning("Progress callback raised on '%s' event: %s", event_type, e)
        return event
