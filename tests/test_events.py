#!/usr/bin/env python3
"""Tests for graph_engine/events.py - progress event delivery."""

import sys
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from graph_engine.events import EVENT_TYPES, DeploymentEvent, EventEmitter


class TestEventEmitter:

    def test_delivers_to_callback(self, events):
        emitter = EventEmitter(events.append, 'deploy-1')
        emitter.emit('resource-ready', 'web is ready', 'web', reason='Ready')
        [event] = events
        assert event.type == 'resource-ready'
        assert event.resource_id == 'web'
        assert event.deployment_id == 'deploy-1'
        assert event.details == {'reason': 'Ready'}

    def test_history_kept_without_callback(self):
        emitter = EventEmitter(None, 'deploy-1')
        emitter.emit('started', 'go')
        emitter.emit('completed', 'done')
        assert [e.type for e in emitter.history] == ['started', 'completed']

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            EventEmitter(None, 'deploy-1').emit('exploded', 'nope')

    def test_raising_callback_logged(self):
        log = MagicMock()

        def explode(event):
            raise RuntimeError('observer broke')

        emitter = EventEmitter(explode, 'deploy-1', log)
        event = emitter.emit('progress', 'level 1')
        assert event.message == 'level 1'
        log.warning.assert_called_once()
        assert 'progress' in log.warning.call_args.args

    def test_every_documented_type_accepted(self):
        emitter = EventEmitter(None, 'deploy-1')
        for event_type in EVENT_TYPES:
            emitter.emit(event_type, event_type)
        assert len(emitter.history) == len(EVENT_TYPES)


class TestDeploymentEvent:

    def test_to_dict_omits_empty_fields(self):
        event = DeploymentEvent('started', 'go', timestamp=1.0)
        assert event.to_dict() == {'type': 'started', 'message': 'go', 'timestamp': 1.0}

    def test_to_dict_full(self):
        event = DeploymentEvent('resource-status', 'waiting', 'web', 'deploy-1', {'ready': False}, 2.0)
        assert event.to_dict() == {
            'type': 'resource-status',
            'message': 'waiting',
            'timestamp': 2.0,
            'resource_id': 'web',
            'deployment_id': 'deploy-1',
            'details': {'ready': False},
        }
