#!/usr/bin/env python3
"""Tests for graph_engine/state.py - deployment state and results."""

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from common import ApplyError, DependencyFailedError
from graph_engine.state import (
    DeployedResource,
    DeploymentResult,
    DeploymentState,
    RollbackResult,
    new_deployment_id,
)


class TestDeployedResource:
    """Test per-resource transitions."""

    def test_lifecycle(self):
        resource = DeployedResource('web', 'Deployment')
        assert resource.settled is False
        resource.mark_applying()
        assert resource.settled is False
        resource.mark_deployed({'apiVersion': 'apps/v1', 'metadata': {'name': 'web', 'namespace': 'apps'}})
        assert resource.name == 'web'
        assert resource.namespace == 'apps'
        assert resource.was_applied
        resource.mark_ready()
        assert resource.status == 'ready'
        assert resource.ready_at is not None

    def test_fail_and_skip(self):
        failed = DeployedResource('db', 'Deployment')
        failed.fail('conflict')
        skipped = DeployedResource('app', 'Deployment')
        skipped.skip('dependency failed')
        assert (failed.status, failed.error) == ('failed', 'conflict')
        assert skipped.settled and not skipped.was_applied

    def test_round_trip(self):
        resource = DeployedResource('web', 'Deployment', name='web', api_version='apps/v1', status='ready',
                                    deployed_at=1.0, ready_at=2.0)
        assert DeployedResource.from_dict(resource.to_dict()) == resource

    def test_to_dict_omits_unset(self):
        assert DeployedResource('web', 'Deployment').to_dict() == {'id': 'web', 'kind': 'Deployment',
                                                                   'status': 'pending'}


class TestDeploymentState:

    def _state(self):
        state = DeploymentState('shop', 'deploy-test')
        for rid in ('db', 'app'):
            state.add_resource(rid, 'Deployment', 'apps/v1')
        return state

    def test_new_id_format(self):
        deployment_id = new_deployment_id()
        assert deployment_id.startswith('deploy-')
        assert len(deployment_id) == len('deploy-') + 12

    def test_success_without_errors(self):
        state = self._state()
        assert state.overall_status() == 'success'

    def test_partial(self):
        state = self._state()
        state.get_resource('db').mark_ready()
        state.get_resource('app').fail('boom')
        state.record_error('app', 'apply', ApplyError('boom', 'app'))
        assert state.overall_status() == 'partial'

    def test_failed_when_nothing_reached_goal(self):
        state = self._state()
        state.get_resource('db').mark_deployed({'metadata': {'name': 'db'}})
        state.record_error('app', 'dependency', DependencyFailedError('app', ['db']))
        assert state.overall_status(wait_for_ready=True) == 'failed'
        assert state.overall_status(wait_for_ready=False) == 'partial'

    def test_unknown_resource(self):
        with pytest.raises(KeyError):
            self._state().get_resource('cache')

    def test_save_and_load(self, tmp_path):
        state = self._state()
        state.start()
        state.get_resource('db').mark_ready()
        state.record_error('app', 'apply', ApplyError('conflict', 'app', status_code=409))
        state.completed_levels = 1
        path = state.save(tmp_path)
        assert path == tmp_path / 'shop' / 'deploy-test.json'
        data = json.loads(path.read_text())
        assert data['errors'][0]['error'] == 'ApplyError'

        loaded = DeploymentState.load(path)
        assert loaded.deployment_id == 'deploy-test'
        assert loaded.completed_levels == 1
        assert loaded.get_resource('db').status == 'ready'
        assert loaded.errors[0].message == 'conflict'

    def test_load_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            DeploymentState.load(tmp_path / 'missing.json')


class TestDeploymentResult:

    def test_lookup_and_errors_for(self):
        state = DeploymentState('shop')
        state.add_resource('web', 'Deployment')
        record = state.record_error('web', 'readiness', RuntimeError('slow'))
        result = DeploymentResult(state.deployment_id, list(state.resources.values()), None, 1.5, 'failed',
                                  errors=state.errors)
        assert result.get('web').kind == 'Deployment'
        assert result.errors_for('web') == [record]
        assert result.success is False
        with pytest.raises(KeyError):
            result.get('db')

    def test_to_dict(self):
        result = DeploymentResult('deploy-1', [], None, 0.12345, 'success', status_values={'ready': True},
                                  rollback=RollbackResult('deploy-1', rolled_back=['web']))
        d = result.to_dict()
        assert d['duration'] == 0.123
        assert d['status_values'] == {'ready': True}
        assert d['rollback']['rolled_back'] == ['web']
