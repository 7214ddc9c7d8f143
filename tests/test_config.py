#!/usr/bin/env python3
"""Tests for config.py - deploy options and discovery.

Tests verify:
1. RetryPolicy backoff computation and validation
2. DeployOptions validation and from_dict
3. Config file discovery (env var, working directory)
4. Environment overrides
"""

import os
import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from config import (
    ConfigError,
    DeployOptions,
    ReadinessConfig,
    RetryPolicy,
    apply_env_overrides,
    discover_config_path,
    load_options,
    _parse_yaml,
)


class TestRetryPolicy:
    """Test exponential backoff."""

    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_retries == 3
        assert policy.backoff_multiplier == 2.0

    def test_delay_grows_and_caps(self):
        policy = RetryPolicy(initial_delay=1.0, backoff_multiplier=2.0, max_delay=5.0)
        assert [policy.delay_for(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_from_dict(self):
        policy = RetryPolicy.from_dict({'max_retries': 5, 'initial_delay': 0.5})
        assert policy.max_retries == 5
        assert policy.initial_delay == 0.5
        assert policy.max_delay == 10.0

    def test_negative_retries_rejected(self):
        with pytest.raises(ConfigError):
            RetryPolicy.from_dict({'max_retries': -1})

    def test_multiplier_below_one_rejected(self):
        with pytest.raises(ConfigError):
            RetryPolicy.from_dict({'backoff_multiplier': 0.5})

    def test_non_numeric_rejected(self):
        with pytest.raises(ConfigError) as exc_info:
            RetryPolicy.from_dict({'initial_delay': 'soon'})
        assert 'initial_delay' in str(exc_info.value)


class TestReadinessConfig:

    def test_zero_poll_interval_rejected(self):
        with pytest.raises(ConfigError):
            ReadinessConfig.from_dict({'poll_interval': 0})

    def test_from_dict(self):
        config = ReadinessConfig.from_dict({'poll_interval': 1, 'timeout': 60})
        assert config.poll_interval == 1
        assert config.timeout == 60


class TestDeployOptions:
    """Test DeployOptions validation."""

    def test_defaults(self):
        options = DeployOptions()
        assert options.mode == 'direct'
        assert options.wait_for_ready is True
        assert options.continue_on_failure is True
        assert options.rollback_on_failure is False
        assert options.namespace == 'default'

    def test_unknown_mode_rejected(self):
        with pytest.raises(ConfigError) as exc_info:
            DeployOptions(mode='helm')
        assert 'control-loop' in str(exc_info.value)

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ConfigError):
            DeployOptions(timeout=0)

    def test_state_dir_coerced_to_path(self):
        assert DeployOptions(state_dir='.states').state_dir == Path('.states')

    def test_from_dict(self):
        options = DeployOptions.from_dict({
            'mode': 'control-loop',
            'namespace': 'apps',
            'timeout': 600,
            'retry': {'max_retries': 1},
            'readiness': {'timeout': 30},
        })
        assert options.mode == 'control-loop'
        assert options.namespace == 'apps'
        assert options.timeout == 600
        assert options.retry.max_retries == 1
        assert options.readiness.timeout == 30

    def test_from_dict_unknown_key(self):
        with pytest.raises(ConfigError) as exc_info:
            DeployOptions.from_dict({'wait': True})
        assert 'wait' in str(exc_info.value)

    def test_to_dict_round_trip(self):
        options = DeployOptions(namespace='apps', timeout=60)
        assert DeployOptions.from_dict(options.to_dict()) == options


class TestDiscovery:
    """Test config file discovery."""

    def test_env_var_takes_precedence(self, tmp_path):
        config = tmp_path / 'custom.yaml'
        config.write_text('namespace: apps\n')
        with patch.dict(os.environ, {'GRAPH_DRIVER_CONFIG': str(config)}):
            assert discover_config_path() == config

    def test_env_var_missing_raises(self):
        with patch.dict(os.environ, {'GRAPH_DRIVER_CONFIG': '/nonexistent/graph-driver.yaml'}):
            with pytest.raises(ConfigError) as exc_info:
                discover_config_path()
            assert 'GRAPH_DRIVER_CONFIG' in str(exc_info.value)

    def test_working_directory(self, tmp_path, monkeypatch):
        monkeypatch.delenv('GRAPH_DRIVER_CONFIG', raising=False)
        monkeypatch.chdir(tmp_path)
        (tmp_path / 'graph-driver.yaml').write_text('namespace: apps\n')
        assert discover_config_path() == tmp_path / 'graph-driver.yaml'

    def test_none_found(self, tmp_path, monkeypatch):
        monkeypatch.delenv('GRAPH_DRIVER_CONFIG', raising=False)
        monkeypatch.chdir(tmp_path)
        assert discover_config_path() is None


class TestLoadOptions:

    def test_load_with_deploy_section(self, tmp_path, monkeypatch):
        monkeypatch.delenv('GRAPH_DRIVER_TIMEOUT', raising=False)
        monkeypatch.delenv('GRAPH_DRIVER_NAMESPACE', raising=False)
        config = tmp_path / 'graph-driver.yaml'
        config.write_text('deploy:\n  namespace: apps\n  retry:\n    max_retries: 5\n')
        options = load_options(config)
        assert options.namespace == 'apps'
        assert options.retry.max_retries == 5

    def test_invalid_yaml(self, tmp_path):
        config = tmp_path / 'bad.yaml'
        config.write_text('namespace: [unclosed\n')
        with pytest.raises(ConfigError) as exc_info:
            _parse_yaml(config)
        assert 'Invalid YAML' in str(exc_info.value)

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv('GRAPH_DRIVER_TIMEOUT', '120')
        monkeypatch.setenv('GRAPH_DRIVER_NAMESPACE', 'staging')
        options = apply_env_overrides(DeployOptions())
        assert options.timeout == 120.0
        assert options.namespace == 'staging'

    def test_bad_timeout_override(self, monkeypatch):
        monkeypatch.setenv('GRAPH_DRIVER_TIMEOUT', 'soon')
        with pytest.raises(ConfigError):
            apply_env_overrides(DeployOptions())
