#!/usr/bin/env python3
"""Tests for common.py - errors and field-path helpers."""

import logging
import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from common import (
    ApiError,
    CircularDependencyError,
    ConstructionError,
    DependencyFailedError,
    ExpressionSyntaxError,
    GraphDriverError,
    ReadinessTimeoutError,
    UnresolvedReferenceError,
    ApplyError,
    configure_logging,
    get_path,
    is_transient_status,
    join_path,
    split_path,
    to_kebab_case,
    to_pascal_case,
)


class TestTransientStatus:
    """Retry classification by response code."""

    @pytest.mark.parametrize('code', [None, 408, 429, 500, 502, 503])
    def test_transient(self, code):
        assert is_transient_status(code) is True

    @pytest.mark.parametrize('code', [400, 401, 403, 404, 409, 422])
    def test_permanent(self, code):
        assert is_transient_status(code) is False

    def test_api_error_properties(self):
        assert ApiError('boom', status_code=503).transient is True
        assert ApiError('conflict', status_code=409).transient is False
        assert ApiError('gone', status_code=404).not_found is True
        assert ApiError('network').transient is True


class TestPaths:
    """Test split_path/join_path/get_path."""

    def test_split_dotted_with_index(self):
        assert split_path('status.loadBalancer.ingress[0].ip') == ['status', 'loadBalancer', 'ingress', 0, 'ip']

    def test_split_quoted_key(self):
        assert split_path('metadata.labels["app.kubernetes.io/name"]') == [
            'metadata', 'labels', 'app.kubernetes.io/name']

    def test_split_unterminated_raises(self):
        with pytest.raises(ValueError):
            split_path('status.items[0')

    def test_join_quotes_non_identifiers(self):
        assert join_path(['metadata', 'labels', 'app.kubernetes.io/name']) == \
            'metadata.labels["app.kubernetes.io/name"]'

    def test_join_indices(self):
        assert join_path(['ingress', 0, 'ip']) == 'ingress[0].ip'

    def test_get_path(self):
        obj = {'status': {'ingress': [{'ip': '10.0.0.1'}]}}
        assert get_path(obj, 'status.ingress[0].ip') == '10.0.0.1'

    def test_get_path_missing_raises(self):
        with pytest.raises(KeyError):
            get_path({'status': {}}, 'status.readyReplicas')

    def test_get_path_default(self):
        assert get_path({'status': {}}, 'status.readyReplicas', 0) == 0

    def test_get_path_out_of_range_index(self):
        assert get_path({'items': [1]}, 'items[3]', None) is None


class TestNaming:

    def test_kebab_case(self):
        assert to_kebab_case('MyWebApp') == 'my-web-app'
        assert to_kebab_case('web_app stack') == 'web-app-stack'

    def test_pascal_case(self):
        assert to_pascal_case('my-web-app') == 'MyWebApp'


class TestErrors:
    """Error taxonomy."""

    def test_hierarchy(self):
        assert issubclass(CircularDependencyError, ConstructionError)
        assert issubclass(ExpressionSyntaxError, ConstructionError)
        assert issubclass(UnresolvedReferenceError, ApplyError)
        assert issubclass(ApplyError, GraphDriverError)

    def test_cycle_message_names_members_in_order(self):
        error = CircularDependencyError(['a', 'b', 'a'])
        assert error.cycle == ['a', 'b', 'a']
        assert 'a -> b -> a' in str(error)

    def test_syntax_error_position(self):
        error = ExpressionSyntaxError('Unexpected token', 'a +', 3)
        assert error.position == 3
        assert 'position 3' in str(error)

    def test_unresolved_reference_is_permanent(self):
        error = UnresolvedReferenceError('missing', 'web', 'status.x')
        assert error.transient is False
        assert error.field_path == 'status.x'

    def test_readiness_timeout_carries_last_message(self):
        error = ReadinessTimeoutError('web', 30, 'Waiting for replicas: 1/3 ready')
        assert error.last_message == 'Waiting for replicas: 1/3 ready'
        assert 'Waiting for replicas' in str(error)

    def test_dependency_failed_sorted(self):
        error = DependencyFailedError('app', ['db', 'cache'])
        assert error.failed_dependencies == ['cache', 'db']
        assert 'cache, db' in str(error)


class TestConfigureLogging:

    def test_uses_standard_format(self):
        with patch('common.logging.basicConfig') as mock_config:
            configure_logging(verbose=True)
        kwargs = mock_config.call_args.kwargs
        assert kwargs['level'] == logging.DEBUG
        assert kwargs['format'] == '%(asctime)s [%(levelname)s] %(message)s'
