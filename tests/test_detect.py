#!/usr/bin/env python3
"""Tests for expressions/detect.py - reference detection."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from common import ConstructionError
from expressions.detect import detect
from expressions.nodes import lit
from references import SCHEMA, Reference, ref, schema_ref


class TestDetect:
    """Test detect() over author values."""

    def test_projection_reports_one_reference(self):
        detection = detect({'ready': ref('web', 'status.readyReplicas') > 0})
        assert detection.has_references
        assert detection.references == [Reference('web', 'status.readyReplicas')]
        assert detection.resource_ids == {'web'}

    def test_plain_values(self):
        detection = detect({'replicas': 3, 'image': 'nginx', 'ports': [80, 443]})
        assert detection.has_references is False
        assert detection.references == []

    def test_reference_free_expression(self):
        assert detect(lit(1) + 2).has_references is False

    def test_interpolated_text(self):
        detection = detect({'host': '${resources.db.status.host}:5432'})
        assert detection.references == [Reference('db', 'status.host')]

    def test_bare_ids_need_known_ids(self):
        assert detect('${db.status.host}').has_references is False
        assert detect('${db.status.host}', resource_ids={'db'}).resource_ids == {'db'}

    def test_schema_not_a_resource(self):
        detection = detect({'replicas': schema_ref('spec.replicas')})
        assert detection.references_schema
        assert detection.resource_ids == set()
        assert detection.references[0].resource_id == SCHEMA

    def test_duplicates_reported_once_in_order(self):
        value = [ref('b', 'spec'), ref('a', 'spec'), ref('b', 'spec')]
        assert detect(value).references == [Reference('b', 'spec'), Reference('a', 'spec')]

    def test_idempotent(self):
        value = {'x': ref('web', 'status.a'), 'y': ['${resources.db.status.b}']}
        assert detect(value).references == detect(value).references

    def test_unparseable_text_is_warning(self):
        detection = detect({'cmd': 'echo ${HOME:-/tmp}'})
        assert detection.has_references is False
        assert [d.code for d in detection.diagnostics] == ['unparsed-text']


class TestBounds:
    """Test depth bound and cycle guard."""

    def test_cyclic_dict_terminates(self):
        value = {'web': ref('web', 'status.x')}
        value['self'] = value
        assert detect(value).references == [Reference('web', 'status.x')]

    def test_cyclic_list_terminates(self):
        items = [ref('db', 'spec')]
        items.append(items)
        assert detect(items).resource_ids == {'db'}

    def test_depth_bound(self):
        value = ref('deep', 'spec')
        for _ in range(10):
            value = {'nested': value}
        detection = detect(value, max_depth=5)
        assert detection.has_references is False
        assert detection.diagnostics[0].code == 'max-depth'


class TestMarkerCollision:

    def test_reserved_key_in_value(self):
        with pytest.raises(ConstructionError):
            detect({'metadata': {'__ref__': 'x'}})

    def test_reserved_segment_in_path(self):
        with pytest.raises(ConstructionError) as exc_info:
            detect(ref('web', 'status.__expr__'))
        assert '__expr__' in str(exc_info.value)
