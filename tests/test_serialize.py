#!/usr/bin/env python3
"""Tests for graph_engine/serialize.py - ResourceGraphDefinition output."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
import yaml
from config import ConfigError
from conftest import config_map, deployment, service
from expressions.nodes import template
from graph_engine.serialize import KRO_API_VERSION, build_instance, rgd_name, serialize_graph, to_yaml
from manifest import ResourceGraph
from references import ref


def _webapp():
    graph = ResourceGraph('WebApp', spec={'replicas': 'integer | default=2', 'image': 'string | default=nginx'})
    manifest = deployment('web')
    manifest['spec']['replicas'] = graph.spec.spec('replicas')
    manifest['spec']['template']['spec']['containers'][0]['image'] = graph.spec.spec('image')
    web = graph.add('web', manifest, ready_when=[ref('web', 'status.readyReplicas') > 0])
    svc = graph.add('web-svc', service('web-svc', 'web'))
    graph.add('monitor', config_map('monitor'), include_when=[graph.spec.spec('monitoring')])
    graph.add('links', config_map('links', {'url': template('http://', svc.spec('clusterIP'), ':80')}))
    creds = graph.external('creds', 'v1', 'Secret', 'db-creds', namespace='data')
    graph.add('env', config_map('env', {'user': creds.ref('data.user'), 'static': 'plain'}))
    graph.status['ready'] = web.status('readyReplicas') > 0
    return graph


class TestSerializeGraph:
    """Test the RGD document structure."""

    @pytest.fixture
    def rgd(self):
        return serialize_graph(_webapp())

    def test_envelope(self, rgd):
        assert rgd['apiVersion'] == KRO_API_VERSION
        assert rgd['kind'] == 'ResourceGraphDefinition'
        assert rgd['metadata'] == {'name': 'web-app'}

    def test_schema(self, rgd):
        schema = rgd['spec']['schema']
        assert schema['apiVersion'] == 'v1alpha1'
        assert schema['kind'] == 'WebApp'
        assert schema['spec'] == {'replicas': 'integer | default=2', 'image': 'string | default=nginx'}
        assert schema['status'] == {'ready': '${resources.web.status.readyReplicas > 0}'}

    def test_resource_order_with_externals_last(self, rgd):
        assert [r['id'] for r in rgd['spec']['resources']] == ['web', 'web-svc', 'monitor', 'links', 'env', 'creds']

    def test_template_references_compiled(self, rgd):
        web = rgd['spec']['resources'][0]
        assert web['template']['spec']['replicas'] == '${schema.spec.replicas}'
        assert web['template']['spec']['template']['spec']['containers'][0]['image'] == '${schema.spec.image}'
        assert web['template']['metadata'] == {'name': 'web'}

    def test_ready_when_and_include_when(self, rgd):
        resources = {r['id']: r for r in rgd['spec']['resources']}
        assert resources['web']['readyWhen'] == ['${resources.web.status.readyReplicas > 0}']
        assert resources['monitor']['includeWhen'] == ['${schema.spec.monitoring}']
        assert 'includeWhen' not in resources['web']
        assert 'readyWhen' not in resources['web-svc']

    def test_template_becomes_mixed_string(self, rgd):
        links = next(r for r in rgd['spec']['resources'] if r['id'] == 'links')
        assert links['template']['data'] == {'url': 'http://${resources["web-svc"].spec.clusterIP}:80'}

    def test_external_references(self, rgd):
        env = next(r for r in rgd['spec']['resources'] if r['id'] == 'env')
        assert env['template']['data'] == {'user': '${resources.creds.data.user}', 'static': 'plain'}
        assert rgd['spec']['resources'][-1] == {
            'id': 'creds',
            'externalRef': {'apiVersion': 'v1', 'kind': 'Secret', 'metadata': {'name': 'db-creds', 'namespace': 'data'}},
        }

    def test_literal_condition_wrapped(self):
        graph = ResourceGraph('flags')
        graph.add('cfg', config_map('cfg'), include_when=[True])
        rgd = serialize_graph(graph)
        assert rgd['spec']['resources'][0]['includeWhen'] == ['${true}']

    def test_no_status_section_without_projection(self):
        graph = ResourceGraph('plain')
        graph.add('cfg', config_map('cfg'))
        assert 'status' not in serialize_graph(graph)['spec']['schema']

    def test_input_graph_untouched(self):
        graph = _webapp()
        serialize_graph(graph)
        assert graph.get('web').manifest['spec']['replicas'] == graph.spec.spec('replicas')


class TestBuildInstance:

    def test_defaults_applied(self):
        instance = build_instance(_webapp(), 'shop', {'replicas': 5}, namespace='apps')
        assert instance == {
            'apiVersion': 'kro.run/v1alpha1',
            'kind': 'WebApp',
            'metadata': {'name': 'shop', 'namespace': 'apps'},
            'spec': {'replicas': 5, 'image': 'nginx'},
        }

    def test_without_namespace(self):
        instance = build_instance(_webapp(), 'shop')
        assert instance['metadata'] == {'name': 'shop'}

    def test_required_field_missing(self):
        graph = ResourceGraph('app', spec={'name': 'string | required=true'})
        with pytest.raises(ConfigError):
            build_instance(graph, 'app')


class TestYaml:

    def test_parses_back_to_same_document(self):
        graph = _webapp()
        assert yaml.safe_load(to_yaml(graph)) == serialize_graph(graph)

    def test_key_order_preserved(self):
        text = to_yaml(_webapp())
        assert text.index('apiVersion') < text.index('kind') < text.index('metadata') < text.index('spec')

    def test_rgd_name_kebab_case(self):
        assert rgd_name(ResourceGraph('MyWebApp')) == 'my-web-app'
