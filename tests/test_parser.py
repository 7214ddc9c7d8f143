#!/usr/bin/env python3
"""Tests for expressions/parser.py - textual expression form."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from common import ExpressionSyntaxError
from expressions.nodes import (
    Binary, Call, Conditional, Fallback, Index, Lambda, ListExpr, Literal,
    Logical, Member, MethodCall, Template, Unary, Var,
)
from expressions.parser import find_interpolations, parse_expression, parse_interpolated
from references import SCHEMA, Reference


class TestRoots:
    """Test reference roots and path folding."""

    def test_resource_comparison(self):
        node = parse_expression('resources.web.status.readyReplicas > 0')
        assert node == Binary('>', Reference('web', 'status.readyReplicas'), Literal(0))

    def test_schema_root(self):
        assert parse_expression('schema.spec.replicas') == Reference(SCHEMA, 'spec.replicas')

    def test_bare_id_with_known_ids(self):
        node = parse_expression('web.status.readyReplicas', resource_ids={'web'})
        assert node == Reference('web', 'status.readyReplicas')

    def test_bare_id_unknown_is_variable(self):
        assert parse_expression('web') == Var('web')

    def test_quoted_resource_id(self):
        node = parse_expression('resources["web-svc"].spec.clusterIP')
        assert node == Reference('web-svc', 'spec.clusterIP')

    def test_literal_index_folds(self):
        node = parse_expression('resources.svc.status.loadBalancer.ingress[0].ip')
        assert node == Reference('svc', 'status.loadBalancer.ingress[0].ip')

    def test_length_is_member(self):
        node = parse_expression('resources.pods.status.items.length')
        assert node == Member(Reference('pods', 'status.items'), 'length')

    def test_optional_access(self):
        node = parse_expression('resources.svc.status?.loadBalancer')
        assert node == Member(Reference('svc', 'status'), 'loadBalancer', optional=True)

    def test_optional_index(self):
        node = parse_expression('resources.svc.status.ingress?.[0]')
        assert node == Index(Reference('svc', 'status.ingress'), Literal(0), optional=True)

    def test_computed_index(self):
        node = parse_expression('resources.cm.data[schema.spec.key]')
        assert node == Index(Reference('cm', 'data'), Reference(SCHEMA, 'spec.key'))


class TestOperators:
    """Test precedence and operator mapping."""

    def test_strict_equality_maps_to_equality(self):
        node = parse_expression("schema.spec.env === 'prod'")
        assert node == Binary('==', Reference(SCHEMA, 'spec.env'), Literal('prod'))

    def test_precedence(self):
        node = parse_expression('1 + 2 * 3')
        assert node == Binary('+', Literal(1), Binary('*', Literal(2), Literal(3)))

    def test_logical_binds_looser_than_comparison(self):
        node = parse_expression('a > 1 && b < 2')
        assert node == Logical('&&', Binary('>', Var('a'), Literal(1)), Binary('<', Var('b'), Literal(2)))

    def test_nullish(self):
        node = parse_expression('schema.spec.replicas ?? 1')
        assert node == Fallback(Reference(SCHEMA, 'spec.replicas'), Literal(1))

    def test_ternary(self):
        node = parse_expression("schema.spec.public ? 'LoadBalancer' : 'ClusterIP'")
        assert node == Conditional(Reference(SCHEMA, 'spec.public'), Literal('LoadBalancer'), Literal('ClusterIP'))

    def test_negative_literal_folds(self):
        assert parse_expression('-5') == Literal(-5)

    def test_not(self):
        assert parse_expression('!schema.spec.debug') == Unary('!', Reference(SCHEMA, 'spec.debug'))

    def test_keyword_literals(self):
        assert parse_expression('true') == Literal(True)
        assert parse_expression('null') == Literal(None)

    def test_in(self):
        node = parse_expression("schema.spec.env in ['dev', 'prod']")
        assert node == Binary('in', Reference(SCHEMA, 'spec.env'),
                              ListExpr((Literal('dev'), Literal('prod'))))


class TestCalls:

    def test_lambda_filter(self):
        node = parse_expression('resources.pods.status.items.filter(p => p.ready)')
        assert node == MethodCall(
            Reference('pods', 'status.items'), 'filter',
            (Lambda('p', Member(Var('p'), 'ready')),))

    def test_parenthesised_lambda(self):
        node = parse_expression('xs.map((x) => x * 2)')
        assert node == MethodCall(Var('xs'), 'map', (Lambda('x', Binary('*', Var('x'), Literal(2))),))

    def test_math_call(self):
        node = parse_expression('Math.max(schema.spec.replicas, 1)')
        assert node == Call('Math.max', (Reference(SCHEMA, 'spec.replicas'), Literal(1)))

    def test_global_call(self):
        assert parse_expression('size(x)') == Call('size', (Var('x'),))


class TestTemplates:

    def test_backtick_template(self):
        node = parse_expression('`http://${resources.svc.spec.clusterIP}:80`')
        assert node == Template(('http://', Reference('svc', 'spec.clusterIP'), ':80'))

    def test_template_without_text(self):
        node = parse_expression('`${schema.spec.name}`')
        assert node == Template((Reference(SCHEMA, 'spec.name'),))


class TestInterpolation:
    """Test ${...} handling in plain strings."""

    def test_plain_string_unchanged(self):
        assert parse_interpolated('nginx:1.25') == 'nginx:1.25'

    def test_whole_string_is_expression(self):
        assert parse_interpolated('${schema.spec.replicas}') == Reference(SCHEMA, 'spec.replicas')

    def test_mixed_text_is_template(self):
        node = parse_interpolated('${schema.spec.name}-svc')
        assert node == Template((Reference(SCHEMA, 'spec.name'), '-svc'))

    def test_spans_skip_nested_braces(self):
        text = "a ${ {'k': 1}['k'] } b ${x}"
        assert find_interpolations(text) == [(2, 20), (23, 27)]

    def test_unterminated(self):
        with pytest.raises(ExpressionSyntaxError):
            find_interpolations('${schema.spec.name')


class TestErrors:
    """Test syntax errors carry positions."""

    def test_empty(self):
        with pytest.raises(ExpressionSyntaxError):
            parse_expression('   ')

    def test_trailing_token(self):
        with pytest.raises(ExpressionSyntaxError) as exc_info:
            parse_expression('a b')
        assert exc_info.value.position == 2

    def test_unexpected_character(self):
        with pytest.raises(ExpressionSyntaxError) as exc_info:
            parse_expression('a # b')
        assert exc_info.value.position == 2

    def test_offset_applied(self):
        with pytest.raises(ExpressionSyntaxError) as exc_info:
            parse_interpolated('${a b}')
        assert exc_info.value.position == 4

    def test_unterminated_string(self):
        with pytest.raises(ExpressionSyntaxError):
            parse_expression("'open")
