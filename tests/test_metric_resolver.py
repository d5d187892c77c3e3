# -*- coding: utf-8 -*-
"""
Incentra - Unit tests for the metric resolver
"""

from datetime import date
from decimal import Decimal

import pytest

from app.modules.metric_resolver import (
    ChainedMatcher, DataSnapshot, ExactMatcher, MetricResolver, TokenOverlapMatcher,
    make_entity_view, make_row_view, matcher_for_settings, overlap_score, tokenize,
)
from app.modules.plan_schema import Derivation
from app.modules.values import ScalarKind, coerce


def derivation(**kwargs):
    data = {'metric_name': 'revenue', 'source_pattern': 'Sales', 'operation': 'sum', 'scope': 'entity'}
    data.update(kwargs)
    return Derivation.model_validate(data)


class TestTokenizer:
    """Name tokenization and overlap scoring"""

    def test_camel_case_and_separators(self):
        assert tokenize('storeSales_Monthly-Report') == ['store', 'sales', 'monthly', 'report']

    def test_short_tokens_and_stop_words_dropped(self):
        assert tokenize('Q1 Plan Data for the NY store') == ['store']

    def test_overlap_counts_containment(self):
        score = overlap_score(tokenize('sales performance'), tokenize('Monthly_Sales_Perf'))
        # 'sales' matches; 'perf' is contained in 'performance'
        assert score == Decimal('1')

    def test_overlap_empty_pattern(self):
        assert overlap_score([], ['sales']) == Decimal('0')


class TestValues:
    """Tagged scalar coercion"""

    def test_numeric_strings(self):
        assert coerce('1,250.50').value == Decimal('1250.50')
        assert coerce('$300').kind is ScalarKind.NUMBER
        assert coerce('12%').value == Decimal('0.12')

    def test_dates_and_text(self):
        assert coerce('2025-01-31').value == date(2025, 1, 31)
        assert coerce('Store 12').kind is ScalarKind.TEXT

    def test_nested_rejected(self):
        with pytest.raises(ValueError):
            coerce({'a': 1})

    def test_join_key_normalizes_numbers(self):
        assert coerce(12).join_key() == coerce('12.0').join_key()


class TestSourceMatching:
    """Exact, fuzzy and chained strategies"""

    def test_exact_is_case_insensitive(self):
        match = ExactMatcher().match(' sales_data_q1 ', ['Sales_Data_Q1', 'Other'])
        assert match.data_type == 'Sales_Data_Q1'
        assert match.strategy == 'exact'

    def test_fuzzy_fallback(self):
        matcher = ChainedMatcher(ExactMatcher(), TokenOverlapMatcher())
        match = matcher.match('sales performance', ['Employee_Roster', 'Monthly_Sales_Performance'])
        assert match.data_type == 'Monthly_Sales_Performance'
        assert match.strategy == 'fuzzy'

    def test_fuzzy_tie_breaks_lexicographically(self):
        match = TokenOverlapMatcher().match('store sales', ['Store_Sales_West', 'Store_Sales_East'])
        assert match.data_type == 'Store_Sales_East'

    def test_higher_score_beats_lexicographic_order(self):
        match = TokenOverlapMatcher().match('store sales', ['Another_Sales', 'Store_Sales'])
        assert match.data_type == 'Store_Sales'

    def test_threshold_is_strict(self):
        # 1 of 5 pattern tokens overlaps: 0.2 is not above the threshold
        pattern = 'alpha bravo charlie delta sales'
        assert TokenOverlapMatcher().match(pattern, ['Sales']) is None

    def test_exact_only_tenant_setting(self):
        matcher = matcher_for_settings({'source_matching': 'exact'})
        assert matcher.match('sales performance', ['Monthly_Sales_Performance']) is None


class TestMetricResolver:
    """Resolution for one entity"""

    def setup_method(self):
        self.entity = make_entity_view('ent-1', 'E001', 'Ana', {'store_id': 'S1', 'role': 'rep'})
        self.rows = [
            make_row_view(1, 'Sales', 'ent-1', {'revenue': 100, 'units': 3}),
            make_row_view(2, 'Sales', None, {'employee_id': 'E001', 'revenue': '250', 'units': 1}),
            make_row_view(3, 'Sales', 'ent-2', {'revenue': 999}),
            make_row_view(4, 'Store_Totals', None, {'storeId': 'S1', 'store_sales': 5000}),
            make_row_view(5, 'Store_Totals', None, {'storeId': 'S2', 'store_sales': 7000}),
        ]
        self.snapshot = DataSnapshot('t', 'p', self.rows)

    def resolve(self, *derivations, matcher=None):
        return MetricResolver(self.snapshot, derivations, matcher).resolve(self.entity)

    def test_entity_scope_sum(self):
        metric = self.resolve(derivation())['revenue']
        assert metric.value == Decimal('350')
        assert metric.confidence == 'high'
        assert metric.source_rows == [1, 2]

    def test_operations(self):
        resolved = self.resolve(
            derivation(metric_name='avg_rev', operation='avg', source_field='revenue'),
            derivation(metric_name='first_rev', operation='first', source_field='revenue'),
            derivation(metric_name='max_rev', operation='max', source_field='revenue'),
            derivation(metric_name='min_rev', operation='min', source_field='revenue'),
            derivation(metric_name='row_count', operation='count'),
        )
        assert resolved['avg_rev'].value == Decimal('175')
        assert resolved['first_rev'].value == Decimal('100')
        assert resolved['max_rev'].value == Decimal('250')
        assert resolved['min_rev'].value == Decimal('100')
        assert resolved['row_count'].value == Decimal('2')

    def test_group_scope_joins_through_row_field(self):
        metric = self.resolve(derivation(metric_name='store_sales', source_pattern='Store_Totals',
                                         scope='group'))['store_sales']
        assert metric.value == Decimal('5000')
        assert metric.source_rows == [4]

    def test_group_scope_without_attribute(self):
        self.entity = make_entity_view('ent-1', 'E001', 'Ana', {})
        metric = self.resolve(derivation(metric_name='store_sales', source_pattern='Store_Totals',
                                         scope='group'))['store_sales']
        assert metric.value == Decimal('0')
        assert metric.flags == ['low_confidence', 'no_matching_rows']

    def test_missing_bucket_is_low_confidence(self):
        resolved = self.resolve(derivation(metric_name='quota', source_pattern='Quota Sheet'), derivation())
        assert resolved['quota'].value == Decimal('0')
        assert resolved['quota'].confidence == 'low'
        assert resolved['quota'].flags == ['low_confidence', 'no_source_match']
        # other metrics unaffected
        assert resolved['revenue'].value == Decimal('350')

    def test_fuzzy_match_is_medium_confidence(self):
        metric = self.resolve(derivation(metric_name='store_sales', source_pattern='store totals report',
                                         scope='group'))['store_sales']
        assert metric.confidence == 'medium'
        assert 'fuzzy_source_match' in metric.flags

    def test_filters(self):
        metric = self.resolve(derivation(filters=[{'field': 'units', 'operator': 'gte', 'value': 2}]))['revenue']
        assert metric.value == Decimal('100')

    def test_in_filter(self):
        metric = self.resolve(derivation(
            metric_name='store_sales', source_pattern='Store_Totals', scope='group',
            filters=[{'field': 'storeId', 'operator': 'in', 'value': ['S1', 'S9']}]))['store_sales']
        assert metric.value == Decimal('5000')

    def test_field_selected_by_token_overlap(self):
        metric = self.resolve(derivation(metric_name='total_store_sales', source_pattern='Store_Totals',
                                         scope='group'))['total_store_sales']
        assert metric.source_field == 'store_sales'

    def test_no_numeric_field(self):
        metric = self.resolve(derivation(metric_name='bonus_points'))['bonus_points']
        assert metric.flags == ['low_confidence', 'no_numeric_field']
