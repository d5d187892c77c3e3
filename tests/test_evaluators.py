# -*- coding: utf-8 -*-
"""
Incentra - Unit tests for the rule component evaluators and plan schema
"""

from decimal import Decimal

import pytest

from app.errors import ConfigurationError
from app.modules.evaluators import (
    evaluate_component, evaluate_conditional_percentage, evaluate_matrix,
    evaluate_percentage, evaluate_tier, find_band,
)
from app.modules.plan_schema import (
    ConditionalPercentageConfig, MatrixConfig, PercentageConfig, TierConfig,
    parse_component, parse_rule_set,
)


RATE_TIERS = [
    {'min': 0, 'max': 80, 'rate': '0.5', 'label': 'Low'},
    {'min': 80, 'max': 120, 'rate': '1.0', 'label': 'Mid'},
    {'min': 120, 'rate': '1.5', 'label': 'High'},
]


def matrix_config(**overrides):
    config = {
        'rowMetric': 'attainment',
        'columnMetric': 'store_sales',
        'rowBands': [{'min': 0, 'max': 80, 'label': '<80%'},
                     {'min': 80, 'max': 100, 'label': '80-100%'},
                     {'min': 100, 'label': '100%+'}],
        'columnBands': [{'min': 0, 'max': 50000, 'label': '<50k'},
                        {'min': 50000, 'max': 100000, 'label': '50-100k'},
                        {'min': 100000, 'label': '100k+'}],
        'payoutMatrix': [[0, 50, 100], [100, 200, 300], [200, 400, 600]],
    }
    config.update(overrides)
    return config


class TestTierEvaluator:
    """Tier lookups"""

    def setup_method(self):
        self.config = TierConfig.model_validate({'metric': 'attainment', 'tiers': RATE_TIERS})

    def test_boundary_80_selects_second_tier(self):
        result = evaluate_tier(self.config, {'attainment': Decimal('80')})
        assert result.matched_band == 'Mid'
        assert result.payout == Decimal('80.00')

    def test_boundary_120_selects_third_tier(self):
        result = evaluate_tier(self.config, {'attainment': Decimal('120')})
        assert result.matched_band == 'High'
        assert result.payout == Decimal('180.00')

    def test_just_below_boundary(self):
        result = evaluate_tier(self.config, {'attainment': Decimal('79.99')})
        assert result.matched_band == 'Low'

    def test_flat_value_tier(self):
        config = TierConfig.model_validate({
            'metric': 'attainment',
            'tiers': [{'min': 0, 'max': 100, 'value': 0}, {'min': 100, 'value': 250}],
        })
        result = evaluate_tier(config, {'attainment': Decimal('130')})
        assert result.payout == Decimal('250.00')

    def test_missing_metric_is_zero(self):
        result = evaluate_tier(self.config, {})
        assert result.matched_band == 'Low'
        assert result.payout == Decimal('0.00')

    def test_negative_value_out_of_range(self):
        result = evaluate_tier(self.config, {'attainment': Decimal('-5')})
        assert result.payout == Decimal('0')
        assert 'out_of_range' in result.flags

    def test_trace(self):
        result = evaluate_tier(self.config, {'attainment': Decimal('95')})
        assert result.trace == {
            'matchedBandLabels': ['Mid'],
            'rawMetricValues': {'attainment': 95.0},
        }

    def test_unbounded_last_tier_catches_large_values(self):
        config = TierConfig.model_validate({'metric': 'x', 'tiers': RATE_TIERS})
        assert find_band(config.tiers, Decimal('1000000')) == 2
        assert find_band(config.tiers, Decimal('-0.01')) is None


class TestTierValidation:
    """Tier tables must partition [0, inf)"""

    def test_gap_rejected(self):
        with pytest.raises(ValueError):
            TierConfig.model_validate({'metric': 'a', 'tiers': [
                {'min': 0, 'max': 80, 'value': 1}, {'min': 90, 'value': 2}]})

    def test_overlap_rejected(self):
        with pytest.raises(ValueError):
            TierConfig.model_validate({'metric': 'a', 'tiers': [
                {'min': 0, 'max': 80, 'value': 1}, {'min': 70, 'value': 2}]})

    def test_bounded_last_tier_rejected(self):
        with pytest.raises(ValueError):
            TierConfig.model_validate({'metric': 'a', 'tiers': [
                {'min': 0, 'max': 80, 'value': 1}, {'min': 80, 'max': 200, 'value': 2}]})

    def test_must_start_at_zero(self):
        with pytest.raises(ValueError):
            TierConfig.model_validate({'metric': 'a', 'tiers': [{'min': 10, 'value': 1}]})

    def test_tier_needs_value_or_rate(self):
        with pytest.raises(ValueError):
            TierConfig.model_validate({'metric': 'a', 'tiers': [{'min': 0}]})

    def test_component_error_names_component(self):
        with pytest.raises(ConfigurationError) as exc:
            parse_component({'name': 'Broken Bonus', 'type': 'tier', 'config': {
                'metric': 'a', 'tiers': [{'min': 0, 'max': 50, 'value': 1}, {'min': 60, 'value': 2}]}})
        assert exc.value.component_name == 'Broken Bonus'
        assert 'gap' in str(exc.value)


class TestMatrixEvaluator:
    """Matrix lookups"""

    def setup_method(self):
        self.config = MatrixConfig.model_validate(matrix_config())

    def test_lookup(self):
        result = evaluate_matrix(self.config, {'attainment': Decimal('95'), 'store_sales': Decimal('60000')})
        assert result.payout == Decimal('200.00')
        assert result.matched_band_labels == ['80-100%', '50-100k']

    def test_band_edges(self):
        result = evaluate_matrix(self.config, {'attainment': Decimal('100'), 'store_sales': Decimal('100000')})
        assert result.payout == Decimal('600.00')

    def test_accepts_values_key(self):
        raw = matrix_config()
        raw['values'] = raw.pop('payoutMatrix')
        config = MatrixConfig.model_validate(raw)
        assert config.payout_matrix[2][2] == Decimal('600')

    def test_dimension_mismatch(self):
        with pytest.raises(ConfigurationError):
            parse_component({'name': 'Store Matrix', 'type': 'matrix',
                             'config': matrix_config(payoutMatrix=[[0, 50], [100, 200], [200, 400]])})

    def test_partial_partition_fails_before_evaluation(self):
        bad_rows = [{'min': 0, 'max': 80}, {'min': 80, 'max': 100}, {'min': 100, 'max': 150}]
        variants = [{'name': 'Standard', 'components': [
            {'name': 'Store Matrix', 'type': 'matrix', 'config': matrix_config(rowBands=bad_rows)}]}]
        with pytest.raises(ConfigurationError) as exc:
            parse_rule_set('Plan', variants, {})
        assert exc.value.component_name == 'Store Matrix'


class TestPercentageEvaluators:
    """Percentage and conditional percentage"""

    def test_percentage(self):
        config = PercentageConfig.model_validate({'appliedToMetric': 'revenue', 'rate': '0.05'})
        assert evaluate_percentage(config, {'revenue': Decimal('1000')}).payout == Decimal('50.00')

    def test_percentage_threshold_and_cap(self):
        config = PercentageConfig.model_validate({
            'appliedTo': 'revenue', 'rate': '0.1', 'minThreshold': 500, 'maxPayout': 150})
        below = evaluate_percentage(config, {'revenue': Decimal('400')})
        capped = evaluate_percentage(config, {'revenue': Decimal('5000')})
        assert below.payout == Decimal('0') and 'below_threshold' in below.flags
        assert capped.payout == Decimal('150.00') and 'capped' in capped.flags

    def test_payout_rounded_half_up(self):
        config = PercentageConfig.model_validate({'appliedToMetric': 'revenue', 'rate': '0.5'})
        assert evaluate_percentage(config, {'revenue': Decimal('0.05')}).payout == Decimal('0.03')

    def test_conditional_first_match_wins(self):
        config = ConditionalPercentageConfig.model_validate({
            'appliedToMetric': 'revenue',
            'conditions': [
                {'metric': 'attainment', 'min': 100, 'rate': '0.04', 'label': '100%+'},
                {'metric': 'attainment', 'min': 0, 'rate': '0.02', 'label': 'any'},
            ],
        })
        result = evaluate_conditional_percentage(config, {'revenue': Decimal('1000'), 'attainment': Decimal('105')})
        assert result.payout == Decimal('40.00')
        assert result.matched_band == '100%+'

    def test_conditional_no_match_rate_zero(self):
        config = ConditionalPercentageConfig.model_validate({
            'appliedToMetric': 'revenue',
            'conditions': [{'metric': 'attainment', 'min': 100, 'max': 200, 'rate': '0.04'}],
        })
        result = evaluate_conditional_percentage(config, {'revenue': Decimal('1000'), 'attainment': Decimal('90')})
        assert result.payout == Decimal('0.00')
        assert result.matched_band is None


class TestEvaluateComponent:
    """Component records stored on results"""

    def test_disabled_component_pays_nothing(self):
        component = parse_component({'name': 'Spiff', 'type': 'percentage', 'enabled': False,
                                     'config': {'appliedToMetric': 'revenue', 'rate': 1}})
        record = evaluate_component(component, {'revenue': Decimal('1000')})
        assert record['payout'] == Decimal('0')
        assert record['flags'] == ['disabled']

    def test_summation_matches_components(self):
        tier = parse_component({'name': 'Bonus', 'type': 'tier', 'config': {
            'metric': 'attainment',
            'tiers': [{'min': 0, 'max': 80, 'value': 0}, {'min': 80, 'max': 120, 'value': 100},
                      {'min': 120, 'value': 200}]}})
        pct = parse_component({'name': 'Commission', 'type': 'percentage',
                               'config': {'appliedToMetric': 'revenue', 'rate': '0.05'}})
        metrics = {'attainment': Decimal('100'), 'revenue': Decimal('1000')}
        records = [evaluate_component(c, metrics) for c in (tier, pct)]
        assert [r['payout'] for r in records] == [Decimal('100.00'), Decimal('50.00')]
        assert sum(r['payout'] for r in records) == Decimal('150.00')
        assert records[0]['matchedBand'] == '[80, 120)'

    def test_unbound_metric_flagged(self):
        component = parse_component({'name': 'Store Matrix', 'type': 'matrix', 'config': matrix_config()})
        record = evaluate_component(component, {'attainment': Decimal('95')})
        assert record['payout'] == Decimal('100.00')
        assert record['unboundMetrics'] == ['store_sales']
        assert 'unbound_metric' in record['flags']

    def test_resolved_zero_is_not_unbound(self):
        pct = parse_component({'name': 'Commission', 'type': 'percentage',
                               'config': {'appliedToMetric': 'revenue', 'rate': '0.05'}})
        record = evaluate_component(pct, {'revenue': Decimal('0')})
        assert record['unboundMetrics'] == []
        assert record['flags'] == []

    def test_unknown_type(self):
        with pytest.raises(ConfigurationError):
            parse_component({'name': 'Mystery', 'type': 'lottery', 'config': {}})
