# -*- coding: utf-8 -*-
"""
Incentra - Rule component evaluators

Four pure lookups turning resolved metrics into a payout:
- tier:                   band lookup, flat value or rate * metric
- matrix:                 row band x column band -> payoutMatrix cell
- percentage:             metric * rate (optional threshold and cap)
- conditional_percentage: first matching condition picks the rate

Every evaluator returns an EvaluationResult whose trace
{matchedBandLabels, rawMetricValues} is enough to explain the number
without re-running the engine.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Mapping, Optional, Sequence

from config import ENGINE_CONFIG
from app.modules.plan_schema import (
    Band, Component, ConditionalPercentageConfig, MatrixConfig,
    PercentageConfig, TierConfig,
)

ZERO = Decimal('0')

UNBOUND_METRIC = 'unbound_metric'


@dataclass
class EvaluationResult:
    payout: Decimal
    matched_band: Optional[str] = None
    matched_band_labels: List[str] = field(default_factory=list)
    raw_metric_values: Dict[str, Optional[Decimal]] = field(default_factory=dict)
    flags: List[str] = field(default_factory=list)
    detail: Optional[str] = None

    @property
    def trace(self) -> dict:
        return {
            'matchedBandLabels': list(self.matched_band_labels),
            'rawMetricValues': {
                k: (float(v) if v is not None else None) for k, v in self.raw_metric_values.items()
            },
        }


def quantize(amount: Decimal) -> Decimal:
    """Round to the configured monetary precision (half-up)"""
    return Decimal(amount).quantize(ENGINE_CONFIG['PRECISION'], rounding=ROUND_HALF_UP)


def in_band(value: Decimal, band: Band) -> bool:
    """Inclusive min, exclusive max; max=None is unbounded"""
    return value >= band.min and (band.max is None or value < band.max)


def find_band(bands: Sequence[Band], value: Decimal) -> Optional[int]:
    """
    Index of the band containing value, or None.

    Validated band tables end unbounded, so only values below 0 miss.
    """
    for index, band in enumerate(bands):
        if in_band(value, band):
            return index
    return None


def _metric(metrics: Mapping[str, Decimal], name: str) -> Decimal:
    value = metrics.get(name)
    return ZERO if value is None else Decimal(value)


# =============================================================================
# EVALUATORS
# =============================================================================

def evaluate_tier(config: TierConfig, metrics: Mapping[str, Decimal]) -> EvaluationResult:
    value = _metric(metrics, config.metric)
    index = find_band(config.tiers, value)
    if index is None:
        return EvaluationResult(
            payout=ZERO,
            raw_metric_values={config.metric: value},
            flags=['out_of_range'],
            detail=f"{config.metric}={value} is outside every tier",
        )

    tier = config.tiers[index]
    label = tier.display_label()
    if tier.value is not None:
        payout = tier.value
        detail = f"{config.metric}={value} -> {label} = {tier.value}"
    else:
        payout = tier.rate * value
        detail = f"{config.metric}={value} -> {label}: {tier.rate} x {value}"

    return EvaluationResult(
        payout=quantize(payout),
        matched_band=label,
        matched_band_labels=[label],
        raw_metric_values={config.metric: value},
        detail=detail,
    )


def evaluate_matrix(config: MatrixConfig, metrics: Mapping[str, Decimal]) -> EvaluationResult:
    row_value = _metric(metrics, config.row_metric)
    col_value = _metric(metrics, config.column_metric)
    raw = {config.row_metric: row_value, config.column_metric: col_value}

    row_index = find_band(config.row_bands, row_value)
    col_index = find_band(config.column_bands, col_value)
    if row_index is None or col_index is None:
        return EvaluationResult(payout=ZERO, raw_metric_values=raw, flags=['out_of_range'])

    row_label = config.row_bands[row_index].display_label()
    col_label = config.column_bands[col_index].display_label()
    payout = config.payout_matrix[row_index][col_index]

    return EvaluationResult(
        payout=quantize(payout),
        matched_band=f"{row_label} x {col_label}",
        matched_band_labels=[row_label, col_label],
        raw_metric_values=raw,
        detail=f"matrix[{row_index}][{col_index}] = {payout}",
    )


def evaluate_percentage(config: PercentageConfig, metrics: Mapping[str, Decimal]) -> EvaluationResult:
    base = _metric(metrics, config.applied_to_metric)
    raw = {config.applied_to_metric: base}

    if config.min_threshold is not None and base < config.min_threshold:
        return EvaluationResult(
            payout=ZERO,
            raw_metric_values=raw,
            flags=['below_threshold'],
            detail=f"{base} below minimum threshold {config.min_threshold}",
        )

    payout = base * config.rate
    flags = []
    if config.max_payout is not None and payout > config.max_payout:
        payout = config.max_payout
        flags.append('capped')

    return EvaluationResult(
        payout=quantize(payout),
        raw_metric_values=raw,
        flags=flags,
        detail=f"{base} x {config.rate}",
    )


def evaluate_conditional_percentage(config: ConditionalPercentageConfig,
                                    metrics: Mapping[str, Decimal]) -> EvaluationResult:
    base = _metric(metrics, config.applied_to_metric)
    raw = {config.applied_to_metric: base}

    # Declared order; first match wins
    rate = ZERO
    matched = None
    for condition in config.conditions:
        condition_value = _metric(metrics, condition.metric)
        raw[condition.metric] = condition_value
        if in_band(condition_value, condition):
            rate = condition.rate
            matched = condition.display_label()
            break

    return EvaluationResult(
        payout=quantize(base * rate),
        matched_band=matched,
        matched_band_labels=[matched] if matched else [],
        raw_metric_values=raw,
        flags=[] if matched else ['no_condition_matched'],
        detail=f"{base} x {rate}",
    )


EVALUATORS = {
    'tier': evaluate_tier,
    'matrix': evaluate_matrix,
    'percentage': evaluate_percentage,
    'conditional_percentage': evaluate_conditional_percentage,
}


def evaluate_component(component: Component, metrics: Mapping[str, Decimal]) -> dict:
    """
    Evaluate one component into the record stored on a CalculationResult.

    Metrics the component reads but nothing resolved count as 0 and are
    listed under unboundMetrics with an unbound_metric flag.

    Returns:
        {name, type, payout, matchedBand, metrics, trace, flags, unboundMetrics}
    """
    if not component.enabled:
        result = EvaluationResult(payout=ZERO, flags=['disabled'])
    else:
        result = EVALUATORS[component.type](component.config, metrics)

    flags = list(result.flags)
    unbound = sorted(name for name in result.raw_metric_values if metrics.get(name) is None)
    if unbound:
        flags.append(UNBOUND_METRIC)

    return {
        'name': component.name,
        'type': component.type,
        'payout': result.payout,
        'matchedBand': result.matched_band,
        'metrics': result.trace['rawMetricValues'],
        'trace': result.trace,
        'flags': flags,
        'unboundMetrics': unbound,
        'detail': result.detail,
    }
