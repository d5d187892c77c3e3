# -*- coding: utf-8 -*-
"""
Incentra - Plan document schema
Pydantic models for rule sets: variants, components and metric derivations

Plan documents arrive as JSON with camelCase keys (rowBands, appliedToMetric)
for component configs and snake_case keys for derivations. Any validation
failure is re-raised as ConfigurationError carrying the component name so
that a malformed plan aborts a run before anything is written.
"""

from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.errors import ConfigurationError


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# =============================================================================
# BANDS
# =============================================================================

class Band(CamelModel):
    """Half-open range [min, max); max=None means unbounded"""
    min: Decimal = Decimal('0')
    max: Optional[Decimal] = None
    label: Optional[str] = None

    @model_validator(mode='after')
    def _check_range(self):
        if self.max is not None and self.max <= self.min:
            raise ValueError(f"band [{self.min}, {self.max}) is empty")
        return self

    def display_label(self) -> str:
        if self.label:
            return self.label
        upper = '∞' if self.max is None else str(self.max)
        return f"[{self.min}, {upper})"


class Tier(Band):
    value: Optional[Decimal] = None  # flat payout
    rate: Optional[Decimal] = None   # payout = rate * metric

    @model_validator(mode='after')
    def _check_payout(self):
        if (self.value is None) == (self.rate is None):
            raise ValueError(f"tier {self.display_label()} needs exactly one of 'value' or 'rate'")
        return self


def validate_partition(bands: List[Band], what: str) -> None:
    """
    Bands must partition [0, +inf): first min is 0, each min equals the
    previous max and only the last band is unbounded.
    """
    if not bands:
        raise ValueError(f"{what}: at least one band is required")
    if bands[0].min != 0:
        raise ValueError(f"{what}: first band must start at 0, starts at {bands[0].min}")
    for previous, current in zip(bands, bands[1:]):
        if previous.max is None:
            raise ValueError(f"{what}: only the last band may be unbounded")
        if current.min != previous.max:
            kind = 'gap' if current.min > previous.max else 'overlap'
            raise ValueError(f"{what}: {kind} between {previous.max} and {current.min}")
    if bands[-1].max is not None:
        raise ValueError(f"{what}: last band must be unbounded, ends at {bands[-1].max}")


# =============================================================================
# COMPONENT CONFIGS
# =============================================================================

class TierConfig(CamelModel):
    metric: str
    tiers: List[Tier]

    @model_validator(mode='after')
    def _check_tiers(self):
        validate_partition(self.tiers, 'tiers')
        return self


class MatrixConfig(CamelModel):
    row_metric: str
    column_metric: str
    row_bands: List[Band]
    column_bands: List[Band]
    payout_matrix: List[List[Decimal]]

    @model_validator(mode='before')
    @classmethod
    def _accept_values_key(cls, data):
        if isinstance(data, dict) and 'payoutMatrix' not in data and 'payout_matrix' not in data \
                and 'values' in data:
            data = dict(data)
            data['payoutMatrix'] = data.pop('values')
        return data

    @model_validator(mode='after')
    def _check_dimensions(self):
        validate_partition(self.row_bands, 'rowBands')
        validate_partition(self.column_bands, 'columnBands')
        rows, cols = len(self.row_bands), len(self.column_bands)
        if len(self.payout_matrix) != rows or any(len(r) != cols for r in self.payout_matrix):
            shape = f"{len(self.payout_matrix)}x{[len(r) for r in self.payout_matrix]}"
            raise ValueError(f"payoutMatrix must be {rows}x{cols}, got {shape}")
        return self


def _rename_applied_to(data):
    if isinstance(data, dict) and 'appliedTo' in data and 'appliedToMetric' not in data:
        data = dict(data)
        data['appliedToMetric'] = data.pop('appliedTo')
    return data


class PercentageConfig(CamelModel):
    applied_to_metric: str
    rate: Decimal
    min_threshold: Optional[Decimal] = None
    max_payout: Optional[Decimal] = None

    @model_validator(mode='before')
    @classmethod
    def _accept_applied_to(cls, data):
        return _rename_applied_to(data)


class Condition(Band):
    metric: str
    rate: Decimal


class ConditionalPercentageConfig(CamelModel):
    applied_to_metric: str
    conditions: List[Condition] = Field(min_length=1)

    @model_validator(mode='before')
    @classmethod
    def _accept_applied_to(cls, data):
        return _rename_applied_to(data)


CONFIG_MODELS = {
    'tier': TierConfig,
    'matrix': MatrixConfig,
    'percentage': PercentageConfig,
    'conditional_percentage': ConditionalPercentageConfig,
}


class Component(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: Literal['tier', 'matrix', 'percentage', 'conditional_percentage']
    enabled: bool = True
    config: Any


class Variant(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    eligibility: Dict[str, Any] = Field(default_factory=dict)
    components: List[Component]


# =============================================================================
# INPUT BINDINGS
# =============================================================================

class DerivationFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    operator: Literal['eq', 'neq', 'gt', 'gte', 'lt', 'lte', 'in', 'contains'] = 'eq'
    value: Any = None


class Derivation(BaseModel):
    model_config = ConfigDict(frozen=True)

    metric_name: str
    source_pattern: str
    operation: Literal['sum', 'avg', 'first', 'min', 'max', 'count'] = 'sum'
    scope: Literal['entity', 'group'] = 'entity'
    source_field: Optional[str] = None
    filters: List[DerivationFilter] = Field(default_factory=list)
    join_field: Optional[str] = None
    group_attribute: Optional[str] = None

    @model_validator(mode='before')
    @classmethod
    def _accept_metric_key(cls, data):
        if isinstance(data, dict) and 'metric_name' not in data and 'metric' in data:
            data = dict(data)
            data['metric_name'] = data.pop('metric')
        return data

    @field_validator('operation', 'scope', mode='before')
    @classmethod
    def _lower(cls, value):
        return value.lower() if isinstance(value, str) else value


class AttainmentBinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    actual_metric: str
    target_metric: str


class InputBindings(BaseModel):
    model_config = ConfigDict(frozen=True)

    metric_derivations: List[Derivation] = Field(default_factory=list)
    attainment: Optional[AttainmentBinding] = None


class PlanDocument(BaseModel):
    """A fully validated rule set"""
    model_config = ConfigDict(frozen=True)

    name: str
    variants: List[Variant]
    input_bindings: InputBindings


# =============================================================================
# PARSING
# =============================================================================

def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = '.'.join(str(p) for p in item.get('loc', ()))
        message = item.get('msg', '').replace('Value error, ', '')
        parts.append(f"{location}: {message}" if location else message)
    return '; '.join(parts)


def parse_component(raw: Dict[str, Any]) -> Component:
    """Validate one component and its type-specific config"""
    name = raw.get('name') if isinstance(raw, dict) else None
    if not isinstance(raw, dict):
        raise ConfigurationError(None, f"component must be an object, got {type(raw).__name__}")

    component_type = str(raw.get('type', raw.get('componentType', ''))).lower()
    if component_type not in CONFIG_MODELS:
        raise ConfigurationError(name, f"unknown component type '{component_type}'")

    try:
        config = CONFIG_MODELS[component_type].model_validate(raw.get('config') or {})
        return Component(
            name=name or component_type,
            type=component_type,
            enabled=raw.get('enabled', True),
            config=config,
        )
    except ValidationError as e:
        raise ConfigurationError(name or component_type, _describe(e))


def parse_rule_set(name: str, variants: List[Dict[str, Any]],
                   input_bindings: Optional[Dict[str, Any]]) -> PlanDocument:
    """
    Validate a stored rule set into a PlanDocument.

    Every component of every variant is validated up front; the first
    problem raises ConfigurationError.
    """
    if not variants:
        raise ConfigurationError(None, f"rule set '{name}' has no variants")

    parsed_variants = []
    for index, raw_variant in enumerate(variants):
        variant_name = raw_variant.get('name') or raw_variant.get('variantName') or f"variant_{index + 1}"
        eligibility = raw_variant.get('eligibility') or raw_variant.get('eligibilityCriteria') or {}
        if not isinstance(eligibility, dict):
            raise ConfigurationError(None, f"variant '{variant_name}': eligibility must be an object")
        components = [parse_component(c) for c in raw_variant.get('components') or []]
        parsed_variants.append(Variant(name=variant_name, eligibility=eligibility, components=components))

    try:
        bindings = InputBindings.model_validate(input_bindings or {})
    except ValidationError as e:
        raise ConfigurationError(None, f"input_bindings: {_describe(e)}")

    return PlanDocument(name=name, variants=parsed_variants, input_bindings=bindings)
