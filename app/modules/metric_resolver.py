# -*- coding: utf-8 -*-
"""
Incentra - Metric resolver

Binds loosely structured committed rows to the named metrics a plan needs,
for one entity in one period:

1. Source matching: pick the data_type bucket for a derivation's
   source_pattern (exact name first, token-overlap fallback unless the
   tenant asked for exact matching only)
2. Row scoping: entity rows by entity id / entity key field, group rows
   through a join field matched against an entity attribute
3. Filters, field selection and aggregation (sum/avg/first/min/max/count)

A derivation that cannot be resolved yields 0 with confidence "low" and a
flag; it never aborts resolution of other metrics or entities.
"""

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from config import ENGINE_CONFIG
from app.errors import DataResolutionError
from app.modules.plan_schema import Derivation, DerivationFilter
from app.modules.values import Scalar, ScalarKind, coerce, coerce_row

logger = logging.getLogger(__name__)

ZERO = Decimal('0')

CONFIDENCE_HIGH = 'high'
CONFIDENCE_MEDIUM = 'medium'
CONFIDENCE_LOW = 'low'

_CAMEL_RE = re.compile(r'([a-z0-9])([A-Z])')
_SPLIT_RE = re.compile(r'[^a-z0-9]+')


# =============================================================================
# IMMUTABLE INPUT VIEWS
# =============================================================================

@dataclass(frozen=True)
class RowView:
    id: int
    data_type: str
    entity_id: Optional[str]
    values: Mapping[str, Scalar]


@dataclass(frozen=True)
class EntityView:
    id: str
    external_id: str
    display_name: Optional[str]
    attributes: Mapping[str, Scalar]
    raw_attributes: Mapping[str, object]


def make_row_view(row_id: int, data_type: str, entity_id: Optional[str], row_data) -> RowView:
    return RowView(
        id=row_id,
        data_type=data_type,
        entity_id=entity_id,
        values=MappingProxyType(dict(coerce_row(row_data))),
    )


def make_entity_view(entity_id: str, external_id: str, display_name: Optional[str], attributes) -> EntityView:
    attributes = dict(attributes or {})
    scalars = {k: coerce(v) for k, v in attributes.items() if not isinstance(v, (dict, list, tuple, set))}
    return EntityView(
        id=entity_id,
        external_id=str(external_id),
        display_name=display_name,
        attributes=MappingProxyType(scalars),
        raw_attributes=MappingProxyType(attributes),
    )


class DataSnapshot:
    """Committed rows of one (tenant, period), grouped by data_type"""

    def __init__(self, tenant_id: str, period_id: str, rows: Iterable[RowView]):
        self.tenant_id = tenant_id
        self.period_id = period_id
        buckets: Dict[str, List[RowView]] = {}
        for row in sorted(rows, key=lambda r: r.id):
            buckets.setdefault(row.data_type, []).append(row)
        self._buckets = {k: tuple(v) for k, v in buckets.items()}

    @property
    def data_types(self) -> List[str]:
        return sorted(self._buckets)

    def rows(self, data_type: str) -> Tuple[RowView, ...]:
        return self._buckets.get(data_type, ())

    @property
    def row_count(self) -> int:
        return sum(len(v) for v in self._buckets.values())


# =============================================================================
# TOKENIZER
# =============================================================================

def tokenize(name: str) -> List[str]:
    """
    "compensationPlan_Store-Sales 2025" -> ['compensation', 'store', 'sales']
    """
    spaced = _CAMEL_RE.sub(r'\1_\2', name or '')
    tokens = _SPLIT_RE.split(spaced.lower())
    return [
        t for t in tokens
        if len(t) >= ENGINE_CONFIG['MIN_TOKEN_LENGTH'] and t not in ENGINE_CONFIG['STOP_WORDS']
    ]


def overlap_score(pattern_tokens: Sequence[str], candidate_tokens: Sequence[str]) -> Decimal:
    """Share of pattern tokens contained in (or containing) some candidate token"""
    if not pattern_tokens or not candidate_tokens:
        return ZERO
    overlap = sum(
        1 for p in pattern_tokens
        if any(p in c or c in p for c in candidate_tokens)
    )
    return Decimal(overlap) / Decimal(len(pattern_tokens))


# =============================================================================
# SOURCE MATCHING STRATEGIES
# =============================================================================

@dataclass(frozen=True)
class SourceMatch:
    data_type: str
    score: Decimal
    strategy: str  # exact, fuzzy


class SourceMatcher:
    """Strategy interface: pick one data_type for a source pattern"""

    def match(self, pattern: str, data_types: Sequence[str]) -> Optional[SourceMatch]:
        raise NotImplementedError


class ExactMatcher(SourceMatcher):
    """Case-insensitive, trimmed name equality"""

    def match(self, pattern, data_types):
        wanted = (pattern or '').strip().lower()
        hits = sorted(dt for dt in data_types if dt.strip().lower() == wanted)
        if not hits:
            return None
        # A verbatim hit beats a case variant
        best = pattern if pattern in hits else hits[0]
        return SourceMatch(best, Decimal('1'), 'exact')


class TokenOverlapMatcher(SourceMatcher):
    """
    Fuzzy fallback. Highest score strictly above the threshold wins; equal
    scores go to the lexicographically smallest data_type.
    """

    def __init__(self, threshold: Decimal = None):
        self.threshold = ENGINE_CONFIG['FUZZY_MATCH_THRESHOLD'] if threshold is None else threshold

    def score_candidates(self, pattern, data_types) -> List[Tuple[str, Decimal]]:
        pattern_tokens = tokenize(pattern)
        scored = [(dt, overlap_score(pattern_tokens, tokenize(dt))) for dt in data_types]
        return sorted(
            [(dt, score) for dt, score in scored if score > self.threshold],
            key=lambda item: (-item[1], item[0]),
        )

    def match(self, pattern, data_types):
        candidates = self.score_candidates(pattern, data_types)
        if not candidates:
            return None
        data_type, score = candidates[0]
        return SourceMatch(data_type, score, 'fuzzy')


class ChainedMatcher(SourceMatcher):
    def __init__(self, *matchers: SourceMatcher):
        self.matchers = matchers

    def match(self, pattern, data_types):
        for matcher in self.matchers:
            found = matcher.match(pattern, data_types)
            if found is not None:
                return found
        return None


def matcher_for_settings(settings: Optional[Mapping]) -> SourceMatcher:
    """Tenants with settings.source_matching == "exact" bypass the heuristics"""
    mode = str((settings or {}).get('source_matching', 'fuzzy')).lower()
    if mode == 'exact':
        return ExactMatcher()
    return ChainedMatcher(ExactMatcher(), TokenOverlapMatcher())


# =============================================================================
# RESOLUTION
# =============================================================================

@dataclass
class ResolvedMetric:
    value: Decimal
    confidence: str
    source_rows: List[int] = field(default_factory=list)
    flags: List[str] = field(default_factory=list)
    data_type: Optional[str] = None
    source_field: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'value': float(self.value),
            'confidence': self.confidence,
            'sourceRows': list(self.source_rows),
            'flags': list(self.flags),
            'dataType': self.data_type,
            'sourceField': self.source_field,
        }


def _compare(scalar: Scalar, operator: str, expected) -> bool:
    if operator == 'in':
        options = expected if isinstance(expected, (list, tuple, set)) else [expected]
        return scalar.join_key() in {coerce(o).join_key() for o in options}
    if operator == 'contains':
        return str(expected).strip().lower() in str(scalar.value).lower()

    target = coerce(expected)
    if operator == 'eq':
        return scalar.join_key() == target.join_key()
    if operator == 'neq':
        return scalar.join_key() != target.join_key()

    # Ordering needs comparable kinds
    if scalar.kind is not target.kind or scalar.kind is ScalarKind.TEXT:
        return False
    if operator == 'gt':
        return scalar.value > target.value
    if operator == 'gte':
        return scalar.value >= target.value
    if operator == 'lt':
        return scalar.value < target.value
    if operator == 'lte':
        return scalar.value <= target.value
    return False


def _passes(row: RowView, filters: Sequence[DerivationFilter]) -> bool:
    for f in filters:
        scalar = row.values.get(f.field)
        if scalar is None or not _compare(scalar, f.operator, f.value):
            return False
    return True


def _aggregate(operation: str, values: List[Decimal]) -> Decimal:
    if operation == 'sum':
        return sum(values, ZERO)
    if operation == 'avg':
        return sum(values, ZERO) / Decimal(len(values))
    if operation == 'first':
        return values[0]
    if operation == 'min':
        return min(values)
    if operation == 'max':
        return max(values)
    raise ValueError(f"Unknown operation: {operation}")


class MetricResolver:
    """
    Resolves every derivation of a plan for one entity at a time.

    Source matches are computed once per snapshot in __init__; afterwards
    the resolver is read-only and safe to share between worker threads.
    """

    def __init__(self, snapshot: DataSnapshot, derivations: Sequence[Derivation],
                 matcher: SourceMatcher = None):
        self.snapshot = snapshot
        self.derivations = tuple(derivations)
        self.matcher = matcher or ChainedMatcher(ExactMatcher(), TokenOverlapMatcher())
        self.entity_key_fields = ENGINE_CONFIG['ENTITY_KEY_FIELDS']

        data_types = snapshot.data_types
        self._matches: Dict[str, Optional[SourceMatch]] = {}
        for derivation in self.derivations:
            pattern = derivation.source_pattern
            if pattern not in self._matches:
                self._matches[pattern] = self.matcher.match(pattern, data_types)
                found = self._matches[pattern]
                if found is None:
                    logger.warning(f"No data_type matches source pattern '{pattern}'")
                elif found.strategy == 'fuzzy':
                    logger.info(f"Source pattern '{pattern}' fuzzy-matched '{found.data_type}' (score {found.score:.2f})")

    def source_match(self, pattern: str) -> Optional[SourceMatch]:
        return self._matches.get(pattern)

    # ----- scoping -----

    def _entity_rows(self, rows, entity: EntityView) -> List[RowView]:
        external = coerce(entity.external_id).join_key()
        matched = []
        for row in rows:
            if row.entity_id is not None:
                if row.entity_id == entity.id:
                    matched.append(row)
                continue
            for key in self.entity_key_fields:
                scalar = row.values.get(key)
                if scalar is not None and scalar.join_key() == external:
                    matched.append(row)
                    break
        return matched

    def _group_rows(self, rows, entity: EntityView, derivation: Derivation) -> List[RowView]:
        attribute = derivation.group_attribute or ENGINE_CONFIG['GROUP_ATTRIBUTE']
        group_value = entity.attributes.get(attribute)
        if group_value is None:
            return []
        group_key = group_value.join_key()
        join_fields = (derivation.join_field,) if derivation.join_field else ENGINE_CONFIG['GROUP_JOIN_FIELDS']

        matched = []
        for row in rows:
            for join_field in join_fields:
                scalar = row.values.get(join_field)
                if scalar is not None and scalar.join_key() == group_key:
                    matched.append(row)
                    break
        return matched

    # ----- field selection -----

    def _select_field(self, rows: Sequence[RowView], derivation: Derivation) -> Optional[str]:
        if derivation.source_field:
            return derivation.source_field

        names = set()
        for row in rows:
            names.update(k for k, v in row.values.items() if v.is_number)
        excluded = set(self.entity_key_fields) | set(ENGINE_CONFIG['GROUP_JOIN_FIELDS'])
        if derivation.join_field:
            excluded.add(derivation.join_field)
        names -= excluded

        metric = derivation.metric_name
        if metric in names:
            return metric
        lowered = sorted(n for n in names if n.lower() == metric.lower())
        if lowered:
            return lowered[0]

        metric_tokens = tokenize(metric)
        scored = sorted(
            ((overlap_score(metric_tokens, tokenize(n)), n) for n in names),
            key=lambda item: (-item[0], item[1]),
        )
        if scored and scored[0][0] > 0:
            return scored[0][1]
        return None

    # ----- resolution -----

    def _resolve_one(self, entity: EntityView, derivation: Derivation) -> ResolvedMetric:
        """Raises DataResolutionError when the derivation cannot be resolved"""
        metric, pattern = derivation.metric_name, derivation.source_pattern

        found = self._matches.get(pattern)
        if found is None:
            raise DataResolutionError(metric, pattern, 'no_source_match')

        bucket = self.snapshot.rows(found.data_type)
        if derivation.scope == 'group':
            rows = self._group_rows(bucket, entity, derivation)
        else:
            rows = self._entity_rows(bucket, entity)
        rows = [r for r in rows if _passes(r, derivation.filters)]
        if not rows:
            raise DataResolutionError(metric, pattern, 'no_matching_rows')

        confidence = CONFIDENCE_HIGH if found.strategy == 'exact' else CONFIDENCE_MEDIUM
        flags = ['fuzzy_source_match'] if found.strategy == 'fuzzy' else []

        if derivation.operation == 'count':
            return ResolvedMetric(
                value=Decimal(len(rows)),
                confidence=confidence,
                source_rows=[r.id for r in rows],
                flags=flags,
                data_type=found.data_type,
            )

        field_name = self._select_field(rows, derivation)
        numeric = []
        for row in rows:
            scalar = row.values.get(field_name) if field_name else None
            if scalar is not None and scalar.is_number:
                numeric.append((row.id, scalar.value))
        if not numeric:
            raise DataResolutionError(metric, pattern, 'no_numeric_field')

        return ResolvedMetric(
            value=_aggregate(derivation.operation, [v for _, v in numeric]),
            confidence=confidence,
            source_rows=[row_id for row_id, _ in numeric],
            flags=flags,
            data_type=found.data_type,
            source_field=field_name,
        )

    def resolve(self, entity: EntityView) -> Dict[str, ResolvedMetric]:
        """
        Resolve every derivation for one entity.

        Returns:
            {metric_name: ResolvedMetric}
        """
        resolved = {}
        for derivation in self.derivations:
            try:
                resolved[derivation.metric_name] = self._resolve_one(entity, derivation)
            except DataResolutionError as e:
                found = self._matches.get(derivation.source_pattern)
                resolved[derivation.metric_name] = ResolvedMetric(
                    value=ZERO,
                    confidence=CONFIDENCE_LOW,
                    flags=['low_confidence', e.reason],
                    data_type=found.data_type if found else None,
                )
        return resolved
