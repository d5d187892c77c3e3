# -*- coding: utf-8 -*-
"""
Incentra - Calculation Service
Batch orchestration of a plan over every assigned entity of a period

Flow of run_calculation():
1. Load tenant, period, rule set; validate the plan (fatal on error)
2. Load assigned active entities and committed rows into immutable views
3. Pick the target batch: reuse the lineage head while it never reached
   OFFICIAL, otherwise allocate a new batch that supersedes it
4. Fan out per entity on a bounded thread pool: resolve metrics, select
   variant, evaluate components (one failing entity never stops the batch)
5. Aggregate the summary and hand everything to the result store in one
   transaction

Worker threads only see immutable views; the database session is used
from the calling thread alone.
"""

import logging
import statistics
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from flask import current_app

from config import ENGINE_CONFIG
from app import db
from app.errors import CalculationCancelled, CalculationEngineError, NotFoundError
from app.models import CommittedDataRow, Entity, Period, RuleSet, RuleSetAssignment, Tenant
from app.models.database import CalculationBatch, new_id
from app.modules.evaluators import UNBOUND_METRIC, evaluate_component, quantize
from app.modules.lifecycle import RUNNABLE_STATES, LifecycleState
from app.modules.metric_resolver import (
    DataSnapshot, EntityView, MetricResolver, ResolvedMetric,
    make_entity_view, make_row_view, matcher_for_settings,
)
from app.modules.plan_schema import AttainmentBinding, PlanDocument, parse_rule_set
from app.modules.values import decimal_to_float
from app.modules.variant_selector import select_variant
from app.services.result_store import result_store

logger = logging.getLogger(__name__)

ZERO = Decimal('0')


class CancellationToken:
    """Cooperative cancellation shared between the caller and a running batch"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, batch_id: str):
        if self._event.is_set():
            raise CalculationCancelled(f"Batch {batch_id}: run cancelled, nothing was written")


@dataclass
class EntityOutcome:
    """In-memory result for one entity, before persistence"""
    entity: EntityView
    variant_name: Optional[str]
    total_payout: Decimal
    components: List[Dict[str, Any]] = field(default_factory=list)
    metrics: Dict[str, ResolvedMetric] = field(default_factory=dict)
    attainment: Optional[Dict[str, Any]] = None
    flags: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_row(self, tenant_id: str, period_id: str, rule_set_id: str) -> Dict[str, Any]:
        metadata = {
            'externalId': self.entity.external_id,
            'displayName': self.entity.display_name,
            'selectionReason': self.reason,
        }
        if self.error:
            metadata['error'] = self.error
        return {
            'tenant_id': tenant_id,
            'period_id': period_id,
            'rule_set_id': rule_set_id,
            'entity_id': self.entity.id,
            'variant_name': self.variant_name,
            'total_payout': self.total_payout,
            'components': decimal_to_float(self.components),
            'metrics': {name: m.to_dict() for name, m in sorted(self.metrics.items())},
            'attainment': decimal_to_float(self.attainment),
            'flags': list(self.flags),
            'result_metadata': metadata,
        }


def compute_attainment(binding: Optional[AttainmentBinding], metrics: Dict[str, Decimal]) -> Optional[Dict[str, Any]]:
    """actual / target when bound, else a resolved 'attainment' metric, else None"""
    if binding is not None:
        actual = metrics.get(binding.actual_metric, ZERO)
        target = metrics.get(binding.target_metric, ZERO)
        if target > 0:
            ratio = actual / target
            return {
                'ratio': ratio.quantize(Decimal('0.0001')),
                'actual': actual,
                'target': target,
                'actualMetric': binding.actual_metric,
                'targetMetric': binding.target_metric,
            }
        return None
    if 'attainment' in metrics:
        return {'ratio': metrics['attainment'], 'source': 'metric'}
    return None


def evaluate_entity(entity: EntityView, plan: PlanDocument, resolver: MetricResolver) -> EntityOutcome:
    """
    Resolve, select and evaluate one entity.

    Never raises: an unexpected failure yields total_payout 0 and a
    calculation_error flag so the rest of the batch proceeds.
    """
    try:
        resolved = resolver.resolve(entity)
        metrics = {name: m.value for name, m in resolved.items()}

        selection = select_variant(entity.id, entity.raw_attributes, plan.variants)
        if selection.flags:
            logger.warning(f"Entity {entity.external_id}: {selection.reason}")

        components = [evaluate_component(c, metrics) for c in selection.variant.components]
        total = sum((c['payout'] for c in components), ZERO)

        flags = set(selection.flags)
        for metric in resolved.values():
            flags.update(metric.flags)
        if any(c['unboundMetrics'] for c in components):
            flags.add(UNBOUND_METRIC)

        return EntityOutcome(
            entity=entity,
            variant_name=selection.variant.name,
            total_payout=quantize(total),
            components=components,
            metrics=resolved,
            attainment=compute_attainment(plan.input_bindings.attainment, metrics),
            flags=sorted(flags),
            reason=selection.reason,
        )
    except Exception as e:
        logger.warning(f"Entity {entity.external_id} failed: {str(e)}")
        return EntityOutcome(
            entity=entity,
            variant_name=None,
            total_payout=ZERO,
            flags=['calculation_error'],
            error=str(e),
        )


def build_summary(plan: PlanDocument, outcomes: List[EntityOutcome]) -> Dict[str, Any]:
    """Batch-level aggregates. total_payout is the exact sum of entity totals."""
    top_n = ENGINE_CONFIG['SUMMARY_TOP_N']
    payouts = [o.total_payout for o in outcomes]
    total = sum(payouts, ZERO)
    count = len(outcomes)

    component_totals: Dict[str, Decimal] = {}
    variant_counts: Dict[str, int] = {}
    for outcome in outcomes:
        for component in outcome.components:
            component_totals[component['name']] = component_totals.get(component['name'], ZERO) + component['payout']
        if outcome.variant_name:
            variant_counts[outcome.variant_name] = variant_counts.get(outcome.variant_name, 0) + 1

    def brief(o: EntityOutcome) -> Dict[str, Any]:
        return {
            'entityId': o.entity.id,
            'externalId': o.entity.external_id,
            'displayName': o.entity.display_name,
            'totalPayout': o.total_payout,
        }

    ranked = sorted(outcomes, key=lambda o: (-o.total_payout, o.entity.external_id))
    ascending = sorted(outcomes, key=lambda o: (o.total_payout, o.entity.external_id))

    return {
        'rule_set_name': plan.name,
        'entity_count': count,
        'total_payout': total,
        'average_payout': quantize(total / count) if count else ZERO,
        'median_payout': quantize(statistics.median(payouts)) if payouts else ZERO,
        'zero_payout_count': sum(1 for p in payouts if p == 0),
        'top_entities': [brief(o) for o in ranked[:top_n]],
        'bottom_entities': [brief(o) for o in ascending[:top_n]],
        'component_totals': dict(sorted(component_totals.items())),
        'variant_counts': dict(sorted(variant_counts.items())),
        'flagged_entity_count': sum(1 for o in outcomes if o.flags),
        'failed_entity_count': sum(1 for o in outcomes if o.failed),
    }


class CalculationService:
    """
    Orchestrates calculation runs

    Exposed operation:
        run_calculation(tenant_id, period_id, rule_set_id)
            -> {success, batchId, totalPayout, entityCount, ...}
            |  {success: False, error, error_type}
    """

    def __init__(self, store=None):
        self.store = store or result_store

    # =========================================================================
    # INPUT LOADING (request thread only)
    # =========================================================================

    def _load_reference(self, tenant_id: str, period_id: str, rule_set_id: str):
        tenant = db.session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        period = db.session.get(Period, period_id)
        if period is None or period.tenant_id != tenant_id:
            raise NotFoundError(f"Period {period_id} not found for tenant {tenant_id}")
        rule_set = db.session.get(RuleSet, rule_set_id)
        if rule_set is None or rule_set.tenant_id != tenant_id:
            raise NotFoundError(f"Rule set {rule_set_id} not found for tenant {tenant_id}")
        return tenant, period, rule_set

    def _load_entities(self, tenant_id: str, rule_set_id: str) -> List[EntityView]:
        """Assigned, active entities; duplicate assignments collapse"""
        entities = (
            db.session.query(Entity)
            .join(RuleSetAssignment, RuleSetAssignment.entity_id == Entity.id)
            .filter(
                RuleSetAssignment.rule_set_id == rule_set_id,
                RuleSetAssignment.tenant_id == tenant_id,
                Entity.tenant_id == tenant_id,
                Entity.is_active.is_(True),
            )
            .order_by(Entity.external_id)
            .all()
        )
        seen = set()
        views = []
        for entity in entities:
            if entity.id in seen:
                continue
            seen.add(entity.id)
            views.append(make_entity_view(entity.id, entity.external_id, entity.display_name, entity.attributes))
        return views

    def _load_snapshot(self, tenant_id: str, period_id: str) -> DataSnapshot:
        rows = []
        query = CommittedDataRow.query.filter_by(tenant_id=tenant_id, period_id=period_id) \
            .order_by(CommittedDataRow.id)
        for row in query:
            try:
                rows.append(make_row_view(row.id, row.data_type, row.entity_id, row.row_data))
            except ValueError as e:
                logger.warning(f"Committed row {row.id} ({row.data_type}) rejected: {str(e)}")
        return DataSnapshot(tenant_id, period_id, rows)

    def _target_batch(self, tenant_id: str, period: Period, rule_set_id: str,
                      actor: Optional[str], new_batch: bool):
        """
        Returns:
            (batch, is_new, previous)
        """
        head = self.store.current_batch(tenant_id, period.id, rule_set_id)
        reusable = (
            head is not None
            and not new_batch
            and not head.is_locked
            and head.lifecycle_state in RUNNABLE_STATES
        )
        if reusable:
            return head, False, None

        batch = CalculationBatch(
            id=new_id(),
            tenant_id=tenant_id,
            period_id=period.id,
            rule_set_id=rule_set_id,
            batch_code=self.store.next_batch_code(tenant_id, period.id, rule_set_id, period.canonical_key),
            lifecycle_state=LifecycleState.DRAFT,
            created_by=actor,
            governance={},
        )
        return batch, True, head

    # =========================================================================
    # FAN-OUT
    # =========================================================================

    def _evaluate_all(self, batch_id: str, entities: List[EntityView], plan: PlanDocument,
                      resolver: MetricResolver, workers: int,
                      cancel_token: Optional[CancellationToken]) -> List[EntityOutcome]:
        outcomes: List[EntityOutcome] = []
        with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
            futures = {
                executor.submit(evaluate_entity, entity, plan, resolver): entity.id
                for entity in entities
            }
            for future in as_completed(futures):
                if cancel_token is not None and cancel_token.cancelled:
                    for pending in futures:
                        pending.cancel()
                    cancel_token.raise_if_cancelled(batch_id)
                outcomes.append(future.result())

        # Completion order is arbitrary; results are not
        outcomes.sort(key=lambda o: o.entity.external_id)
        return outcomes

    # =========================================================================
    # RUN
    # =========================================================================

    def run_calculation(self, tenant_id: str, period_id: str, rule_set_id: str,
                        actor: Optional[str] = None, new_batch: bool = False,
                        cancel_token: Optional[CancellationToken] = None,
                        workers: Optional[int] = None) -> Dict[str, Any]:
        """
        Run a plan for one period and store the results.

        Args:
            tenant_id: Tenant
            period_id: Period
            rule_set_id: Plan to evaluate
            actor: who started the run (recorded on the batch)
            new_batch: always allocate a new batch even if the head is reusable
            cancel_token: cooperative cancellation; nothing is written once set
            workers: thread pool size (defaults to CALC_WORKERS)

        Returns:
            {success, batchId, batchCode, totalPayout, entityCount, lifecycleState,
             supersedes, summary} or {success: False, error, error_type}
        """
        try:
            return self._run(tenant_id, period_id, rule_set_id, actor, new_batch, cancel_token, workers)
        except CalculationEngineError as e:
            logger.error(f"Calculation run failed ({type(e).__name__}): {str(e)}")
            return {
                'success': False,
                'error': str(e),
                'error_type': type(e).__name__,
            }

    def _run(self, tenant_id, period_id, rule_set_id, actor, new_batch, cancel_token, workers):
        tenant, period, rule_set = self._load_reference(tenant_id, period_id, rule_set_id)

        # Fatal before anything is written
        plan = parse_rule_set(rule_set.name, rule_set.variants, rule_set.input_bindings)

        entities = self._load_entities(tenant_id, rule_set_id)
        snapshot = self._load_snapshot(tenant_id, period_id)
        batch, is_new, previous = self._target_batch(tenant_id, period, rule_set_id, actor, new_batch)

        logger.info(
            f"[{batch.id}] Starting run {batch.batch_code}: plan '{plan.name}', "
            f"{len(entities)} entities, {snapshot.row_count} rows "
            f"({'new batch' if is_new else 'recalculating ' + batch.lifecycle_state.value})"
        )

        resolver = MetricResolver(
            snapshot,
            plan.input_bindings.metric_derivations,
            matcher_for_settings(tenant.settings),
        )
        if workers is None:
            workers = current_app.config.get('CALC_WORKERS', ENGINE_CONFIG['DEFAULT_WORKERS'])

        outcomes = self._evaluate_all(batch.id, entities, plan, resolver, workers, cancel_token)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled(batch.id)

        summary = build_summary(plan, outcomes)
        rows = [o.to_row(tenant_id, period_id, rule_set_id) for o in outcomes]

        failed = summary['failed_entity_count']
        if failed:
            logger.warning(f"[{batch.id}] {failed} entities failed and were recorded with payout 0")

        stored = self.store.commit_run(batch, is_new, previous, rows, summary, actor)

        logger.info(
            f"[{stored.id}] Run complete: {summary['entity_count']} entities, "
            f"total {summary['total_payout']}, {summary['flagged_entity_count']} flagged"
        )

        return {
            'success': True,
            'batchId': stored.id,
            'batchCode': stored.batch_code,
            'lifecycleState': stored.lifecycle_state.value,
            'totalPayout': float(summary['total_payout']),
            'entityCount': summary['entity_count'],
            'supersedes': stored.supersedes,
            'summary': stored.summary,
        }


# Singleton instance
calculation_service = CalculationService()
