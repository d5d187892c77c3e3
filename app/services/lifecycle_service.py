# -*- coding: utf-8 -*-
"""
Incentra - Lifecycle Service
Governed state changes of calculation batches
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from app import db
from app.errors import ConcurrentTransitionError, NotFoundError, PersistenceError, TransitionError
from app.models import CalculationBatch, CalculationResult
from app.modules.lifecycle import (
    LifecycleState, allowed_transitions, coerce_state, get_side_effect, validate_transition,
)
from app.services.result_store import result_store

logger = logging.getLogger(__name__)

S = LifecycleState

# Governance keys written per target state: (actor key, timestamp key)
GOVERNANCE_STEPS = {
    S.PENDING_APPROVAL: ('submitted_by', 'submitted_at'),
    S.APPROVED: ('approved_by', 'approved_at'),
    S.REJECTED: ('rejected_by', 'rejected_at'),
    S.POSTED: ('posted_by', 'posted_at'),
    S.CLOSED: ('closed_by', 'closed_at'),
    S.PAID: ('paid_by', 'paid_at'),
    S.PUBLISHED: ('published_by', 'published_at'),
}

# details keys copied into governance per target state
GOVERNANCE_DETAILS = {
    S.APPROVED: ('comments',),
    S.REJECTED: ('rejection_reason', 'reason'),
    S.PAID: ('payment_reference',),
}


class LifecycleService:
    """transition(batch_id, to_state, actor, details) -> updated batch | TransitionError"""

    def __init__(self, store=None):
        self.store = store or result_store

    def get_batch(self, batch_id: str) -> CalculationBatch:
        batch = db.session.get(CalculationBatch, batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        return batch

    def build_official_snapshot(self, batch: CalculationBatch) -> Dict[str, Any]:
        """Totals taken from the stored result rows"""
        component_totals: Dict[str, Decimal] = {}
        for result in batch.results:
            for component in result.components or []:
                name = component.get('name')
                payout = Decimal(str(component.get('payout', 0)))
                component_totals[name] = component_totals.get(name, Decimal('0')) + payout

        entity_count, total = db.session.query(
            func.count(CalculationResult.id),
            func.coalesce(func.sum(CalculationResult.total_payout), 0),
        ).filter(CalculationResult.batch_id == batch.id).one()

        return {
            'total_payout': float(total),
            'component_totals': {k: float(v) for k, v in sorted(component_totals.items())},
            'entity_count': entity_count,
            'taken_at': datetime.utcnow().isoformat(),
        }

    def _governance_update(self, batch: CalculationBatch, to_state: LifecycleState, actor_id: str,
                           details: Dict[str, Any]) -> Dict[str, Any]:
        governance = dict(batch.governance or {})
        step = GOVERNANCE_STEPS.get(to_state)
        if step:
            governance[step[0]] = actor_id
            governance[step[1]] = datetime.utcnow().isoformat()
        for key in GOVERNANCE_DETAILS.get(to_state, ()):
            if details.get(key) is not None:
                target = 'rejection_reason' if key == 'reason' else key
                governance[target] = details[key]
        return governance

    def transition(self, batch_id: str, to_state, actor: Dict[str, Any],
                   details: Optional[Dict[str, Any]] = None) -> CalculationBatch:
        """
        Move a batch to another lifecycle state.

        Args:
            batch_id: Batch
            to_state: target state (enum or name)
            actor: {'id': ..., 'role': ...}
            details: optional comments / rejection_reason / payment_reference

        Returns:
            the updated CalculationBatch

        Raises:
            TransitionError: invalid edge, missing capability, approver == submitter
            ConcurrentTransitionError: state changed between read and write
            PersistenceError: database failure (rolled back)
        """
        details = dict(details or {})
        batch = self.get_batch(batch_id)
        from_state = batch.lifecycle_state
        to_state = coerce_state(to_state)
        actor_id = str(actor.get('id') or '')
        role = actor.get('role')

        if not actor_id:
            raise TransitionError(from_state, to_state, (), "An actor id is required for lifecycle transitions")

        # Superseded batches are history: no governance step may touch them
        if not batch.is_current:
            logger.warning(f"[{batch.id}] Rejected transition by {actor_id}: superseded by {batch.superseded_by}")
            raise TransitionError(
                from_state, to_state, (),
                f"Batch {batch.id} was superseded by {batch.superseded_by} and accepts no transitions",
            )

        try:
            validate_transition(from_state, to_state, actor_id, role, submitted_by=batch.submitted_by)
        except TransitionError as e:
            logger.warning(f"[{batch.id}] Rejected transition by {actor_id} ({role}): {str(e)}")
            raise

        if to_state is S.REJECTED and not (details.get('rejection_reason') or details.get('reason')):
            raise TransitionError(from_state, to_state, (), "A rejection reason is required")

        values: Dict[str, Any] = {
            'governance': self._governance_update(batch, to_state, actor_id, details),
        }
        if to_state is S.PENDING_APPROVAL:
            values['submitted_by'] = actor_id
        elif to_state is S.APPROVED:
            values['approved_by'] = actor_id
        elif to_state is S.OFFICIAL and batch.official_snapshot is None:
            values['official_snapshot'] = self.build_official_snapshot(batch)

        side_effect = get_side_effect(from_state, to_state)

        try:
            self.store.compare_and_set_state(batch.id, from_state, to_state, **values)
            self.store.append_audit(
                batch, 'transition', from_state, to_state, actor_id, role,
                details=dict(details, sideEffect=side_effect) if side_effect else details or None,
            )
            db.session.commit()
        except ConcurrentTransitionError:
            db.session.rollback()
            logger.warning(f"[{batch_id}] Concurrent transition {from_state.value} -> {to_state.value} lost")
            raise
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.exception(f"[{batch_id}] Transition failed: {str(e)}")
            raise PersistenceError(f"Batch {batch_id}: {e}") from e

        db.session.expire_all()
        updated = self.get_batch(batch_id)
        logger.info(f"[{batch_id}] {from_state.value} -> {to_state.value} by {actor_id} ({role})")
        return updated

    def describe(self, batch: CalculationBatch) -> Dict[str, Any]:
        """Batch plus the transitions available from its current state"""
        data = batch.to_dict()
        targets = allowed_transitions(batch.lifecycle_state) if batch.is_current else []
        data['allowedTransitions'] = [
            {'toState': s.value, 'sideEffect': get_side_effect(batch.lifecycle_state, s)}
            for s in targets
        ]
        data['auditTrail'] = [e.to_dict() for e in batch.audit_entries]
        return data


# Singleton instance
lifecycle_service = LifecycleService()
