# -*- coding: utf-8 -*-
"""
Incentra - Result Store
Transactional persistence of calculation batches and their results

Rules:
1. Results of a batch are replaced wholesale: DELETE WHERE batch_id, INSERT
2. A new batch never deletes older rows; the previous lineage head is
   marked superseded_by = new id
3. Every state change is a compare-and-swap on (id, expected state)
4. A first run re-checks the lineage inside its transaction; batch codes
   are unique per lineage, so two concurrent first runs cannot both land
5. Everything for one run happens in one transaction; on failure the
   session is rolled back and nothing is visible
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app import db
from app.errors import ConcurrentTransitionError, PersistenceError
from app.models import BatchAuditLog, CalculationBatch, CalculationResult
from app.modules.lifecycle import LifecycleState, allowed_transitions
from app.modules.values import decimal_to_float

logger = logging.getLogger(__name__)


class ResultStore:
    """Single writer for calculation_batches / calculation_results"""

    # =========================================================================
    # LINEAGE LOOKUPS
    # =========================================================================

    def current_batch(self, tenant_id: str, period_id: str, rule_set_id: str) -> Optional[CalculationBatch]:
        """Lineage head: the batch with superseded_by IS NULL"""
        return CalculationBatch.query.filter_by(
            tenant_id=tenant_id,
            period_id=period_id,
            rule_set_id=rule_set_id,
            superseded_by=None,
        ).order_by(CalculationBatch.created_at.desc()).first()

    def next_batch_code(self, tenant_id: str, period_id: str, rule_set_id: str, period_key: str) -> str:
        count = db.session.query(func.count(CalculationBatch.id)).filter_by(
            tenant_id=tenant_id, period_id=period_id, rule_set_id=rule_set_id,
        ).scalar() or 0
        return f"{period_key}-{count + 1:03d}"

    # =========================================================================
    # COMPARE-AND-SWAP
    # =========================================================================

    def compare_and_set_state(self, batch_id: str, expected: LifecycleState, new: LifecycleState,
                              **values) -> None:
        """
        UPDATE ... WHERE id = :id AND lifecycle_state = :expected
                     AND superseded_by IS NULL

        Does not commit. Raises ConcurrentTransitionError when another
        writer changed the state or superseded the batch first.
        """
        stmt = (
            update(CalculationBatch)
            .where(
                CalculationBatch.id == batch_id,
                CalculationBatch.lifecycle_state == expected,
                CalculationBatch.superseded_by.is_(None),
            )
            .values(lifecycle_state=new, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        if result.rowcount != 1:
            raise ConcurrentTransitionError(
                expected, new, allowed_transitions(expected),
                f"Batch {batch_id} is no longer a current batch in state {expected.value}",
            )

    def append_audit(self, batch: CalculationBatch, action: str, from_state, to_state,
                     actor: Optional[str], role: Optional[str] = None,
                     details: Optional[Dict[str, Any]] = None) -> None:
        db.session.add(BatchAuditLog(
            batch_id=batch.id,
            tenant_id=batch.tenant_id,
            action=action,
            from_state=getattr(from_state, 'value', from_state),
            to_state=getattr(to_state, 'value', to_state),
            actor=actor,
            role=role,
            details=decimal_to_float(details) if details else None,
        ))

    # =========================================================================
    # RUN PERSISTENCE
    # =========================================================================

    def _replace_results(self, batch_id: str, rows: List[Dict[str, Any]]) -> None:
        db.session.execute(
            delete(CalculationResult)
            .where(CalculationResult.batch_id == batch_id)
            .execution_options(synchronize_session=False)
        )
        if rows:
            now = datetime.utcnow()
            db.session.execute(
                insert(CalculationResult),
                [dict(r, batch_id=batch_id, created_at=now) for r in rows],
            )

    def commit_run(self, batch: CalculationBatch, is_new: bool, previous: Optional[CalculationBatch],
                   rows: List[Dict[str, Any]], summary: Dict[str, Any], actor: Optional[str]) -> CalculationBatch:
        """
        Persist one run atomically.

        Args:
            batch: target batch (transient when is_new)
            is_new: True if the batch row must be inserted
            previous: lineage head to supersede (only when is_new)
            rows: CalculationResult column dicts (without batch_id)
            summary: batch summary (Decimals allowed)
            actor: who started the run

        Returns:
            the refreshed batch

        Raises:
            ConcurrentTransitionError: the batch or lineage head moved meanwhile
            PersistenceError: any database failure (rolled back)
        """
        total = summary['total_payout']
        values = dict(
            entity_count=summary['entity_count'],
            total_payout=total,
            summary=decimal_to_float(summary),
            completed_at=datetime.utcnow(),
        )

        try:
            if is_new:
                if previous is None and self._head_exists(batch):
                    raise ConcurrentTransitionError(
                        LifecycleState.DRAFT, LifecycleState.PREVIEW, allowed_transitions(LifecycleState.DRAFT),
                        f"Batch {batch.batch_code}: another run already created a current batch for this "
                        f"tenant, period and rule set; re-run to recalculate it",
                    )
                batch.lifecycle_state = LifecycleState.PREVIEW
                for key, value in values.items():
                    setattr(batch, key, value)
                db.session.add(batch)
                db.session.flush()

                if previous is not None:
                    self._supersede(previous, batch, actor)
                self.append_audit(batch, 'run', LifecycleState.DRAFT, LifecycleState.PREVIEW, actor,
                                  details={'entityCount': summary['entity_count'], 'totalPayout': total})
            else:
                from_state = batch.lifecycle_state
                stmt = (
                    update(CalculationBatch)
                    .where(
                        CalculationBatch.id == batch.id,
                        CalculationBatch.lifecycle_state == from_state,
                        CalculationBatch.official_snapshot.is_(None),
                        CalculationBatch.superseded_by.is_(None),
                    )
                    .values(lifecycle_state=LifecycleState.PREVIEW, updated_at=datetime.utcnow(), **values)
                    .execution_options(synchronize_session=False)
                )
                if db.session.execute(stmt).rowcount != 1:
                    raise ConcurrentTransitionError(
                        from_state, LifecycleState.PREVIEW, allowed_transitions(from_state),
                        f"Batch {batch.id} changed while it was being recalculated",
                    )
                self.append_audit(batch, 'run', from_state, LifecycleState.PREVIEW, actor,
                                  details={'entityCount': summary['entity_count'], 'totalPayout': total})

            self._replace_results(batch.id, rows)
            db.session.commit()

        except ConcurrentTransitionError:
            db.session.rollback()
            raise
        except IntegrityError as e:
            # uq_batch_lineage_code: a concurrent run took the same batch code
            db.session.rollback()
            logger.warning(f"[{batch.id}] Lost a concurrent first run for {batch.batch_code}: {str(e)}")
            raise ConcurrentTransitionError(
                LifecycleState.DRAFT, LifecycleState.PREVIEW, allowed_transitions(LifecycleState.DRAFT),
                f"Batch {batch.batch_code} was created concurrently by another run; retry the run",
            ) from e
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.exception(f"[{batch.id}] Failed to persist calculation results: {str(e)}")
            raise PersistenceError(f"Batch {batch.id}: {e}") from e

        db.session.expire_all()
        stored = db.session.get(CalculationBatch, batch.id)
        logger.info(f"[{stored.id}] Stored {len(rows)} results ({stored.batch_code}, total {total})")
        return stored

    def _head_exists(self, batch: CalculationBatch) -> bool:
        """Re-read inside the run transaction: does the lineage already have a current batch?"""
        return db.session.query(CalculationBatch.id).filter(
            CalculationBatch.tenant_id == batch.tenant_id,
            CalculationBatch.period_id == batch.period_id,
            CalculationBatch.rule_set_id == batch.rule_set_id,
            CalculationBatch.superseded_by.is_(None),
            CalculationBatch.id != batch.id,
        ).first() is not None

    def _supersede(self, previous: CalculationBatch, new_batch: CalculationBatch, actor: Optional[str]) -> None:
        """Link previous -> new inside the caller's transaction"""
        stmt = (
            update(CalculationBatch)
            .where(CalculationBatch.id == previous.id, CalculationBatch.superseded_by.is_(None))
            .values(superseded_by=new_batch.id, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if db.session.execute(stmt).rowcount != 1:
            state = previous.lifecycle_state
            raise ConcurrentTransitionError(
                state, state, allowed_transitions(state),
                f"Batch {previous.id} was superseded by another run",
            )
        new_batch.supersedes = previous.id
        self.append_audit(previous, 'supersede', previous.lifecycle_state, previous.lifecycle_state, actor,
                          details={'supersededBy': new_batch.id})
        logger.info(f"[{previous.id}] Superseded by {new_batch.id}")

    # =========================================================================
    # READS
    # =========================================================================

    def results_for(self, batch_id: str) -> List[CalculationResult]:
        return CalculationResult.query.filter_by(batch_id=batch_id) \
            .order_by(CalculationResult.entity_id).all()

    def stored_total(self, batch_id: str):
        return db.session.query(func.coalesce(func.sum(CalculationResult.total_payout), 0)) \
            .filter(CalculationResult.batch_id == batch_id).scalar()


# Singleton instance
result_store = ResultStore()
