# -*- coding: utf-8 -*-
"""
Incentra - Database models
SQLAlchemy models for tenants, committed data, plans and calculation batches
"""

import uuid
from datetime import datetime

from app import db
from app.modules.lifecycle import LifecycleState


def new_id():
    return str(uuid.uuid4())


def _money(value):
    return float(value) if value is not None else 0.0


# =============================================================================
# REFERENCE DATA (read-only to the engine)
# =============================================================================

class Tenant(db.Model):
    """Isolation boundary; every other record is scoped by tenant"""
    __tablename__ = 'tenants'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(200), nullable=False)
    settings = db.Column(db.JSON, default=dict)  # e.g. {"source_matching": "exact"}
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<Tenant {self.name}>'


class Period(db.Model):
    """Time bucket (usually a month)"""
    __tablename__ = 'periods'
    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'canonical_key', name='uq_period_key'),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    tenant_id = db.Column(db.String(36), db.ForeignKey('tenants.id'), nullable=False, index=True)
    canonical_key = db.Column(db.String(20), nullable=False)  # "2025-01"
    start_date = db.Column(db.Date)
    end_date = db.Column(db.Date)
    status = db.Column(db.String(20), default='open')  # open, closed
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<Period {self.canonical_key}>'


class Entity(db.Model):
    """Compensable actor: employee, store, ..."""
    __tablename__ = 'entities'
    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'external_id', name='uq_entity_external_id'),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    tenant_id = db.Column(db.String(36), db.ForeignKey('tenants.id'), nullable=False, index=True)
    external_id = db.Column(db.String(100), nullable=False)  # employee number
    display_name = db.Column(db.String(200))
    attributes = db.Column(db.JSON, default=dict)  # role, store_id, region ...
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<Entity {self.external_id}>'


class CommittedDataRow(db.Model):
    """
    One imported row. entity_id is NULL for group-level rows (store totals),
    which are joined through a field inside row_data.
    """
    __tablename__ = 'committed_data'
    __table_args__ = (
        db.Index('ix_committed_bucket', 'tenant_id', 'period_id', 'data_type'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(36), db.ForeignKey('tenants.id'), nullable=False)
    period_id = db.Column(db.String(36), db.ForeignKey('periods.id'), nullable=False)
    data_type = db.Column(db.String(200), nullable=False)  # source sheet / category
    entity_id = db.Column(db.String(36), db.ForeignKey('entities.id'), nullable=True)
    row_data = db.Column(db.JSON, nullable=False)  # flat map of scalars
    import_batch_ref = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<CommittedDataRow {self.data_type}#{self.id}>'


class RuleSet(db.Model):
    """Compensation plan: eligibility-gated variants plus metric derivations"""
    __tablename__ = 'rule_sets'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    tenant_id = db.Column(db.String(36), db.ForeignKey('tenants.id'), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    variants = db.Column(db.JSON, nullable=False, default=list)
    input_bindings = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<RuleSet {self.name}>'


class RuleSetAssignment(db.Model):
    """Links an entity to the plan it is paid under"""
    __tablename__ = 'rule_set_assignments'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(36), db.ForeignKey('tenants.id'), nullable=False)
    entity_id = db.Column(db.String(36), db.ForeignKey('entities.id'), nullable=False)
    rule_set_id = db.Column(db.String(36), db.ForeignKey('rule_sets.id'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


# =============================================================================
# CALCULATION BATCHES
# =============================================================================

class CalculationBatch(db.Model):
    """
    Unit of atomic recomputation for (tenant, period, rule set).

    superseded_by marks a batch non-current without deleting it; reporting
    always reads the lineage head (superseded_by IS NULL).
    """
    __tablename__ = 'calculation_batches'
    __table_args__ = (
        db.Index('ix_batch_lineage', 'tenant_id', 'period_id', 'rule_set_id', 'superseded_by'),
        db.UniqueConstraint('tenant_id', 'period_id', 'rule_set_id', 'batch_code', name='uq_batch_lineage_code'),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    tenant_id = db.Column(db.String(36), db.ForeignKey('tenants.id'), nullable=False)
    period_id = db.Column(db.String(36), db.ForeignKey('periods.id'), nullable=False)
    rule_set_id = db.Column(db.String(36), db.ForeignKey('rule_sets.id'), nullable=False)
    batch_code = db.Column(db.String(50), nullable=False)  # "2025-01-003"

    lifecycle_state = db.Column(db.Enum(LifecycleState), nullable=False, default=LifecycleState.DRAFT)

    entity_count = db.Column(db.Integer, default=0)
    total_payout = db.Column(db.Numeric(20, 2), default=0)
    summary = db.Column(db.JSON)

    # Written once on the first move to OFFICIAL
    official_snapshot = db.Column(db.JSON(none_as_null=True))

    # === LINEAGE ===
    superseded_by = db.Column(db.String(36), nullable=True)
    supersedes = db.Column(db.String(36), nullable=True)

    # === GOVERNANCE ===
    submitted_by = db.Column(db.String(100))
    approved_by = db.Column(db.String(100))
    governance = db.Column(db.JSON, default=dict)

    created_by = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = db.Column(db.DateTime)

    results = db.relationship('CalculationResult', backref='batch', lazy='dynamic')
    audit_entries = db.relationship('BatchAuditLog', backref='batch', lazy='dynamic',
                                    order_by='BatchAuditLog.id')

    def __repr__(self):
        return f'<CalculationBatch {self.batch_code} {self.lifecycle_state.value}>'

    @property
    def is_current(self):
        return self.superseded_by is None

    @property
    def is_locked(self):
        """Results are frozen once an official snapshot exists"""
        return self.official_snapshot is not None

    def to_dict(self):
        return {
            'id': self.id,
            'tenantId': self.tenant_id,
            'periodId': self.period_id,
            'ruleSetId': self.rule_set_id,
            'batchCode': self.batch_code,
            'lifecycleState': self.lifecycle_state.value,
            'entityCount': self.entity_count,
            'totalPayout': _money(self.total_payout),
            'summary': self.summary,
            'officialSnapshot': self.official_snapshot,
            'supersededBy': self.superseded_by,
            'supersedes': self.supersedes,
            'submittedBy': self.submitted_by,
            'approvedBy': self.approved_by,
            'governance': self.governance or {},
            'createdBy': self.created_by,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'completedAt': self.completed_at.isoformat() if self.completed_at else None,
        }


class CalculationResult(db.Model):
    """Per-entity payout. Replaced wholesale whenever its batch is recomputed."""
    __tablename__ = 'calculation_results'
    __table_args__ = (
        db.UniqueConstraint('batch_id', 'entity_id', name='uq_result_batch_entity'),
    )

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.String(36), db.ForeignKey('calculation_batches.id'), nullable=False, index=True)
    tenant_id = db.Column(db.String(36), nullable=False)
    period_id = db.Column(db.String(36), nullable=False)
    rule_set_id = db.Column(db.String(36), nullable=False)
    entity_id = db.Column(db.String(36), db.ForeignKey('entities.id'), nullable=False)

    variant_name = db.Column(db.String(200))
    total_payout = db.Column(db.Numeric(20, 2), nullable=False, default=0)
    components = db.Column(db.JSON, nullable=False, default=list)
    metrics = db.Column(db.JSON, default=dict)
    attainment = db.Column(db.JSON)
    flags = db.Column(db.JSON, default=list)
    # "metadata" is reserved on declarative classes
    result_metadata = db.Column('metadata', db.JSON, default=dict)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<CalculationResult {self.batch_id}:{self.entity_id}>'

    def to_dict(self):
        return {
            'batchId': self.batch_id,
            'entityId': self.entity_id,
            'periodId': self.period_id,
            'ruleSetId': self.rule_set_id,
            'variantName': self.variant_name,
            'totalPayout': _money(self.total_payout),
            'components': self.components or [],
            'metrics': self.metrics or {},
            'attainment': self.attainment,
            'flags': self.flags or [],
            'metadata': self.result_metadata or {},
        }


class BatchAuditLog(db.Model):
    """One row per lifecycle transition or supersession"""
    __tablename__ = 'batch_audit_log'

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.String(36), db.ForeignKey('calculation_batches.id'), nullable=False, index=True)
    tenant_id = db.Column(db.String(36), nullable=False)
    action = db.Column(db.String(50), nullable=False)  # transition, supersede, run
    from_state = db.Column(db.String(30))
    to_state = db.Column(db.String(30))
    actor = db.Column(db.String(100))
    role = db.Column(db.String(50))
    details = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'batchId': self.batch_id,
            'action': self.action,
            'fromState': self.from_state,
            'toState': self.to_state,
            'actor': self.actor,
            'role': self.role,
            'details': self.details,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }
