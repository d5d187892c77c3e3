# -*- coding: utf-8 -*-
"""
Incentra - Data models
"""

from app.models.database import (
    Tenant, Period, Entity, CommittedDataRow,
    RuleSet, RuleSetAssignment,
    CalculationBatch, CalculationResult, BatchAuditLog,
)

__all__ = [
    'Tenant', 'Period', 'Entity', 'CommittedDataRow',
    'RuleSet', 'RuleSetAssignment',
    'CalculationBatch', 'CalculationResult', 'BatchAuditLog',
]
