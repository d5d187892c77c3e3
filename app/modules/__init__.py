# -*- coding: utf-8 -*-
"""
Incentra - Calculation modules (pure, no database access)
"""

from app.modules.evaluators import evaluate_component
from app.modules.lifecycle import LifecycleState
from app.modules.metric_resolver import MetricResolver, DataSnapshot
from app.modules.plan_schema import PlanDocument, parse_rule_set
from app.modules.variant_selector import select_variant

__all__ = [
    'evaluate_component',
    'LifecycleState',
    'MetricResolver',
    'DataSnapshot',
    'PlanDocument',
    'parse_rule_set',
    'select_variant',
]
