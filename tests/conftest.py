# -*- coding: utf-8 -*-
"""
Incentra - Shared test fixtures
"""

from datetime import date
from types import SimpleNamespace

import pytest

from app import create_app, db
from app.models import (
    CommittedDataRow, Entity, Period, RuleSet, RuleSetAssignment, Tenant,
)
from config import TestConfig


STANDARD_TIERS = [
    {'min': 0, 'max': 80, 'value': 0, 'label': 'Below target'},
    {'min': 80, 'max': 120, 'value': 100, 'label': 'On target'},
    {'min': 120, 'max': None, 'value': 200, 'label': 'Above target'},
]

DEFAULT_VARIANTS = [
    {
        'name': 'Standard',
        'eligibility': {},
        'components': [
            {
                'name': 'Attainment Bonus',
                'type': 'tier',
                'config': {'metric': 'attainment', 'tiers': STANDARD_TIERS},
            },
            {
                'name': 'Revenue Commission',
                'type': 'percentage',
                'config': {'appliedToMetric': 'revenue', 'rate': 0.05},
            },
        ],
    },
]

DEFAULT_DERIVATIONS = [
    {'metric_name': 'attainment', 'source_pattern': 'Sales_Performance', 'operation': 'sum',
     'scope': 'entity', 'source_field': 'attainment'},
    {'metric_name': 'revenue', 'source_pattern': 'Sales_Performance', 'operation': 'sum',
     'scope': 'entity', 'source_field': 'revenue'},
    {'metric_name': 'store_sales', 'source_pattern': 'Store Totals', 'operation': 'sum',
     'scope': 'group'},
]

DEFAULT_ENTITIES = [
    {'external_id': 'E001', 'display_name': 'Ana Ruiz', 'attributes': {'role': 'rep', 'store_id': 'S1'}},
    {'external_id': 'E002', 'display_name': 'Ben Cole', 'attributes': {'role': 'rep', 'store_id': 'S2'}},
    {'external_id': 'E003', 'display_name': 'Cy Park', 'attributes': {'role': 'manager', 'store_id': 'S1'}},
]

# E001: 100 + 50 = 150, E002: 0 + 20 = 20, E003: 200 + 100 = 300
DEFAULT_ROWS = [
    {'data_type': 'Sales_Performance', 'entity': 'E001', 'row_data': {'attainment': 100, 'revenue': 1000}},
    {'data_type': 'Sales_Performance', 'entity': None, 'row_data': {'entityId': 'E002', 'attainment': 70, 'revenue': '400'}},
    {'data_type': 'Sales_Performance', 'entity': 'E003', 'row_data': {'attainment': 125, 'revenue': 2000}},
    {'data_type': 'Store Totals', 'entity': None, 'row_data': {'storeId': 'S1', 'store_sales': 50000}},
    {'data_type': 'Store Totals', 'entity': None, 'row_data': {'storeId': 'S2', 'store_sales': 30000}},
]


@pytest.fixture
def app():
    """Application with an in-memory database"""
    app = create_app(TestConfig)
    ctx = app.app_context()
    ctx.push()
    yield app
    db.session.remove()
    db.drop_all()
    ctx.pop()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_scenario(app):
    """
    Factory seeding a tenant, period, entities, committed rows and a rule set.

    Rows reference entities by external id ('entity': 'E001') or are
    group-level ('entity': None).
    """
    def _make(variants=None, derivations=None, entities=None, rows=None,
              settings=None, attainment=None, assign=None):
        tenant = Tenant(name='Acme Retail', settings=settings or {})
        db.session.add(tenant)
        db.session.flush()

        period = Period(
            tenant_id=tenant.id,
            canonical_key='2025-01',
            start_date=date(2025, 1, 1),
            end_date=date(2025, 1, 31),
        )
        db.session.add(period)

        bindings = {'metric_derivations': DEFAULT_DERIVATIONS if derivations is None else derivations}
        if attainment:
            bindings['attainment'] = attainment
        rule_set = RuleSet(
            tenant_id=tenant.id,
            name='Retail Sales Plan',
            variants=DEFAULT_VARIANTS if variants is None else variants,
            input_bindings=bindings,
        )
        db.session.add(rule_set)
        db.session.flush()

        by_external = {}
        for seed in DEFAULT_ENTITIES if entities is None else entities:
            entity = Entity(
                tenant_id=tenant.id,
                external_id=seed['external_id'],
                display_name=seed.get('display_name'),
                attributes=seed.get('attributes', {}),
                is_active=seed.get('is_active', True),
            )
            db.session.add(entity)
            db.session.flush()
            by_external[entity.external_id] = entity

        assigned = list(by_external) if assign is None else assign
        for external_id in assigned:
            db.session.add(RuleSetAssignment(
                tenant_id=tenant.id,
                entity_id=by_external[external_id].id,
                rule_set_id=rule_set.id,
            ))

        for seed in DEFAULT_ROWS if rows is None else rows:
            entity = by_external.get(seed['entity']) if seed.get('entity') else None
            db.session.add(CommittedDataRow(
                tenant_id=tenant.id,
                period_id=period.id,
                data_type=seed['data_type'],
                entity_id=entity.id if entity else None,
                row_data=seed['row_data'],
                import_batch_ref='import-001',
            ))

        db.session.commit()
        return SimpleNamespace(
            tenant=tenant,
            period=period,
            rule_set=rule_set,
            entities=by_external,
            ids=(tenant.id, period.id, rule_set.id),
        )

    return _make
