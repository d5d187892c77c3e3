# -*- coding: utf-8 -*-
"""
Incentra - System configuration
Incentive compensation calculation engine

Engine constants are kept here so that tenants and tests see the same
numbers the calculation services use.
"""

import os
from decimal import Decimal

# Base paths
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# =============================================================================
# APPLICATION
# =============================================================================
APP_CONFIG = {
    'VERSION': '1.0.0',
    'APP_NAME': 'Incentra',
    'APP_SUBTITLE': 'Incentive Compensation Calculation Engine',
}


# =============================================================================
# DATABASE
# =============================================================================
class Config:
    """Base Flask configuration"""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'incentra-dev-secret-key'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        f'sqlite:///{os.path.join(BASE_DIR, "incentra.db")}'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Worker threads used for the per-entity fan-out
    CALC_WORKERS = int(os.environ.get('CALC_WORKERS', '4'))

    LOG_FILE = os.environ.get('LOG_FILE')


class TestConfig(Config):
    """Configuration used by the test suite"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    CALC_WORKERS = 1
    LOG_FILE = None


# =============================================================================
# CALCULATION ENGINE
# =============================================================================
ENGINE_CONFIG = {
    # Payout precision (cents), applied to every component payout
    'PRECISION': Decimal('0.01'),

    # Fuzzy data_type matching: candidates must score strictly above this
    'FUZZY_MATCH_THRESHOLD': Decimal('0.2'),
    'MIN_TOKEN_LENGTH': 3,
    'STOP_WORDS': frozenset([
        'the', 'and', 'for', 'per', 'ins', 'cfg', 'q1', 'q2', 'q3', 'q4',
        '2024', '2025', '2026', 'plan', 'program', 'data', 'sheet',
    ]),

    # Batch summary
    'SUMMARY_TOP_N': 5,

    # Fields inside row_data that identify an entity (matched against external_id)
    'ENTITY_KEY_FIELDS': ('entityId', 'entity_id', 'employee_id'),

    # Group-level rows (entity_id = NULL) join through these row_data fields ...
    'GROUP_JOIN_FIELDS': ('storeId', 'store_id'),
    # ... against this entity attribute
    'GROUP_ATTRIBUTE': 'store_id',

    # Default fan-out when the Flask config does not set CALC_WORKERS
    'DEFAULT_WORKERS': 4,
}

# =============================================================================
# LIFECYCLE GOVERNANCE
# =============================================================================
LIFECYCLE_CONFIG = {
    'ROLE_ADMIN': 'admin',
    'ROLE_APPROVER': 'approver',

    # Capabilities granted to each role; unknown roles have none
    'ROLE_CAPABILITIES': {
        'admin': frozenset(['manage_rule_sets', 'approve_outcomes', 'view_all']),
        'approver': frozenset(['approve_outcomes']),
    },

    # Capability required per target state; anything not listed needs manage_rule_sets
    'TRANSITION_CAPABILITIES': {
        'APPROVED': 'approve_outcomes',
        'REJECTED': 'approve_outcomes',
    },
    'DEFAULT_CAPABILITY': 'manage_rule_sets',
}

# =============================================================================
# LOCALE
# =============================================================================
LOCALE_CONFIG = {
    'currency_symbol': '$',
    'currency_code': 'USD',
    'date_format': '%Y-%m-%d',
    'datetime_format': '%Y-%m-%d %H:%M:%S',
}

# =============================================================================
# LOGGING
# =============================================================================
LOGGING_CONFIG = {
    'level': os.environ.get('LOG_LEVEL', 'INFO'),
    'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    'date_format': '%Y-%m-%d %H:%M:%S',
    'max_bytes': 10485760,  # 10 MB
    'backup_count': 5,
}


def format_currency(amount, include_symbol: bool = True) -> str:
    """Format an amount with thousands separators and two decimals"""
    if isinstance(amount, (int, float)):
        amount = Decimal(str(amount))

    formatted = f"{amount:,.2f}"

    if include_symbol:
        return f"{LOCALE_CONFIG['currency_symbol']}{formatted}"
    return formatted


def format_date(date_obj) -> str:
    """Format a date with the configured pattern"""
    return date_obj.strftime(LOCALE_CONFIG['date_format'])
