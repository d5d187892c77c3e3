# -*- coding: utf-8 -*-
"""
Incentra - API routes

  GET  /api/health
  POST /api/calculation/run              run a plan for a period
  POST /api/batches/<id>/transition      lifecycle change
  GET  /api/batches                      batches visible to a role
  GET  /api/batches/<id>                 batch detail, allowed transitions, audit trail
  GET  /api/batches/<id>/results         per-entity results
  GET  /api/batches/<id>/export          payroll file (csv | xlsx)

All calculations go through calculation_service, all state changes
through lifecycle_service.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from flask import Blueprint, Response, jsonify, request
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from config import APP_CONFIG
from app.errors import (
    CalculationEngineError, ConcurrentTransitionError, ConfigurationError, NotFoundError,
    PersistenceError, TransitionError, VisibilityError,
)
from app.modules.lifecycle import coerce_state
from app.modules.values import decimal_to_float
from app.services.calculation_service import calculation_service
from app.services.lifecycle_service import lifecycle_service
from app.services.query_service import query_service

api_bp = Blueprint('api', __name__)
logger = logging.getLogger(__name__)

EXPORT_MIMETYPES = {
    'csv': 'text/csv',
    'xlsx': 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
}


# ============================================================================
# REQUEST MODELS
# ============================================================================

class ActorInput(BaseModel):
    id: str = Field(..., min_length=1)
    role: Optional[str] = None


class RunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(..., alias='tenantId', min_length=1)
    period_id: str = Field(..., alias='periodId', min_length=1)
    rule_set_id: str = Field(..., alias='ruleSetId', min_length=1)
    actor: Optional[ActorInput] = None
    new_batch: bool = Field(default=False, alias='newBatch')


class TransitionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    to_state: str = Field(..., alias='toState')
    actor: ActorInput
    details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('to_state')
    @classmethod
    def known_state(cls, value):
        try:
            return coerce_state(value).value
        except TransitionError:
            raise ValueError(f"unknown lifecycle state '{value}'")


# ============================================================================
# ERROR MAPPING
# ============================================================================

ERROR_STATUS = (
    (ConcurrentTransitionError, 409),
    (TransitionError, 409),
    (VisibilityError, 403),
    (NotFoundError, 404),
    (ConfigurationError, 400),
    (PersistenceError, 500),
)


def _status_for(error: CalculationEngineError) -> int:
    for error_class, status in ERROR_STATUS:
        if isinstance(error, error_class):
            return status
    return 400


@api_bp.errorhandler(CalculationEngineError)
def handle_engine_error(error):
    status = _status_for(error)
    payload = {
        'status': 'error',
        'error': str(error),
        'error_type': type(error).__name__,
    }
    if isinstance(error, TransitionError):
        payload['allowed'] = error.allowed
    return jsonify(payload), status


@api_bp.errorhandler(ValidationError)
def handle_validation_error(error):
    return jsonify({
        'status': 'error',
        'error': 'Invalid request',
        'details': error.errors(include_url=False, include_context=False),
    }), 400


def _body() -> Dict[str, Any]:
    return request.get_json(silent=True) or {}


# ============================================================================
# ROUTES
# ============================================================================

@api_bp.route('/health', methods=['GET'])
def health():
    """Service status"""
    return jsonify({
        'status': 'ok',
        'app': APP_CONFIG['APP_NAME'],
        'version': APP_CONFIG['VERSION'],
        'timestamp': datetime.now().isoformat(),
    })


@api_bp.route('/calculation/run', methods=['POST'])
def run_calculation():
    """
    Run a plan for a period

    Body: {tenantId, periodId, ruleSetId, actor?: {id, role}, newBatch?}
    """
    payload = RunRequest.model_validate(_body())
    result = calculation_service.run_calculation(
        payload.tenant_id,
        payload.period_id,
        payload.rule_set_id,
        actor=payload.actor.id if payload.actor else None,
        new_batch=payload.new_batch,
    )
    if result['success']:
        return jsonify(result)

    status = {
        'NotFoundError': 404,
        'ConfigurationError': 400,
        'ConcurrentTransitionError': 409,
        'PersistenceError': 500,
    }.get(result.get('error_type'), 400)
    return jsonify(result), status


@api_bp.route('/batches/<batch_id>/transition', methods=['POST'])
def transition_batch(batch_id):
    """Body: {toState, actor: {id, role}, details?}"""
    payload = TransitionRequest.model_validate(_body())
    batch = lifecycle_service.transition(
        batch_id,
        payload.to_state,
        payload.actor.model_dump(),
        payload.details,
    )
    return jsonify({'status': 'ok', 'batch': lifecycle_service.describe(batch)})


@api_bp.route('/batches', methods=['GET'])
def list_batches():
    """?tenantId=&role=&periodId=&ruleSetId=&includeSuperseded="""
    tenant_id = request.args.get('tenantId')
    if not tenant_id:
        return jsonify({'status': 'error', 'error': 'tenantId is required'}), 400

    batches = query_service.list_batches(
        tenant_id,
        request.args.get('role'),
        period_id=request.args.get('periodId'),
        rule_set_id=request.args.get('ruleSetId'),
        include_superseded=request.args.get('includeSuperseded', '').lower() in ('1', 'true', 'yes'),
    )
    return jsonify({'status': 'ok', 'batches': [b.to_dict() for b in batches]})


@api_bp.route('/batches/<batch_id>', methods=['GET'])
def get_batch(batch_id):
    batch = query_service.get_visible_batch(batch_id, request.args.get('role'))
    return jsonify({'status': 'ok', 'batch': lifecycle_service.describe(batch)})


@api_bp.route('/batches/<batch_id>/results', methods=['GET'])
def get_results(batch_id):
    results = query_service.get_results(batch_id, request.args.get('role'))
    return jsonify({
        'status': 'ok',
        'batchId': batch_id,
        'results': decimal_to_float([r.to_dict() for r in results]),
    })


@api_bp.route('/batches/<batch_id>/export', methods=['GET'])
def export_batch(batch_id):
    fmt = request.args.get('format', 'csv').lower()
    if fmt not in EXPORT_MIMETYPES:
        return jsonify({'status': 'error', 'error': f"Unsupported format '{fmt}'"}), 400

    content, filename = query_service.export(batch_id, request.args.get('role'), fmt)
    return Response(
        content,
        mimetype=EXPORT_MIMETYPES[fmt],
        headers={'Content-Disposition': f'attachment; filename={filename}'},
    )
