#!/usr/bin/env python3
"""
Dose Calculation API
Provides REST endpoints for dose worksheets, edits and treatment data
"""

import logging
import threading
import uuid
from datetime import date
from typing import Any, Dict, Optional

from flask import Blueprint, jsonify, request
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException

from dose_engine.catalog import RegimenCatalog
from dose_engine.config import load_engine_config, resolve_config_path
from dose_engine.error_codes import DoseEngineError, ErrorCode, ErrorLogger
from dose_engine.formula import parse_flag, parse_float
from dose_engine.schema import Regimen
from services.dose_session import DoseCalculationSession, create_dose_session, create_draft_store
from services.draft_store import DraftPersistenceGateway

logger = logging.getLogger(__name__)
error_logger = ErrorLogger('dose_api')

dose_api = Blueprint('dose_api', __name__, url_prefix='/api/doses')

EDIT_OPERATIONS = {
    'adjusted_dose': 'set_adjusted_dose',
    'reduction_percentage': 'set_reduction_percentage',
    'selected': 'toggle_selected',
    'notes': 'set_notes',
    'administration_duration': 'set_administration_duration',
    'solvent': 'set_solvent',
    'solvent_type': 'set_solvent_type',
    'volume': 'set_volume'
}

NOT_FOUND_CODES = {ErrorCode.DOSE_UNKNOWN_DRUG, ErrorCode.APP_UNKNOWN_SESSION, ErrorCode.CAT_UNKNOWN_REGIMEN}


class SessionRegistry:
    """Live dose sessions sharing one draft store"""

    def __init__(self, config=None):
        self.config = config or load_engine_config()
        self.store = create_draft_store(self.config)
        self.catalog = RegimenCatalog.from_yaml(resolve_config_path(self.config.regimens_path, "regimens.yaml"))
        self._sessions: Dict[str, DoseCalculationSession] = {}
        self._lock = threading.Lock()

        # One-time normalization of drafts written by older versions
        DraftPersistenceGateway(self.store, key_prefix=self.config.persistence.key_prefix).migrate_all()

    def create(self) -> str:
        session_id = str(uuid.uuid4())
        session = create_dose_session(self.config, store=self.store)
        with self._lock:
            self._sessions[session_id] = session
        return session_id

    def get(self, session_id: str) -> DoseCalculationSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise DoseEngineError(
                error_code=ErrorCode.APP_UNKNOWN_SESSION,
                message=f"Dose session '{session_id}' not found",
                details={"session_id": session_id}
            )
        return session

    def close(self, session_id: str) -> None:
        session = self.get(session_id)
        session.flush()
        with self._lock:
            self._sessions.pop(session_id, None)

    def resolve_regimen(self, data: Dict[str, Any]) -> Optional[Regimen]:
        if data.get('regimen'):
            return Regimen.model_validate(data['regimen'])
        if data.get('regimen_id'):
            return self.catalog.get(data['regimen_id'])
        return None


registry: Optional[SessionRegistry] = None


def get_registry() -> SessionRegistry:
    global registry
    if registry is None:
        registry = SessionRegistry()
    return registry


def _error_response(error: DoseEngineError):
    status = 404 if error.error_code in NOT_FOUND_CODES else 400
    error_logger.log_error(error, level=logging.WARNING)
    return jsonify({'error': error.to_dict()}), status


def _patient_changes(patient_data: Dict[str, Any]) -> Dict[str, Any]:
    changes = {}
    for key in ('bsa', 'weight', 'height', 'age', 'creatinine_clearance', 'bsa_cap'):
        if key in patient_data:
            changes[key] = parse_float(patient_data[key])
    if 'sex' in patient_data:
        changes['sex'] = patient_data['sex'] or ''
    if 'use_bsa_cap' in patient_data:
        changes['use_bsa_cap'] = parse_flag(patient_data['use_bsa_cap'])
    return changes


@dose_api.errorhandler(DoseEngineError)
def handle_dose_engine_error(error: DoseEngineError):
    return _error_response(error)


@dose_api.errorhandler(ValidationError)
def handle_validation_error(error: ValidationError):
    logger.warning(f"Invalid request payload: {error}")
    return jsonify({'error': {
        'error_code': ErrorCode.APP_INVALID_REQUEST.value,
        'message': 'Invalid request payload',
        'details': error.errors(include_url=False, include_context=False)
    }}), 400


@dose_api.errorhandler(405)
def method_not_allowed(error):
    return jsonify({'error': 'Method not allowed'}), 405


@dose_api.errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.error(f"Unhandled error in dose API: {error}", exc_info=True)
    return jsonify({'error': {
        'error_code': ErrorCode.APP_INTERNAL_ERROR.value,
        'message': 'Internal server error'
    }}), 500


@dose_api.route('/regimens', methods=['GET'])
def list_regimens():
    catalog = get_registry().catalog
    return jsonify({'regimens': [
        {'id': regimen_id, 'name': catalog.get(regimen_id).name, 'schedule': catalog.get(regimen_id).schedule}
        for regimen_id in catalog.ids()
    ]})


@dose_api.route('/sessions', methods=['POST'])
def create_session():
    """
    Start a dose worksheet

    Request JSON:
    {
        "regimen_id": "00280a",
        "patient_params": {"bsa": 1.8, "weight": 70, "age": 60, "creatinine_clearance": 50},
        "biomarker_status": {"EGFR": "wild-type"},
        "current_medications": ["Warfarin"]
    }
    """
    data = request.get_json(silent=True) or {}
    reg = get_registry()

    regimen = reg.resolve_regimen(data)
    session_id = reg.create()
    session = reg.get(session_id)

    try:
        changes = _patient_changes(data.get('patient_params', {}))
        if changes:
            session.update_patient(**changes)
        if data.get('biomarker_status'):
            session.set_biomarker_status(data['biomarker_status'])
        if data.get('current_medications'):
            session.set_current_medications(data['current_medications'])
        session.load_regimen(regimen)
    except Exception:
        reg.close(session_id)
        raise

    logger.info(f"Dose session {session_id} created for regimen {regimen.id if regimen else None}")
    return jsonify({'session_id': session_id, 'state': session.snapshot()}), 201


@dose_api.route('/sessions/<session_id>', methods=['GET'])
def get_session(session_id: str):
    return jsonify(get_registry().get(session_id).snapshot())


@dose_api.route('/sessions/<session_id>', methods=['DELETE'])
def close_session(session_id: str):
    get_registry().close(session_id)
    return jsonify({'closed': session_id})


@dose_api.route('/sessions/<session_id>/regimen', methods=['PUT'])
def change_regimen(session_id: str):
    data = request.get_json(silent=True) or {}
    reg = get_registry()
    session = reg.get(session_id)
    session.load_regimen(reg.resolve_regimen(data))
    return jsonify(session.snapshot())


@dose_api.route('/sessions/<session_id>/patient', methods=['PATCH'])
def update_patient(session_id: str):
    data = request.get_json(silent=True) or {}
    session = get_registry().get(session_id)

    changes = _patient_changes(data)
    if changes:
        session.update_patient(**changes)
    if 'biomarker_status' in data:
        session.set_biomarker_status(data['biomarker_status'] or {})
    if 'current_medications' in data:
        session.set_current_medications(data['current_medications'] or [])
    return jsonify(session.snapshot())


@dose_api.route('/sessions/<session_id>/details', methods=['PATCH'])
def update_details(session_id: str):
    data = dict(request.get_json(silent=True) or {})
    session = get_registry().get(session_id)

    for key in ('treatment_date', 'next_cycle_date'):
        if data.get(key):
            try:
                data[key] = date.fromisoformat(str(data[key])[:10])
            except ValueError:
                raise DoseEngineError(
                    ErrorCode.APP_INVALID_REQUEST,
                    f"{key} must be an ISO date",
                    details={key: data[key]}
                )
        elif key in data:
            data[key] = None

    session.update_details(**data)
    return jsonify(session.snapshot())


@dose_api.route('/sessions/<session_id>/drugs/<drug_name>', methods=['PATCH'])
def edit_drug(session_id: str, drug_name: str):
    """
    Apply manual edits to one drug

    Request JSON (any subset):
    {"adjusted_dose": "95", "notes": "reduced for neuropathy", "selected": false}
    """
    data = request.get_json(silent=True) or {}
    if not data:
        raise DoseEngineError(ErrorCode.APP_MISSING_PARAMETER, "No edit fields provided")

    unknown = set(data) - set(EDIT_OPERATIONS)
    if unknown:
        raise DoseEngineError(
            ErrorCode.APP_INVALID_REQUEST,
            f"Unknown edit fields: {sorted(unknown)}",
            details={"allowed": sorted(EDIT_OPERATIONS)}
        )

    session = get_registry().get(session_id)
    for field_name, value in data.items():
        getattr(session, EDIT_OPERATIONS[field_name])(drug_name, value)
    return jsonify(session.snapshot())


@dose_api.route('/sessions/<session_id>/treatment-data', methods=['GET'])
def treatment_data(session_id: str):
    session = get_registry().get(session_id)
    data = session.treatment_data()
    return jsonify({
        'treatment_data': data.model_dump(mode='json'),
        'export_blockers': session.export_blockers()
    })


@dose_api.route('/sessions/<session_id>/cumulative-doses', methods=['GET'])
def cumulative_doses(session_id: str):
    """Cumulative dose per selected drug; ?cycles=N overrides the current cycle number"""
    cycles = request.args.get('cycles')
    cycles_completed = None
    if cycles is not None:
        try:
            cycles_completed = int(cycles)
        except ValueError:
            cycles_completed = 0
        if cycles_completed < 1:
            raise DoseEngineError(
                ErrorCode.APP_INVALID_REQUEST,
                "cycles must be a positive integer",
                details={"cycles": cycles}
            )

    session = get_registry().get(session_id)
    return jsonify({
        'cumulative_doses': [entry.to_dict() for entry in session.cumulative_doses(cycles_completed)]
    })
