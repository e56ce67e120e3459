#!/usr/bin/env python3
"""
Dose Calculation Session
Holds one clinician's working state for a regimen: recomputes doses when any
trigger input changes, applies manual edits, and keeps the draft persisted.
"""

import logging
import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from dose_engine.adjustments import ClinicalAdjustmentPipeline
from dose_engine.assembler import TreatmentDataAssembler, validate_cycle_number
from dose_engine.config import EngineConfig, load_engine_config, resolve_config_path
from dose_engine.error_codes import DoseEngineError, ErrorCode
from dose_engine.formula import parse_flag
from dose_engine.identifiers import sanitize_identifier, validate_identifier
from dose_engine.limits import DoseLimitAdvisor, SafetyEngine, TableDoseLimitAdvisor, run_safety_check
from dose_engine.merger import RecalculationMerger
from dose_engine.schema import CumulativeDose, PatientParameters, Regimen, TreatmentData
from dose_engine.state import DoseWorksheet, EditableDoseState
from services.draft_store import (DraftDetails, DraftPersistenceGateway, DraftStore,
                                  DuckDBDraftStore, InMemoryDraftStore)

logger = logging.getLogger(__name__)

PATIENT_TRIGGER_FIELDS = ('bsa', 'weight', 'creatinine_clearance', 'age', 'use_bsa_cap', 'bsa_cap')
DETAIL_FIELDS = (
    'full_name', 'patient_identifier', 'observation_number', 'cycle_number',
    'treatment_date', 'next_cycle_date', 'clinical_notes',
    'selected_premedications', 'selected_antiemetics'
)

class DoseCalculationSession:
    """Single-session dose worksheet with state-preserving recomputation"""

    def __init__(
        self,
        merger: Optional[RecalculationMerger] = None,
        gateway: Optional[DraftPersistenceGateway] = None,
        assembler: Optional[TreatmentDataAssembler] = None,
        safety_engine: Optional[SafetyEngine] = None,
        patient: Optional[PatientParameters] = None
    ):
        self.merger = merger or RecalculationMerger()
        self.gateway = gateway or DraftPersistenceGateway()
        self.assembler = assembler or TreatmentDataAssembler()
        self.safety_engine = safety_engine

        self.regimen: Optional[Regimen] = None
        self.patient = patient or PatientParameters()
        self.biomarker_status: Dict[str, str] = {}
        self.current_medications: List[str] = []
        self.details = DraftDetails()
        self.worksheet = DoseWorksheet(preparation_check=self.merger.check_preparation)
        self.safety_alerts: List[Dict[str, Any]] = []

        self._lock = threading.RLock()
        self._last_trigger: Optional[Tuple] = None

    # Recomputation

    def trigger_key(self) -> Tuple:
        """Inputs whose change forces a full recomputation"""
        return (
            (self.regimen.id if self.regimen else None,)
            + tuple(getattr(self.patient, name) for name in PATIENT_TRIGGER_FIELDS)
            + (tuple(sorted(self.biomarker_status.items())),)
        )

    def recalculate(self) -> List[EditableDoseState]:
        """Full re-run over every drug, merged with the current edits"""
        with self._lock:
            self._last_trigger = self.trigger_key()

            if self.regimen is None or self.patient.bsa <= 0:
                self.worksheet.clear()
                self.safety_alerts = []
                return []

            states = self.merger.merge(self.regimen, self.patient, self.worksheet.states)
            self.worksheet.replace(states, self.regimen.id)
            self.safety_alerts = run_safety_check(
                self.safety_engine,
                self.regimen,
                self.patient,
                {state.name: state.calculated_dose for state in states},
                self.biomarker_status,
                self.current_medications
            )
            self._schedule_persist()
            return self.worksheet.states

    def _recalculate_if_triggered(self) -> None:
        if self.trigger_key() != self._last_trigger:
            self.recalculate()

    def load_regimen(self, regimen: Optional[Regimen]) -> List[EditableDoseState]:
        """
        Switch the active regimen.

        The identifier is cleared on every switch. A stored draft for the new
        regimen replaces the worksheet; without one the worksheet starts empty.
        """
        with self._lock:
            previous_id = self.regimen.id if self.regimen else None
            new_id = regimen.id if regimen else None

            if new_id != previous_id:
                # Land the previous regimen's pending draft before reading the next
                self.gateway.flush()
                self.details.patient_identifier = ""
                self.worksheet.clear()
                if regimen is not None:
                    self._restore_draft(regimen)

            self.regimen = regimen
            return self.recalculate()

    def _restore_draft(self, regimen: Regimen) -> None:
        restored = self.gateway.read(regimen.id)
        if restored is None:
            return

        self.details = restored.details
        self.worksheet.replace(restored.states, regimen.id)

        cap_changes = {}
        if restored.use_bsa_cap is not None:
            cap_changes['use_bsa_cap'] = restored.use_bsa_cap
        if restored.bsa_cap is not None and restored.bsa_cap > 0:
            cap_changes['bsa_cap'] = restored.bsa_cap
        if cap_changes:
            self.patient = replace(self.patient, **cap_changes)

    def update_patient(self, **changes: Any) -> List[EditableDoseState]:
        """Update patient parameters; recomputes only when a trigger input changed"""
        with self._lock:
            unknown = set(changes) - set(PatientParameters.__dataclass_fields__)
            if unknown:
                raise DoseEngineError(
                    error_code=ErrorCode.APP_INVALID_REQUEST,
                    message=f"Unknown patient parameters: {sorted(unknown)}",
                    details={"fields": sorted(unknown)}
                )
            self.patient = replace(self.patient, **changes)

            if self.trigger_key() != self._last_trigger:
                self.recalculate()
            else:
                self._schedule_persist()
            return self.worksheet.states

    def set_bsa_cap(self, enabled: bool, cap: Optional[float] = None) -> List[EditableDoseState]:
        changes: Dict[str, Any] = {'use_bsa_cap': parse_flag(enabled)}
        if cap is not None:
            changes['bsa_cap'] = float(cap)
        return self.update_patient(**changes)

    def set_biomarker_status(self, status: Dict[str, str]) -> List[EditableDoseState]:
        with self._lock:
            self.biomarker_status = dict(status or {})
            self._recalculate_if_triggered()
            return self.worksheet.states

    def set_current_medications(self, medications: List[str]) -> None:
        with self._lock:
            self.current_medications = list(medications or [])
            if self.regimen is not None and len(self.worksheet):
                self.safety_alerts = run_safety_check(
                    self.safety_engine,
                    self.regimen,
                    self.patient,
                    {state.name: state.calculated_dose for state in self.worksheet},
                    self.biomarker_status,
                    self.current_medications
                )

    # Manual edits

    def _edit(self, operation: str, drug_name: str, value: Any) -> EditableDoseState:
        with self._lock:
            state = getattr(self.worksheet, operation)(drug_name, value)
            self._schedule_persist()
            return state

    def set_adjusted_dose(self, drug_name: str, raw: Any) -> EditableDoseState:
        return self._edit('set_adjusted_dose', drug_name, raw)

    def set_reduction_percentage(self, drug_name: str, raw: Any) -> EditableDoseState:
        return self._edit('set_reduction_percentage', drug_name, raw)

    def toggle_selected(self, drug_name: str, selected: bool) -> EditableDoseState:
        return self._edit('toggle_selected', drug_name, selected)

    def set_notes(self, drug_name: str, notes: str) -> EditableDoseState:
        return self._edit('set_notes', drug_name, notes)

    def set_administration_duration(self, drug_name: str, duration: Optional[str]) -> EditableDoseState:
        return self._edit('set_administration_duration', drug_name, duration)

    def set_solvent(self, drug_name: str, solvent: Optional[str]) -> EditableDoseState:
        return self._edit('set_solvent', drug_name, solvent)

    def set_solvent_type(self, drug_name: str, solvent_type: Optional[str]) -> EditableDoseState:
        return self._edit('set_solvent_type', drug_name, solvent_type)

    def set_volume(self, drug_name: str, volume: Optional[float]) -> EditableDoseState:
        return self._edit('set_volume', drug_name, volume)

    def update_details(self, **fields: Any) -> DraftDetails:
        """Update form fields around the doses (names in DETAIL_FIELDS)"""
        with self._lock:
            unknown = set(fields) - set(DETAIL_FIELDS)
            if unknown:
                raise DoseEngineError(
                    error_code=ErrorCode.APP_INVALID_REQUEST,
                    message=f"Unknown detail fields: {sorted(unknown)}",
                    details={"fields": sorted(unknown)}
                )
            if 'patient_identifier' in fields:
                fields['patient_identifier'] = sanitize_identifier(fields['patient_identifier'])
            self.details = replace(self.details, **fields)
            self._schedule_persist()
            return self.details

    # Persistence and output

    def _schedule_persist(self) -> None:
        if self.regimen is None:
            return
        self.gateway.schedule_write(self.regimen.id, self.details, self.patient, self.worksheet.states)

    def flush(self) -> None:
        """Write any pending draft immediately"""
        self.gateway.flush()

    def treatment_data(self) -> TreatmentData:
        with self._lock:
            if self.regimen is None:
                raise DoseEngineError(
                    error_code=ErrorCode.DOSE_NO_REGIMEN,
                    message="No regimen selected",
                    details={"suggested_action": "Select a regimen before generating the treatment sheet"}
                )
            return self.assembler.assemble(
                self.regimen,
                self.patient,
                self.worksheet.states,
                self.details.as_treatment_details()
            )

    def cumulative_doses(self, cycles_completed: Optional[int] = None) -> List[CumulativeDose]:
        """
        Cumulative final dose of each selected drug.

        Without an explicit count the current cycle number is used, so the
        result covers every cycle through the one being prepared.
        """
        with self._lock:
            if cycles_completed is None:
                try:
                    cycles_completed = max(int(self.details.cycle_number), 1)
                except (TypeError, ValueError):
                    cycles_completed = 1
            return [
                self.merger.cumulative(state, cycles_completed, self.patient.bsa)
                for state in self.worksheet.selected_states()
            ]

    def export_blockers(self) -> List[str]:
        with self._lock:
            return self.worksheet.export_blockers()

    def snapshot(self) -> Dict[str, Any]:
        """Current working state for display"""
        with self._lock:
            calculations = []
            for state in self.worksheet:
                entry = state.to_dict()
                entry['total_reduction_percent'] = state.total_reduction_percent
                calculations.append(entry)

            return {
                'regimen_id': self.regimen.id if self.regimen else None,
                'patient': self.patient.to_dict(),
                'effective_bsa': self.patient.effective_bsa,
                'details': {
                    'full_name': self.details.full_name,
                    'patient_identifier': self.details.patient_identifier,
                    'observation_number': self.details.observation_number,
                    'cycle_number': self.details.cycle_number,
                    'treatment_date': self.details.treatment_date.isoformat() if self.details.treatment_date else None,
                    'next_cycle_date': self.details.next_cycle_date.isoformat() if self.details.next_cycle_date else None,
                    'clinical_notes': self.details.clinical_notes,
                    'identifier_complete': validate_identifier(self.details.patient_identifier)[0],
                    'cycle_number_valid': validate_cycle_number(
                        self.details.cycle_number, self.regimen.cycles if self.regimen else None
                    )
                },
                'biomarker_status': dict(self.biomarker_status),
                'calculations': calculations,
                'safety_alerts': list(self.safety_alerts),
                'export_blockers': self.worksheet.export_blockers()
            }


def create_draft_store(config: EngineConfig) -> DraftStore:
    if config.persistence.duckdb_path:
        return DuckDBDraftStore(config.persistence.duckdb_path)
    return InMemoryDraftStore()


def create_dose_session(
    config: Optional[EngineConfig] = None,
    store: Optional[DraftStore] = None,
    advisor: Optional[DoseLimitAdvisor] = None,
    safety_engine: Optional[SafetyEngine] = None
) -> DoseCalculationSession:
    """Factory function to create a session wired from configuration"""
    config = config or load_engine_config()

    if advisor is None:
        advisor = TableDoseLimitAdvisor(resolve_config_path(config.drug_limits_path, "drug_limits.yaml"))

    merger = RecalculationMerger(
        pipeline=ClinicalAdjustmentPipeline(config.adjustments),
        advisor=advisor
    )
    gateway = DraftPersistenceGateway(
        store=store or create_draft_store(config),
        key_prefix=config.persistence.key_prefix,
        debounce_seconds=config.persistence.debounce_seconds
    )
    return DoseCalculationSession(
        merger=merger,
        gateway=gateway,
        assembler=TreatmentDataAssembler(config.allowed_solvents),
        safety_engine=safety_engine,
        patient=PatientParameters(bsa_cap=config.default_bsa_cap)
    )
