"""
Treatment document assembly from the finalized dose worksheet
"""

import logging
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

from .formula import round_dose
from .schema import CalculatedDrug, PatientInfo, PatientParameters, Regimen, TreatmentData
from .state import EditableDoseState

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_SOLVENTS = [
    "Normal Saline 0.9%",
    "Dextrose 5%",
    "Ringer Solution",
    "Water for Injection"
]

def format_dose(dose: float) -> str:
    return f"{round_dose(dose):.1f} mg"

def next_cycle_date(administration_date: date, schedule: str) -> date:
    """Next administration date implied by the regimen schedule (default two weeks)"""
    schedule = (schedule or "").lower()
    days_to_add = 14

    if "3 weeks" in schedule or "21 days" in schedule:
        days_to_add = 21
    elif "4 weeks" in schedule or "28 days" in schedule:
        days_to_add = 28
    elif "weekly" in schedule or "7 days" in schedule:
        days_to_add = 7

    return administration_date + timedelta(days=days_to_add)

def validate_cycle_number(cycle: Union[str, int, None], cycles: Union[str, int, None]) -> bool:
    """A cycle number is valid if positive and within the regimen's cycle count"""
    if cycle in (None, ""):
        return True
    try:
        cycle_number = int(cycle)
    except (TypeError, ValueError):
        return False
    if cycle_number < 1:
        return False

    if isinstance(cycles, int):
        return cycle_number <= cycles
    if isinstance(cycles, str) and "-" in cycles:
        parts = cycles.split("-")
        if len(parts) == 2:
            try:
                return cycle_number <= int(parts[1])
            except ValueError:
                return True
    return True

class TreatmentDataAssembler:
    """Pure projection of selected dose states into the exported document"""

    def __init__(self, allowed_solvents: Optional[List[str]] = None):
        self.allowed_solvents = list(allowed_solvents) if allowed_solvents is not None else list(DEFAULT_ALLOWED_SOLVENTS)

    def validate_solvent(self, solvent: Optional[str]) -> Optional[str]:
        if solvent is None:
            return None
        if solvent in self.allowed_solvents:
            return solvent
        logger.warning(f"Invalid solvent type detected: {solvent!r}, omitted from treatment data")
        return None

    def calculated_drugs(self, states: Iterable[EditableDoseState]) -> List[CalculatedDrug]:
        drugs = []
        for state in states:
            if not state.selected:
                continue
            drug = state.drug
            drugs.append(CalculatedDrug(
                name=drug.name,
                dosage=drug.dosage,
                unit=drug.unit,
                route=drug.route,
                day=drug.day,
                drug_class=drug.drug_class.value if drug.drug_class else None,
                dilution=drug.dilution,
                calculated_dose=format_dose(state.calculated_dose),
                final_dose=format_dose(state.final_dose),
                adjustment_notes=state.notes,
                preparation_instructions=drug.dilution,
                administration_duration=state.administration_duration or drug.administration_duration,
                solvent=self.validate_solvent(state.solvent or state.selected_solvent_type),
                selected_volume=state.selected_volume
            ))
        return drugs

    def assemble(
        self,
        regimen: Regimen,
        patient: PatientParameters,
        states: Iterable[EditableDoseState],
        details: Optional[Dict[str, Any]] = None
    ) -> TreatmentData:
        """
        Build the treatment document.

        `details` carries the form fields around the doses: patient_id,
        full_name, observation_number, cycle_number, treatment_date,
        next_cycle_date, clinical_notes, selected_premedications and
        selected_antiemetics.
        """
        details = details or {}
        treatment_date = details.get('treatment_date')
        next_date = details.get('next_cycle_date')
        if next_date is None and treatment_date is not None:
            next_date = next_cycle_date(treatment_date, regimen.schedule)

        try:
            cycle_number = int(details.get('cycle_number') or 1)
        except (TypeError, ValueError):
            cycle_number = 1

        patient_info = PatientInfo(
            patient_id=details.get('patient_id', ''),
            full_name=details.get('full_name', ''),
            observation_number=details.get('observation_number', ''),
            weight=patient.weight,
            height=patient.height,
            age=patient.age,
            sex=patient.sex,
            bsa=patient.effective_bsa,
            creatinine_clearance=patient.creatinine_clearance,
            cycle_number=cycle_number,
            treatment_date=treatment_date,
            next_cycle_date=next_date
        )

        return TreatmentData(
            patient=patient_info,
            regimen=regimen,
            calculated_drugs=self.calculated_drugs(states),
            bsa_cap_enabled=patient.use_bsa_cap,
            effective_bsa=patient.effective_bsa,
            clinical_notes=details.get('clinical_notes', ''),
            premedications=list(details.get('selected_premedications') or []),
            antiemetics=list(details.get('selected_antiemetics') or [])
        )
