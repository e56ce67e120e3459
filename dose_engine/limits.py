"""
Collaborator contracts for dose-limit and safety evaluation, with defaults
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .preparation import validate_concentration, validate_solvent_compatibility
from .schema import CumulativeDose, DoseAlert, DrugDefinition, PatientParameters, Regimen

logger = logging.getLogger(__name__)

NOT_EXCEEDED = DoseAlert(is_exceeded=False)

class DoseLimitAdvisor:
    """Flags doses above a per-cycle limit. The base advisor knows no limits."""

    def check(self, drug_name: str, dose: float, schedule: Optional[str] = None) -> DoseAlert:
        return NOT_EXCEEDED

    def concentration_rule(self, drug_name: str) -> Optional[Dict[str, Any]]:
        return None

    def solvent_restriction(self, drug_name: str) -> Optional[str]:
        return None

    def check_preparation(
        self,
        drug: DrugDefinition,
        dose: float,
        volume: Optional[float],
        solvent: Optional[str]
    ) -> Optional[str]:
        """Concentration alert first, then solvent compatibility; None when both pass"""
        alert = validate_concentration(drug.name, dose, volume, self.concentration_rule(drug.name))
        if alert is None:
            alert = validate_solvent_compatibility(drug, solvent, self.solvent_restriction(drug.name))
        return alert

    def check_cumulative(
        self,
        drug_name: str,
        dose_per_cycle: float,
        cycles_completed: int,
        bsa: float = 0.0
    ) -> CumulativeDose:
        return CumulativeDose(
            drug_name=drug_name,
            cumulative_dose=dose_per_cycle * cycles_completed,
            cycles_completed=cycles_completed
        )

class TableDoseLimitAdvisor(DoseLimitAdvisor):
    """Dose-limit advisor backed by config/drug_limits.yaml"""

    def __init__(self, limits_path: Optional[Path] = None, limits: Optional[Dict[str, Dict[str, Any]]] = None):
        if limits is not None:
            self.limits = limits
        else:
            self.limits = self._load_limits(limits_path)

    def _load_limits(self, limits_path: Optional[Path]) -> Dict[str, Dict[str, Any]]:
        if limits_path is None or not Path(limits_path).exists():
            logger.warning(f"Drug limits file {limits_path} not found, dose limits disabled")
            return {}
        try:
            with open(limits_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
            limits = data.get('limits', {})
            logger.info(f"Loaded dose limits for {len(limits)} drugs")
            return limits
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load drug limits from {limits_path}: {e}")
            return {}

    def check(self, drug_name: str, dose: float, schedule: Optional[str] = None) -> DoseAlert:
        limit = self.limits.get(drug_name)
        if not limit:
            return NOT_EXCEEDED

        max_dose = self._max_for_schedule(limit.get('max_per_cycle'), schedule)
        if max_dose is None:
            return NOT_EXCEEDED

        if dose > max_dose:
            unit = limit.get('unit', 'mg')
            return DoseAlert(
                is_exceeded=True,
                warning=f"Calculated {drug_name} dose ({dose:.1f} {unit}) exceeds the recommended limit of {max_dose} {unit}",
                suggested_action=limit.get('warnings') or "Verify the dose and consider a reduction or local guidelines"
            )
        return NOT_EXCEEDED

    def concentration_rule(self, drug_name: str) -> Optional[Dict[str, Any]]:
        return (self.limits.get(drug_name) or {}).get('concentration')

    def solvent_restriction(self, drug_name: str) -> Optional[str]:
        return (self.limits.get(drug_name) or {}).get('solvent_restriction')

    def check_cumulative(
        self,
        drug_name: str,
        dose_per_cycle: float,
        cycles_completed: int,
        bsa: float = 0.0
    ) -> CumulativeDose:
        """
        Cumulative dose in mg over the completed cycles.

        Limits given per m² are compared on the cumulative dose divided by
        the BSA; without a usable BSA such a limit is not evaluated.
        """
        result = super().check_cumulative(drug_name, dose_per_cycle, cycles_completed, bsa)
        limit = self.limits.get(drug_name) or {}
        max_cumulative = limit.get('max_cumulative')
        if max_cumulative is None:
            return result

        unit = limit.get('cumulative_unit', 'mg')
        if unit.endswith('/m²'):
            if bsa <= 0:
                return result
            exposure = result.cumulative_dose / bsa
        else:
            exposure = result.cumulative_dose

        result.limit = float(max_cumulative)
        result.unit = unit
        result.is_exceeded = exposure > max_cumulative
        if result.is_exceeded:
            result.warning = (f"Cumulative {drug_name} dose ({exposure:.1f} {unit}) "
                              f"exceeds the lifetime limit of {max_cumulative} {unit}")
        return result

    def _max_for_schedule(
        self,
        max_per_cycle: Union[None, float, Dict[str, float]],
        schedule: Optional[str]
    ) -> Optional[float]:
        if isinstance(max_per_cycle, (int, float)):
            return float(max_per_cycle)
        if isinstance(max_per_cycle, dict) and max_per_cycle and schedule:
            lowered = schedule.lower()
            if 'weekly' in lowered:
                key = 'weekly'
            elif 'q14d' in lowered:
                key = 'q14d'
            else:
                key = 'q3w'
            value = max_per_cycle.get(key)
            if value is None:
                value = next(iter(max_per_cycle.values()))
            return float(value)
        return None

class SafetyEngine:
    """
    Opaque comprehensive safety checker.

    Implementations return a list of alert dictionaries; the dose engine
    only stores and exposes them.
    """

    def perform_comprehensive_safety_check(
        self,
        regimen: Regimen,
        patient: PatientParameters,
        calculated_doses: Dict[str, float],
        biomarker_status: Dict[str, str],
        current_medications: List[str]
    ) -> List[Dict[str, Any]]:
        return []

def run_safety_check(
    engine: Optional[SafetyEngine],
    regimen: Regimen,
    patient: PatientParameters,
    calculated_doses: Dict[str, float],
    biomarker_status: Dict[str, str],
    current_medications: List[str]
) -> List[Dict[str, Any]]:
    """Call the safety engine, treating any failure as no alerts"""
    if engine is None:
        return []
    try:
        return list(engine.perform_comprehensive_safety_check(
            regimen, patient, calculated_doses, biomarker_status, current_medications
        ) or [])
    except Exception as e:
        logger.warning(f"Safety engine failed for regimen {regimen.id}, continuing without alerts: {e}")
        return []
