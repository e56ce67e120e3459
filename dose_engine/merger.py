"""
Recalculation merger: fresh doses reconciled with the user's prior edits
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .adjustments import ClinicalAdjustmentPipeline
from .formula import DoseFormulaResolver, round_dose
from .limits import NOT_EXCEEDED, DoseLimitAdvisor
from .schema import CumulativeDose, DoseAlert, DrugDefinition, PatientParameters, Regimen
from .state import EditableDoseState

logger = logging.getLogger(__name__)

@dataclass
class FreshDose:
    calculated_dose: float
    dose_alert: Optional[DoseAlert]

class RecalculationMerger:
    """Builds the new state list for a regimen, keeping edits for surviving drugs"""

    def __init__(
        self,
        resolver: Optional[DoseFormulaResolver] = None,
        pipeline: Optional[ClinicalAdjustmentPipeline] = None,
        advisor: Optional[DoseLimitAdvisor] = None
    ):
        self.resolver = resolver or DoseFormulaResolver()
        self.pipeline = pipeline or ClinicalAdjustmentPipeline()
        self.advisor = advisor or DoseLimitAdvisor()

    def compute(self, drug: DrugDefinition, patient: PatientParameters, schedule: Optional[str]) -> FreshDose:
        """
        Fresh calculated dose and alert for one drug.

        A failure in the formula or adjustments yields 0 mg with no alert; a
        failing limit advisor yields the dose with no alert.
        """
        try:
            raw_dose = self.resolver.resolve(
                drug,
                patient.effective_bsa,
                patient.weight,
                patient.creatinine_clearance
            )
            calculated_dose = self.pipeline.apply(drug, raw_dose, patient).adjusted_dose
        except Exception as e:
            logger.error(f"Error calculating dose for {getattr(drug, 'name', 'unknown')}: {e}")
            return FreshDose(calculated_dose=0.0, dose_alert=None)

        try:
            alert = self.advisor.check(drug.name, calculated_dose, schedule) or NOT_EXCEEDED
        except Exception as e:
            logger.warning(f"Dose limit check failed for {drug.name}, treating as no alert: {e}")
            alert = NOT_EXCEEDED

        return FreshDose(
            calculated_dose=calculated_dose,
            dose_alert=alert if alert.is_exceeded else None
        )

    def check_preparation(self, state: EditableDoseState) -> Optional[str]:
        """Preparation alert for the final dose in the chosen volume and solvent"""
        try:
            return self.advisor.check_preparation(
                state.drug,
                state.final_dose,
                state.selected_volume,
                state.solvent or state.selected_solvent_type
            )
        except Exception as e:
            logger.warning(f"Preparation check failed for {state.name}, treating as no alert: {e}")
            return None

    def cumulative(self, state: EditableDoseState, cycles_completed: int, bsa: float) -> CumulativeDose:
        try:
            return self.advisor.check_cumulative(state.name, state.final_dose, cycles_completed, bsa)
        except Exception as e:
            logger.warning(f"Cumulative dose check failed for {state.name}: {e}")
            return CumulativeDose(
                drug_name=state.name,
                cumulative_dose=state.final_dose * cycles_completed,
                cycles_completed=cycles_completed
            )

    def merge(
        self,
        regimen: Regimen,
        patient: PatientParameters,
        previous: Sequence[EditableDoseState]
    ) -> List[EditableDoseState]:
        """Full re-run over every drug of the regimen, in catalog order"""
        previous_by_name: Dict[str, EditableDoseState] = {state.name: state for state in previous}
        merged: List[EditableDoseState] = []

        for drug in regimen.drugs:
            fresh = self.compute(drug, patient, regimen.schedule)
            existing = previous_by_name.get(drug.name)

            if existing is not None:
                state = self._carry_over(drug, existing, fresh)
            else:
                state = self._new_state(drug, fresh)
            state.preparation_alert = self.check_preparation(state)
            merged.append(state)

        dropped = set(previous_by_name) - {drug.name for drug in regimen.drugs}
        if dropped:
            logger.info(f"Dropped dose state for drugs no longer in regimen {regimen.id}: {sorted(dropped)}")

        return merged

    def _carry_over(self, drug: DrugDefinition, existing: EditableDoseState, fresh: FreshDose) -> EditableDoseState:
        return EditableDoseState(
            drug=drug,
            calculated_dose=fresh.calculated_dose,
            adjusted_dose=existing.adjusted_dose,
            final_dose=round_dose(existing.adjusted_dose),
            reduction_percentage=existing.reduction_percentage,
            selected=existing.selected,
            notes=existing.notes,
            administration_duration=existing.administration_duration or drug.administration_duration,
            solvent=existing.solvent,
            selected_solvent_type=existing.selected_solvent_type,
            selected_volume=existing.selected_volume,
            # A prior alert is kept even if the fresh result differs
            dose_alert=existing.dose_alert or fresh.dose_alert,
            last_edit=existing.last_edit
        )

    def _new_state(self, drug: DrugDefinition, fresh: FreshDose) -> EditableDoseState:
        first_solvent = drug.available_solvents[0] if drug.available_solvents else None
        return EditableDoseState(
            drug=drug,
            calculated_dose=fresh.calculated_dose,
            adjusted_dose=fresh.calculated_dose,
            final_dose=round_dose(fresh.calculated_dose),
            reduction_percentage=0.0,
            selected=True,
            notes="",
            administration_duration=drug.administration_duration,
            solvent=drug.solvent or first_solvent,
            selected_solvent_type=first_solvent,
            selected_volume=drug.available_volumes[0] if drug.available_volumes else None,
            dose_alert=fresh.dose_alert
        )
