"""
Clinical adjustment pipeline applied to the raw formula dose
"""

import logging
from typing import List, Optional

from .config import AdjustmentRules
from .schema import AppliedAdjustment, DoseComputation, DrugDefinition, PatientParameters

logger = logging.getLogger(__name__)

class ClinicalAdjustmentPipeline:
    """Applies ordered multiplicative adjustments before limit checking"""

    def __init__(self, rules: Optional[AdjustmentRules] = None):
        self.rules = rules or AdjustmentRules()

    def apply(
        self,
        drug: DrugDefinition,
        raw_dose: float,
        patient: PatientParameters
    ) -> DoseComputation:
        """Return the adjusted dose together with the rules that fired"""
        applied: List[AppliedAdjustment] = []

        # Fixed evaluation order: renal, then age
        renal = self._renal_factor(drug, patient)
        if renal is not None:
            applied.append(renal)

        age = self._age_factor(drug, patient)
        if age is not None:
            applied.append(age)

        adjusted_dose = raw_dose
        for adjustment in applied:
            adjusted_dose *= adjustment.factor
            logger.debug(
                f"{drug.name}: {adjustment.rule} adjustment x{adjustment.factor} "
                f"({raw_dose:.2f} -> {adjusted_dose:.2f} mg)"
            )

        return DoseComputation(
            drug_name=drug.name,
            raw_dose=raw_dose,
            adjusted_dose=adjusted_dose,
            adjustments=applied
        )

    def _renal_factor(self, drug: DrugDefinition, patient: PatientParameters) -> Optional[AppliedAdjustment]:
        # Calvert dosing already encodes renal function
        if drug.name in self.rules.renal_exempt_drugs:
            return None

        if drug.name == self.rules.renal_drug and patient.creatinine_clearance < self.rules.renal_crcl_threshold:
            return AppliedAdjustment(rule="renal", factor=self.rules.renal_factor)
        return None

    def _age_factor(self, drug: DrugDefinition, patient: PatientParameters) -> Optional[AppliedAdjustment]:
        drug_class = drug.drug_class.value if drug.drug_class else None
        if patient.age >= self.rules.age_threshold and drug_class == self.rules.age_drug_class:
            return AppliedAdjustment(rule="age", factor=self.rules.age_factor)
        return None
