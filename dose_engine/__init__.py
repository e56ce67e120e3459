"""
Dose Engine
Chemotherapy dose calculation with state-preserving recalculation
"""

from .schema import DrugDefinition, Regimen, PatientParameters, DoseAlert, TreatmentData
from .formula import DoseFormulaResolver, round_dose
from .adjustments import ClinicalAdjustmentPipeline
from .limits import DoseLimitAdvisor, TableDoseLimitAdvisor
from .merger import RecalculationMerger
from .state import DoseEdit, DoseEditMode, DoseWorksheet, EditableDoseState, apply_dose_edit
from .assembler import TreatmentDataAssembler

__all__ = [
    'DrugDefinition', 'Regimen', 'PatientParameters', 'DoseAlert', 'TreatmentData',
    'DoseFormulaResolver', 'round_dose', 'ClinicalAdjustmentPipeline',
    'DoseLimitAdvisor', 'TableDoseLimitAdvisor', 'RecalculationMerger',
    'DoseEdit', 'DoseEditMode', 'DoseWorksheet', 'EditableDoseState', 'apply_dose_edit',
    'TreatmentDataAssembler'
]
