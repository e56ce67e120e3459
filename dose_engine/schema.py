"""
Schemas for dose engine inputs and outputs
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

class DrugUnit(str, Enum):
    MG_PER_M2 = "mg/m²"
    MG_PER_KG = "mg/kg"
    AUC = "AUC"

class DrugClass(str, Enum):
    CHEMOTHERAPY = "chemotherapy"
    TARGETED = "targeted"
    IMMUNOTHERAPY = "immunotherapy"
    HORMONE = "hormone"
    SUPPORTIVE = "supportive"

class DrugDefinition(BaseModel):
    """Catalog entry for one drug of a regimen"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    dosage: str  # numeric string or "AUC <n>"
    unit: str = ""
    route: str = "IV"
    day: Optional[str] = None
    drug_class: Optional[DrugClass] = Field(None, alias="drugClass")
    administration_duration: Optional[str] = Field(None, alias="administrationDuration")
    dilution: Optional[str] = None
    available_solvents: List[str] = Field(default_factory=list, alias="availableSolvents")
    available_volumes: List[float] = Field(default_factory=list, alias="availableVolumes")
    solvent: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("dosage", mode="before")
    @classmethod
    def _dosage_as_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return str(value)
        return value

class Regimen(BaseModel):
    """Regimen as delivered by the catalog"""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    schedule: str = ""
    cycles: Optional[Union[int, str]] = None
    description: str = ""
    category: Optional[str] = None
    drugs: List[DrugDefinition]
    premedications: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("drugs")
    @classmethod
    def _unique_drug_names(cls, drugs: List[DrugDefinition]) -> List[DrugDefinition]:
        seen = set()
        for drug in drugs:
            if drug.name in seen:
                raise ValueError(f"Drug '{drug.name}' appears more than once in the regimen")
            seen.add(drug.name)
        return drugs

@dataclass
class PatientParameters:
    bsa: float = 0.0
    weight: float = 0.0
    height: float = 0.0
    age: float = 0.0
    sex: str = ""
    creatinine_clearance: float = 0.0
    use_bsa_cap: bool = False
    bsa_cap: float = 2.0

    @property
    def effective_bsa(self) -> float:
        """BSA with the cap applied when capping is enabled"""
        if self.use_bsa_cap:
            return min(self.bsa, self.bsa_cap)
        return self.bsa

    def to_dict(self) -> Dict[str, Any]:
        return {
            'bsa': self.bsa,
            'weight': self.weight,
            'height': self.height,
            'age': self.age,
            'sex': self.sex,
            'creatinine_clearance': self.creatinine_clearance,
            'use_bsa_cap': self.use_bsa_cap,
            'bsa_cap': self.bsa_cap
        }

@dataclass
class DoseAlert:
    """Result of a dose-limit check"""
    is_exceeded: bool
    warning: Optional[str] = None
    suggested_action: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_exceeded': self.is_exceeded,
            'warning': self.warning,
            'suggested_action': self.suggested_action
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['DoseAlert']:
        if not isinstance(data, dict):
            return None
        return cls(
            is_exceeded=data.get('is_exceeded', data.get('isExceeded')) is True,
            warning=data.get('warning'),
            suggested_action=data.get('suggested_action', data.get('suggestedAction'))
        )

@dataclass
class CumulativeDose:
    """Dose given over the completed cycles, against a lifetime limit when one is known"""
    drug_name: str
    cumulative_dose: float
    cycles_completed: int
    limit: Optional[float] = None
    unit: str = "mg"
    is_exceeded: bool = False
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'drug_name': self.drug_name,
            'cumulative_dose': self.cumulative_dose,
            'cycles_completed': self.cycles_completed,
            'limit': self.limit,
            'unit': self.unit,
            'is_exceeded': self.is_exceeded,
            'warning': self.warning
        }

@dataclass
class AppliedAdjustment:
    """One clinical adjustment rule that fired for a drug"""
    rule: str
    factor: float

@dataclass
class DoseComputation:
    """Raw and adjusted dose for a single drug"""
    drug_name: str
    raw_dose: float
    adjusted_dose: float
    adjustments: List[AppliedAdjustment] = field(default_factory=list)

class CalculatedDrug(BaseModel):
    """Per-drug record of the exported treatment document"""
    name: str
    dosage: str
    unit: str
    route: str
    day: Optional[str] = None
    drug_class: Optional[str] = None
    dilution: Optional[str] = None
    calculated_dose: str
    final_dose: str
    adjustment_notes: str = ""
    preparation_instructions: Optional[str] = None
    administration_duration: Optional[str] = None
    solvent: Optional[str] = None
    selected_volume: Optional[float] = None

class PatientInfo(BaseModel):
    patient_id: str = ""
    full_name: str = ""
    observation_number: str = ""
    weight: float
    height: float
    age: float
    sex: str
    bsa: float
    creatinine_clearance: float
    cycle_number: int = 1
    treatment_date: Optional[date] = None
    next_cycle_date: Optional[date] = None

class TreatmentData(BaseModel):
    """Finalized document handed to rendering collaborators"""
    patient: PatientInfo
    regimen: Regimen
    calculated_drugs: List[CalculatedDrug]
    bsa_cap_enabled: bool = False
    effective_bsa: float
    clinical_notes: str = ""
    premedications: List[Dict[str, Any]] = Field(default_factory=list)
    antiemetics: List[Dict[str, Any]] = Field(default_factory=list)
