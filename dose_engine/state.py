"""
Editable per-drug dose state and the manual edit operations on it
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from pydantic import ValidationError

from .error_codes import unknown_drug_error
from .formula import optional_text, parse_flag, parse_float, round_dose, round_percent
from .schema import DoseAlert, DrugDefinition

logger = logging.getLogger(__name__)

class DoseEditMode(Enum):
    ABSOLUTE = "absolute"
    PERCENTAGE = "percentage"

@dataclass(frozen=True)
class DoseEdit:
    """Last dose edit made by the user: an absolute dose or a reduction percentage"""
    mode: DoseEditMode
    value: float

    def to_dict(self) -> Dict[str, Any]:
        return {'mode': self.mode.value, 'value': self.value}

    @classmethod
    def from_dict(cls, data: Any) -> Optional['DoseEdit']:
        if not isinstance(data, dict):
            return None
        try:
            return cls(mode=DoseEditMode(data.get('mode')), value=parse_float(data.get('value')))
        except ValueError:
            return None

@dataclass
class EditableDoseState:
    """Working record for one drug of the active regimen"""
    drug: DrugDefinition
    calculated_dose: float
    adjusted_dose: float
    final_dose: float
    reduction_percentage: float = 0.0
    selected: bool = True
    notes: str = ""
    administration_duration: Optional[str] = None
    solvent: Optional[str] = None
    selected_solvent_type: Optional[str] = None
    selected_volume: Optional[float] = None
    dose_alert: Optional[DoseAlert] = None
    last_edit: Optional[DoseEdit] = None
    preparation_alert: Optional[str] = None

    @property
    def name(self) -> str:
        return self.drug.name

    @property
    def total_reduction_percent(self) -> int:
        """Reduction of the adjusted dose against the calculated dose, for display"""
        if self.calculated_dose == 0:
            return 0
        return round_percent((self.calculated_dose - self.adjusted_dose) / self.calculated_dose * 100)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {
            'drug': self.drug.model_dump(mode='json'),
            'calculated_dose': self.calculated_dose,
            'adjusted_dose': self.adjusted_dose,
            'final_dose': self.final_dose,
            'reduction_percentage': self.reduction_percentage,
            'selected': self.selected,
            'notes': self.notes,
            'administration_duration': self.administration_duration,
            'solvent': self.solvent,
            'selected_solvent_type': self.selected_solvent_type,
            'selected_volume': self.selected_volume,
            'dose_alert': self.dose_alert.to_dict() if self.dose_alert else None,
            'last_edit': self.last_edit.to_dict() if self.last_edit else None,
            'preparation_alert': self.preparation_alert
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional['EditableDoseState']:
        """Create from a stored dictionary; None when the drug record is unusable"""
        if not isinstance(data, dict):
            return None
        try:
            drug = DrugDefinition.model_validate(data.get('drug') or {})
        except ValidationError as e:
            logger.warning(f"Discarding stored dose entry with invalid drug record: {e.error_count()} errors")
            return None

        adjusted_dose = parse_float(data.get('adjusted_dose'))
        volume = data.get('selected_volume')
        return cls(
            drug=drug,
            calculated_dose=parse_float(data.get('calculated_dose')),
            adjusted_dose=adjusted_dose,
            final_dose=round_dose(adjusted_dose),
            reduction_percentage=parse_float(data.get('reduction_percentage')),
            selected=parse_flag(data.get('selected'), default=True),
            notes=data.get('notes') if isinstance(data.get('notes'), str) else "",
            administration_duration=optional_text(data.get('administration_duration')),
            solvent=optional_text(data.get('solvent')),
            selected_solvent_type=optional_text(data.get('selected_solvent_type')),
            selected_volume=parse_float(volume) if volume is not None else None,
            dose_alert=DoseAlert.from_dict(data.get('dose_alert')),
            last_edit=DoseEdit.from_dict(data.get('last_edit')),
            preparation_alert=optional_text(data.get('preparation_alert'))
        )

def apply_dose_edit(state: EditableDoseState, edit: DoseEdit) -> EditableDoseState:
    """
    Materialize a dose edit onto a state.

    Absolute edits set the adjusted dose and leave the stored reduction
    percentage alone. Percentage edits derive the adjusted dose from the
    calculated dose and store the percentage. Final dose always follows
    the adjusted dose.
    """
    if edit.mode is DoseEditMode.PERCENTAGE:
        state.adjusted_dose = state.calculated_dose * (1 - edit.value / 100)
        state.reduction_percentage = edit.value
    else:
        state.adjusted_dose = edit.value

    state.final_dose = round_dose(state.adjusted_dose)
    state.last_edit = edit
    return state

class DoseWorksheet:
    """
    Ordered, name-keyed collection of editable dose states.

    `preparation_check` maps a state to its preparation alert. It is rerun
    after edits that change the dose, volume or solvent.
    """

    def __init__(
        self,
        states: Optional[List[EditableDoseState]] = None,
        regimen_id: Optional[str] = None,
        preparation_check: Optional[Callable[[EditableDoseState], Optional[str]]] = None
    ):
        self.regimen_id = regimen_id
        self.preparation_check = preparation_check
        self._states: List[EditableDoseState] = list(states or [])

    def __iter__(self) -> Iterator[EditableDoseState]:
        return iter(self._states)

    def __len__(self) -> int:
        return len(self._states)

    @property
    def states(self) -> List[EditableDoseState]:
        return list(self._states)

    def replace(self, states: List[EditableDoseState], regimen_id: Optional[str] = None) -> None:
        self._states = list(states)
        self.regimen_id = regimen_id

    def clear(self) -> None:
        self._states = []

    def find(self, drug_name: str) -> Optional[EditableDoseState]:
        for state in self._states:
            if state.name == drug_name:
                return state
        return None

    def get(self, drug_name: str) -> EditableDoseState:
        state = self.find(drug_name)
        if state is None:
            raise unknown_drug_error(drug_name, self.regimen_id)
        return state

    def _refresh_preparation(self, state: EditableDoseState) -> EditableDoseState:
        if self.preparation_check is not None:
            state.preparation_alert = self.preparation_check(state)
        return state

    def set_adjusted_dose(self, drug_name: str, raw: Any) -> EditableDoseState:
        """Set the adjusted dose directly; the reduction percentage is not recomputed"""
        state = apply_dose_edit(self.get(drug_name), DoseEdit(DoseEditMode.ABSOLUTE, parse_float(raw)))
        return self._refresh_preparation(state)

    def set_reduction_percentage(self, drug_name: str, raw: Any) -> EditableDoseState:
        """Reduce the calculated dose by a percentage"""
        state = apply_dose_edit(self.get(drug_name), DoseEdit(DoseEditMode.PERCENTAGE, parse_float(raw)))
        return self._refresh_preparation(state)

    def toggle_selected(self, drug_name: str, selected: Any) -> EditableDoseState:
        state = self.get(drug_name)
        state.selected = parse_flag(selected)
        return state

    def set_notes(self, drug_name: str, notes: str) -> EditableDoseState:
        state = self.get(drug_name)
        state.notes = notes if isinstance(notes, str) else ""
        return state

    def set_administration_duration(self, drug_name: str, duration: Optional[str]) -> EditableDoseState:
        state = self.get(drug_name)
        state.administration_duration = optional_text(duration)
        return state

    def set_solvent(self, drug_name: str, solvent: Optional[str]) -> EditableDoseState:
        state = self.get(drug_name)
        state.solvent = optional_text(solvent)
        return self._refresh_preparation(state)

    def set_solvent_type(self, drug_name: str, solvent_type: Optional[str]) -> EditableDoseState:
        state = self.get(drug_name)
        state.selected_solvent_type = optional_text(solvent_type)
        return self._refresh_preparation(state)

    def set_volume(self, drug_name: str, volume: Optional[float]) -> EditableDoseState:
        state = self.get(drug_name)
        state.selected_volume = parse_float(volume) if volume is not None else None
        return self._refresh_preparation(state)

    def selected_states(self) -> List[EditableDoseState]:
        return [state for state in self._states if state.selected]

    def export_blockers(self) -> List[str]:
        """Names of selected drugs whose final dose is not positive"""
        return [state.name for state in self._states if state.selected and state.final_dose <= 0]
