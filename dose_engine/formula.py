"""
Dose formula resolution: raw dose per drug from its unit type
"""

import logging
import math
import re
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Optional

from .schema import DrugDefinition, DrugUnit

logger = logging.getLogger(__name__)

_LEADING_FLOAT = re.compile(r'^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?')
_AUC_PREFIX = re.compile(r'^\s*AUC\s*', re.IGNORECASE)
_ONE_DECIMAL = Decimal('0.1')
_WHOLE = Decimal('1')

def parse_float(value: Any, default: float = 0.0) -> float:
    """
    Parse the leading number of a value the way form inputs are read.

    "75" -> 75.0, "AUC5-6" style remainders like "5-6" -> 5.0, "abc" -> default.
    Never raises.
    """
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        number = float(value)
        return number if number == number else default
    if not isinstance(value, str):
        return default

    match = _LEADING_FLOAT.match(value)
    if not match:
        return default
    try:
        return float(match.group(0))
    except ValueError:
        return default

_TRUE_WORDS = frozenset({"true", "1", "yes", "on"})
_FALSE_WORDS = frozenset({"false", "0", "no", "off", ""})

def parse_flag(value: Any, default: bool = False) -> bool:
    """Boolean from JSON or form input; "false", "0", "no" and "off" are False"""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
    return default

def optional_text(value: Any) -> Optional[str]:
    """Text for a free-form field; numbers become text, empty and other values None"""
    if isinstance(value, str):
        return value or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None

def _round_half_away(value: float, quantum: Decimal) -> float:
    if not math.isfinite(value):
        return 0.0
    try:
        rounded = Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, OverflowError):
        return 0.0
    return float(rounded)

def round_dose(dose: float) -> float:
    """
    Round a dose to one decimal, half away from zero.

    Rounding is done on the shortest decimal representation of the value,
    so 101.25 -> 101.3 and 0.15 -> 0.2. Non-finite values round to 0.
    """
    return _round_half_away(dose, _ONE_DECIMAL)

def round_percent(percent: float) -> int:
    """Whole-number percentage, half away from zero"""
    return int(_round_half_away(percent, _WHOLE))

def parse_auc_value(dosage: str) -> float:
    """Target AUC from "AUC 6", "AUC6" or "AUC 1.5" """
    return parse_float(_AUC_PREFIX.sub('', dosage))

def is_auc_dosed(drug: DrugDefinition) -> bool:
    return drug.unit == DrugUnit.AUC.value or "AUC" in drug.dosage

class DoseFormulaResolver:
    """Computes the unadjusted dose of a drug for a patient"""

    def resolve(
        self,
        drug: DrugDefinition,
        effective_bsa: float,
        weight: float,
        creatinine_clearance: float
    ) -> float:
        """
        Raw dose in mg.

        Rules are evaluated in order: mg/m², mg/kg, AUC (Calvert), plain.
        Unparsable numbers resolve to 0; a missing dosage raises and is
        handled by the caller.
        """
        if drug.unit == DrugUnit.MG_PER_M2.value:
            return parse_float(drug.dosage) * effective_bsa

        if drug.unit == DrugUnit.MG_PER_KG.value:
            return parse_float(drug.dosage) * weight

        if is_auc_dosed(drug):
            # Calvert: Dose = AUC x (GFR + 25)
            auc_value = parse_auc_value(drug.dosage)
            return auc_value * (creatinine_clearance + 25)

        return parse_float(drug.dosage)
