"""
Infusion preparation checks: concentration in the chosen volume and solvent compatibility
"""

import re
from typing import Any, Dict, Optional

from .schema import DrugDefinition

_NON_ALNUM = re.compile(r'[^a-z0-9]')

# Short names used on the ward, keyed by normalized form
SOLVENT_ALIASES = {
    'ns': 'normalsaline09',
    'nacl09': 'normalsaline09',
    'd5w': 'dextrose5',
    'glucose5': 'dextrose5',
    'g5': 'dextrose5'
}

def normalize_solvent_name(name: str) -> str:
    normalized = _NON_ALNUM.sub('', name.lower())
    return SOLVENT_ALIASES.get(normalized, normalized)

def validate_concentration(
    drug_name: str,
    dose: float,
    volume: Optional[float],
    rule: Optional[Dict[str, Any]]
) -> Optional[str]:
    """
    Check the dose against a drug's preparation rule.

    Rules may carry min_volume_ml, min_mg_per_ml and max_mg_per_ml. The
    volume rule is checked first. No volume or no rule means nothing to check.
    """
    if not rule or not volume or volume <= 0:
        return None

    min_volume = rule.get('min_volume_ml')
    if min_volume is not None and volume < min_volume:
        return f"Minimum volume for {drug_name} is {min_volume:g} mL"

    concentration = dose / volume
    max_concentration = rule.get('max_mg_per_ml')
    if max_concentration is not None and concentration > max_concentration:
        return (f"{drug_name} concentration ({concentration:.2f} mg/mL) exceeds "
                f"the limit of {max_concentration:g} mg/mL")

    min_concentration = rule.get('min_mg_per_ml')
    if min_concentration is not None and concentration < min_concentration:
        return (f"{drug_name} concentration ({concentration:.2f} mg/mL) is below "
                f"the minimum of {min_concentration:g} mg/mL")
    return None

def validate_solvent_compatibility(
    drug: DrugDefinition,
    solvent: Optional[str],
    restriction: Optional[str] = None
) -> Optional[str]:
    """
    Check a solvent against the drug's available solvents.

    Names are compared case- and punctuation-insensitively, with ward
    shorthand such as "NS" and "D5W" resolved. A drug without a solvent
    list accepts anything. `restriction` replaces the generic message.
    """
    if not solvent or not drug.available_solvents:
        return None

    allowed = {normalize_solvent_name(name) for name in drug.available_solvents}
    if normalize_solvent_name(solvent) in allowed:
        return None

    if restriction:
        return restriction
    return f"Solvent not compatible with {drug.name}. Allowed: {', '.join(drug.available_solvents)}"
