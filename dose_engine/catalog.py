"""
Regimen drug catalog loaded from config/regimens.yaml
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from .error_codes import DoseEngineError, ErrorCode
from .schema import Regimen

logger = logging.getLogger(__name__)

class RegimenCatalog:
    """Ordered regimen definitions, looked up by regimen id"""

    def __init__(self, regimens: Optional[List[Regimen]] = None):
        self._regimens: Dict[str, Regimen] = {}
        for regimen in regimens or []:
            self._regimens[regimen.id] = regimen

    @classmethod
    def from_yaml(cls, path: Path) -> 'RegimenCatalog':
        path = Path(path)
        if not path.exists():
            logger.warning(f"Regimen catalog {path} not found, starting with an empty catalog")
            return cls()

        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        regimens = []
        for entry in data.get('regimens', []):
            try:
                regimens.append(Regimen.model_validate(entry))
            except ValidationError as e:
                logger.error(f"{ErrorCode.CAT_INVALID_REGIMEN.value}: skipping invalid regimen {entry.get('id', '?')}: {e}")

        logger.info(f"Loaded {len(regimens)} regimens from {path}")
        return cls(regimens)

    def __len__(self) -> int:
        return len(self._regimens)

    def ids(self) -> List[str]:
        return list(self._regimens)

    def find(self, regimen_id: str) -> Optional[Regimen]:
        return self._regimens.get(regimen_id)

    def get(self, regimen_id: str) -> Regimen:
        regimen = self.find(regimen_id)
        if regimen is None:
            raise DoseEngineError(
                error_code=ErrorCode.CAT_UNKNOWN_REGIMEN,
                message=f"Regimen '{regimen_id}' is not in the catalog",
                details={"regimen_id": regimen_id}
            )
        return regimen
