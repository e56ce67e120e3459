"""
Engine configuration loaded from config/dose_engine.yaml
"""

import logging
import os
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, ValidationError

from .error_codes import invalid_config_error

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).parent.parent / "config"
DEFAULT_CONFIG_PATH = CONFIG_DIR / "dose_engine.yaml"

class AdjustmentRules(BaseModel):
    """Thresholds and factors for the clinical adjustment pipeline"""
    renal_drug: str = "Cisplatin"
    renal_crcl_threshold: float = 60.0
    renal_factor: float = 0.75
    renal_exempt_drugs: List[str] = ["Carboplatin"]
    age_threshold: float = 75.0
    age_drug_class: str = "chemotherapy"
    age_factor: float = 0.9

class PersistenceSettings(BaseModel):
    key_prefix: str = "draft:doseCalc:"
    debounce_seconds: float = 0.5
    duckdb_path: Optional[str] = None

class EngineConfig(BaseModel):
    """Configuration for the dose calculation engine"""
    default_bsa_cap: float = 2.0
    adjustments: AdjustmentRules = AdjustmentRules()
    persistence: PersistenceSettings = PersistenceSettings()
    allowed_solvents: List[str] = [
        "Normal Saline 0.9%",
        "Dextrose 5%",
        "Ringer Solution",
        "Water for Injection"
    ]
    drug_limits_path: Optional[str] = None
    regimens_path: Optional[str] = None

def load_engine_config(config_path: Optional[str] = None) -> EngineConfig:
    """Load engine configuration, falling back to defaults when the file is absent"""
    path = Path(config_path or os.environ.get("DOSE_ENGINE_CONFIG") or DEFAULT_CONFIG_PATH)

    if not path.exists():
        logger.warning(f"Config file {path} not found, using defaults")
        return EngineConfig()

    try:
        with open(path, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}
        config = EngineConfig(**config_data)
    except (yaml.YAMLError, ValidationError, TypeError) as e:
        raise invalid_config_error(str(path), e)

    logger.info(f"Dose engine configuration loaded from {path}")
    return config

def resolve_config_path(relative: Optional[str], default_name: str) -> Path:
    """Resolve a data file path named in the config relative to the config directory"""
    if not relative:
        return CONFIG_DIR / default_name
    candidate = Path(relative)
    if candidate.is_absolute():
        return candidate
    return CONFIG_DIR / candidate
