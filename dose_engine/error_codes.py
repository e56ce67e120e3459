#!/usr/bin/env python3
"""
Dose Engine Error Code System
Provides specific, auditable error codes for the dose calculation engine.
"""

from enum import Enum
from typing import Dict, Any, Optional
import logging
import uuid
from datetime import datetime, timezone

class ErrorCode(Enum):
    """Specific error codes for dose engine components"""

    # Dose Calculation Errors (DOSE_xxx)
    DOSE_UNKNOWN_DRUG = "DOSE_001"
    DOSE_NO_REGIMEN = "DOSE_004"

    # Draft Persistence Errors (DRAFT_xxx)
    DRAFT_WRITE_FAILED = "DRAFT_001"
    DRAFT_CORRUPTED = "DRAFT_003"

    # Catalog Errors (CAT_xxx)
    CAT_UNKNOWN_REGIMEN = "CAT_001"
    CAT_INVALID_REGIMEN = "CAT_002"

    # API/Application Errors (APP_xxx)
    APP_INVALID_REQUEST = "APP_001"
    APP_MISSING_PARAMETER = "APP_002"
    APP_UNKNOWN_SESSION = "APP_003"
    APP_INTERNAL_ERROR = "APP_005"

    # Configuration Errors (CFG_xxx)
    CFG_INVALID_CONFIG = "CFG_002"

class DoseEngineError(Exception):
    """Base exception class for the dose engine with specific error codes"""

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.trace_id = str(uuid.uuid4())[:8]

        super().__init__(f"[{error_code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/API responses"""
        return {
            "error_code": self.error_code.value,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
            "trace_id": self.trace_id,
            "original_error": str(self.original_exception) if self.original_exception else None
        }

class ErrorLogger:
    """Centralized error logging with structured output"""

    def __init__(self, logger_name: str = "dose_engine"):
        self.logger = logging.getLogger(logger_name)

    def log_error(self, error: DoseEngineError, level: int = logging.ERROR):
        """Log error with structured format"""
        self.logger.log(
            level,
            f"DOSE_ENGINE_ERROR: {error.error_code.value} - {error.message}",
            extra={
                "error_code": error.error_code.value,
                "trace_id": error.trace_id,
                "details": error.details,
                "timestamp": error.timestamp
            }
        )

        if error.original_exception:
            self.logger.debug(
                f"Original exception for {error.trace_id}:",
                exc_info=error.original_exception
            )

def unknown_drug_error(drug_name: str, regimen_id: Optional[str]) -> DoseEngineError:
    """Create specific error for an edit addressed to a drug not in the worksheet"""
    return DoseEngineError(
        error_code=ErrorCode.DOSE_UNKNOWN_DRUG,
        message=f"Drug '{drug_name}' is not part of the current dose worksheet",
        details={
            "drug_name": drug_name,
            "regimen_id": regimen_id,
            "suggested_action": "Reload the regimen before editing doses"
        }
    )

def invalid_config_error(path: str, original_error: Exception) -> DoseEngineError:
    """Create specific error for unreadable configuration files"""
    return DoseEngineError(
        error_code=ErrorCode.CFG_INVALID_CONFIG,
        message=f"Configuration file {path} could not be parsed",
        details={
            "path": path,
            "error_type": type(original_error).__name__,
            "suggested_action": "Check YAML syntax and key names"
        },
        original_exception=original_error
    )

ERROR_CODE_DESCRIPTIONS = {
    ErrorCode.DOSE_UNKNOWN_DRUG: "Edit addressed to a drug outside the worksheet",
    ErrorCode.DRAFT_WRITE_FAILED: "Draft could not be written to the store",
    ErrorCode.DRAFT_CORRUPTED: "Stored draft could not be decoded or has an unusable shape",
    ErrorCode.CFG_INVALID_CONFIG: "Configuration file is malformed",
    ErrorCode.APP_UNKNOWN_SESSION: "Dose session does not exist"
}

def get_error_description(error_code: ErrorCode) -> str:
    """Get human-readable description for error code"""
    return ERROR_CODE_DESCRIPTIONS.get(error_code, "Unknown error")
