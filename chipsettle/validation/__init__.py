from chipsettle.validation.models import (
    ErrorCode,
    SettlementError,
    SettlementValidation,
    Severity,
    ValidationStep,
)
from chipsettle.validation.validator import STEP_NAMES, SettlementValidator

__all__ = [
    "ErrorCode",
    "SettlementError",
    "SettlementValidation",
    "Severity",
    "ValidationStep",
    "STEP_NAMES",
    "SettlementValidator",
]
