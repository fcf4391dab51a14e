"""
chipsettle/validation/models.py

Audit output of the settlement validator.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List


class ErrorCode(str, Enum):
    BALANCE_MISMATCH     = "BALANCE_MISMATCH"
    INVALID_PLAYER_STATE = "INVALID_PLAYER_STATE"
    PRECISION_ERROR      = "PRECISION_ERROR"
    ROUNDING_ERROR       = "ROUNDING_ERROR"


class Severity(str, Enum):
    MINOR    = "minor"
    MAJOR    = "major"
    CRITICAL = "critical"


SEVERITY_BY_CODE = {
    ErrorCode.BALANCE_MISMATCH:     Severity.CRITICAL,
    ErrorCode.INVALID_PLAYER_STATE: Severity.CRITICAL,
    ErrorCode.PRECISION_ERROR:      Severity.MAJOR,
    ErrorCode.ROUNDING_ERROR:       Severity.CRITICAL,
}


@dataclass(frozen=True)
class SettlementError:
    code:             ErrorCode
    message:          str
    severity:         Severity
    affected_players: List[str] = field(default_factory=list)
    step:             int = 0

    @classmethod
    def of(cls, code: ErrorCode, message: str, players=(), step: int = 0) -> "SettlementError":
        return cls(code, message, SEVERITY_BY_CODE[code], sorted(players), step)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code":             self.code.value,
            "message":          self.message,
            "severity":         self.severity.value,
            "affected_players": list(self.affected_players),
            "step":             self.step,
        }


@dataclass(frozen=True)
class ValidationStep:
    step_number: int
    name:        str
    passed:      bool
    detail:      str
    inputs:      Dict[str, Any] = field(default_factory=dict)
    outputs:     Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_number": self.step_number,
            "name":        self.name,
            "passed":      self.passed,
            "detail":      self.detail,
            "inputs":      dict(self.inputs),
            "outputs":     dict(self.outputs),
        }


@dataclass(frozen=True)
class SettlementValidation:
    session_id:   str
    is_valid:     bool
    errors:       List[SettlementError]
    steps:        List[ValidationStep]
    warnings:     List[str]
    elapsed_ms:   float
    fingerprint:  str
    validated_at: str
    cached:       bool = False

    def errors_by_code(self, code: ErrorCode) -> List[SettlementError]:
        return [e for e in self.errors if e.code is code]

    def step(self, number: int) -> ValidationStep:
        return self.steps[number - 1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id":   self.session_id,
            "is_valid":     self.is_valid,
            "errors":       [e.to_dict() for e in self.errors],
            "steps":        [s.to_dict() for s in self.steps],
            "warnings":     list(self.warnings),
            "elapsed_ms":   round(self.elapsed_ms, 3),
            "fingerprint":  self.fingerprint,
            "validated_at": self.validated_at,
            "cached":       self.cached,
        }
