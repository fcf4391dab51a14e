"""
ChipSettle Exception Hierarchy

All exceptions inherit from ChipSettleError for easy catching.
Public operations do not raise these directly; they return them inside a
Result (see chipsettle.core.result). They are raised only by unwrap().
"""


class ChipSettleError(Exception):
    """Base exception for all ChipSettle errors"""

    code = "CHIPSETTLE_ERROR"
    retryable = False

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message

    def to_dict(self) -> dict:
        return {
            "code":      self.code,
            "message":   self.message,
            "details":   {k: str(v) for k, v in self.details.items()},
            "retryable": self.retryable,
        }


class InputValidationError(ChipSettleError):
    """Raised when caller input is malformed. Never retried."""
    code = "INVALID_INPUT"


class ConfigurationError(ChipSettleError):
    """Raised when a configuration file or value is invalid"""
    code = "INVALID_CONFIG"


class PreconditionError(ChipSettleError):
    """Raised when the data a request depends on is not in a usable state"""
    code = "PRECONDITION_FAILED"


class UnbalancedSettlementError(PreconditionError):
    """Raised when player positions do not sum to zero within tolerance"""
    code = "UNBALANCED_SETTLEMENT"


class SessionNotFoundError(PreconditionError):
    """Raised when the data source has no such session"""
    code = "SESSION_NOT_FOUND"


class PlayerNotFoundError(PreconditionError):
    """Raised when a player is not part of the session"""
    code = "PLAYER_NOT_FOUND"


class WarningNotFoundError(PreconditionError):
    """Raised when a warning id is unknown or already resolved"""
    code = "WARNING_NOT_FOUND"


class SettlementTimeoutError(ChipSettleError):
    """Raised when an operation exceeds its time budget. Safe to retry."""
    code = "TIMEOUT"
    retryable = True


class DataSourceTimeoutError(SettlementTimeoutError):
    """Raised when a session data read stalls"""
    code = "DATA_SOURCE_TIMEOUT"


class OptimizationTimeoutError(SettlementTimeoutError):
    """Raised inside a strategy when its deadline passes"""
    code = "OPTIMIZATION_TIMEOUT"


class ConsistencyError(ChipSettleError):
    """Raised when a settlement fails a balance or precision audit"""
    code = "CONSISTENCY_ERROR"

    def __init__(self, message: str, details: dict = None, severity: str = "critical"):
        super().__init__(message, details)
        self.severity = severity


class IntegrityError(ChipSettleError):
    """Raised when a proof checksum or signature does not verify"""
    code = "INTEGRITY_ERROR"


class ProofExpiredError(IntegrityError):
    """Raised when a proof is older than the retention window"""
    code = "PROOF_EXPIRED"
