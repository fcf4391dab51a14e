"""
chipsettle/monitoring/models.py

Warnings, adjustments and per-session monitoring state.

A SettlementWarning is immutable. Resolving one produces a new value with the
resolution fields set and a "resolved" entry appended to its audit trail.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from chipsettle.core.time import format_timestamp
from chipsettle.validation.models import Severity


class AdjustmentType(str, Enum):
    CHIP_COUNT          = "chip_count_adjustment"
    BUY_IN              = "buy_in_adjustment"
    CASH_OUT            = "cash_out_adjustment"
    PLAYER_REMOVAL      = "player_removal"
    TRANSACTION_VOID    = "transaction_void"
    SETTLEMENT_OVERRIDE = "settlement_override"


class WarningCode(str, Enum):
    BALANCE_DISCREPANCY     = "BALANCE_DISCREPANCY"
    LARGE_ADJUSTMENT        = "LARGE_ADJUSTMENT"
    FREQUENT_ADJUSTMENTS    = "FREQUENT_ADJUSTMENTS"
    LARGE_POSITIVE_POSITION = "LARGE_POSITIVE_POSITION"
    LARGE_NEGATIVE_POSITION = "LARGE_NEGATIVE_POSITION"


class WarningStatus(str, Enum):
    OPEN     = "open"
    RESOLVED = "resolved"


class MonitorState(str, Enum):
    STOPPED    = "stopped"
    MONITORING = "monitoring"


@dataclass(frozen=True)
class ManualAdjustment:
    adjustment_id:   str
    session_id:      str
    player_id:       str
    adjustment_type: AdjustmentType
    delta:           Decimal
    actor:           str
    reason:          Optional[str]
    recorded_at:     datetime

    @property
    def balance_impact(self) -> Decimal:
        return abs(self.delta)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "adjustment_id":   self.adjustment_id,
            "session_id":      self.session_id,
            "player_id":       self.player_id,
            "adjustment_type": self.adjustment_type.value,
            "delta":           str(self.delta),
            "balance_impact":  str(self.balance_impact),
            "actor":           self.actor,
            "reason":          self.reason,
            "recorded_at":     format_timestamp(self.recorded_at),
        }


@dataclass(frozen=True)
class PlayerCorrection:
    player_id:       str
    name:            str
    original_chips:  Decimal
    share:           Decimal
    suggested_chips: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "player_id":       self.player_id,
            "name":            self.name,
            "original_chips":  str(self.original_chips),
            "share":           str(self.share),
            "suggested_chips": str(self.suggested_chips),
        }


@dataclass(frozen=True)
class AutoCorrection:
    """Reversible redistribution of a discrepancy across active players."""
    correction_id:     str
    description:       str
    amount:            Decimal
    corrections:       List[PlayerCorrection]
    rollback:          List[str]
    is_reversible:     bool = True
    requires_approval: bool = True

    @property
    def affected_players(self) -> List[str]:
        return [c.player_id for c in self.corrections]

    @property
    def total(self) -> Decimal:
        return sum((c.share for c in self.corrections), Decimal("0"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correction_id":     self.correction_id,
            "description":       self.description,
            "amount":            str(self.amount),
            "affected_players":  self.affected_players,
            "corrections":       [c.to_dict() for c in self.corrections],
            "rollback":          list(self.rollback),
            "is_reversible":     self.is_reversible,
            "requires_approval": self.requires_approval,
        }


@dataclass(frozen=True)
class AuditEntry:
    at:      datetime
    action:  str
    actor:   str
    details: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "at":      format_timestamp(self.at),
            "action":  self.action,
            "actor":   self.actor,
            "details": self.details,
        }


@dataclass(frozen=True)
class SettlementWarning:
    warning_id:        str
    session_id:        str
    code:              WarningCode
    severity:          Severity
    message:           str
    affected_players:  List[str]
    balance_impact:    Decimal
    can_proceed:       bool
    requires_approval: bool
    suggested_actions: List[str]
    detected_at:       datetime
    detection:         str = "real_time"
    adjustment_id:     Optional[str] = None
    auto_correction:   Optional[AutoCorrection] = None
    status:            WarningStatus = WarningStatus.OPEN
    resolution:        Optional[str] = None
    resolution_reason: Optional[str] = None
    resolved_by:       Optional[str] = None
    resolved_at:       Optional[datetime] = None
    audit_trail:       List[AuditEntry] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status is WarningStatus.OPEN

    @property
    def blocks_settlement(self) -> bool:
        return self.is_open and not self.can_proceed

    def dedup_key(self):
        return (self.code, tuple(self.affected_players))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "warning_id":        self.warning_id,
            "session_id":        self.session_id,
            "code":              self.code.value,
            "severity":          self.severity.value,
            "message":           self.message,
            "affected_players":  list(self.affected_players),
            "balance_impact":    str(self.balance_impact),
            "can_proceed":       self.can_proceed,
            "requires_approval": self.requires_approval,
            "suggested_actions": list(self.suggested_actions),
            "detected_at":       format_timestamp(self.detected_at),
            "detection":         self.detection,
            "adjustment_id":     self.adjustment_id,
            "auto_correction":   self.auto_correction.to_dict() if self.auto_correction else None,
            "status":            self.status.value,
            "resolution":        self.resolution,
            "resolution_reason": self.resolution_reason,
            "resolved_by":       self.resolved_by,
            "resolved_at":       format_timestamp(self.resolved_at) if self.resolved_at else None,
            "audit_trail":       [a.to_dict() for a in self.audit_trail],
        }


@dataclass(frozen=True)
class BalanceSample:
    taken_at:        datetime
    total_buy_ins:   Decimal
    total_cash_outs: Decimal
    chips_in_play:   Decimal
    discrepancy:     Decimal
    player_count:    int
    positions:       Dict[str, Decimal]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "taken_at":        format_timestamp(self.taken_at),
            "total_buy_ins":   str(self.total_buy_ins),
            "total_cash_outs": str(self.total_cash_outs),
            "chips_in_play":   str(self.chips_in_play),
            "discrepancy":     str(self.discrepancy),
            "player_count":    self.player_count,
            "positions":       {k: str(v) for k, v in self.positions.items()},
        }


@dataclass
class MonitoringState:
    """Mutable per-session state. Only touched under the session's lock."""
    session_id:  str
    state:       MonitorState = MonitorState.STOPPED
    samples:     Deque[BalanceSample] = field(default_factory=lambda: deque(maxlen=100))
    warnings:    Dict[str, SettlementWarning] = field(default_factory=dict)
    adjustments: List[ManualAdjustment] = field(default_factory=list)
    failures:    int = 0
    timer:       Any = None
    generation:  int = 0

    @property
    def is_monitoring(self) -> bool:
        return self.state is MonitorState.MONITORING

    def active_warnings(self) -> List[SettlementWarning]:
        return [w for w in self.warnings.values() if w.is_open]
