"""
chipsettle/core/models.py

Session data model and optimization output.

Money is decimal.Decimal throughout. Every model has to_dict() producing
JSON-primitive values (amounts as strings) so it can be canonicalized,
hashed and exported without float drift.

Sign convention:
    net_position > 0   player is owed money   (creditor)
    net_position < 0   player owes money      (debtor)
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from chipsettle.core.canonical import short_hash
from chipsettle.core.exceptions import InputValidationError
from chipsettle.core.money import ZERO, to_decimal, total
from chipsettle.core.time import format_timestamp, parse_timestamp


class TransactionType(str, Enum):
    BUY_IN   = "buy_in"
    CASH_OUT = "cash_out"


class PlayerStatus(str, Enum):
    ACTIVE     = "active"
    CASHED_OUT = "cashed_out"


def _money(value: Any, name: str) -> Decimal:
    try:
        return to_decimal(value)
    except ValueError as exc:
        raise InputValidationError(f"Invalid amount for {name}", {"value": value}) from exc


# ─────────────────────────────────────────────────────────────
# Session data
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Transaction:
    transaction_id: str
    player_id:      str
    type:           TransactionType
    amount:         Decimal
    timestamp:      datetime
    is_voided:      bool = False

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise InputValidationError(
                "Transaction amount must be positive",
                {"transaction_id": self.transaction_id, "amount": self.amount},
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        try:
            return cls(
                transaction_id= str(data["transaction_id"]),
                player_id=      str(data["player_id"]),
                type=           TransactionType(data["type"]),
                amount=         _money(data["amount"], "amount"),
                timestamp=      parse_timestamp(data["timestamp"]),
                is_voided=      bool(data.get("is_voided", False)),
            )
        except (KeyError, ValueError) as exc:
            raise InputValidationError("Malformed transaction", {"reason": exc}) from exc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "player_id":      self.player_id,
            "type":           self.type.value,
            "amount":         str(self.amount),
            "timestamp":      format_timestamp(self.timestamp),
            "is_voided":      self.is_voided,
        }


@dataclass(frozen=True)
class Player:
    player_id:     str
    name:          str
    current_chips: Decimal      = ZERO
    status:        PlayerStatus = PlayerStatus.ACTIVE

    def __post_init__(self) -> None:
        if self.current_chips < 0:
            raise InputValidationError(
                "Chip count cannot be negative",
                {"player_id": self.player_id, "current_chips": self.current_chips},
            )

    @property
    def is_active(self) -> bool:
        return self.status is PlayerStatus.ACTIVE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Player":
        try:
            return cls(
                player_id=     str(data["player_id"]),
                name=          str(data.get("name", data["player_id"])),
                current_chips= _money(data.get("current_chips", 0), "current_chips"),
                status=        PlayerStatus(data.get("status", "active")),
            )
        except (KeyError, ValueError) as exc:
            raise InputValidationError("Malformed player", {"reason": exc}) from exc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "player_id":     self.player_id,
            "name":          self.name,
            "current_chips": str(self.current_chips),
            "status":        self.status.value,
        }


@dataclass(frozen=True)
class Session:
    session_id: str
    name:       str = ""
    status:     str = "active"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        try:
            return cls(
                session_id= str(data["session_id"]),
                name=       str(data.get("name", "")),
                status=     str(data.get("status", "active")),
            )
        except KeyError as exc:
            raise InputValidationError("Malformed session", {"missing": exc}) from exc

    def to_dict(self) -> Dict[str, Any]:
        return {"session_id": self.session_id, "name": self.name, "status": self.status}


# ─────────────────────────────────────────────────────────────
# Derived positions
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PlayerPosition:
    player_id:     str
    name:          str
    buy_ins:       Decimal = ZERO
    cash_outs:     Decimal = ZERO
    current_chips: Decimal = ZERO
    is_active:     bool    = True

    @property
    def net_position(self) -> Decimal:
        """(current chips + cash-outs) − buy-ins"""
        return (self.current_chips + self.cash_outs) - self.buy_ins

    @classmethod
    def from_net(cls, player_id: str, net: Decimal, name: Optional[str] = None) -> "PlayerPosition":
        """Position with only a net figure, used by callers that skip the ledger."""
        net = _money(net, "net_position")
        if net >= 0:
            return cls(player_id, name or player_id, current_chips=net)
        return cls(player_id, name or player_id, buy_ins=-net)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "player_id":     self.player_id,
            "name":          self.name,
            "buy_ins":       str(self.buy_ins),
            "cash_outs":     str(self.cash_outs),
            "current_chips": str(self.current_chips),
            "is_active":     self.is_active,
            "net_position":  str(self.net_position),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlayerPosition":
        return cls(
            player_id=     data["player_id"],
            name=          data.get("name", data["player_id"]),
            buy_ins=       _money(data.get("buy_ins", 0), "buy_ins"),
            cash_outs=     _money(data.get("cash_outs", 0), "cash_outs"),
            current_chips= _money(data.get("current_chips", 0), "current_chips"),
            is_active=     bool(data.get("is_active", True)),
        )


def positions_sum(positions: Iterable[PlayerPosition]) -> Decimal:
    return total(p.net_position for p in positions)


def positions_fingerprint(positions: Iterable[PlayerPosition]) -> str:
    """Order-independent hash of every player's components."""
    rows = sorted(
        [p.player_id, str(p.buy_ins), str(p.cash_outs), str(p.current_chips), p.is_active]
        for p in positions
    )
    return short_hash(rows)


@dataclass(frozen=True)
class BankBalance:
    total_buy_ins:   Decimal
    total_cash_outs: Decimal
    chips_in_play:   Decimal
    tolerance:       Decimal = Decimal("0.01")

    @property
    def available(self) -> Decimal:
        """Money the bank currently holds."""
        return self.total_buy_ins - self.total_cash_outs

    @property
    def discrepancy(self) -> Decimal:
        return (self.chips_in_play + self.total_cash_outs) - self.total_buy_ins

    @property
    def is_balanced(self) -> bool:
        return abs(self.discrepancy) <= self.tolerance

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_buy_ins":   str(self.total_buy_ins),
            "total_cash_outs": str(self.total_cash_outs),
            "chips_in_play":   str(self.chips_in_play),
            "available":       str(self.available),
            "discrepancy":     str(self.discrepancy),
            "is_balanced":     self.is_balanced,
        }


@dataclass(frozen=True)
class SessionSnapshot:
    """Consistent read of one session, the input to every downstream step."""
    session:      Session
    players:      List[Player]
    transactions: List[Transaction]
    positions:    List[PlayerPosition]
    bank:         BankBalance
    taken_at:     datetime

    @property
    def session_id(self) -> str:
        return self.session.session_id

    def position(self, player_id: str) -> Optional[PlayerPosition]:
        for p in self.positions:
            if p.player_id == player_id:
                return p
        return None


# ─────────────────────────────────────────────────────────────
# Payment plan
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Payment:
    from_player: str
    from_name:   str
    to_player:   str
    to_name:     str
    amount:      Decimal
    priority:    int = 0

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise InputValidationError(
                "Payment amount must be positive",
                {"from": self.from_player, "to": self.to_player, "amount": self.amount},
            )
        if self.from_player == self.to_player:
            raise InputValidationError("Payment to self", {"player": self.from_player})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_player": self.from_player,
            "from_name":   self.from_name,
            "to_player":   self.to_player,
            "to_name":     self.to_name,
            "amount":      str(self.amount),
            "priority":    self.priority,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Payment":
        return cls(
            from_player= data["from_player"],
            from_name=   data.get("from_name", data["from_player"]),
            to_player=   data["to_player"],
            to_name=     data.get("to_name", data["to_player"]),
            amount=      _money(data["amount"], "amount"),
            priority=    int(data.get("priority", 0)),
        )


def assign_priorities(payments: Iterable[Payment]) -> List[Payment]:
    """
    Order by amount descending (ties by payer then payee) and number
    priorities from 1. Output is identical for identical input.
    """
    ordered = sorted(payments, key=lambda p: (-p.amount, p.from_player, p.to_player))
    return [
        Payment(p.from_player, p.from_name, p.to_player, p.to_name, p.amount, i)
        for i, p in enumerate(ordered, start=1)
    ]


def plan_total(payments: Iterable[Payment]) -> Decimal:
    return total(p.amount for p in payments)


def plan_fingerprint(payments: Iterable[Payment]) -> str:
    return short_hash([[p.from_player, p.to_player, str(p.amount)] for p in payments])


def net_flows(payments: Iterable[Payment]) -> Dict[str, Decimal]:
    """received − paid per player"""
    flows: Dict[str, Decimal] = {}
    for p in payments:
        flows[p.from_player] = flows.get(p.from_player, ZERO) - p.amount
        flows[p.to_player]   = flows.get(p.to_player, ZERO) + p.amount
    return flows


# ─────────────────────────────────────────────────────────────
# Optimization output
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RoundingOperation:
    description: str
    original:    Decimal
    rounded:     Decimal
    kind:        str = "position"

    @property
    def loss(self) -> Decimal:
        return self.rounded - self.original

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "original":    str(self.original),
            "rounded":     str(self.rounded),
            "loss":        str(self.loss),
            "kind":        self.kind,
        }


def precision_loss(ops: Iterable[RoundingOperation]) -> Decimal:
    """
    Σ |loss| over roundings that change what a player settles. Baseline
    share roundings cancel within each row and are excluded.
    """
    return total(abs(op.loss) for op in ops if op.kind != "share")


@dataclass(frozen=True)
class OptimizationMetrics:
    original_count:       int
    optimized_count:      int
    reduction_percentage: Decimal
    total_settled:        Decimal
    processing_time_ms:   float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_count":       self.original_count,
            "optimized_count":      self.optimized_count,
            "reduction_percentage": str(self.reduction_percentage),
            "total_settled":        str(self.total_settled),
            "processing_time_ms":   round(self.processing_time_ms, 3),
        }


@dataclass(frozen=True)
class BalanceProof:
    total_debits:  Decimal
    total_credits: Decimal
    net_balance:   Decimal
    is_balanced:   bool
    precision:     Decimal
    timestamp:     str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_debits":  str(self.total_debits),
            "total_credits": str(self.total_credits),
            "net_balance":   str(self.net_balance),
            "is_balanced":   self.is_balanced,
            "precision":     str(self.precision),
            "timestamp":     self.timestamp,
        }


@dataclass(frozen=True)
class OptimizationResult:
    session_id:          str
    algorithm:           str
    algorithm_used:      str
    positions:           List[PlayerPosition]
    optimized_payments:  List[Payment]
    direct_payments:     List[Payment]
    metrics:             OptimizationMetrics
    is_valid:            bool
    validation_errors:   List[str]
    balance_proof:       BalanceProof
    fingerprint:         str
    config_version:      int
    notes:               List[str]               = field(default_factory=list)
    rounding_operations: List[RoundingOperation] = field(default_factory=list)

    @property
    def fell_back(self) -> bool:
        return self.algorithm_used != self.algorithm

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id":          self.session_id,
            "algorithm":           self.algorithm,
            "algorithm_used":      self.algorithm_used,
            "positions":           [p.to_dict() for p in self.positions],
            "optimized_payments":  [p.to_dict() for p in self.optimized_payments],
            "direct_payments":     [p.to_dict() for p in self.direct_payments],
            "metrics":             self.metrics.to_dict(),
            "is_valid":            self.is_valid,
            "validation_errors":   list(self.validation_errors),
            "balance_proof":       self.balance_proof.to_dict(),
            "fingerprint":         self.fingerprint,
            "config_version":      self.config_version,
            "notes":               list(self.notes),
            "rounding_operations": [r.to_dict() for r in self.rounding_operations],
        }
