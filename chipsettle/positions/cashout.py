"""
chipsettle/positions/cashout.py

Early cash-out quote for a single player leaving mid-session.

The player's chips are valued 1:1. A winning player is paid from the bank,
capped at what the bank holds; a losing player owes the difference.
"""

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List

from chipsettle.core.exceptions import InputValidationError, PlayerNotFoundError
from chipsettle.core.models import TransactionType
from chipsettle.core.money import ZERO, fmt, to_decimal, total
from chipsettle.core.result import Result, capture
from chipsettle.core.time import format_timestamp
from chipsettle.positions.calculator import PositionCalculator

logger = logging.getLogger(__name__)

PAYMENT_TO_PLAYER   = "payment_to_player"
PAYMENT_FROM_PLAYER = "payment_from_player"
EVEN                = "even"


@dataclass(frozen=True)
class EarlyCashOutResult:
    player_id:           str
    player_name:         str
    current_chip_value:  Decimal
    total_buy_ins:       Decimal
    net_position:        Decimal
    settlement_amount:   Decimal
    settlement_type:     str
    bank_balance_before: Decimal
    bank_balance_after:  Decimal
    calculated_at:       str
    duration_ms:         float
    is_valid:            bool
    validation_messages: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "player_id":           self.player_id,
            "player_name":         self.player_name,
            "current_chip_value":  str(self.current_chip_value),
            "total_buy_ins":       str(self.total_buy_ins),
            "net_position":        str(self.net_position),
            "settlement_amount":   str(self.settlement_amount),
            "settlement_type":     self.settlement_type,
            "bank_balance_before": str(self.bank_balance_before),
            "bank_balance_after":  str(self.bank_balance_after),
            "calculated_at":       self.calculated_at,
            "duration_ms":         round(self.duration_ms, 3),
            "is_valid":            self.is_valid,
            "validation_messages": list(self.validation_messages),
        }


class EarlyCashOutCalculator:

    def __init__(self, calculator: PositionCalculator) -> None:
        self.calculator = calculator

    def calculate(self, session_id: str, player_id: str, current_chip_count) -> Result[EarlyCashOutResult]:
        return capture(self._calculate, session_id, player_id, current_chip_count)

    def _calculate(self, session_id: str, player_id: str, current_chip_count) -> EarlyCashOutResult:
        started = time.perf_counter()
        try:
            chips = to_decimal(current_chip_count)
        except ValueError as exc:
            raise InputValidationError("Chip count is not a number", {"value": current_chip_count}) from exc
        if chips < 0:
            raise InputValidationError("Chip count cannot be negative", {"value": chips})

        snapshot = self.calculator.snapshot(session_id).unwrap()
        player = next((p for p in snapshot.players if p.player_id == player_id), None)
        if player is None:
            raise PlayerNotFoundError(
                "Player not in session", {"session_id": session_id, "player_id": player_id},
            )

        buy_ins = total(
            tx.amount for tx in snapshot.transactions
            if tx.player_id == player_id and tx.type is TransactionType.BUY_IN and not tx.is_voided
        )
        net = chips - buy_ins
        available = snapshot.bank.available
        messages: List[str] = []

        if net > 0:
            amount, kind = min(net, available), PAYMENT_TO_PLAYER
            if net > available:
                messages.append(
                    f"INSUFFICIENT_BANK_BALANCE: owed {fmt(net)}, bank holds {fmt(available)}"
                )
        elif net < 0:
            amount, kind = -net, PAYMENT_FROM_PLAYER
        else:
            amount, kind = ZERO, EVEN

        after = available - amount if kind == PAYMENT_TO_PLAYER else available
        result = EarlyCashOutResult(
            player_id=           player_id,
            player_name=         player.name,
            current_chip_value=  chips,
            total_buy_ins=       buy_ins,
            net_position=        net,
            settlement_amount=   amount,
            settlement_type=     kind,
            bank_balance_before= available,
            bank_balance_after=  after,
            calculated_at=       format_timestamp(self.calculator.clock()),
            duration_ms=         (time.perf_counter() - started) * 1000,
            is_valid=            not messages,
            validation_messages= messages,
        )
        logger.info(
            "Early cash-out %s/%s: %s %s", session_id, player_id, kind, fmt(amount),
        )
        return result
