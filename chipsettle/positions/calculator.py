"""
chipsettle/positions/calculator.py

Net positions and bank balance for a session.

    net_position = (current_chips + cash_outs) − buy_ins

Rules:
    - voided transactions never count
    - only active players contribute current chips
    - Σ net_position == bank discrepancy, so a balanced bank implies
      positions that sum to zero
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from chipsettle.core.config import SettlementConfig
from chipsettle.core.exceptions import ConsistencyError, PlayerNotFoundError
from chipsettle.core.models import (
    BankBalance,
    Player,
    PlayerPosition,
    SessionSnapshot,
    Transaction,
    TransactionType,
)
from chipsettle.core.money import ZERO, fmt, total
from chipsettle.core.result import Result, capture
from chipsettle.core.time import Clock, utc_now
from chipsettle.sources.base import SessionDataSource
from chipsettle.sources.bounded import BoundedReader

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# Pure functions
# ─────────────────────────────────────────────────────────────

def _live(transactions: Iterable[Transaction]) -> List[Transaction]:
    return [tx for tx in transactions if not tx.is_voided]


def positions_from(players: List[Player], transactions: Iterable[Transaction]) -> List[PlayerPosition]:
    """
    Build one PlayerPosition per player, ordered by player_id.
    Raises PlayerNotFoundError for a transaction naming an unknown player.
    """
    known = {p.player_id for p in players}
    buy_ins:   Dict[str, Decimal] = defaultdict(lambda: ZERO)
    cash_outs: Dict[str, Decimal] = defaultdict(lambda: ZERO)

    for tx in _live(transactions):
        if tx.player_id not in known:
            raise PlayerNotFoundError(
                "Transaction references a player not in the session",
                {"transaction_id": tx.transaction_id, "player_id": tx.player_id},
            )
        if tx.type is TransactionType.BUY_IN:
            buy_ins[tx.player_id] += tx.amount
        else:
            cash_outs[tx.player_id] += tx.amount

    return [
        PlayerPosition(
            player_id=     p.player_id,
            name=          p.name,
            buy_ins=       buy_ins[p.player_id],
            cash_outs=     cash_outs[p.player_id],
            current_chips= p.current_chips if p.is_active else ZERO,
            is_active=     p.is_active,
        )
        for p in sorted(players, key=lambda p: p.player_id)
    ]


def bank_balance_from(
    players:      List[Player],
    transactions: Iterable[Transaction],
    tolerance:    Decimal = Decimal("0.01"),
) -> BankBalance:
    live = _live(transactions)
    return BankBalance(
        total_buy_ins=   total(t.amount for t in live if t.type is TransactionType.BUY_IN),
        total_cash_outs= total(t.amount for t in live if t.type is TransactionType.CASH_OUT),
        chips_in_play=   total(p.current_chips for p in players if p.is_active),
        tolerance=       tolerance,
    )


# ─────────────────────────────────────────────────────────────
# PositionCalculator
# ─────────────────────────────────────────────────────────────

class PositionCalculator:
    """
    Reads a session through a deadline-bounded reader and derives positions.

    Every public method returns a Result. Missing sessions or players,
    malformed data and stalled reads come back as failures.
    """

    def __init__(
        self,
        source: SessionDataSource,
        config: Optional[SettlementConfig] = None,
        clock:  Clock = utc_now,
    ) -> None:
        self.config = config or SettlementConfig()
        self.clock = clock
        if isinstance(source, BoundedReader):
            self.reader = source
        else:
            self.reader = BoundedReader(source, read_timeout_ms=self.config.read_timeout_ms)
        self._reads = 0

    def _take_snapshot(self, session_id: str) -> SessionSnapshot:
        session = self.reader.session(session_id)
        players = self.reader.players(session_id)
        transactions = self.reader.transactions(session_id)
        self._reads += 1
        positions = positions_from(players, transactions)
        bank = bank_balance_from(players, transactions, self.config.tolerance)
        logger.debug(
            "Snapshot %s: %d players, %d transactions, discrepancy %s",
            session_id, len(players), len(transactions), bank.discrepancy,
        )
        return SessionSnapshot(
            session=      session,
            players=      players,
            transactions= transactions,
            positions=    positions,
            bank=         bank,
            taken_at=     self.clock(),
        )

    # ── Public API ───────────────────────────────────────────

    def snapshot(self, session_id: str) -> Result[SessionSnapshot]:
        return capture(self._take_snapshot, session_id)

    def calculate_positions(self, session_id: str) -> Result[List[PlayerPosition]]:
        return self.snapshot(session_id).map(lambda s: s.positions)

    def calculate_bank_balance(self, session_id: str) -> Result[BankBalance]:
        return self.snapshot(session_id).map(lambda s: s.bank)

    def calculate_player_position(self, session_id: str, player_id: str) -> Result[PlayerPosition]:
        def _one() -> PlayerPosition:
            position = self._take_snapshot(session_id).position(player_id)
            if position is None:
                raise PlayerNotFoundError(
                    "Player not in session", {"session_id": session_id, "player_id": player_id},
                )
            return position
        return capture(_one)

    def get_stats(self) -> dict:
        return {"snapshots_taken": self._reads, "read_timeout_ms": self.reader.read_timeout_ms}


# ─────────────────────────────────────────────────────────────
# BalanceVerifier
# ─────────────────────────────────────────────────────────────

class BalanceVerifier:
    """
    Checks that the bank closes:

        |total_buy_ins − (chips_in_play + total_cash_outs)| <= tolerance

    An imbalance is reported as a ConsistencyError, never adjusted.
    """

    def __init__(self, calculator: PositionCalculator) -> None:
        self.calculator = calculator

    @staticmethod
    def check(bank: BankBalance) -> Result[BankBalance]:
        if bank.is_balanced:
            return Result.success(bank)
        return Result.failure(ConsistencyError(
            f"Bank out of balance by {fmt(bank.discrepancy)}",
            {
                "total_buy_ins":   bank.total_buy_ins,
                "total_cash_outs": bank.total_cash_outs,
                "chips_in_play":   bank.chips_in_play,
                "discrepancy":     bank.discrepancy,
            },
            severity="critical",
        ))

    def verify(self, session_id: str) -> Result[BankBalance]:
        bank = self.calculator.calculate_bank_balance(session_id)
        if not bank:
            return bank
        result = self.check(bank.value)
        if not result:
            logger.warning("Session %s: %s", session_id, result.error)
        return result
