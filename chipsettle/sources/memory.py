"""
chipsettle/sources/memory.py

Thread-safe in-memory session store.

Used by tests, the demo and any caller that already holds session data.
Readers get copies, so a concurrent writer can never change a list that a
calculation is iterating.
"""

import itertools
import threading
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from chipsettle.core.exceptions import (
    PlayerNotFoundError,
    PreconditionError,
    SessionNotFoundError,
)
from chipsettle.core.models import (
    Player,
    PlayerStatus,
    Session,
    Transaction,
    TransactionType,
)
from chipsettle.core.money import to_decimal
from chipsettle.core.time import utc_now


class InMemorySource:

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions:     Dict[str, Session]                = {}
        self._players:      Dict[str, Dict[str, Player]]      = {}
        self._transactions: Dict[str, List[Transaction]]      = {}
        self._ids = itertools.count(1)

    # ── SessionDataSource ────────────────────────────────────

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def get_players(self, session_id: str) -> List[Player]:
        with self._lock:
            return list(self._players.get(session_id, {}).values())

    def get_transaction_history(self, session_id: str) -> List[Transaction]:
        with self._lock:
            return list(self._transactions.get(session_id, []))

    # ── Mutators ─────────────────────────────────────────────

    def add_session(self, session_id: str, name: str = "") -> Session:
        session = Session(session_id=session_id, name=name or session_id)
        with self._lock:
            self._sessions[session_id] = session
            self._players.setdefault(session_id, {})
            self._transactions.setdefault(session_id, [])
        return session

    def add_player(
        self,
        session_id: str,
        player_id:  str,
        name:       Optional[str] = None,
        chips=      0,
    ) -> Player:
        player = Player(player_id, name or player_id, to_decimal(chips))
        with self._lock:
            self._require_session(session_id)
            self._players[session_id][player_id] = player
        return player

    def set_chips(self, session_id: str, player_id: str, chips) -> Player:
        with self._lock:
            player = self._require_player(session_id, player_id)
            updated = replace(player, current_chips=to_decimal(chips))
            self._players[session_id][player_id] = updated
        return updated

    def cash_out_player(self, session_id: str, player_id: str, amount) -> Transaction:
        """Record a cash-out and mark the player as no longer holding chips."""
        with self._lock:
            player = self._require_player(session_id, player_id)
            self._players[session_id][player_id] = replace(
                player, current_chips=Decimal("0"), status=PlayerStatus.CASHED_OUT,
            )
        return self.record(session_id, player_id, TransactionType.CASH_OUT, amount)

    def buy_in(self, session_id: str, player_id: str, amount, at: Optional[datetime] = None) -> Transaction:
        return self.record(session_id, player_id, TransactionType.BUY_IN, amount, at)

    def record(
        self,
        session_id: str,
        player_id:  str,
        type:       TransactionType,
        amount,
        at:         Optional[datetime] = None,
    ) -> Transaction:
        with self._lock:
            self._require_player(session_id, player_id)
            tx = Transaction(
                transaction_id= f"tx-{next(self._ids)}",
                player_id=      player_id,
                type=           TransactionType(type),
                amount=         to_decimal(amount),
                timestamp=      at or utc_now(),
            )
            self._transactions[session_id].append(tx)
        return tx

    def void(self, session_id: str, transaction_id: str) -> Transaction:
        with self._lock:
            self._require_session(session_id)
            txs = self._transactions[session_id]
            for i, tx in enumerate(txs):
                if tx.transaction_id == transaction_id:
                    txs[i] = replace(tx, is_voided=True)
                    return txs[i]
        raise PreconditionError(
            "Transaction not found", {"session_id": session_id, "transaction_id": transaction_id},
        )

    def load(self, session: Session, players: List[Player], transactions: List[Transaction]) -> None:
        with self._lock:
            self._sessions[session.session_id] = session
            self._players[session.session_id] = {p.player_id: p for p in players}
            self._transactions[session.session_id] = list(transactions)

    # ── Internals (caller holds the lock) ────────────────────

    def _require_session(self, session_id: str) -> None:
        if session_id not in self._sessions:
            raise SessionNotFoundError("Session not found", {"session_id": session_id})

    def _require_player(self, session_id: str, player_id: str) -> Player:
        self._require_session(session_id)
        player = self._players[session_id].get(player_id)
        if player is None:
            raise PlayerNotFoundError(
                "Player not in session", {"session_id": session_id, "player_id": player_id},
            )
        return player
