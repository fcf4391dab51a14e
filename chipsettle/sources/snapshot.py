"""
chipsettle/sources/snapshot.py

Read-only data source backed by a JSON session snapshot file.

Format:

    {
      "session":      {"session_id": "s1", "name": "Friday game"},
      "players":      [{"player_id": "alice", "name": "Alice", "current_chips": "150"}],
      "transactions": [{"transaction_id": "t1", "player_id": "alice",
                        "type": "buy_in", "amount": "100",
                        "timestamp": "2026-01-01T20:00:00.000Z"}]
    }

A file may also hold a list of such objects for multi-session snapshots.
"""

import json
from pathlib import Path
from typing import Dict, List, Optional

from chipsettle.core.exceptions import InputValidationError
from chipsettle.core.models import Player, Session, Transaction


class JsonSnapshotSource:

    def __init__(self, sessions: List[dict]) -> None:
        self._sessions:     Dict[str, Session]           = {}
        self._players:      Dict[str, List[Player]]      = {}
        self._transactions: Dict[str, List[Transaction]] = {}
        for entry in sessions:
            if not isinstance(entry, dict) or "session" not in entry:
                raise InputValidationError("Snapshot entry must have a 'session' object")
            session = Session.from_dict(entry["session"])
            sid = session.session_id
            self._sessions[sid]     = session
            self._players[sid]      = [Player.from_dict(p) for p in entry.get("players", [])]
            self._transactions[sid] = [Transaction.from_dict(t) for t in entry.get("transactions", [])]

    @classmethod
    def from_file(cls, path) -> "JsonSnapshotSource":
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as exc:
            raise InputValidationError(
                "Snapshot is not valid JSON", {"path": path, "line": exc.lineno},
            ) from exc
        return cls(data if isinstance(data, list) else [data])

    @property
    def session_ids(self) -> List[str]:
        return list(self._sessions)

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def get_players(self, session_id: str) -> List[Player]:
        return list(self._players.get(session_id, []))

    def get_transaction_history(self, session_id: str) -> List[Transaction]:
        return list(self._transactions.get(session_id, []))
