"""
chipsettle/sources/base.py

The narrow read interface to session persistence.

Persistence, UI and transport live outside this package. Everything here
reads a session through three calls and nothing else.
"""

from typing import List, Optional, Protocol, runtime_checkable

from chipsettle.core.models import Player, Session, Transaction


@runtime_checkable
class SessionDataSource(Protocol):

    def get_session(self, session_id: str) -> Optional[Session]:
        """Return the session, or None when it does not exist."""
        ...

    def get_players(self, session_id: str) -> List[Player]:
        ...

    def get_transaction_history(self, session_id: str) -> List[Transaction]:
        """All transactions including voided ones; callers filter."""
        ...
