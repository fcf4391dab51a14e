"""
chipsettle/sources/bounded.py

Deadline-bounded reads against a SessionDataSource.

A stalled backing store must not block a settlement request forever. Reads
run on a small worker pool and the caller waits at most read_timeout_ms.
A read that misses its deadline becomes DataSourceTimeoutError (retryable);
the worker thread is left to finish on its own.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Callable, List, Optional, TypeVar

from chipsettle.core.exceptions import DataSourceTimeoutError, SessionNotFoundError
from chipsettle.core.models import Player, Session, Transaction
from chipsettle.sources.base import SessionDataSource

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BoundedReader:

    def __init__(
        self,
        source:          SessionDataSource,
        read_timeout_ms: int = 5000,
        max_workers:     int = 4,
    ) -> None:
        self.source = source
        self.read_timeout_ms = read_timeout_ms
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="chipsettle-read")

    def _call(self, op: str, fn: Callable[[str], T], session_id: str) -> T:
        future = self._pool.submit(fn, session_id)
        try:
            return future.result(timeout=self.read_timeout_ms / 1000.0)
        except FutureTimeout:
            future.cancel()
            logger.warning("Data source %s(%s) exceeded %dms", op, session_id, self.read_timeout_ms)
            raise DataSourceTimeoutError(
                "Session data read timed out",
                {"operation": op, "session_id": session_id, "timeout_ms": self.read_timeout_ms},
            ) from None

    def session(self, session_id: str) -> Session:
        session: Optional[Session] = self._call("get_session", self.source.get_session, session_id)
        if session is None:
            raise SessionNotFoundError("Session not found", {"session_id": session_id})
        return session

    def players(self, session_id: str) -> List[Player]:
        return self._call("get_players", self.source.get_players, session_id)

    def transactions(self, session_id: str) -> List[Transaction]:
        return self._call("get_transaction_history", self.source.get_transaction_history, session_id)

    def close(self) -> None:
        self._pool.shutdown(wait=False)
