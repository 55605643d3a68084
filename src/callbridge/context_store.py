"""
Bounded history of recent query/result turns.

Each call session owns one store; the retrieval pipeline reads the last few
turns to ground SQL generation in what was already asked.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from src.callbridge.sql_utils import READ_KEYWORDS

WRITE_ACTIONS = {
    "INSERT": "inserted",
    "UPDATE": "updated",
    "DELETE": "deleted",
    "MERGE": "merged",
}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ConversationTurn:
    """A single query issued on behalf of the caller."""
    query: str
    query_type: str
    action: str
    details: str = ""
    result: Any = None
    natural_language_query: Optional[str] = None
    timestamp: str = field(default_factory=_utc_now_iso)

    def describe(self) -> str:
        asked = self.natural_language_query or self.query
        return f"User asked: '{asked}', which resulted in {self.action} {self.details}".rstrip()


def build_turn(
    query: str,
    query_type: str,
    result: Any,
    natural_language_query: Optional[str] = None,
) -> ConversationTurn:
    """Summarize a query and its effect into a turn."""
    query_type = (query_type or "").upper()
    action = query_type.lower()
    details = ""

    if query_type in READ_KEYWORDS and result is not None:
        action = "retrieved"
        rows = getattr(result, "rows", result)
        details = f"{len(rows) if isinstance(rows, list) else 0} records"
    elif query_type in WRITE_ACTIONS:
        action = WRITE_ACTIONS[query_type]
        details = f"{getattr(result, 'rows_affected', 0) or 0} records"

    return ConversationTurn(
        query=query,
        query_type=query_type,
        action=action,
        details=details,
        result=result,
        natural_language_query=natural_language_query,
    )


class ConversationContextStore:
    """Append-only ring of recent turns, oldest evicted first."""

    def __init__(self, capacity: int = 10):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._turns: deque[ConversationTurn] = deque(maxlen=capacity)

    def record(self, turn: ConversationTurn) -> None:
        self._turns.append(turn)

    def record_query(
        self,
        query: str,
        query_type: str,
        result: Any,
        natural_language_query: Optional[str] = None,
    ) -> ConversationTurn:
        turn = build_turn(query, query_type, result, natural_language_query)
        self.record(turn)
        return turn

    def recent(self, n: Optional[int] = None) -> list[ConversationTurn]:
        """Return the last `n` turns (all when None), most recent last."""
        turns = list(self._turns)
        if n is None:
            return turns
        if n <= 0:
            return []
        return turns[-n:]

    def clear(self) -> None:
        self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)
