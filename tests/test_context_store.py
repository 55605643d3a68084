"""
Tests for the per-session conversation context store.
"""

import pytest

from src.callbridge.context_store import ConversationContextStore, build_turn
from src.callbridge.db import QueryResult


def _select(n: int) -> QueryResult:
    return QueryResult(rows=[{"id": i} for i in range(n)])


class TestBuildTurn:

    def test_select_counts_rows(self):
        turn = build_turn("SELECT * FROM clients", "SELECT", _select(3), "liste des clients")

        assert turn.action == "retrieved"
        assert turn.details == "3 records"
        assert turn.describe() == "User asked: 'liste des clients', which resulted in retrieved 3 records"

    def test_write_uses_rows_affected(self):
        turn = build_turn("UPDATE clients SET IsInformed = 1", "update", QueryResult(rows_affected=2))

        assert turn.query_type == "UPDATE"
        assert turn.action == "updated"
        assert turn.details == "2 records"

    def test_cte_counts_rows_like_select(self):
        turn = build_turn(
            "WITH recent AS (SELECT * FROM factures) SELECT * FROM recent", "WITH", _select(4)
        )

        assert turn.action == "retrieved"
        assert turn.details == "4 records"

    def test_other_statement_keeps_keyword(self):
        turn = build_turn("EXEC sp_refresh", "EXEC", QueryResult(rows_affected=0))

        assert turn.action == "exec"
        assert turn.details == ""

    def test_timestamp_is_utc_iso(self):
        turn = build_turn("SELECT 1", "SELECT", _select(1))

        assert turn.timestamp.endswith("+00:00")


class TestContextStore:

    def test_keeps_last_n_in_order(self):
        store = ConversationContextStore(capacity=3)
        for i in range(5):
            store.record_query(f"SELECT {i}", "SELECT", _select(i))

        assert len(store) == 3
        assert [t.query for t in store.recent()] == ["SELECT 2", "SELECT 3", "SELECT 4"]

    def test_recent_returns_most_recent_last(self):
        store = ConversationContextStore(capacity=10)
        for i in range(4):
            store.record_query(f"SELECT {i}", "SELECT", _select(1))

        assert [t.query for t in store.recent(2)] == ["SELECT 2", "SELECT 3"]
        assert store.recent(0) == []
        assert len(store.recent(50)) == 4

    def test_recent_is_a_snapshot(self):
        store = ConversationContextStore(capacity=2)
        store.record_query("SELECT 1", "SELECT", _select(1))
        snapshot = store.recent()

        store.record_query("SELECT 2", "SELECT", _select(1))

        assert len(snapshot) == 1

    def test_clear(self):
        store = ConversationContextStore()
        store.record_query("SELECT 1", "SELECT", _select(1))

        store.clear()

        assert len(store) == 0

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            ConversationContextStore(capacity=0)
