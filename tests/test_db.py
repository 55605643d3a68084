"""
Tests for the data access layer: parameter binding, retry and execution.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import exc as sa_exc
from tenacity import RetryCallState

from src.callbridge.config import get_config
from src.callbridge.db import (
    DataAccessLayer,
    QueryResult,
    bind_parameters,
    is_transient_error,
    transient_retry_policy,
)


class _SqlServerError(Exception):
    """Stand-in for a driver error carrying a SQL Server error number."""

    def __init__(self, message: str, number: int):
        super().__init__(message)
        self.number = number


class TestBindParameters:

    def test_binds_in_detection_order(self):
        bound = bind_parameters(
            "SELECT * FROM factures WHERE clientId = @clientId AND NumerFacture = @invoice",
            [7, "F-1"],
        )

        assert bound.params == {"clientId": 7, "invoice": "F-1"}
        assert ":clientId" in str(bound.statement)
        assert ":invoice" in str(bound.statement)

    def test_extra_placeholders_are_left_alone(self):
        bound = bind_parameters("SELECT @a, @b", ["x"])

        assert bound.params == {"a": "x"}
        assert "@b" in str(bound.statement)

    def test_no_params_leaves_query_untouched(self):
        bound = bind_parameters("SELECT * FROM clients WHERE email LIKE '%@atlas.ma'")

        assert bound.params == {}
        assert "@atlas" in str(bound.statement)

    def test_literal_colons_are_not_bind_markers(self):
        bound = bind_parameters("SELECT '10:30' AS t")

        assert bound.statement._bindparams == {}


class TestTransientClassification:

    def test_connection_errors_are_transient(self):
        assert is_transient_error(ConnectionError("reset"))
        assert is_transient_error(TimeoutError())

    def test_operational_error_is_transient(self):
        error = sa_exc.OperationalError("SELECT 1", {}, Exception("Communication link failure"))

        assert is_transient_error(error)

    def test_throttling_error_number_is_transient(self):
        orig = _SqlServerError("Database is busy", 40501)
        error = sa_exc.ProgrammingError("SELECT 1", {}, orig)

        assert is_transient_error(error)

    def test_sqlstate_connection_class_is_transient(self):
        error = sa_exc.DBAPIError("SELECT 1", {}, Exception("08S01", "link failure"))

        assert is_transient_error(error)

    def test_syntax_error_is_fatal(self):
        error = sa_exc.ProgrammingError("SELEC 1", {}, Exception("Incorrect syntax near 'SELEC'"))

        assert not is_transient_error(error)

    def test_integrity_error_is_fatal(self):
        error = sa_exc.IntegrityError("INSERT", {}, Exception("duplicate key"))

        assert not is_transient_error(error)


class TestRetry:

    @pytest.mark.asyncio
    async def test_transient_failure_tries_three_times(self):
        dal = DataAccessLayer("sqlite+aiosqlite:///:memory:", config=get_config())
        dal._run = AsyncMock(side_effect=ConnectionError("connection reset"))

        with pytest.raises(ConnectionError):
            await dal.execute("SELECT 1")

        assert dal._run.await_count == 3

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self):
        dal = DataAccessLayer("sqlite+aiosqlite:///:memory:", config=get_config())
        dal._run = AsyncMock(side_effect=[ConnectionError("reset"), QueryResult(rows=[{"x": 1}])])

        result = await dal.execute("SELECT 1 AS x")

        assert result.rows == [{"x": 1}]
        assert dal._run.await_count == 2

    @pytest.mark.asyncio
    async def test_fatal_failure_is_not_retried(self):
        dal = DataAccessLayer("sqlite+aiosqlite:///:memory:", config=get_config())
        error = sa_exc.ProgrammingError("SELEC 1", {}, Exception("Incorrect syntax"))
        dal._run = AsyncMock(side_effect=error)

        with pytest.raises(sa_exc.ProgrammingError):
            await dal.execute("SELEC 1")

        assert dal._run.await_count == 1

    @pytest.mark.asyncio
    async def test_retry_discards_engine(self):
        dal = DataAccessLayer("sqlite+aiosqlite:///:memory:", config=get_config())
        dal.get_engine()
        assert dal.has_engine

        dal._run = AsyncMock(side_effect=[ConnectionError("reset"), QueryResult(rows=[])])
        await dal.execute("SELECT 1")

        assert not dal.has_engine

    def test_backoff_doubles_from_base(self):
        policy = transient_retry_policy(3, 1.0)
        state = RetryCallState(policy, None, (), {})

        state.attempt_number = 1
        assert policy.wait(state) == 1
        state.attempt_number = 2
        assert policy.wait(state) == 2


def _mock_engine() -> MagicMock:
    engine = MagicMock()
    engine.dispose = AsyncMock()
    return engine


def _disconnect_context() -> SimpleNamespace:
    return SimpleNamespace(is_disconnect=True, original_exception=ConnectionError("link failure"))


class TestEngineInvalidation:

    @pytest.mark.asyncio
    async def test_disconnected_engine_is_disposed_on_close(self):
        engine = _mock_engine()
        dal = DataAccessLayer(
            "mssql+aioodbc://user:pw@sql.example.com/cement",
            config=get_config(),
            engine_factory=MagicMock(return_value=engine),
        )
        with patch("src.callbridge.db.event"):
            dal.get_engine()

        dal._on_engine_error(_disconnect_context())
        assert not dal.has_engine

        await dal.close()

        engine.dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disconnected_engine_is_disposed_before_retry(self):
        first, second = _mock_engine(), _mock_engine()
        dal = DataAccessLayer(
            "mssql+aioodbc://user:pw@sql.example.com/cement",
            config=get_config(),
            engine_factory=MagicMock(side_effect=[first, second]),
        )

        async def drop_first_connection(bound):
            if dal._run.await_count == 1:
                dal.get_engine()
                dal._on_engine_error(_disconnect_context())
                raise ConnectionError("link failure")
            return QueryResult(rows=[])

        dal._run = AsyncMock(side_effect=drop_first_connection)
        with patch("src.callbridge.db.event"):
            result = await dal.execute("SELECT 1")

        assert result.rows == []
        assert dal._run.await_count == 2
        first.dispose.assert_awaited_once()
        second.dispose.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disconnected_engine_is_disposed_after_final_failure(self):
        engine = _mock_engine()
        dal = DataAccessLayer(
            "mssql+aioodbc://user:pw@sql.example.com/cement",
            config=get_config(),
            engine_factory=MagicMock(return_value=engine),
        )
        with patch("src.callbridge.db.event"):
            dal.get_engine()

        async def drop_connection(bound):
            dal._on_engine_error(_disconnect_context())
            raise sa_exc.ProgrammingError("SELEC 1", {}, Exception("Incorrect syntax"))

        dal._run = AsyncMock(side_effect=drop_connection)
        with pytest.raises(sa_exc.ProgrammingError):
            await dal.execute("SELEC 1")

        engine.dispose.assert_awaited_once()


class TestExecution:

    @pytest.mark.asyncio
    async def test_select_returns_rows(self, cement_database):
        dal = DataAccessLayer(cement_database, config=get_config())
        try:
            result = await dal.execute(
                "SELECT Designation, Tarif FROM ArticleCiments WHERE Designation LIKE @name",
                ["%CPJ45%"],
            )
        finally:
            await dal.close()

        assert result.returns_rows
        assert result.rows == [{"Designation": "Ciment CPJ45", "Tarif": 85}]

    @pytest.mark.asyncio
    async def test_write_returns_rows_affected(self, cement_database):
        dal = DataAccessLayer(cement_database, config=get_config())
        try:
            result = await dal.execute("UPDATE clients SET IsInformed = 0 WHERE id = @id", [1])
        finally:
            await dal.close()

        assert not result.returns_rows
        assert result.rows_affected == 1

    @pytest.mark.asyncio
    async def test_close_without_engine_is_noop(self):
        dal = DataAccessLayer("sqlite+aiosqlite:///:memory:", config=get_config())

        await dal.close()

        assert not dal.has_engine
