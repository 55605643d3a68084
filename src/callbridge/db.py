"""
Shared async SQL connection pool with transient-error retry.

Queries use T-SQL style `@name` placeholders; values are bound positionally in
the order the placeholders appear. Connection-class failures are retried with
exponential backoff and a fresh engine; everything else fails on the first
attempt.
"""

from __future__ import annotations

import functools
import re
import socket
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence

import structlog
from sqlalchemy import event, exc as sa_exc, text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.sql.elements import TextClause
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.callbridge.config import Config, get_config

logger = structlog.get_logger(__name__)

# SQL Server error numbers for throttling, failover and deadlock victims.
TRANSIENT_SQL_ERROR_NUMBERS = frozenset({1205, 10928, 10929, 40501, 40613, 49918, 49919, 49920})
TRANSIENT_SQLSTATE_PREFIXES = ("08", "HYT00", "HYT01")

_PLACEHOLDER_RE = re.compile(r"(?<![@\w])@(\w+)")
_COLON_RE = re.compile(r"(?<![\\:]):(?=\w)")
_SQL_ERROR_NUMBER_RE = re.compile(r"\((\d{3,5})\)")


@dataclass
class QueryResult:
    """Rows for row-returning statements, affected count for writes."""
    rows: Optional[list[dict[str, Any]]] = None
    rows_affected: int = 0

    @property
    def returns_rows(self) -> bool:
        return self.rows is not None

    def __len__(self) -> int:
        return len(self.rows) if self.rows is not None else 0


@dataclass
class BoundQuery:
    statement: TextClause
    params: dict[str, Any] = field(default_factory=dict)


def bind_parameters(query: str, params: Sequence[Any] = ()) -> BoundQuery:
    """
    Bind positional values to `@name` placeholders in detection order.

    Only as many placeholders as there are values get bound; the rest are left
    in the text untouched.
    """
    bound: dict[str, Any] = {}
    if params and "@" in query:
        for index, name in enumerate(_PLACEHOLDER_RE.findall(query)):
            if index >= len(params):
                break
            bound.setdefault(name, params[index])

    # Literal colons (times, labels) must not look like bind markers.
    statement = _COLON_RE.sub(r"\\:", query)
    if bound:
        statement = _PLACEHOLDER_RE.sub(
            lambda m: f":{m.group(1)}" if m.group(1) in bound else m.group(0),
            statement,
        )
    return BoundQuery(statement=text(statement), params=bound)


def _sql_error_numbers(error: BaseException) -> set[int]:
    numbers: set[int] = set()
    number = getattr(error, "number", None)
    if isinstance(number, int):
        numbers.add(number)
    for arg in getattr(error, "args", ()):
        if isinstance(arg, str):
            numbers.update(int(n) for n in _SQL_ERROR_NUMBER_RE.findall(arg))
    return numbers


def _sqlstate(error: BaseException) -> str:
    args = getattr(error, "args", ())
    if args and isinstance(args[0], str):
        return args[0]
    return ""


def is_transient_error(error: BaseException) -> bool:
    """Classify an exception as retryable (connection/timeout/overload/deadlock)."""
    if isinstance(error, (ConnectionError, TimeoutError, socket.timeout)):
        return True
    if isinstance(error, sa_exc.TimeoutError):
        return True

    if isinstance(error, sa_exc.DBAPIError):
        if error.connection_invalidated:
            return True
        orig = error.orig
        if orig is not None:
            if is_transient_error(orig):
                return True
            if _sql_error_numbers(orig) & TRANSIENT_SQL_ERROR_NUMBERS:
                return True
            if _sqlstate(orig).startswith(TRANSIENT_SQLSTATE_PREFIXES):
                return True
        if isinstance(error, (sa_exc.ProgrammingError, sa_exc.IntegrityError, sa_exc.DataError)):
            return False
        return isinstance(error, (sa_exc.OperationalError, sa_exc.InterfaceError))

    if _sql_error_numbers(error) & TRANSIENT_SQL_ERROR_NUMBERS:
        return True
    return False


def transient_retry_policy(
    max_attempts: int,
    backoff_base: float,
    before_sleep: Optional[Callable[[RetryCallState], Awaitable[None]]] = None,
) -> AsyncRetrying:
    """Pure retry policy: bounded attempts, exponential wait, transient errors only."""
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=backoff_base),
        retry=retry_if_exception(is_transient_error),
        before_sleep=before_sleep,
        reraise=True,
    )


def retry_transient(func):
    """Retry a DataAccessLayer coroutine method, resetting the pool between attempts."""

    @functools.wraps(func)
    async def wrapper(self: "DataAccessLayer", *args, **kwargs):
        policy = transient_retry_policy(
            self.max_attempts,
            self.backoff_base,
            before_sleep=self._before_retry,
        )
        async for attempt in policy:
            with attempt:
                return await func(self, *args, **kwargs)

    return wrapper


class DataAccessLayer:
    """
    Process-wide pooled access to the relational store.

    The engine is created lazily and discarded whenever the driver reports a
    lost connection, so the next call builds a fresh one.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        *,
        config: Optional[Config] = None,
        engine_factory: Callable[..., AsyncEngine] = create_async_engine,
    ):
        self.config = config or get_config()
        self.database_url = database_url or self.config.database_url
        self.max_attempts = max(1, self.config.db_max_attempts)
        self.backoff_base = max(0.0, self.config.db_backoff_base_seconds)
        self._engine_factory = engine_factory
        self._engine: Optional[AsyncEngine] = None
        self._stale_engines: list[AsyncEngine] = []

    @property
    def has_engine(self) -> bool:
        return self._engine is not None

    def _engine_options(self) -> dict[str, Any]:
        if self.database_url.startswith("sqlite"):
            return {}
        timeout = self.config.db_timeout_seconds
        return {
            "pool_size": self.config.db_pool_max,
            "max_overflow": 0,
            "pool_recycle": self.config.db_pool_idle_seconds,
            "pool_pre_ping": True,
            "pool_timeout": timeout,
            "connect_args": {"timeout": timeout},
        }

    def get_engine(self) -> AsyncEngine:
        if self._engine is None:
            logger.info("Creating SQL connection pool")
            engine = self._engine_factory(self.database_url, **self._engine_options())
            event.listen(engine.sync_engine, "handle_error", self._on_engine_error)
            self._engine = engine
        return self._engine

    def _on_engine_error(self, context) -> None:
        # Driver-level disconnects invalidate the shared handle; the old engine
        # is disposed on the next reset.
        if getattr(context, "is_disconnect", False):
            logger.error("SQL pool error; invalidating pool", error=str(context.original_exception))
            engine, self._engine = self._engine, None
            if engine is not None:
                self._stale_engines.append(engine)

    async def _reset_engine(self) -> None:
        engine, self._engine = self._engine, None
        if engine is not None:
            self._stale_engines.append(engine)
        await self._dispose_stale_engines()

    async def _before_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "SQL connection error, retrying",
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            error=str(error),
        )
        await self._reset_engine()

    async def _run(self, bound: BoundQuery) -> QueryResult:
        engine = self.get_engine()
        async with engine.begin() as conn:
            result = await conn.execute(bound.statement, bound.params)
            if result.returns_rows:
                return QueryResult(rows=[dict(row) for row in result.mappings().all()])
            return QueryResult(rows_affected=max(result.rowcount or 0, 0))

    @retry_transient
    async def _execute_with_retry(self, bound: BoundQuery) -> QueryResult:
        return await self._run(bound)

    async def execute(self, query: str, params: Sequence[Any] = ()) -> QueryResult:
        """Execute a query, retrying transient failures."""
        bound = bind_parameters(query, params)
        try:
            return await self._execute_with_retry(bound)
        except Exception as e:
            logger.error("Final error executing query", error=str(e), transient=is_transient_error(e))
            await self._dispose_stale_engines()
            raise

    async def _dispose_stale_engines(self) -> None:
        engines, self._stale_engines = self._stale_engines, []
        for engine in engines:
            try:
                await engine.dispose()
            except Exception as e:
                logger.warning("Error closing pool", error=str(e))

    async def close(self) -> None:
        """Dispose the pool (application shutdown)."""
        if self._engine is None and not self._stale_engines:
            return
        await self._reset_engine()
        logger.info("SQL connection pool closed")
