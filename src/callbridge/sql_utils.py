"""
Post-processing for model-generated SQL.

The grounding model is asked for bare SQL Server statements, but replies still
arrive wrapped in markdown or written in MySQL/PostgreSQL dialect. These helpers
normalize them before execution.
"""

from __future__ import annotations

import re
from enum import Enum

import structlog

logger = structlog.get_logger(__name__)

_CODE_FENCE_RE = re.compile(r"```(?:sql)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_LIMIT_RE = re.compile(
    r"SELECT\s+(.*?)\s+FROM\s+(.*?)\s+LIMIT\s+(\d+)",
    re.IGNORECASE | re.DOTALL,
)
_BACKTICK_RE = re.compile(r"`([^`]+)`")

READ_KEYWORDS = frozenset({"SELECT", "WITH"})
WRITE_KEYWORDS = frozenset({"INSERT", "UPDATE", "DELETE", "MERGE"})


class OperationKind(str, Enum):
    READ = "read"
    WRITE = "write"
    OTHER = "other"


def clean_sql_query(sql_text: str) -> str:
    """Strip markdown code fences; return the bare statement."""
    match = _CODE_FENCE_RE.search(sql_text or "")
    if match and match.group(1):
        return match.group(1).strip()
    return (sql_text or "").strip()


def fix_sql_syntax(sql_query: str) -> str:
    """Rewrite common non-T-SQL constructs (LIMIT, backtick quoting)."""
    fixed = sql_query

    if _LIMIT_RE.search(fixed):
        fixed = _LIMIT_RE.sub(r"SELECT TOP \3 \1 FROM \2", fixed, count=1)
        logger.info("Fixed LIMIT syntax", query=fixed)

    return _BACKTICK_RE.sub(r"[\1]", fixed)


def statement_keyword(sql_query: str) -> str:
    """First keyword of the statement, upper-cased (e.g. SELECT)."""
    parts = (sql_query or "").strip().split(None, 1)
    if not parts:
        return ""
    return parts[0].rstrip(";").upper()


def classify_statement(sql_query: str) -> OperationKind:
    keyword = statement_keyword(sql_query)
    if keyword in READ_KEYWORDS:
        return OperationKind.READ
    if keyword in WRITE_KEYWORDS:
        return OperationKind.WRITE
    return OperationKind.OTHER
