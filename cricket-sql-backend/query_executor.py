"""
Cricket Query Execution Service

Runs already-validated, literal-only SQL against the cricket database
(SQLAlchemy engine, shared and pooled across requests) and returns a
JSON-safe QueryResult.

Raw engine errors are logged here and never leave this module: callers only
ever see a DatabaseError with one of a small set of user-safe messages.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from typing import Any, Dict, List, Mapping

from sqlalchemy import create_engine, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine

from errors import DatabaseError, DatabaseErrorKind

logger = logging.getLogger(__name__)


SAFE_MESSAGES = {
    DatabaseErrorKind.TIMEOUT: "The cricket query took too long to run. Please try a simpler question.",
    DatabaseErrorKind.CONNECTION: "Lost connection to the cricket database. Please try again in a moment.",
    DatabaseErrorKind.MISSING_OBJECT: "The cricket table or column you requested does not exist.",
    DatabaseErrorKind.CONSTRAINT: "Database constraint failed. Please rephrase your cricket question.",
    DatabaseErrorKind.INVALID_QUERY: "Invalid query format. Please rephrase your cricket question.",
    DatabaseErrorKind.UNKNOWN: "Database error occurred while fetching cricket statistics. Please try again.",
}

RAW_SQL_OPTIONS = {"no_parameters": True}

_TIMEOUT_MARKERS = ("statement timeout", "canceling statement", "timed out", "timeout")
_CONNECTION_MARKERS = (
    "could not connect",
    "connection refused",
    "connection reset",
    "server closed the connection",
    "terminating connection",
    "connection to server",
    "unable to open database",
)
_MISSING_OBJECT_MARKERS = ("does not exist", "no such table", "no such column", "undefined")


@dataclass
class QueryResult:
    """
    Result of one executed statement.

    Attributes:
        rows: Column-keyed records with JSON-safe values
        row_count: len(rows)
        execution_time_ms: Wall-clock time spent executing
    """
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    execution_time_ms: int = 0


# =============================================================================
# ENGINE
# =============================================================================

def create_database_engine(database_url: str, statement_timeout_ms: int = 0) -> Engine:
    """
    Build the process-wide engine.

    On PostgreSQL the statement timeout is set per connection via libpq options.
    """
    connect_args = {}
    if statement_timeout_ms and database_url.startswith("postgres"):
        connect_args["options"] = f"-c statement_timeout={int(statement_timeout_ms)}"

    engine = create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)
    logger.info(f"Database engine created ({engine.dialect.name})")
    return engine


# =============================================================================
# NORMALIZATION
# =============================================================================

def normalize_value(value: Any) -> Any:
    """Convert driver types to JSON-safe values."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, Decimal):
        if not value.is_finite():
            # numeric 'Infinity' / 'NaN' have no JSON number form
            return str(value)
        if value == value.to_integral_value() and value.as_tuple().exponent >= 0:
            return int(value)
        return float(value)
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return value


def normalize_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {str(key): normalize_value(value) for key, value in row.items()}


def strip_trailing_semicolon(sql: str) -> str:
    sql = sql.strip()
    if sql.endswith(";"):
        sql = sql[:-1].rstrip()
    return sql


# =============================================================================
# ERROR MAPPING
# =============================================================================

def classify_database_error(error: Exception) -> DatabaseErrorKind:
    """Map a SQLAlchemy / driver exception to a DatabaseErrorKind."""
    message = str(error).lower()

    if isinstance(error, sa_exc.TimeoutError):
        return DatabaseErrorKind.TIMEOUT
    if isinstance(error, sa_exc.IntegrityError):
        return DatabaseErrorKind.CONSTRAINT

    if isinstance(error, sa_exc.DBAPIError):
        if any(marker in message for marker in _TIMEOUT_MARKERS):
            return DatabaseErrorKind.TIMEOUT
        if error.connection_invalidated or isinstance(error, sa_exc.InterfaceError):
            return DatabaseErrorKind.CONNECTION
        if any(marker in message for marker in _CONNECTION_MARKERS):
            return DatabaseErrorKind.CONNECTION
        if any(marker in message for marker in _MISSING_OBJECT_MARKERS):
            return DatabaseErrorKind.MISSING_OBJECT
        if isinstance(error, (sa_exc.ProgrammingError, sa_exc.DataError, sa_exc.OperationalError)):
            return DatabaseErrorKind.INVALID_QUERY

    if isinstance(error, sa_exc.StatementError):
        return DatabaseErrorKind.INVALID_QUERY

    return DatabaseErrorKind.UNKNOWN


def to_database_error(error: Exception) -> DatabaseError:
    kind = classify_database_error(error)
    return DatabaseError(SAFE_MESSAGES[kind], kind=kind)


# =============================================================================
# EXECUTOR
# =============================================================================

class QueryExecutor:
    """
    Executes single statements on the shared engine.

    Each statement runs on its own pooled connection; no multi-statement
    transactions (everything here is a read-only SELECT).
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def execute_query_sync(self, sql: str) -> QueryResult:
        """
        Execute one statement (blocking).

        Returns:
            QueryResult with normalized rows

        Raises:
            DatabaseError: with a user-safe message
        """
        clean_sql = strip_trailing_semicolon(sql)
        start = time.perf_counter()

        try:
            with self.engine.connect() as conn:
                # Raw driver SQL: ':name' inside a literal is not a bind
                # parameter, and '%' passes through untouched without params.
                result = conn.exec_driver_sql(clean_sql, execution_options=RAW_SQL_OPTIONS)
                if result.returns_rows:
                    rows = [normalize_row(row) for row in result.mappings().all()]
                else:
                    rows = []
        except Exception as e:
            database_error = to_database_error(e)
            logger.error(
                f"Query execution failed ({database_error.kind.value}): {e}"
            )
            raise database_error from e

        elapsed_ms = int(round((time.perf_counter() - start) * 1000))
        logger.info(f"Query executed: {len(rows)} rows in {elapsed_ms}ms")

        return QueryResult(rows=rows, row_count=len(rows), execution_time_ms=elapsed_ms)

    async def execute_query(self, sql: str) -> QueryResult:
        """Execute one statement without blocking the event loop."""
        return await asyncio.to_thread(self.execute_query_sync, sql)

    def ping(self) -> bool:
        """True if the database answers SELECT 1."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            return False
