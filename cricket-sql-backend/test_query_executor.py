"""
Tests for statement execution, value normalization and database error mapping.

Runs against an in-memory SQLite engine.
"""

import unittest
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import create_engine, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.pool import StaticPool

from errors import DatabaseError, DatabaseErrorKind, ErrorCode
from query_executor import (
    SAFE_MESSAGES,
    QueryExecutor,
    classify_database_error,
    create_database_engine,
    normalize_row,
    normalize_value,
    strip_trailing_semicolon,
    to_database_error,
)


def create_test_engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE wpl_player (player_name TEXT, team TEXT)"))
        conn.execute(text(
            "INSERT INTO wpl_player VALUES "
            "('H Kaur', 'Mumbai Indians'), ('S Mandhana', 'Royal Challengers Bangalore')"
        ))
    return engine


class TestNormalization(unittest.TestCase):

    def test_decimal(self):
        self.assertEqual(normalize_value(Decimal("10")), 10)
        self.assertIsInstance(normalize_value(Decimal("10")), int)
        self.assertEqual(normalize_value(Decimal("1.50")), 1.5)

    def test_non_finite_decimal(self):
        self.assertEqual(normalize_value(Decimal("Infinity")), "Infinity")
        self.assertEqual(normalize_value(Decimal("-Infinity")), "-Infinity")
        self.assertEqual(normalize_value(Decimal("NaN")), "NaN")

    def test_temporal_values(self):
        self.assertEqual(normalize_value(date(2023, 3, 4)), "2023-03-04")
        self.assertEqual(normalize_value(datetime(2023, 3, 4, 19, 30)), "2023-03-04T19:30:00")

    def test_other_values(self):
        value = uuid.UUID("12345678-1234-5678-1234-567812345678")
        self.assertEqual(normalize_value(value), str(value))
        self.assertEqual(normalize_value(b"\x01\xff"), "01ff")
        self.assertIsNone(normalize_value(None))
        self.assertIs(normalize_value(True), True)
        self.assertEqual(normalize_value(7), 7)

    def test_row(self):
        row = normalize_row({"runs": Decimal("42"), "match_date": date(2024, 2, 23)})
        self.assertEqual(row, {"runs": 42, "match_date": "2024-02-23"})

    def test_strip_trailing_semicolon(self):
        self.assertEqual(strip_trailing_semicolon(" SELECT 1 ; "), "SELECT 1")
        self.assertEqual(strip_trailing_semicolon("SELECT 1"), "SELECT 1")


class TestErrorMapping(unittest.TestCase):

    def _operational(self, message):
        return sa_exc.OperationalError("SELECT 1", {}, Exception(message))

    def test_statement_timeout(self):
        error = self._operational("canceling statement due to statement timeout")
        self.assertEqual(classify_database_error(error), DatabaseErrorKind.TIMEOUT)

    def test_pool_timeout(self):
        self.assertEqual(
            classify_database_error(sa_exc.TimeoutError("QueuePool limit reached")),
            DatabaseErrorKind.TIMEOUT,
        )

    def test_connection(self):
        error = self._operational("could not connect to server: Connection refused")
        self.assertEqual(classify_database_error(error), DatabaseErrorKind.CONNECTION)

    def test_missing_object(self):
        error = sa_exc.ProgrammingError("SELECT x", {}, Exception('column "x" does not exist'))
        self.assertEqual(classify_database_error(error), DatabaseErrorKind.MISSING_OBJECT)

    def test_constraint(self):
        error = sa_exc.IntegrityError("INSERT", {}, Exception("duplicate key"))
        self.assertEqual(classify_database_error(error), DatabaseErrorKind.CONSTRAINT)

    def test_invalid_query(self):
        error = sa_exc.ProgrammingError("SELEC 1", {}, Exception("syntax error at or near SELEC"))
        self.assertEqual(classify_database_error(error), DatabaseErrorKind.INVALID_QUERY)

    def test_unknown(self):
        self.assertEqual(classify_database_error(RuntimeError("boom")), DatabaseErrorKind.UNKNOWN)

    def test_statuses_and_safe_messages(self):
        timeout = to_database_error(self._operational("statement timeout"))
        self.assertEqual(timeout.status, 408)
        self.assertEqual(timeout.code, ErrorCode.DATABASE_ERROR)
        self.assertEqual(timeout.message, SAFE_MESSAGES[DatabaseErrorKind.TIMEOUT])

        connection = to_database_error(self._operational("connection refused at 10.0.0.5"))
        self.assertEqual(connection.status, 503)
        self.assertNotIn("10.0.0.5", connection.message)

        unknown = to_database_error(RuntimeError("password=hunter2"))
        self.assertEqual(unknown.status, 500)
        self.assertNotIn("hunter2", unknown.message)


class TestQueryExecutor(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.engine = create_test_engine()
        self.executor = QueryExecutor(self.engine)

    def tearDown(self):
        self.engine.dispose()

    def test_execute_returns_rows(self):
        result = self.executor.execute_query_sync(
            "SELECT player_name FROM wpl_player ORDER BY player_name;"
        )
        self.assertEqual(result.rows, [{"player_name": "H Kaur"}, {"player_name": "S Mandhana"}])
        self.assertEqual(result.row_count, 2)
        self.assertGreaterEqual(result.execution_time_ms, 0)

    def test_empty_result(self):
        result = self.executor.execute_query_sync(
            "SELECT player_name FROM wpl_player WHERE player_name = 'Nobody'"
        )
        self.assertEqual(result.rows, [])
        self.assertEqual(result.row_count, 0)

    def test_colon_inside_literal_is_not_a_parameter(self):
        result = self.executor.execute_query_sync("SELECT 'Venue :Mumbai' AS venue")
        self.assertEqual(result.rows, [{"venue": "Venue :Mumbai"}])

    def test_percent_in_like_pattern(self):
        result = self.executor.execute_query_sync(
            "SELECT player_name FROM wpl_player WHERE player_name LIKE '%Kaur%'"
        )
        self.assertEqual(result.rows, [{"player_name": "H Kaur"}])

    def test_missing_table(self):
        with self.assertRaises(DatabaseError) as ctx:
            self.executor.execute_query_sync("SELECT * FROM wpl_umpire")
        self.assertEqual(ctx.exception.kind, DatabaseErrorKind.MISSING_OBJECT)
        self.assertEqual(ctx.exception.message, SAFE_MESSAGES[DatabaseErrorKind.MISSING_OBJECT])
        self.assertNotIn("sqlite", ctx.exception.message.lower())

    def test_syntax_error(self):
        with self.assertRaises(DatabaseError) as ctx:
            self.executor.execute_query_sync("SELEC player_name FROM wpl_player")
        self.assertEqual(ctx.exception.kind, DatabaseErrorKind.INVALID_QUERY)

    async def test_async_execute(self):
        result = await self.executor.execute_query(
            "SELECT team FROM wpl_player WHERE player_name = 'H Kaur'"
        )
        self.assertEqual(result.rows, [{"team": "Mumbai Indians"}])

    def test_ping(self):
        self.assertTrue(self.executor.ping())


class TestCreateDatabaseEngine(unittest.TestCase):

    def test_sqlite_engine(self):
        engine = create_database_engine("sqlite://", statement_timeout_ms=15000)
        try:
            self.assertEqual(engine.dialect.name, "sqlite")
            self.assertTrue(QueryExecutor(engine).ping())
        finally:
            engine.dispose()


if __name__ == "__main__":
    unittest.main()
