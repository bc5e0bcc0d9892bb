"""Unit tests for schemaguard.services.scanners.postgres with a mocked SQLAlchemy engine."""

import asyncio
import time
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError, ProgrammingError

from schemaguard.core.errors import (
    ExecutionError,
    IntrospectionError,
    ScannerConnectionError,
    ScannerTimeoutError,
)
from schemaguard.schemas.options import DatabaseConnection
from schemaguard.services.scanners.postgres import (
    PostgresScanner,
    _normalize_url,
    signature_from_catalog,
)


class _QueryCanceled(Exception):
    pgcode = "57014"


def _row(**fields: object) -> SimpleNamespace:
    return SimpleNamespace(**fields)


def _connection(url: str = "postgresql://app@localhost:5432/app", key: str = "") -> DatabaseConnection:
    return DatabaseConnection(url=url, key=key)


class TestSignatureFromCatalog(unittest.TestCase):
    """pg_proc columns to FunctionSignature: input args only, trailing defaults optional."""

    def test_defaults_mark_trailing_args_optional(self) -> None:
        signature = signature_from_catalog(["user_id", "since"], None, 2, 1, "numeric")
        self.assertEqual(signature.arg_names, ["user_id", "since"])
        self.assertEqual(signature.required_arg_names, ["user_id"])
        self.assertEqual(signature.returns, "numeric")

    def test_output_args_are_ignored(self) -> None:
        signature = signature_from_catalog(["a", "total", "b"], ["i", "o", "i"], 2, 0, "record")
        self.assertEqual(signature.arg_names, ["a", "b"])

    def test_unnamed_args_get_positional_names(self) -> None:
        signature = signature_from_catalog(None, None, 2, 0, "void")
        self.assertEqual(signature.arg_names, ["$1", "$2"])

    def test_no_args(self) -> None:
        self.assertEqual(signature_from_catalog(None, None, 0, 0, None).args, ())


class TestNormalizeUrl(unittest.TestCase):
    def test_postgres_alias(self) -> None:
        url = _normalize_url(_connection("postgres://u:p@db:5432/app"))
        self.assertEqual(url.drivername, "postgresql")

    def test_password_from_key(self) -> None:
        url = _normalize_url(_connection(key="s3cret"))
        self.assertEqual(url.password, "s3cret")

    def test_url_password_wins(self) -> None:
        url = _normalize_url(_connection("postgresql://u:inline@db/app", key="other"))
        self.assertEqual(url.password, "inline")


class TestPostgresScanner(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = MagicMock()
        self.factory = MagicMock(return_value=self.engine)
        self.scanner = PostgresScanner(timeout_ms=2000, engine_factory=self.factory)

    def _snapshot_conn(self) -> MagicMock:
        return self.engine.connect.return_value.__enter__.return_value.execution_options.return_value

    def test_connect_sets_server_side_timeouts(self) -> None:
        asyncio.run(self.scanner.connect(_connection()))
        kwargs = self.factory.call_args.kwargs
        self.assertTrue(kwargs["pool_pre_ping"])
        self.assertEqual(kwargs["connect_args"]["connect_timeout"], 2)
        self.assertIn("statement_timeout=2000", kwargs["connect_args"]["options"])

    def test_connect_failure(self) -> None:
        self.engine.connect.side_effect = OperationalError("SELECT 1", {}, Exception("could not connect to server"))
        with self.assertRaises(ScannerConnectionError) as ctx:
            asyncio.run(self.scanner.connect(_connection()))
        self.assertIn("could not connect", ctx.exception.message)
        self.engine.dispose.assert_called_once()

    def test_scan_schema(self) -> None:
        asyncio.run(self.scanner.connect(_connection()))
        self._snapshot_conn().execute.side_effect = [
            [_row(table_name="orders"), _row(table_name="users")],
            [
                _row(table_name="orders", column_name="id"),
                _row(table_name="orders", column_name="user_id"),
                _row(table_name="users", column_name="id"),
                _row(table_name="some_view", column_name="x"),
            ],
            [_row(table_name="orders", column_name="user_id", references_table="users", references_column="id")],
            [
                _row(name="get_total", arg_names=["user_id"], arg_modes=None, nargs=1, ndefaults=0, returns="numeric"),
                _row(name="get_total", arg_names=["a", "b"], arg_modes=None, nargs=2, ndefaults=0, returns="numeric"),
            ],
            [_row(table_name="orders", enabled=True), _row(table_name="users", enabled=False)],
            [_row(table_name="orders", name="own", action="SELECT", using_expr="true", check_expr=None)],
        ]
        metadata = asyncio.run(self.scanner.scan_schema())
        self.assertEqual(metadata.tables, ("orders", "users"))
        self.assertEqual(metadata.table_columns, {"orders": ("id", "user_id"), "users": ("id",)})
        self.assertEqual(metadata.relations[0].references_table, "users")
        # First overload wins.
        self.assertEqual(metadata.function_signatures["get_total"].arg_names, ["user_id"])
        self.assertTrue(metadata.rls["orders"].enabled)
        self.assertEqual(metadata.rls["orders"].policies[0].name, "own")
        self.assertFalse(metadata.rls["users"].enabled)
        self.engine.connect.return_value.__enter__.return_value.execution_options.assert_called_with(
            isolation_level="REPEATABLE READ"
        )

    def test_partial_failure_is_all_or_nothing(self) -> None:
        asyncio.run(self.scanner.connect(_connection()))
        self._snapshot_conn().execute.side_effect = [
            [_row(table_name="orders")],
            ProgrammingError("SELECT ...", {}, Exception("permission denied for table columns")),
        ]
        with self.assertRaises(IntrospectionError) as ctx:
            asyncio.run(self.scanner.scan_schema())
        self.assertIn("permission denied", ctx.exception.message)

    def test_missing_function_signature_is_none(self) -> None:
        asyncio.run(self.scanner.connect(_connection()))
        conn = self.engine.connect.return_value.__enter__.return_value
        conn.execute.return_value.first.return_value = None
        self.assertIsNone(asyncio.run(self.scanner.get_function_signature("nope")))

    def test_execute_sql_error_text_verbatim(self) -> None:
        asyncio.run(self.scanner.connect(_connection()))
        conn = self.engine.begin.return_value.__enter__.return_value
        conn.execution_options.return_value.exec_driver_sql.side_effect = ProgrammingError(
            "CREATE TABLE x ()", {}, Exception('relation "x" already exists')
        )
        with self.assertRaises(ExecutionError) as ctx:
            asyncio.run(self.scanner.execute_sql("CREATE TABLE x ()"))
        self.assertEqual(ctx.exception.message, 'relation "x" already exists')
        self.assertEqual(ctx.exception.sql, "CREATE TABLE x ()")

    def test_slow_catalog_query_times_out(self) -> None:
        scanner = PostgresScanner(timeout_ms=200, engine_factory=self.factory)
        asyncio.run(scanner.connect(_connection()))
        self._snapshot_conn().execute.side_effect = lambda *args: time.sleep(1.0)
        with self.assertRaises(ScannerTimeoutError) as ctx:
            asyncio.run(scanner.scan_schema())
        self.assertIn("200 ms", ctx.exception.message)

    def test_statement_timeout_is_timeout_error(self) -> None:
        asyncio.run(self.scanner.connect(_connection()))
        self._snapshot_conn().execute.side_effect = OperationalError(
            "SELECT ...", {}, _QueryCanceled("canceling statement due to statement timeout")
        )
        with self.assertRaises(ScannerTimeoutError):
            asyncio.run(self.scanner.scan_schema())

        conn = self.engine.begin.return_value.__enter__.return_value
        conn.execution_options.return_value.exec_driver_sql.side_effect = OperationalError(
            "CREATE INDEX ...", {}, _QueryCanceled("canceling statement due to statement timeout")
        )
        with self.assertRaises(ScannerTimeoutError):
            asyncio.run(self.scanner.execute_sql("CREATE INDEX ..."))

    def test_unconnected_scanner(self) -> None:
        self.assertFalse(asyncio.run(self.scanner.is_healthy()))
        asyncio.run(self.scanner.disconnect())
        asyncio.run(self.scanner.disconnect())
        with self.assertRaises(ScannerConnectionError):
            asyncio.run(self.scanner.scan_schema())


if __name__ == "__main__":
    unittest.main()
