"""Postgres scanner: catalog introspection over SQLAlchemy + psycopg2.

Blocking driver calls run in worker threads bounded by the configured timeout; the same
timeout is also enforced server-side (connect_timeout, statement_timeout) so an abandoned
thread never keeps a statement running.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import defaultdict
from typing import Any, Callable

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Connection, Engine, make_url
from sqlalchemy.exc import ArgumentError, DBAPIError, SQLAlchemyError

from schemaguard.core.errors import (
    ExecutionError,
    IntrospectionError,
    ScannerConnectionError,
    ScannerTimeoutError,
)
from schemaguard.schemas.metadata import (
    DatabaseMetadata,
    FunctionArgument,
    FunctionSignature,
    Relation,
    TablePolicy,
    TableRLS,
)
from schemaguard.schemas.options import DatabaseConnection

logger = logging.getLogger(__name__)

# SQLSTATE raised by Postgres when statement_timeout cancels a query.
QUERY_CANCELED_SQLSTATE = "57014"

# proargmodes values that denote input arguments (in, inout, variadic).
_INPUT_ARG_MODES = frozenset({"i", "b", "v"})

_TABLES_SQL = text(
    """
    SELECT table_name
    FROM information_schema.tables
    WHERE table_schema = :schema AND table_type = 'BASE TABLE'
    ORDER BY table_name
    """
)

_COLUMNS_SQL = text(
    """
    SELECT table_name, column_name
    FROM information_schema.columns
    WHERE table_schema = :schema
    ORDER BY table_name, ordinal_position
    """
)

_TABLE_COLUMNS_SQL = text(
    """
    SELECT column_name
    FROM information_schema.columns
    WHERE table_schema = :schema AND table_name = :table
    ORDER BY ordinal_position
    """
)

# Both ends restricted to the scanned schema.
_RELATIONS_SQL = text(
    """
    SELECT kcu.table_name, kcu.column_name,
           ccu.table_name AS references_table, ccu.column_name AS references_column
    FROM information_schema.table_constraints tc
    JOIN information_schema.key_column_usage kcu
      ON tc.constraint_name = kcu.constraint_name AND tc.table_schema = kcu.table_schema
    JOIN information_schema.constraint_column_usage ccu
      ON ccu.constraint_name = tc.constraint_name AND ccu.constraint_schema = tc.table_schema
    WHERE tc.constraint_type = 'FOREIGN KEY'
      AND tc.table_schema = :schema
      AND ccu.table_schema = :schema
    ORDER BY kcu.table_name, kcu.column_name, ccu.table_name, ccu.column_name
    """
)

_FUNCTIONS_SQL = text(
    """
    SELECT p.proname AS name,
           p.proargnames AS arg_names,
           p.proargmodes::text[] AS arg_modes,
           p.pronargs AS nargs,
           p.pronargdefaults AS ndefaults,
           pg_get_function_result(p.oid) AS returns
    FROM pg_proc p
    JOIN pg_namespace n ON n.oid = p.pronamespace
    WHERE n.nspname = :schema AND p.prokind = 'f'
    ORDER BY p.proname, p.oid
    """
)

_FUNCTION_SQL = text(
    """
    SELECT p.proname AS name,
           p.proargnames AS arg_names,
           p.proargmodes::text[] AS arg_modes,
           p.pronargs AS nargs,
           p.pronargdefaults AS ndefaults,
           pg_get_function_result(p.oid) AS returns
    FROM pg_proc p
    JOIN pg_namespace n ON n.oid = p.pronamespace
    WHERE n.nspname = :schema AND p.prokind = 'f' AND p.proname = :name
    ORDER BY p.oid
    LIMIT 1
    """
)

_RLS_ENABLED_SQL = text(
    """
    SELECT c.relname AS table_name, c.relrowsecurity AS enabled
    FROM pg_class c
    JOIN pg_namespace n ON n.oid = c.relnamespace
    WHERE n.nspname = :schema AND c.relkind IN ('r', 'p')
    """
)

_POLICIES_SQL = text(
    """
    SELECT tablename AS table_name, policyname AS name, cmd AS action,
           qual AS using_expr, with_check AS check_expr
    FROM pg_policies
    WHERE schemaname = :schema
    ORDER BY tablename, policyname
    """
)


def _db_error_text(exc: Exception) -> str:
    """Return the driver's error message verbatim (without SQLAlchemy's wrapper text)."""
    orig = getattr(exc, "orig", None)
    return str(orig if orig is not None else exc).strip()


def _is_query_canceled(exc: Exception) -> bool:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "pgcode", None) == QUERY_CANCELED_SQLSTATE


def signature_from_catalog(
    arg_names: list[str] | None,
    arg_modes: list[str] | None,
    nargs: int,
    ndefaults: int,
    returns: str | None,
) -> FunctionSignature:
    """
    Build a FunctionSignature from pg_proc columns.

    Only input arguments are kept; unnamed ones get positional names ($1, $2, ...).
    The trailing `ndefaults` inputs have defaults and are therefore optional.
    """
    names = list(arg_names or [])
    input_names: list[str] = []
    if arg_modes:
        for i, mode in enumerate(arg_modes):
            if mode not in _INPUT_ARG_MODES:
                continue
            name = names[i] if i < len(names) and names[i] else ""
            input_names.append(name or f"${len(input_names) + 1}")
    else:
        for i in range(nargs or 0):
            name = names[i] if i < len(names) and names[i] else ""
            input_names.append(name or f"${i + 1}")

    first_optional = len(input_names) - max(0, ndefaults or 0)
    args = tuple(
        FunctionArgument(name=name, optional=i >= first_optional)
        for i, name in enumerate(input_names)
    )
    return FunctionSignature(args=args, returns=returns or None)


def _normalize_url(connection: DatabaseConnection) -> URL:
    """Accept postgres:// aliases and fill in the password from the connection key when the URL has none."""
    url = make_url(connection.url)
    if url.drivername.startswith("postgres") and not url.drivername.startswith("postgresql"):
        url = url.set(drivername=url.drivername.replace("postgres", "postgresql", 1))
    key = connection.key.get_secret_value()
    if key and not url.password:
        url = url.set(password=key)
    return url


class PostgresScanner:
    """DatabaseScanner for a directly reachable Postgres database."""

    provider = "postgres"

    def __init__(
        self,
        timeout_ms: int = 8000,
        extra: dict[str, Any] | None = None,
        engine_factory: Callable[..., Engine] | None = None,
    ) -> None:
        self._timeout_ms = timeout_ms
        self._extra = extra or {}
        # Allow tests to inject a fake engine without a live database.
        self._engine_factory = engine_factory or create_engine
        self._engine: Engine | None = None
        self._schema = "public"

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking call in a worker thread, bounded by the configured timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args), timeout=self._timeout_ms / 1000.0
            )
        except asyncio.TimeoutError as e:
            raise ScannerTimeoutError(
                f"Postgres operation timed out after {self._timeout_ms} ms."
            ) from e

    def _require_engine(self) -> Engine:
        if self._engine is None:
            raise ScannerConnectionError("Postgres scanner is not connected.")
        return self._engine

    def _ping(self) -> None:
        with self._require_engine().connect() as conn:
            conn.execute(text("SELECT 1"))

    async def connect(self, connection: DatabaseConnection) -> None:
        await self.disconnect()
        self._schema = connection.db_schema
        timeout_s = self._timeout_ms / 1000.0
        try:
            self._engine = self._engine_factory(
                _normalize_url(connection),
                pool_pre_ping=True,
                connect_args={
                    "connect_timeout": max(1, math.ceil(timeout_s)),
                    "options": f"-c statement_timeout={self._timeout_ms}",
                },
            )
        except ArgumentError as e:
            raise ScannerConnectionError(f"Invalid Postgres connection URL: {e}") from e

        try:
            await self._run(self._ping)
        except ScannerTimeoutError:
            await self.disconnect()
            raise
        except SQLAlchemyError as e:
            await self.disconnect()
            if _is_query_canceled(e):
                raise ScannerTimeoutError(
                    f"Postgres connection check timed out after {self._timeout_ms} ms."
                ) from e
            raise ScannerConnectionError(
                f"Cannot connect to Postgres: {_db_error_text(e)}"
            ) from e
        logger.info(
            "Connected to Postgres",
            extra={"provider": self.provider, "schema": self._schema},
        )

    def _fetch_rls(self, conn: Connection, tables: list[str]) -> dict[str, TableRLS]:
        wanted = set(tables)
        enabled = {
            row.table_name: bool(row.enabled)
            for row in conn.execute(_RLS_ENABLED_SQL, {"schema": self._schema})
            if row.table_name in wanted
        }
        policies: defaultdict[str, list[TablePolicy]] = defaultdict(list)
        for row in conn.execute(_POLICIES_SQL, {"schema": self._schema}):
            if row.table_name not in enabled:
                continue
            policies[row.table_name].append(
                TablePolicy(
                    name=row.name,
                    action=row.action,
                    using=row.using_expr,
                    check=row.check_expr,
                )
            )
        return {
            table: TableRLS(enabled=is_enabled, policies=tuple(policies.get(table, [])))
            for table, is_enabled in sorted(enabled.items())
        }

    def _scan_schema_sync(self) -> DatabaseMetadata:
        params = {"schema": self._schema}
        with self._require_engine().connect() as conn:
            # One snapshot for every catalog query.
            conn = conn.execution_options(isolation_level="REPEATABLE READ")
            with conn.begin():
                tables = [row.table_name for row in conn.execute(_TABLES_SQL, params)]
                table_set = set(tables)

                columns: defaultdict[str, list[str]] = defaultdict(list)
                for row in conn.execute(_COLUMNS_SQL, params):
                    if row.table_name in table_set:
                        columns[row.table_name].append(row.column_name)

                relations = [
                    Relation(
                        table=row.table_name,
                        column=row.column_name,
                        references_table=row.references_table,
                        references_column=row.references_column,
                    )
                    for row in conn.execute(_RELATIONS_SQL, params)
                ]

                signatures: dict[str, FunctionSignature] = {}
                for row in conn.execute(_FUNCTIONS_SQL, params):
                    # Overloads: first by catalog order wins.
                    if row.name in signatures:
                        continue
                    signatures[row.name] = signature_from_catalog(
                        row.arg_names, row.arg_modes, row.nargs, row.ndefaults, row.returns
                    )

                rls = self._fetch_rls(conn, tables)

        return DatabaseMetadata(
            tables=tuple(tables),
            functions=tuple(sorted(signatures)),
            table_columns={table: tuple(columns.get(table, [])) for table in tables},
            relations=tuple(relations),
            function_signatures=signatures,
            rls=rls,
        )

    async def scan_schema(self) -> DatabaseMetadata:
        try:
            metadata = await self._run(self._scan_schema_sync)
        except (ScannerTimeoutError, ScannerConnectionError):
            raise
        except SQLAlchemyError as e:
            if _is_query_canceled(e):
                raise ScannerTimeoutError(
                    f"Schema introspection timed out after {self._timeout_ms} ms."
                ) from e
            raise IntrospectionError(
                f"Schema introspection failed: {_db_error_text(e)}"
            ) from e
        except ValueError as e:
            raise IntrospectionError(f"Catalog returned inconsistent metadata: {e}") from e
        logger.info(
            "Postgres schema scanned",
            extra={
                "provider": self.provider,
                "table_count": len(metadata.tables),
                "function_count": len(metadata.functions),
            },
        )
        return metadata

    def _check_rls_sync(self, tables: list[str]) -> dict[str, TableRLS]:
        with self._require_engine().connect() as conn:
            return self._fetch_rls(conn, tables)

    async def check_rls(self, tables: list[str]) -> dict[str, TableRLS]:
        try:
            return await self._run(self._check_rls_sync, list(tables))
        except SQLAlchemyError as e:
            raise IntrospectionError(f"RLS inspection failed: {_db_error_text(e)}") from e

    def _get_columns_sync(self, table: str) -> list[str]:
        with self._require_engine().connect() as conn:
            rows = conn.execute(_TABLE_COLUMNS_SQL, {"schema": self._schema, "table": table})
            return [row.column_name for row in rows]

    async def get_columns(self, table: str) -> list[str]:
        try:
            return await self._run(self._get_columns_sync, table)
        except SQLAlchemyError as e:
            raise IntrospectionError(f"Column lookup failed: {_db_error_text(e)}") from e

    def _get_function_signature_sync(self, name: str) -> FunctionSignature | None:
        with self._require_engine().connect() as conn:
            row = conn.execute(_FUNCTION_SQL, {"schema": self._schema, "name": name}).first()
        if row is None:
            return None
        return signature_from_catalog(
            row.arg_names, row.arg_modes, row.nargs, row.ndefaults, row.returns
        )

    async def get_function_signature(self, name: str) -> FunctionSignature | None:
        try:
            return await self._run(self._get_function_signature_sync, name)
        except SQLAlchemyError as e:
            raise IntrospectionError(f"Function lookup failed: {_db_error_text(e)}") from e

    def _execute_sync(self, sql: str) -> None:
        with self._require_engine().begin() as conn:
            conn.execution_options(no_parameters=True).exec_driver_sql(sql)

    async def execute_sql(self, sql: str) -> None:
        try:
            await self._run(self._execute_sync, sql)
        except DBAPIError as e:
            if _is_query_canceled(e):
                raise ScannerTimeoutError(
                    f"SQL execution timed out after {self._timeout_ms} ms."
                ) from e
            raise ExecutionError(_db_error_text(e), sql=sql) from e
        except SQLAlchemyError as e:
            raise ExecutionError(str(e), sql=sql) from e

    async def is_healthy(self) -> bool:
        """Run a trivial query to verify the database is reachable."""
        if self._engine is None:
            return False
        try:
            await self._run(self._ping)
            return True
        except Exception:
            return False

    async def disconnect(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
