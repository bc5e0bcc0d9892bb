"""Supabase scanner: schema introspection through PostgREST's OpenAPI document.

Tables, columns, foreign keys and RPC signatures come from `GET /rest/v1/`. RLS state and SQL
execution need the service role key and an SQL-executing RPC installed in the project
(see EXEC_SQL_FUNCTION_SQL); its name and argument are configurable via the extra options.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx

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

REST_PATH = "/rest/v1/"
RPC_PATH_PREFIX = "/rpc/"
DEFAULT_SQL_RPC = "exec_sql"
DEFAULT_SQL_RPC_ARG = "query"

# PostgREST annotates foreign-key columns in the OpenAPI description.
_FK_NOTE_PATTERN = re.compile(r"<fk table='([^']+)' column='([^']+)'/>")

# Helper RPC expected by RLS inspection and auto-fix. Install once with the SQL editor.
EXEC_SQL_FUNCTION_SQL = """\
CREATE OR REPLACE FUNCTION public.exec_sql(query text)
RETURNS json
LANGUAGE plpgsql
SECURITY DEFINER
AS $$
DECLARE
  result json;
BEGIN
  IF query ~* '^\\s*(select|with)\\s' THEN
    EXECUTE format('SELECT coalesce(json_agg(t), ''[]''::json) FROM (%s) t', query) INTO result;
  ELSE
    EXECUTE query;
    result := '[]'::json;
  END IF;
  RETURN result;
END;
$$;
REVOKE ALL ON FUNCTION public.exec_sql(text) FROM public, anon, authenticated;
"""

_RLS_QUERY = """\
SELECT c.relname AS table_name, c.relrowsecurity AS enabled
FROM pg_class c
JOIN pg_namespace n ON n.oid = c.relnamespace
WHERE n.nspname = '{schema}' AND c.relkind IN ('r', 'p')"""

_POLICIES_QUERY = """\
SELECT tablename AS table_name, policyname AS name, cmd AS action,
       qual AS using_expr, with_check AS check_expr
FROM pg_policies
WHERE schemaname = '{schema}'
ORDER BY tablename, policyname"""


def _sql_literal(value: str) -> str:
    return value.replace("'", "''")


def _error_detail(resp: httpx.Response) -> str:
    """Extract PostgREST's error message verbatim, falling back to the raw body."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:500] if resp.text else "Unknown error"
    if isinstance(body, dict):
        message = body.get("message") or body.get("error") or body.get("msg")
        if message:
            return str(message)
    return json.dumps(body)[:500]


def _rpc_signature(path_item: dict[str, Any]) -> FunctionSignature:
    """Read argument names and optionality from an /rpc/<name> OpenAPI path item."""
    post = path_item.get("post") or {}
    for param in post.get("parameters") or []:
        if param.get("in") != "body":
            continue
        schema = param.get("schema") or {}
        required = set(schema.get("required") or [])
        properties = schema.get("properties") or {}
        return FunctionSignature(
            args=tuple(
                FunctionArgument(name=name, optional=name not in required)
                for name in properties
            )
        )
    # GET-only functions describe arguments as query parameters.
    get = path_item.get("get") or {}
    args = [
        FunctionArgument(name=param["name"], optional=not param.get("required", False))
        for param in get.get("parameters") or []
        if param.get("in") == "query" and param.get("name")
    ]
    return FunctionSignature(args=tuple(args))


def metadata_from_openapi(
    document: dict[str, Any],
    rls: dict[str, TableRLS] | None = None,
) -> DatabaseMetadata:
    """
    Build DatabaseMetadata from a PostgREST OpenAPI document.

    Raises ValueError/KeyError/TypeError on a malformed document; callers convert those to IntrospectionError.
    """
    if not isinstance(document, dict) or "paths" not in document:
        raise ValueError("OpenAPI document has no 'paths'")
    paths: dict[str, Any] = document["paths"]
    definitions: dict[str, Any] = document.get("definitions") or {}

    tables = sorted(
        name for name in definitions if f"/{name}" in paths
    )
    table_columns: dict[str, tuple[str, ...]] = {}
    relations: list[Relation] = []
    for table in tables:
        properties: dict[str, Any] = definitions[table].get("properties") or {}
        table_columns[table] = tuple(properties)
        for column, prop in properties.items():
            match = _FK_NOTE_PATTERN.search(prop.get("description") or "")
            if match:
                relations.append(
                    Relation(
                        table=table,
                        column=column,
                        references_table=match.group(1),
                        references_column=match.group(2),
                    )
                )

    signatures: dict[str, FunctionSignature] = {}
    for path, item in paths.items():
        if not path.startswith(RPC_PATH_PREFIX):
            continue
        name = path[len(RPC_PATH_PREFIX):]
        if name:
            signatures[name] = _rpc_signature(item)

    return DatabaseMetadata(
        tables=tuple(tables),
        functions=tuple(sorted(signatures)),
        table_columns=table_columns,
        relations=tuple(relations),
        function_signatures=signatures,
        rls=rls or {},
    )


class SupabaseScanner:
    """DatabaseScanner for a Supabase project, reached over HTTPS."""

    provider = "supabase"

    def __init__(
        self,
        timeout_ms: int = 8000,
        extra: dict[str, Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout_ms = timeout_ms
        extra = extra or {}
        self._sql_rpc = str(extra.get("sql_rpc") or DEFAULT_SQL_RPC)
        self._sql_rpc_arg = str(extra.get("sql_rpc_arg") or DEFAULT_SQL_RPC_ARG)
        # Allow tests to inject httpx.MockTransport without a live project.
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._service_key: str | None = None
        self._schema = "public"

    @property
    def can_inspect_rls(self) -> bool:
        return bool(self._service_key)

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise ScannerConnectionError("Supabase scanner is not connected.")
        return self._client

    def _service_headers(self) -> dict[str, str]:
        if not self._service_key:
            raise ExecutionError(
                "Supabase service role key is required to run SQL (connection.service_key)."
            )
        return {
            "apikey": self._service_key,
            "Authorization": f"Bearer {self._service_key}",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        use_service_key: bool = False,
        json_body: Any = None,
    ) -> httpx.Response:
        client = self._require_client()
        headers = self._service_headers() if use_service_key else None
        try:
            return await client.request(method, path, json=json_body, headers=headers)
        except httpx.TimeoutException as e:
            raise ScannerTimeoutError(
                f"Supabase request timed out after {self._timeout_ms} ms."
            ) from e
        except httpx.HTTPError as e:
            raise ScannerConnectionError(f"Supabase is unreachable: {e}") from e

    async def connect(self, connection: DatabaseConnection) -> None:
        await self.disconnect()
        key = connection.key.get_secret_value()
        self._service_key = (
            connection.service_key.get_secret_value() if connection.service_key else None
        ) or None
        self._schema = connection.db_schema
        self._client = httpx.AsyncClient(
            base_url=connection.url.rstrip("/"),
            headers={
                "apikey": key,
                "Authorization": f"Bearer {key}",
                "Accept-Profile": self._schema,
                "Content-Profile": self._schema,
            },
            timeout=httpx.Timeout(self._timeout_ms / 1000.0),
            transport=self._transport,
        )
        try:
            resp = await self._request("GET", REST_PATH)
        except (ScannerConnectionError, ScannerTimeoutError):
            await self.disconnect()
            raise
        if resp.status_code in (401, 403):
            await self.disconnect()
            raise ScannerConnectionError(
                "Supabase authentication failed (invalid API key)."
            )
        if resp.status_code >= 400:
            detail = _error_detail(resp)
            await self.disconnect()
            raise ScannerConnectionError(
                f"Supabase returned {resp.status_code}: {detail}"
            )
        logger.info(
            "Connected to Supabase",
            extra={
                "provider": self.provider,
                "schema": self._schema,
                "rls_inspection": self.can_inspect_rls,
            },
        )

    async def _fetch_openapi(self) -> dict[str, Any]:
        # PostgREST only documents objects the requesting role can see.
        resp = await self._request("GET", REST_PATH, use_service_key=self.can_inspect_rls)
        if resp.status_code >= 400:
            raise IntrospectionError(
                f"Supabase returned {resp.status_code} for the schema document: {_error_detail(resp)}"
            )
        try:
            document = resp.json()
        except ValueError as e:
            raise IntrospectionError("Supabase schema document is not valid JSON.") from e
        if not isinstance(document, dict):
            raise IntrospectionError("Supabase schema document is not a JSON object.")
        return document

    async def _query(self, sql: str) -> list[dict[str, Any]]:
        """Run a read-only query through the SQL RPC; returns rows as dicts."""
        resp = await self._request(
            "POST",
            f"{REST_PATH.rstrip('/')}{RPC_PATH_PREFIX}{self._sql_rpc}",
            use_service_key=True,
            json_body={self._sql_rpc_arg: sql},
        )
        if resp.status_code >= 400:
            raise IntrospectionError(
                f"SQL RPC '{self._sql_rpc}' failed ({resp.status_code}): {_error_detail(resp)}"
            )
        try:
            rows = resp.json()
        except ValueError as e:
            raise IntrospectionError(f"SQL RPC '{self._sql_rpc}' returned invalid JSON.") from e
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise IntrospectionError(f"SQL RPC '{self._sql_rpc}' did not return a row list.")
        return rows

    async def scan_schema(self) -> DatabaseMetadata:
        document = await self._fetch_openapi()
        try:
            base = metadata_from_openapi(document)
        except (KeyError, TypeError, ValueError) as e:
            raise IntrospectionError(f"Unexpected Supabase schema document: {e}") from e
        rls = await self.check_rls(list(base.tables)) if self.can_inspect_rls else {}
        metadata = base.model_copy(update={"rls": rls})
        logger.info(
            "Supabase schema scanned",
            extra={
                "provider": self.provider,
                "table_count": len(metadata.tables),
                "function_count": len(metadata.functions),
                "rls_table_count": len(rls),
            },
        )
        return metadata

    async def check_rls(self, tables: list[str]) -> dict[str, TableRLS]:
        if not self.can_inspect_rls:
            logger.info(
                "Skipping RLS inspection: no service role key",
                extra={"provider": self.provider},
            )
            return {}
        schema = _sql_literal(self._schema)
        try:
            state_rows = await self._query(_RLS_QUERY.format(schema=schema))
            policy_rows = await self._query(_POLICIES_QUERY.format(schema=schema))
        except ExecutionError as e:
            raise IntrospectionError(e.message) from e
        wanted = set(tables)
        try:
            enabled = {
                row["table_name"]: bool(row["enabled"])
                for row in state_rows
                if row.get("table_name") in wanted
            }
            policies: dict[str, list[TablePolicy]] = {}
            for row in policy_rows:
                table = row.get("table_name")
                if table not in enabled:
                    continue
                policies.setdefault(table, []).append(
                    TablePolicy(
                        name=row["name"],
                        action=row.get("action"),
                        using=row.get("using_expr"),
                        check=row.get("check_expr"),
                    )
                )
            return {
                table: TableRLS(enabled=is_enabled, policies=tuple(policies.get(table, [])))
                for table, is_enabled in sorted(enabled.items())
            }
        except (KeyError, TypeError, ValueError) as e:
            raise IntrospectionError(f"Unexpected RLS rows from SQL RPC: {e}") from e

    async def get_columns(self, table: str) -> list[str]:
        document = await self._fetch_openapi()
        definition = (document.get("definitions") or {}).get(table) or {}
        return list(definition.get("properties") or {})

    async def get_function_signature(self, name: str) -> FunctionSignature | None:
        document = await self._fetch_openapi()
        item = (document.get("paths") or {}).get(f"{RPC_PATH_PREFIX}{name}")
        if item is None:
            return None
        try:
            return _rpc_signature(item)
        except (KeyError, TypeError, ValueError) as e:
            raise IntrospectionError(f"Unexpected RPC description for {name}: {e}") from e

    async def execute_sql(self, sql: str) -> None:
        resp = await self._request(
            "POST",
            f"{REST_PATH.rstrip('/')}{RPC_PATH_PREFIX}{self._sql_rpc}",
            use_service_key=True,
            json_body={self._sql_rpc_arg: sql},
        )
        if resp.status_code >= 400:
            raise ExecutionError(_error_detail(resp), sql=sql)

    async def is_healthy(self) -> bool:
        if self._client is None:
            return False
        try:
            resp = await self._request("GET", REST_PATH)
            return resp.status_code < 400
        except Exception:
            return False

    async def disconnect(self) -> None:
        if self._client is not None:
            client = self._client
            self._client = None
            await client.aclose()
