"""Fix generator: map actionable findings to complete, independently executable SQL suggestions.

Pure: no database access. Findings without a suggested fix type (broken relations, argument
mismatches, confirmations) produce nothing.
"""

from typing import Callable

from schemaguard.schemas.fixes import AUTO_APPLY_FIX_TYPES, SuggestedFix
from schemaguard.schemas.metadata import DatabaseMetadata
from schemaguard.schemas.report import ReportItem

DEFAULT_POLICY_ROLE = "authenticated"

# Stub function arguments are untyped in code; text is the least surprising placeholder.
STUB_ARGUMENT_TYPE = "text"


def quote_ident(name: str) -> str:
    """Double-quote a SQL identifier."""
    return '"' + name.replace('"', '""') + '"'


def sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _qualified(schema: str, name: str) -> str:
    return f"{quote_ident(schema)}.{quote_ident(name)}"


def _role_sql(role: str) -> str:
    # PUBLIC is a keyword here; quoting it would name a role called "public".
    if role.strip().lower() == "public":
        return "public"
    return quote_ident(role)


def _stub_argument_name(name: str, index: int) -> str:
    if name.startswith("$"):
        return f"arg{index + 1}"
    return name


def _fix(fix_type: str, **fields) -> SuggestedFix:
    return SuggestedFix(type=fix_type, auto_apply=fix_type in AUTO_APPLY_FIX_TYPES, **fields)


def _create_table_fix(finding: ReportItem, db: DatabaseMetadata, schema: str, role: str) -> SuggestedFix | None:
    table = finding.context.get("table")
    if not table or table in db.tables:
        return None
    sql = (
        f"CREATE TABLE IF NOT EXISTS {_qualified(schema, table)} (\n"
        '  "id" uuid PRIMARY KEY DEFAULT gen_random_uuid(),\n'
        '  "created_at" timestamptz NOT NULL DEFAULT now()\n'
        ");"
    )
    return _fix(
        "create_table",
        description=f'Create missing table "{table}" (add the columns the application uses before relying on it)',
        sql=sql,
        table=table,
        severity="high",
    )


def _create_function_fix(finding: ReportItem, db: DatabaseMetadata, schema: str, role: str) -> SuggestedFix | None:
    name = finding.context.get("function")
    if not name or name in db.functions:
        return None
    arguments = finding.context.get("arguments") or []
    params = ", ".join(
        f"{quote_ident(_stub_argument_name(arg, i))} {STUB_ARGUMENT_TYPE}"
        for i, arg in enumerate(arguments)
    )
    message = sql_literal(f"function {schema}.{name} is not implemented")
    sql = (
        f"CREATE OR REPLACE FUNCTION {_qualified(schema, name)}({params})\n"
        "RETURNS void\n"
        "LANGUAGE plpgsql\n"
        "AS $$\n"
        "BEGIN\n"
        f"  RAISE EXCEPTION {message};\n"
        "END;\n"
        "$$;"
    )
    return _fix(
        "create_function",
        description=f'Create stub for missing function "{name}" (replace the body and argument types)',
        sql=sql,
        function=name,
        severity="high",
    )


def _enable_rls_fix(finding: ReportItem, db: DatabaseMetadata, schema: str, role: str) -> SuggestedFix | None:
    table = finding.context.get("table")
    if not table:
        return None
    state = db.rls.get(table)
    if state is not None and state.enabled:
        return None
    return _fix(
        "enable_rls",
        description=f'Enable row level security on "{table}"',
        sql=f"ALTER TABLE {_qualified(schema, table)} ENABLE ROW LEVEL SECURITY;",
        table=table,
        severity="medium",
    )


def _add_rls_policy_fix(finding: ReportItem, db: DatabaseMetadata, schema: str, role: str) -> SuggestedFix | None:
    table = finding.context.get("table")
    if not table:
        return None
    role_name = role.strip() or DEFAULT_POLICY_ROLE
    policy = f"{table}_{role_name}_access"
    sql = (
        "DO $$\n"
        "BEGIN\n"
        "  IF NOT EXISTS (\n"
        "    SELECT 1 FROM pg_policies\n"
        f"    WHERE schemaname = {sql_literal(schema)}\n"
        f"      AND tablename = {sql_literal(table)}\n"
        f"      AND policyname = {sql_literal(policy)}\n"
        "  ) THEN\n"
        f"    CREATE POLICY {quote_ident(policy)} ON {_qualified(schema, table)}\n"
        f"      FOR ALL TO {_role_sql(role_name)} USING (true) WITH CHECK (true);\n"
        "  END IF;\n"
        "END\n"
        "$$;"
    )
    return _fix(
        "add_rls_policy",
        description=f'Add a baseline policy for role {role_name} on "{table}" (tighten the USING expression)',
        sql=sql,
        table=table,
        severity="medium",
    )


FixBuilder = Callable[[ReportItem, DatabaseMetadata, str, str], SuggestedFix | None]

_FIX_BUILDERS: dict[str, FixBuilder] = {
    "create_table": _create_table_fix,
    "create_function": _create_function_fix,
    "enable_rls": _enable_rls_fix,
    "add_rls_policy": _add_rls_policy_fix,
}


def generate_fixes(
    findings: list[ReportItem],
    db: DatabaseMetadata,
    schema: str = "public",
    policy_role: str = DEFAULT_POLICY_ROLE,
) -> list[SuggestedFix]:
    """Zero or one fix per finding, in finding order. Repeated targets yield a single fix."""
    fixes: list[SuggestedFix] = []
    seen: set[tuple[str, str | None, str | None]] = set()
    for finding in findings:
        if finding.status == "ok" or finding.suggested_fix is None:
            continue
        builder = _FIX_BUILDERS.get(finding.suggested_fix)
        if builder is None:
            continue
        fix = builder(finding, db, schema, policy_role)
        if fix is None:
            continue
        key = (fix.type, fix.table, fix.function)
        if key in seen:
            continue
        seen.add(key)
        fixes.append(fix)
    return fixes
