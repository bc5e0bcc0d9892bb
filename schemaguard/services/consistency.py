"""Consistency analyzer: deterministic diff of live database metadata against code expectations.

Findings are ordered by check category (missing tables, missing functions, broken relations,
RPC arguments, RLS) and then by identifier ascending. Database objects the code never references
are not drift and produce no findings.
"""

import re

from schemaguard.schemas.metadata import CodeScanResult, DatabaseMetadata, FunctionSignature
from schemaguard.schemas.report import ReportItem

# Check identifiers carried in finding context (stable; used by the fix generator).
CHECK_MISSING_TABLE = "missing_table"
CHECK_MISSING_FUNCTION = "missing_function"
CHECK_BROKEN_RELATION = "broken_relation"
CHECK_RPC_ARGUMENTS = "rpc_arguments"
CHECK_RLS_DISABLED = "rls_disabled"
CHECK_RLS_NO_POLICIES = "rls_no_policies"
CHECK_RLS_OK = "rls_ok"

_POSITIONAL_NAME = re.compile(r"^\$[1-9]\d*$")


def is_positional_name(name: str) -> bool:
    """True for synthesized positional argument names ($1, $2, ...)."""
    return bool(_POSITIONAL_NAME.match(name))


def check_missing_tables(db: DatabaseMetadata, code: CodeScanResult) -> list[ReportItem]:
    known = set(db.tables)
    return [
        ReportItem(
            status="error",
            message=f'Table "{table}" is referenced in code but missing from the database',
            suggested_fix="create_table",
            context={"check": CHECK_MISSING_TABLE, "table": table},
        )
        for table in sorted(set(code.tables) - known)
    ]


def check_missing_functions(db: DatabaseMetadata, code: CodeScanResult) -> list[ReportItem]:
    known = set(db.functions)
    findings: list[ReportItem] = []
    for name in sorted(set(code.functions) - known):
        context: dict = {"check": CHECK_MISSING_FUNCTION, "function": name}
        if name in code.rpc_arguments:
            context["arguments"] = list(code.rpc_arguments[name])
        findings.append(
            ReportItem(
                status="error",
                message=f'Function "{name}" is called from code but missing from the database',
                suggested_fix="create_function",
                context=context,
            )
        )
    return findings


def check_broken_relations(db: DatabaseMetadata) -> list[ReportItem]:
    """Relations whose source or target table is absent. No automated fix is suggested."""
    known = set(db.tables)
    broken = [
        rel
        for rel in db.relations
        if rel.table not in known or rel.references_table not in known
    ]
    broken.sort(key=lambda r: (r.table, r.column, r.references_table, r.references_column))
    findings: list[ReportItem] = []
    for rel in broken:
        absent = [t for t in (rel.table, rel.references_table) if t not in known]
        findings.append(
            ReportItem(
                status="error",
                message=(
                    f'Relation "{rel.table}.{rel.column}" -> '
                    f'"{rel.references_table}.{rel.references_column}" points at a missing table'
                ),
                detail=f"Missing: {', '.join(dict.fromkeys(absent))}",
                context={
                    "check": CHECK_BROKEN_RELATION,
                    "table": rel.table,
                    "column": rel.column,
                    "references_table": rel.references_table,
                    "references_column": rel.references_column,
                },
            )
        )
    return findings


def compare_named_arguments(
    signature: FunctionSignature, supplied: list[str]
) -> tuple[list[str], list[str]]:
    """
    Named mode: (missing, extra). Missing = required signature arguments not supplied;
    extra = supplied names the signature does not declare. Positional names are ignored here.
    """
    names = [arg for arg in supplied if not is_positional_name(arg)]
    supplied_set = set(names)
    declared = set(signature.arg_names)
    missing = [arg for arg in signature.required_arg_names if arg not in supplied_set]
    extra = [arg for arg in names if arg not in declared]
    return missing, extra


def compare_positional_arguments(
    signature: FunctionSignature, supplied: list[str]
) -> tuple[list[str], list[str]]:
    """
    Positional mode: the supplied count must lie in [required, total]. Too few names the
    uncovered required arguments as missing; too many names the surplus $n as extra.
    """
    count = len(supplied)
    required = signature.required_arg_names
    total = len(signature.args)
    if count < len(required):
        covered = set(signature.arg_names[:count])
        return [arg for arg in required if arg not in covered], []
    if count > total:
        return [], [f"${i + 1}" for i in range(total, count)]
    return [], []


def check_rpc_arguments(db: DatabaseMetadata, code: CodeScanResult) -> list[ReportItem]:
    """Argument drift for RPC calls that resolve to a known signature. Always warn, never error."""
    findings: list[ReportItem] = []
    for name in sorted(code.rpc_arguments):
        signature = db.function_signatures.get(name)
        if signature is None or name not in db.functions:
            continue
        supplied = list(code.rpc_arguments[name])
        positional = bool(supplied) and all(is_positional_name(arg) for arg in supplied)
        if positional:
            missing, extra = compare_positional_arguments(signature, supplied)
        else:
            missing, extra = compare_named_arguments(signature, supplied)
        if not missing and not extra:
            continue
        parts = []
        if missing:
            parts.append(f"missing: {', '.join(missing)}")
        if extra:
            parts.append(f"unexpected: {', '.join(extra)}")
        findings.append(
            ReportItem(
                status="warn",
                message=f'Call arguments for "{name}" do not match its signature ({"; ".join(parts)})',
                detail=f"Signature: {name}({', '.join(signature.arg_names)})",
                context={
                    "check": CHECK_RPC_ARGUMENTS,
                    "function": name,
                    "mode": "positional" if positional else "named",
                    "missing": missing,
                    "extra": extra,
                },
            )
        )
    return findings


def check_rls(db: DatabaseMetadata) -> list[ReportItem]:
    """RLS gaps: disabled (fix enable_rls) or enabled without any policy (fix add_rls_policy)."""
    findings: list[ReportItem] = []
    for table in sorted(db.rls):
        state = db.rls[table]
        if not state.enabled:
            findings.append(
                ReportItem(
                    status="warn",
                    message=f'Row level security is disabled on table "{table}"',
                    suggested_fix="enable_rls",
                    context={"check": CHECK_RLS_DISABLED, "table": table},
                )
            )
        elif not state.policies:
            findings.append(
                ReportItem(
                    status="warn",
                    message=f'Row level security is enabled on table "{table}" but no policies exist',
                    detail="All access except the table owner and bypass roles is denied.",
                    suggested_fix="add_rls_policy",
                    context={"check": CHECK_RLS_NO_POLICIES, "table": table},
                )
            )
    return findings


def rls_confirmations(db: DatabaseMetadata) -> list[ReportItem]:
    """ok findings for tables with RLS enabled and at least one policy."""
    return [
        ReportItem(
            status="ok",
            message=f'Row level security is enabled on table "{table}" with {len(state.policies)} policies',
            context={
                "check": CHECK_RLS_OK,
                "table": table,
                "policies": [p.name for p in state.policies],
            },
        )
        for table, state in sorted(db.rls.items())
        if state.enabled and state.policies
    ]


def analyze(
    db: DatabaseMetadata,
    code: CodeScanResult,
    include_rls: bool = True,
) -> list[ReportItem]:
    """Run every check in category order. Identical inputs always give identical ordered output."""
    findings = [
        *check_missing_tables(db, code),
        *check_missing_functions(db, code),
        *check_broken_relations(db),
        *check_rpc_arguments(db, code),
    ]
    if include_rls:
        findings.extend(check_rls(db))
    return findings
