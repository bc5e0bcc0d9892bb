"""Audit pipeline layers: tagged descriptors (id + async run function) in a registry.

A layer reads what earlier layers stored on the shared LayerContext and returns exactly one
LayerResult. New layers are added with register_layer; the orchestrator resolves them by id.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from schemaguard.schemas.metadata import CodeScanResult, DatabaseMetadata
from schemaguard.schemas.options import AuditOptions
from schemaguard.schemas.report import ConnectorResult, LayerResult, ReportItem, StageStatus
from schemaguard.services.code_scanner import CodeScanner
from schemaguard.services.consistency import analyze, check_rls, rls_confirmations
from schemaguard.services.fix_applier import apply_fixes
from schemaguard.services.fix_generator import generate_fixes
from schemaguard.services.report import summarize, summary_trips
from schemaguard.services.scanners.base import DatabaseScanner

CODE_SCANNER_CONNECTOR = "code_scanner"
FIX_APPLIER_CONNECTOR = "fix_applier"


def database_connector_name(provider: str) -> str:
    return f"database:{provider}"


@dataclass
class LayerContext:
    """Shared state for one run. Layers add db_metadata, code_scan, findings and connector results."""

    source_root: str
    options: AuditOptions
    scanner: DatabaseScanner
    code_scanner: CodeScanner
    logger: logging.Logger
    project_ref: str | None = None
    layer_ids: list[str] = field(default_factory=list)
    db_metadata: DatabaseMetadata | None = None
    code_scan: CodeScanResult | None = None
    findings: list[ReportItem] = field(default_factory=list)
    connectors: dict[str, ConnectorResult] = field(default_factory=dict)

    def record_connector(self, result: ConnectorResult) -> None:
        self.connectors[result.name] = result


LayerRun = Callable[[LayerContext], Awaitable[LayerResult]]


@dataclass(frozen=True)
class LayerDescriptor:
    id: str
    run: LayerRun
    # LayerContext attributes that must be populated before this layer can run.
    requires: tuple[str, ...] = ()
    description: str = ""


_LAYER_REGISTRY: dict[str, LayerDescriptor] = {}


def register_layer(descriptor: LayerDescriptor) -> None:
    _LAYER_REGISTRY[descriptor.id] = descriptor


def get_layer(layer_id: str) -> LayerDescriptor | None:
    return _LAYER_REGISTRY.get(layer_id)


def registered_layer_ids() -> list[str]:
    return list(_LAYER_REGISTRY)


def status_from_findings(findings: list[ReportItem]) -> StageStatus:
    statuses = {f.status for f in findings}
    if "error" in statuses:
        return "error"
    if "warn" in statuses:
        return "warn"
    return "ok"


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


# --- schema ---------------------------------------------------------------------------------


async def _scan_database(ctx: LayerContext) -> DatabaseMetadata:
    await ctx.scanner.connect(ctx.options.connection)
    return await ctx.scanner.scan_schema()


async def run_schema_layer(ctx: LayerContext) -> LayerResult:
    """Introspect the database and scan the source tree concurrently; both must finish first."""
    start = time.perf_counter()
    db_outcome, code_outcome = await asyncio.gather(
        _scan_database(ctx),
        asyncio.to_thread(ctx.code_scanner.scan, ctx.source_root),
        return_exceptions=True,
    )
    db_connector = database_connector_name(ctx.options.provider)

    if isinstance(code_outcome, BaseException):
        ctx.record_connector(
            ConnectorResult(name=CODE_SCANNER_CONNECTOR, status="error", summary=str(code_outcome))
        )
    else:
        ctx.code_scan = code_outcome
        ctx.record_connector(
            ConnectorResult(
                name=CODE_SCANNER_CONNECTOR,
                status="warn" if code_outcome.files_skipped else "ok",
                summary=f"{code_outcome.files_scanned} files scanned",
                details=(
                    [f"{code_outcome.files_skipped} files could not be parsed"]
                    if code_outcome.files_skipped
                    else []
                ),
            )
        )

    if isinstance(db_outcome, BaseException):
        ctx.record_connector(ConnectorResult(name=db_connector, status="error", summary=str(db_outcome)))
        raise db_outcome

    ctx.db_metadata = db_outcome
    ctx.record_connector(
        ConnectorResult(
            name=db_connector,
            status="ok",
            summary=f"{len(db_outcome.tables)} tables, {len(db_outcome.functions)} functions",
        )
    )
    # Whichever half succeeded stays on the context for layers that only need it.
    if isinstance(code_outcome, BaseException):
        raise code_outcome
    return LayerResult(
        layer="schema",
        status="ok",
        summary=(
            f"Database: {len(db_outcome.tables)} tables, {len(db_outcome.functions)} functions; "
            f"code: {len(code_outcome.tables)} tables, {len(code_outcome.functions)} RPC calls"
        ),
        metrics={
            "duration_ms": _elapsed_ms(start),
            "db_tables": len(db_outcome.tables),
            "db_functions": len(db_outcome.functions),
            "db_relations": len(db_outcome.relations),
            "code_tables": len(code_outcome.tables),
            "code_functions": len(code_outcome.functions),
            "files_scanned": code_outcome.files_scanned,
            "files_skipped": code_outcome.files_skipped,
        },
    )


# --- rls ------------------------------------------------------------------------------------


async def run_rls_layer(ctx: LayerContext) -> LayerResult:
    db = ctx.db_metadata
    if not db.rls and db.tables and not getattr(ctx.scanner, "can_inspect_rls", True):
        return LayerResult(
            layer="rls",
            status="warn",
            summary="Row level security could not be inspected (service role key not configured)",
        )
    findings = [*check_rls(db), *rls_confirmations(db)]
    gaps = sum(1 for f in findings if f.status != "ok")
    return LayerResult(
        layer="rls",
        status=status_from_findings(findings),
        summary=f"{len(db.rls)} tables inspected, {gaps} without effective row level security",
        findings=findings,
        metrics={"tables_inspected": len(db.rls), "gaps": gaps},
    )


# --- consistency ----------------------------------------------------------------------------


async def run_consistency_layer(ctx: LayerContext) -> LayerResult:
    # RLS is reported by its own layer when that layer is part of the run.
    include_rls = "rls" not in ctx.layer_ids
    findings = analyze(ctx.db_metadata, ctx.code_scan, include_rls=include_rls)
    return LayerResult(
        layer="consistency",
        status=status_from_findings(findings),
        summary=f"{len(findings)} consistency findings" if findings else "Schema and code are consistent",
        findings=findings,
        metrics={
            "errors": sum(1 for f in findings if f.status == "error"),
            "warnings": sum(1 for f in findings if f.status == "warn"),
        },
    )


# --- fix ------------------------------------------------------------------------------------


async def run_fix_layer(ctx: LayerContext) -> LayerResult:
    options = ctx.options
    policy_role = "authenticated" if options.provider == "supabase" else "public"
    fixes = generate_fixes(
        ctx.findings,
        ctx.db_metadata,
        schema=options.connection.db_schema,
        policy_role=policy_role,
    )
    payload: dict[str, Any] = {
        "fixes": [fix.model_dump(mode="json", by_alias=True) for fix in fixes],
        "result": None,
    }
    pre_empted = summary_trips(summarize(ctx.findings), options.fail_on)
    ctx.logger.info(
        "Fixes generated",
        extra={
            "layer": "fix",
            "fix_count": len(fixes),
            "auto_fix": options.auto_fix,
            "fail_on_pre_empted": pre_empted,
        },
    )
    if not options.auto_fix or not fixes or pre_empted:
        if not options.auto_fix:
            reason = "auto-fix disabled"
        elif not fixes:
            reason = "no fixes to apply"
        else:
            # The run already fails its fail-on policy; leave the database untouched.
            reason = "fail-on pre-empted"
        ctx.record_connector(
            ConnectorResult(name=FIX_APPLIER_CONNECTOR, status="skipped", summary=reason)
        )
        return LayerResult(
            layer="fix",
            status="ok",
            summary=f"{len(fixes)} fixes suggested ({reason})",
            payload=payload,
            metrics={"suggested": len(fixes)},
        )

    result = await apply_fixes(
        fixes,
        ctx.scanner,
        max_severity=options.max_fix_severity,
        confirmed=options.confirm_fixes,
    )
    payload["result"] = result.model_dump(mode="json", by_alias=True)
    status: StageStatus = "ok" if result.success else "warn"
    summary = (
        f"{result.applied_fixes} applied, {result.failed_fixes} failed, "
        f"{result.skipped_fixes} skipped"
    )
    ctx.record_connector(
        ConnectorResult(
            name=FIX_APPLIER_CONNECTOR,
            status=status,
            summary=summary,
            details=[
                f"{d.fix.type} {d.fix.table or d.fix.function}: {d.error}"
                for d in result.details
                if not d.success
            ],
        )
    )
    return LayerResult(
        layer="fix",
        status=status,
        summary=summary,
        payload=payload,
        metrics={
            "suggested": len(fixes),
            "applied": result.applied_fixes,
            "failed": result.failed_fixes,
            "skipped": result.skipped_fixes,
        },
    )


for _descriptor in (
    LayerDescriptor(
        id="schema",
        run=run_schema_layer,
        description="Introspect the database and scan the source tree.",
    ),
    LayerDescriptor(
        id="rls",
        run=run_rls_layer,
        requires=("db_metadata",),
        description="Report tables without effective row level security.",
    ),
    LayerDescriptor(
        id="consistency",
        run=run_consistency_layer,
        requires=("db_metadata", "code_scan"),
        description="Diff database metadata against code references.",
    ),
    LayerDescriptor(
        id="fix",
        run=run_fix_layer,
        requires=("db_metadata",),
        description="Suggest SQL fixes and optionally apply the authorized subset.",
    ),
):
    register_layer(_descriptor)
