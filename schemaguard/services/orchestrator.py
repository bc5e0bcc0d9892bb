"""Audit run orchestration: validate options, run configured layers in order, aggregate the report.

Only option validation aborts a run. Everything a layer raises is converted to that layer's
LayerResult, and layers whose inputs were never produced report skipped.
"""

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import ValidationError

from schemaguard.core.config import Settings, get_settings
from schemaguard.core.errors import OptionsValidationError, ScannerConfigError
from schemaguard.schemas.options import AuditOptions
from schemaguard.schemas.report import AuditReport, ConnectorResult, LayerResult
from schemaguard.services.code_scanner import CodeScanner
from schemaguard.services.layers import (
    CODE_SCANNER_CONNECTOR,
    FIX_APPLIER_CONNECTOR,
    LayerContext,
    LayerDescriptor,
    database_connector_name,
    get_layer,
    registered_layer_ids,
)
from schemaguard.services.report import summarize
from schemaguard.services.scanners.base import DatabaseScanner
from schemaguard.services.scanners.factory import get_database_scanner

RunState = Literal["pending", "running", "completed", "aborted"]

CANCELLED_SUMMARY = "run cancelled"


def _format_validation_errors(exc: ValidationError) -> list[str]:
    errors = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        errors.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return errors


def validate_options(options: AuditOptions | Mapping[str, Any]) -> AuditOptions:
    """Parse and check options. Raises OptionsValidationError for anything that would abort a run."""
    if isinstance(options, AuditOptions):
        parsed = options
    else:
        try:
            parsed = AuditOptions.model_validate(dict(options))
        except ValidationError as e:
            errors = _format_validation_errors(e)
            raise OptionsValidationError("invalid audit options: " + "; ".join(errors), errors) from e

    unknown = [layer for layer in parsed.layers if get_layer(layer) is None]
    if unknown:
        raise OptionsValidationError(
            f"unknown layer ids: {', '.join(unknown)} (known: {', '.join(registered_layer_ids())})",
            [f"layers: unknown layer id {layer!r}" for layer in unknown],
        )
    if not Path(parsed.source_root).is_dir():
        raise OptionsValidationError(
            f"source root is not a directory: {parsed.source_root}",
            [f"source_root: {parsed.source_root!r} does not exist or is not a directory"],
        )
    return parsed


def options_from_settings(settings: Settings, **overrides: Any) -> AuditOptions:
    """Build AuditOptions from environment settings; keyword overrides win."""
    if settings.DB_PROVIDER == "postgres":
        connection: dict[str, Any] = {"url": settings.DATABASE_URL or ""}
    else:
        connection = {
            "url": settings.SUPABASE_URL or settings.DATABASE_URL or "",
            "key": settings.SUPABASE_ANON_KEY.get_secret_value() if settings.SUPABASE_ANON_KEY else "",
            "service_key": (
                settings.SUPABASE_SERVICE_ROLE_KEY.get_secret_value()
                if settings.SUPABASE_SERVICE_ROLE_KEY
                else None
            ),
        }
    connection["schema"] = settings.DB_SCHEMA

    values: dict[str, Any] = {
        "provider": settings.DB_PROVIDER,
        "connection": connection,
        "layers": settings.audit_layers,
        "timeout_ms": settings.AUDIT_TIMEOUT_MS,
        "fail_on": settings.AUDIT_FAIL_ON,
        "output_path": settings.AUDIT_REPORT_PATH,
        "project_ref": settings.AUDIT_PROJECT_REF,
        "auto_fix": settings.AUTO_FIX_ENABLED,
        "max_fix_severity": settings.AUTO_FIX_MAX_SEVERITY,
    }
    if settings.AUDIT_SOURCE_ROOT:
        values["source_root"] = settings.AUDIT_SOURCE_ROOT
    values.update({k: v for k, v in overrides.items() if v is not None})
    return validate_options(values)


class Orchestrator:
    """One audit run: pending -> running -> completed, or aborted on invalid options."""

    def __init__(
        self,
        options: AuditOptions | Mapping[str, Any],
        logger: logging.Logger | None = None,
        scanner: DatabaseScanner | None = None,
        code_scanner: CodeScanner | None = None,
    ) -> None:
        self.state: RunState = "pending"
        self.logger = logger or logging.getLogger(__name__)
        self._cancelled = False
        try:
            self.options = validate_options(options)
            self.descriptors: list[LayerDescriptor] = [get_layer(layer) for layer in self.options.layers]
            self.scanner = scanner or get_database_scanner(
                self.options.provider,
                timeout_ms=self.options.timeout_ms,
                extra=self.options.extra,
            )
        except ScannerConfigError as e:
            self.state = "aborted"
            raise OptionsValidationError(e.message, [f"provider: {e.message}"]) from e
        except OptionsValidationError:
            self.state = "aborted"
            raise
        if code_scanner is None:
            settings = get_settings()
            code_scanner = CodeScanner(
                exclude_dirs=settings.exclude_dirs, max_workers=settings.CODE_SCAN_MAX_WORKERS
            )
        self.code_scanner = code_scanner

    def cancel(self) -> None:
        """Request cancellation. The in-flight layer finishes; remaining layers are skipped."""
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _build_context(self) -> LayerContext:
        return LayerContext(
            source_root=self.options.source_root,
            project_ref=self.options.project_ref,
            options=self.options,
            scanner=self.scanner,
            code_scanner=self.code_scanner,
            logger=self.logger,
            layer_ids=list(self.options.layers),
        )

    async def _run_layer(self, descriptor: LayerDescriptor, ctx: LayerContext) -> LayerResult:
        missing = [name for name in descriptor.requires if getattr(ctx, name, None) is None]
        if missing:
            return LayerResult(
                layer=descriptor.id,
                status="skipped",
                summary=f"requires {', '.join(missing)}, which no earlier layer produced",
            )
        try:
            result = await descriptor.run(ctx)
        except Exception as e:
            self.logger.exception(
                "Audit layer failed",
                extra={"layer": descriptor.id, "error_type": type(e).__name__},
            )
            return LayerResult(layer=descriptor.id, status="error", summary=str(e) or type(e).__name__)
        if result.layer != descriptor.id:
            result = result.model_copy(update={"layer": descriptor.id})
        return result

    def _connectors(self, ctx: LayerContext) -> list[ConnectorResult]:
        expected = [database_connector_name(self.options.provider), CODE_SCANNER_CONNECTOR]
        if "fix" in self.options.layers:
            expected.append(FIX_APPLIER_CONNECTOR)
        connectors = [
            ctx.connectors.get(name)
            or ConnectorResult(name=name, status="skipped", summary="not invoked")
            for name in expected
        ]
        connectors.extend(result for name, result in ctx.connectors.items() if name not in expected)
        return connectors

    async def run(self) -> AuditReport:
        if self.state != "pending":
            raise RuntimeError(f"audit run already {self.state}")
        self.state = "running"
        ctx = self._build_context()
        results: list[LayerResult] = []
        run_start = time.perf_counter()
        self.logger.info(
            "Audit run started",
            extra={
                "provider": self.options.provider,
                "layers": list(self.options.layers),
                "source_root": self.options.source_root,
                "project_ref": self.options.project_ref,
            },
        )
        try:
            for descriptor in self.descriptors:
                if self._cancelled:
                    results.append(
                        LayerResult(layer=descriptor.id, status="skipped", summary=CANCELLED_SUMMARY)
                    )
                    continue
                start = time.perf_counter()
                result = await self._run_layer(descriptor, ctx)
                ctx.findings.extend(result.findings)
                results.append(result)
                self.logger.info(
                    "Audit layer finished",
                    extra={
                        "layer": descriptor.id,
                        "status": result.status,
                        "finding_count": len(result.findings),
                        "duration_ms": int((time.perf_counter() - start) * 1000),
                    },
                )
        finally:
            try:
                await self.scanner.disconnect()
            except Exception:
                self.logger.exception("Scanner disconnect failed", extra={"provider": self.options.provider})

        findings = [finding for result in results for finding in result.findings]
        report = AuditReport(
            generated_at=datetime.now(timezone.utc),
            project_ref=self.options.project_ref,
            source_root=self.options.source_root,
            summary=summarize(findings),
            findings=findings,
            connectors=self._connectors(ctx),
            layers=results,
        )
        self.state = "completed"
        self.logger.info(
            "Audit run completed",
            extra={
                "total_findings": report.summary.total_findings,
                "errors": report.summary.errors,
                "warnings": report.summary.warnings,
                "cancelled": self._cancelled,
                "duration_ms": int((time.perf_counter() - run_start) * 1000),
            },
        )
        return report


async def run_audit(
    options: AuditOptions | Mapping[str, Any],
    logger: logging.Logger | None = None,
    scanner: DatabaseScanner | None = None,
) -> AuditReport:
    """Run one audit. Raises OptionsValidationError before any layer runs if options are invalid."""
    return await Orchestrator(options, logger=logger, scanner=scanner).run()
