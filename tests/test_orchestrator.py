"""Unit tests for schemaguard.services.orchestrator: layer isolation, ordering, cancellation, fail-on."""

import asyncio
import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from fakes import InMemoryScanner

from schemaguard.core.errors import OptionsValidationError, ScannerConnectionError
from schemaguard.schemas.metadata import DatabaseMetadata, TablePolicy, TableRLS
from schemaguard.schemas.report import AuditReport, LayerResult, ReportItem
from schemaguard.services.layers import LayerDescriptor, register_layer
from schemaguard.services.orchestrator import Orchestrator, run_audit
from schemaguard.services.report import should_fail, summarize, write_report


def _options(root: str, **overrides: object) -> dict:
    options = {
        "source_root": root,
        "provider": "postgres",
        "connection": {"url": "postgresql://u:p@localhost:5432/app"},
    }
    options.update(overrides)
    return options


class _SourceTreeTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = self._tmp.name
        Path(self.root, "service.py").write_text(
            "client.table('users')\n"
            "client.table('orders')\n"
            "client.rpc('get_total', {'user_id': 1})\n",
            encoding="utf-8",
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()


class TestEndToEnd(_SourceTreeTestCase):
    """Missing table and function surface as two errors in the report."""

    def test_report(self) -> None:
        scanner = InMemoryScanner(metadata=DatabaseMetadata(tables=("users",)))
        report = asyncio.run(
            run_audit(_options(self.root, layers=["schema", "consistency"]), scanner=scanner)
        )
        self.assertEqual([layer.layer for layer in report.layers], ["schema", "consistency"])
        self.assertEqual([layer.status for layer in report.layers], ["ok", "error"])
        self.assertEqual(
            [(f.status, f.suggested_fix) for f in report.findings],
            [("error", "create_table"), ("error", "create_function")],
        )
        self.assertEqual(report.summary.total_findings, 2)
        self.assertEqual(report.summary.errors, 2)
        self.assertEqual(report.summary.warnings, 0)
        self.assertEqual(report.summary.ok, 0)
        self.assertEqual(scanner.disconnect_calls, 1)
        connectors = {c.name: c.status for c in report.connectors}
        self.assertEqual(connectors, {"database:postgres": "ok", "code_scanner": "ok"})

    def test_serializes_with_camel_case(self) -> None:
        scanner = InMemoryScanner(metadata=DatabaseMetadata(tables=("users",)))
        report = asyncio.run(run_audit(_options(self.root, project_ref="demo"), scanner=scanner))
        dumped = report.model_dump(mode="json", by_alias=True)
        self.assertIn("generatedAt", dumped)
        self.assertEqual(dumped["projectRef"], "demo")
        self.assertIn("totalFindings", dumped["summary"])
        self.assertIn("suggestedFix", dumped["findings"][0])


class TestLayerIsolation(_SourceTreeTestCase):
    """A failing schema layer yields error; dependent layers are skipped; the report is complete."""

    def test_connection_failure(self) -> None:
        scanner = InMemoryScanner(connect_error=ScannerConnectionError("connection refused"))
        orchestrator = Orchestrator(_options(self.root), scanner=scanner)
        report = asyncio.run(orchestrator.run())
        self.assertEqual(orchestrator.state, "completed")
        self.assertEqual(len(report.layers), 3)
        self.assertEqual([layer.status for layer in report.layers], ["error", "skipped", "skipped"])
        self.assertEqual(report.layers[0].summary, "connection refused")
        self.assertIn("db_metadata", report.layers[1].summary)
        self.assertEqual(report.findings, [])
        self.assertEqual(scanner.disconnect_calls, 1)
        connectors = {c.name: c for c in report.connectors}
        self.assertEqual(connectors["database:postgres"].status, "error")
        # The code scan still completed.
        self.assertEqual(connectors["code_scanner"].status, "ok")

    def test_custom_layer_exception_does_not_stop_run(self) -> None:
        async def explode(ctx):
            raise RuntimeError("boom")

        register_layer(LayerDescriptor(id="test_explode", run=explode))
        scanner = InMemoryScanner(metadata=DatabaseMetadata(tables=("users", "orders")))
        report = asyncio.run(
            run_audit(_options(self.root, layers=["schema", "test_explode", "consistency"]), scanner=scanner)
        )
        self.assertEqual([layer.status for layer in report.layers], ["ok", "error", "error"])
        self.assertEqual(report.layers[1].summary, "boom")


class TestRlsLayer(_SourceTreeTestCase):
    def test_gaps_and_confirmations_without_duplicates(self) -> None:
        metadata = DatabaseMetadata(
            tables=("users", "orders"),
            functions=("get_total",),
            rls={
                "orders": TableRLS(enabled=False),
                "users": TableRLS(enabled=True, policies=(TablePolicy(name="own_rows"),)),
            },
        )
        report = asyncio.run(run_audit(_options(self.root), scanner=InMemoryScanner(metadata=metadata)))
        rls_layer = report.layers[1]
        self.assertEqual(rls_layer.layer, "rls")
        self.assertEqual([f.status for f in rls_layer.findings], ["warn", "ok"])
        # RLS findings are reported once, by the rls layer.
        self.assertEqual(report.layers[2].findings, [])
        self.assertEqual(report.summary.warnings, 1)
        self.assertEqual(report.summary.ok, 1)


class TestFixLayer(_SourceTreeTestCase):
    def _metadata(self) -> DatabaseMetadata:
        return DatabaseMetadata(
            tables=("users", "orders"),
            functions=("get_total",),
            rls={"orders": TableRLS(enabled=False), "users": TableRLS(enabled=False)},
        )

    def test_suggests_without_applying_by_default(self) -> None:
        scanner = InMemoryScanner(metadata=self._metadata())
        report = asyncio.run(
            run_audit(_options(self.root, layers=["schema", "rls", "fix"]), scanner=scanner)
        )
        fix_layer = report.layers[2]
        self.assertEqual(len(fix_layer.payload["fixes"]), 2)
        self.assertIsNone(fix_layer.payload["result"])
        self.assertEqual(scanner.executed, [])
        connectors = {c.name: c.status for c in report.connectors}
        self.assertEqual(connectors["fix_applier"], "skipped")

    def test_auto_fix_applies_authorized_fixes(self) -> None:
        scanner = InMemoryScanner(metadata=self._metadata())
        report = asyncio.run(
            run_audit(
                _options(self.root, layers=["schema", "rls", "fix"], auto_fix=True),
                scanner=scanner,
            )
        )
        fix_layer = report.layers[2]
        self.assertEqual(fix_layer.status, "ok")
        self.assertEqual(fix_layer.payload["result"]["appliedFixes"], 2)
        self.assertEqual(len(scanner.executed), 2)
        self.assertTrue(all("ENABLE ROW LEVEL SECURITY" in sql for sql in scanner.executed))

    def test_fail_on_pre_empts_application(self) -> None:
        scanner = InMemoryScanner(metadata=self._metadata())
        report = asyncio.run(
            run_audit(
                _options(self.root, layers=["schema", "rls", "fix"], auto_fix=True, fail_on="warn"),
                scanner=scanner,
            )
        )
        fix_layer = report.layers[2]
        self.assertEqual(scanner.executed, [])
        self.assertIsNone(fix_layer.payload["result"])
        self.assertEqual(len(fix_layer.payload["fixes"]), 2)
        self.assertIn("fail-on pre-empted", fix_layer.summary)
        connectors = {c.name: c for c in report.connectors}
        self.assertEqual(connectors["fix_applier"].status, "skipped")
        self.assertEqual(connectors["fix_applier"].summary, "fail-on pre-empted")


class TestCancellation(_SourceTreeTestCase):
    def test_remaining_layers_skipped(self) -> None:
        scanner = InMemoryScanner(metadata=DatabaseMetadata(tables=("users", "orders")))
        running: list[Orchestrator] = []

        async def cancel_in_flight(ctx) -> LayerResult:
            running[0].cancel()
            return LayerResult(layer="test_cancel", status="ok")

        register_layer(LayerDescriptor(id="test_cancel", run=cancel_in_flight))
        orchestrator = Orchestrator(
            _options(self.root, layers=["schema", "test_cancel", "consistency"]), scanner=scanner
        )
        running.append(orchestrator)
        report = asyncio.run(orchestrator.run())
        self.assertEqual([layer.status for layer in report.layers], ["ok", "ok", "skipped"])
        self.assertEqual(report.layers[2].summary, "run cancelled")
        self.assertEqual(orchestrator.state, "completed")


class TestOptionsValidation(_SourceTreeTestCase):
    """Invalid options abort before any layer runs."""

    def test_unknown_layer(self) -> None:
        scanner = InMemoryScanner()
        with self.assertRaises(OptionsValidationError):
            asyncio.run(run_audit(_options(self.root, layers=["schema", "nope"]), scanner=scanner))
        self.assertEqual(scanner.connect_calls, 0)

    def test_missing_connection_url(self) -> None:
        with self.assertRaises(OptionsValidationError) as ctx:
            Orchestrator({"source_root": self.root, "provider": "postgres", "connection": {"url": ""}})
        self.assertTrue(ctx.exception.errors)

    def test_source_root_missing(self) -> None:
        with self.assertRaises(OptionsValidationError):
            Orchestrator(_options(str(Path(self.root) / "missing")), scanner=InMemoryScanner())

    def test_custom_adapter_loaded_by_path(self) -> None:
        orchestrator = Orchestrator(
            _options(self.root, provider="custom", extra={"adapter": "fakes:InMemoryScanner"})
        )
        self.assertIsInstance(orchestrator.scanner, InMemoryScanner)

    def test_unloadable_adapter(self) -> None:
        with self.assertRaises(OptionsValidationError):
            Orchestrator(_options(self.root, provider="custom", extra={"adapter": "no_such_module:X"}))


class TestFailOn(unittest.TestCase):
    """Fail-on thresholds over summary counts."""

    def _report(self, statuses: list[str]) -> AuditReport:
        findings = [ReportItem(status=s, message=f"finding {i}") for i, s in enumerate(statuses)]
        return AuditReport(
            generated_at=datetime.now(timezone.utc),
            source_root=".",
            summary=summarize(findings),
            findings=findings,
        )

    def test_warnings_only(self) -> None:
        report = self._report(["warn"] * 2 + ["ok"] * 5)
        self.assertFalse(should_fail(report, "error"))
        self.assertTrue(should_fail(report, "warn"))
        self.assertFalse(should_fail(report, "never"))

    def test_errors(self) -> None:
        report = self._report(["error", "ok"])
        self.assertTrue(should_fail(report, "error"))
        self.assertTrue(should_fail(report, "warn"))
        self.assertFalse(should_fail(report, "never"))

    def test_summary_counts(self) -> None:
        summary = self._report(["error", "warn", "warn", "ok"]).summary
        self.assertEqual(
            (summary.total_findings, summary.errors, summary.warnings, summary.ok), (4, 1, 2, 1)
        )

    def test_unknown_threshold(self) -> None:
        with self.assertRaises(ValueError):
            should_fail(self._report([]), "sometimes")

    def test_write_report(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            target = write_report(self._report(["warn"]), Path(tmp) / "out" / "report.json")
            data = json.loads(target.read_text(encoding="utf-8"))
        self.assertEqual(data["summary"]["totalFindings"], 1)
        self.assertEqual(data["findings"][0]["status"], "warn")
        self.assertIn("generatedAt", data)


if __name__ == "__main__":
    unittest.main()
