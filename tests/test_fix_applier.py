"""Unit tests for schemaguard.services.fix_applier: authorization and per-fix failure isolation."""

import asyncio
import unittest

from fakes import InMemoryScanner

from schemaguard.schemas.fixes import SuggestedFix
from schemaguard.services.fix_applier import apply_fixes


def _fix(sql: str, severity: str = "medium", auto_apply: bool = True, fix_type: str = "enable_rls") -> SuggestedFix:
    return SuggestedFix(
        type=fix_type,
        description=f"fix {sql}",
        sql=sql,
        table="t",
        severity=severity,
        auto_apply=auto_apply,
    )


class TestBatchIsolation(unittest.TestCase):
    """A failing fix is recorded and the remaining fixes still run."""

    def test_second_of_three_fails(self) -> None:
        scanner = InMemoryScanner(failing_sql={"SQL 2"})
        fixes = [_fix("SQL 1"), _fix("SQL 2"), _fix("SQL 3")]
        result = asyncio.run(apply_fixes(fixes, scanner))
        self.assertEqual(result.applied_fixes, 2)
        self.assertEqual(result.failed_fixes, 1)
        self.assertEqual(result.skipped_fixes, 0)
        self.assertFalse(result.success)
        self.assertEqual(scanner.executed, ["SQL 1", "SQL 2", "SQL 3"])
        self.assertEqual([d.success for d in result.details], [True, False, True])
        self.assertIn("simulated failure", result.details[1].error)

    def test_unexpected_adapter_error_is_isolated(self) -> None:
        class _DriverErrorScanner(InMemoryScanner):
            async def execute_sql(self, sql: str) -> None:
                self.executed.append(sql)
                if sql == "SQL 2":
                    raise RuntimeError("driver error: relation exists")

        scanner = _DriverErrorScanner()
        fixes = [_fix("SQL 1"), _fix("SQL 2"), _fix("SQL 3")]
        with self.assertLogs("schemaguard.services.fix_applier", level="ERROR"):
            result = asyncio.run(apply_fixes(fixes, scanner))
        self.assertEqual(scanner.executed, ["SQL 1", "SQL 2", "SQL 3"])
        self.assertEqual(result.applied_fixes, 2)
        self.assertEqual(result.failed_fixes, 1)
        self.assertFalse(result.success)
        self.assertEqual(result.details[1].error, "driver error: relation exists")

    def test_all_succeed(self) -> None:
        result = asyncio.run(apply_fixes([_fix("A"), _fix("B")], InMemoryScanner()))
        self.assertTrue(result.success)
        self.assertEqual(result.applied_fixes, 2)


class TestAuthorization(unittest.TestCase):
    """Fixes above max severity, or needing confirmation, are skipped and never executed."""

    def test_severity_above_max_is_skipped(self) -> None:
        scanner = InMemoryScanner()
        fixes = [_fix("HIGH", severity="high"), _fix("LOW", severity="low")]
        result = asyncio.run(apply_fixes(fixes, scanner, max_severity="medium"))
        self.assertEqual(result.skipped_fixes, 1)
        self.assertEqual(result.applied_fixes, 1)
        self.assertEqual(scanner.executed, ["LOW"])
        self.assertEqual(len(result.details), 1)

    def test_non_auto_apply_requires_confirmation(self) -> None:
        scanner = InMemoryScanner()
        fixes = [_fix("POLICY", auto_apply=False, fix_type="add_rls_policy")]
        result = asyncio.run(apply_fixes(fixes, scanner))
        self.assertEqual(result.skipped_fixes, 1)
        self.assertEqual(scanner.executed, [])

        result = asyncio.run(apply_fixes(fixes, scanner, confirmed=True))
        self.assertEqual(result.applied_fixes, 1)
        self.assertEqual(scanner.executed, ["POLICY"])

    def test_counts_add_up(self) -> None:
        scanner = InMemoryScanner(failing_sql={"B"})
        fixes = [
            _fix("A"),
            _fix("B"),
            _fix("C", severity="high"),
            _fix("D", auto_apply=False, fix_type="create_table"),
        ]
        result = asyncio.run(apply_fixes(fixes, scanner))
        self.assertEqual(result.applied_fixes + result.failed_fixes + result.skipped_fixes, len(fixes))
        self.assertEqual(len(result.details), result.applied_fixes + result.failed_fixes)

    def test_invalid_max_severity(self) -> None:
        with self.assertRaises(ValueError):
            asyncio.run(apply_fixes([], InMemoryScanner(), max_severity="critical"))


if __name__ == "__main__":
    unittest.main()
