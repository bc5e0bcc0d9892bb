"""Report aggregation, fail-on policy and persistence."""

import json
import logging
from collections import Counter
from pathlib import Path

from schemaguard.schemas.report import AuditReport, ReportItem, ReportSummary

logger = logging.getLogger(__name__)

FAIL_ON_VALUES = ("warn", "error", "never")


def summarize(findings: list[ReportItem]) -> ReportSummary:
    """Exact tallies by status."""
    counts = Counter(f.status for f in findings)
    return ReportSummary(
        total_findings=len(findings),
        errors=counts["error"],
        warnings=counts["warn"],
        ok=counts["ok"],
    )


def summary_trips(summary: ReportSummary, fail_on: str) -> bool:
    if fail_on not in FAIL_ON_VALUES:
        raise ValueError(f"fail_on must be one of {FAIL_ON_VALUES}, got {fail_on!r}")
    if fail_on == "never":
        return False
    if fail_on == "warn":
        return summary.errors > 0 or summary.warnings > 0
    return summary.errors > 0


def should_fail(report: AuditReport, fail_on: str) -> bool:
    """
    True when the host should signal failure. error: any error finding; warn: any error or
    warning; never: always False. The report itself is returned either way.
    """
    return summary_trips(report.summary, fail_on)


def report_to_dict(report: AuditReport) -> dict:
    return report.model_dump(mode="json", by_alias=True)


def write_report(report: AuditReport, path: str | Path) -> Path:
    """Persist the report as indented JSON (camelCase field names). Parent dirs are created."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(
        json.dumps(report_to_dict(report), indent=2, sort_keys=False) + "\n",
        encoding="utf-8",
    )
    logger.info(
        "Audit report written",
        extra={"path": str(target), "total_findings": report.summary.total_findings},
    )
    return target
