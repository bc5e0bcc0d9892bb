"""Audit endpoint: run one audit with settings-based options plus request overrides."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from schemaguard.api.v1.deps import get_scanner
from schemaguard.core.config import Settings, get_settings
from schemaguard.schemas.audit import AuditRequest, AuditResponse
from schemaguard.services.orchestrator import options_from_settings, run_audit
from schemaguard.services.report import should_fail
from schemaguard.services.scanners.base import DatabaseScanner

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=AuditResponse)
async def post_audit(
    body: AuditRequest,
    settings: Annotated[Settings, Depends(get_settings)],
    scanner: Annotated[DatabaseScanner | None, Depends(get_scanner)],
) -> AuditResponse:
    """
    Run the configured layers against the configured database and return the full report.

    The report is returned even when layers fail; passed reflects the fail-on policy.
    OptionsValidationError (unknown layers, missing connection, bad source root) is mapped to 422 by the app.
    """
    options = options_from_settings(settings, **body.model_dump(exclude_none=True))
    report = await run_audit(options, scanner=scanner)

    passed = not should_fail(report, options.fail_on)
    logger.info(
        "Audit request completed",
        extra={
            "passed": passed,
            "fail_on": options.fail_on,
            "total_findings": report.summary.total_findings,
        },
    )
    return AuditResponse(passed=passed, fail_on=options.fail_on, report=report)
