"""Fix applier: execute an authorized subset of suggested fixes, one at a time, isolating failures."""

import logging

from schemaguard.core.errors import SchemaGuardError
from schemaguard.schemas.fixes import FIX_SEVERITY_VALUES, FixDetail, FixResult, SuggestedFix
from schemaguard.services.scanners.base import DatabaseScanner

logger = logging.getLogger(__name__)

# Rank for severity comparison (higher index = more severe).
_SEVERITY_RANK: dict[str, int] = {name: i for i, name in enumerate(FIX_SEVERITY_VALUES)}


def skip_reason(fix: SuggestedFix, max_severity: str, confirmed: bool) -> str | None:
    """Why a fix would not be executed, or None if it is authorized."""
    if _SEVERITY_RANK[fix.severity] > _SEVERITY_RANK.get(max_severity, 0):
        return f"severity {fix.severity} exceeds authorized {max_severity}"
    if not fix.auto_apply and not confirmed:
        return "requires operator confirmation"
    return None


async def apply_fixes(
    fixes: list[SuggestedFix],
    scanner: DatabaseScanner,
    max_severity: str = "medium",
    confirmed: bool = False,
) -> FixResult:
    """
    Apply fixes sequentially against the scanner's connection. A failing fix is recorded and the
    batch continues. applied + failed + skipped == len(fixes); details lists attempted fixes only.
    """
    if max_severity not in _SEVERITY_RANK:
        raise ValueError(f"max_severity must be one of {FIX_SEVERITY_VALUES}, got {max_severity!r}")

    applied = failed = skipped = 0
    details: list[FixDetail] = []
    for index, fix in enumerate(fixes):
        reason = skip_reason(fix, max_severity, confirmed)
        if reason is not None:
            skipped += 1
            logger.info(
                "Fix skipped",
                extra={"fix_index": index, "fix_type": fix.type, "reason": reason},
            )
            continue
        try:
            await scanner.execute_sql(fix.sql)
        except SchemaGuardError as e:
            failed += 1
            details.append(FixDetail(fix=fix, success=False, error=e.message))
            logger.warning(
                "Fix failed",
                extra={"fix_index": index, "fix_type": fix.type, "error": e.message},
            )
            continue
        except Exception as e:
            # Custom adapters may raise outside the taxonomy; still isolated to this fix.
            failed += 1
            details.append(FixDetail(fix=fix, success=False, error=str(e) or type(e).__name__))
            logger.exception(
                "Fix failed with unexpected error",
                extra={"fix_index": index, "fix_type": fix.type},
            )
            continue
        applied += 1
        details.append(FixDetail(fix=fix, success=True))
        logger.info(
            "Fix applied",
            extra={"fix_index": index, "fix_type": fix.type, "table": fix.table, "function": fix.function},
        )

    return FixResult(
        success=failed == 0,
        applied_fixes=applied,
        failed_fixes=failed,
        skipped_fixes=skipped,
        details=details,
    )
