"""
CLI entrypoint for one audit run. Options come from the environment (.env supported) and
can be overridden on the command line, e.g.:

  python -m schemaguard.audit --source-root ./app --layers schema,rls,consistency --output report.json

Exit codes: 0 audit passed, 1 fail-on policy triggered, 2 invalid options.
"""

import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv

from schemaguard.core.config import get_settings
from schemaguard.core.errors import OptionsValidationError
from schemaguard.services.orchestrator import options_from_settings, run_audit
from schemaguard.services.report import should_fail, write_report

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_INVALID_OPTIONS = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Audit schema/code consistency for a project.")
    parser.add_argument("--source-root", help="Source tree to scan (default: AUDIT_SOURCE_ROOT or cwd)")
    parser.add_argument("--provider", choices=("supabase", "postgres", "custom"))
    parser.add_argument("--layers", help="Comma-separated layer ids, e.g. schema,rls,consistency,fix")
    parser.add_argument("--fail-on", choices=("warn", "error", "never"))
    parser.add_argument("--project-ref", help="Label recorded in the report")
    parser.add_argument("--output", "-o", help="Write the JSON report to this path")
    parser.add_argument("--timeout-ms", type=int, help="Per-operation database timeout")
    parser.add_argument("--adapter", help="Custom scanner adapter, 'package.module:ClassName'")
    parser.add_argument(
        "--apply-fixes",
        action="store_true",
        help="Apply authorized fixes (requires the fix layer)",
    )
    parser.add_argument(
        "--confirm-fixes",
        action="store_true",
        help="Also apply fixes that are not auto-applicable",
    )
    parser.add_argument("--max-fix-severity", choices=("low", "medium", "high"))
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run one audit and map its outcome to an exit code."""
    load_dotenv()
    args = build_parser().parse_args(argv)
    overrides = {
        "source_root": args.source_root,
        "provider": args.provider,
        "layers": [part.strip() for part in args.layers.split(",")] if args.layers else None,
        "fail_on": args.fail_on,
        "project_ref": args.project_ref,
        "output_path": args.output,
        "timeout_ms": args.timeout_ms,
        "auto_fix": True if args.apply_fixes else None,
        "confirm_fixes": True if args.confirm_fixes else None,
        "max_fix_severity": args.max_fix_severity,
        "extra": {"adapter": args.adapter} if args.adapter else None,
    }
    try:
        options = options_from_settings(get_settings(), **overrides)
        report = asyncio.run(run_audit(options))
    except OptionsValidationError as e:
        logger.error("Invalid audit options: %s", e.message)
        return EXIT_INVALID_OPTIONS

    if options.output_path:
        write_report(report, options.output_path)
    summary = report.summary
    logger.info(
        "Audit finished: total=%s errors=%s warnings=%s ok=%s",
        summary.total_findings,
        summary.errors,
        summary.warnings,
        summary.ok,
    )
    for layer in report.layers:
        logger.info("Layer %s: %s %s", layer.layer, layer.status, layer.summary or "")
    if should_fail(report, options.fail_on):
        logger.error("Audit failed (fail-on=%s)", options.fail_on)
        return EXIT_FAILED
    return EXIT_PASSED


if __name__ == "__main__":
    sys.exit(main())
