"""Pydantic schemas: metadata snapshots, findings, fixes, reports and options."""

from schemaguard.schemas.audit import AuditRequest, AuditResponse
from schemaguard.schemas.fixes import FixDetail, FixResult, FixSeverity, FixType, SuggestedFix
from schemaguard.schemas.health import HealthResponse
from schemaguard.schemas.metadata import (
    CodeScanResult,
    DatabaseMetadata,
    FunctionArgument,
    FunctionSignature,
    Relation,
    TablePolicy,
    TableRLS,
)
from schemaguard.schemas.options import AuditOptions, DatabaseConnection
from schemaguard.schemas.report import (
    AuditReport,
    ConnectorResult,
    LayerResult,
    ReportItem,
    ReportSummary,
)

__all__ = [
    "AuditOptions",
    "AuditReport",
    "AuditRequest",
    "AuditResponse",
    "CodeScanResult",
    "ConnectorResult",
    "DatabaseConnection",
    "DatabaseMetadata",
    "FixDetail",
    "FixResult",
    "FixSeverity",
    "FixType",
    "FunctionArgument",
    "FunctionSignature",
    "HealthResponse",
    "LayerResult",
    "Relation",
    "ReportItem",
    "ReportSummary",
    "SuggestedFix",
    "TablePolicy",
    "TableRLS",
]
