"""Pydantic schemas for audit output: findings, connector and layer results, and the final report."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from schemaguard.schemas.fixes import FixType

FindingStatus = Literal["ok", "warn", "error"]

# Layers and connectors can additionally be skipped.
StageStatus = Literal["ok", "warn", "error", "skipped"]

FailOnPolicy = Literal["warn", "error", "never"]

_REPORT_CONFIG: dict[str, Any] = {
    "alias_generator": to_camel,
    "populate_by_name": True,
    "frozen": True,
}


class ReportItem(BaseModel):
    """One finding: a unit of drift (warn/error) or a confirmation (ok)."""

    model_config = _REPORT_CONFIG

    status: FindingStatus
    message: str = Field(..., min_length=1)
    detail: str | None = None
    suggested_fix: FixType | None = Field(
        default=None,
        description="Fix type the fix generator will produce for this finding, if any.",
    )
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="Machine-readable context (check category and identifiers).",
    )


class ConnectorResult(BaseModel):
    """Outcome for one external system the run touched (or chose not to)."""

    model_config = _REPORT_CONFIG

    name: str = Field(..., min_length=1)
    status: StageStatus
    summary: str = ""
    details: list[str] = Field(default_factory=list)


class LayerResult(BaseModel):
    """Outcome of one pipeline layer. Exactly one per configured layer per run."""

    model_config = _REPORT_CONFIG

    layer: str = Field(..., min_length=1)
    status: StageStatus
    summary: str | None = None
    findings: list[ReportItem] = Field(default_factory=list)
    payload: Any = None
    metrics: dict[str, Any] = Field(default_factory=dict)


class ReportSummary(BaseModel):
    """Exact tallies of findings by status."""

    model_config = _REPORT_CONFIG

    total_findings: int = Field(default=0, ge=0)
    errors: int = Field(default=0, ge=0)
    warnings: int = Field(default=0, ge=0)
    ok: int = Field(default=0, ge=0)


class AuditReport(BaseModel):
    """Final aggregate of one audit run. Immutable once returned."""

    model_config = _REPORT_CONFIG

    generated_at: datetime
    project_ref: str | None = None
    source_root: str
    summary: ReportSummary
    findings: list[ReportItem] = Field(default_factory=list)
    connectors: list[ConnectorResult] = Field(default_factory=list)
    layers: list[LayerResult] = Field(default_factory=list)
