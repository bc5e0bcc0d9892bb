"""Pydantic schemas for the audit HTTP endpoint."""

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from schemaguard.schemas.fixes import FixSeverity
from schemaguard.schemas.report import AuditReport, FailOnPolicy


class AuditRequest(BaseModel):
    """Per-request overrides applied on top of settings-based audit options."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "extra": "forbid"}

    source_root: str | None = None
    layers: list[str] | None = Field(default=None, description="Layer ids to run, in order.")
    fail_on: FailOnPolicy | None = None
    project_ref: str | None = None
    auto_fix: bool | None = None
    max_fix_severity: FixSeverity | None = None
    confirm_fixes: bool | None = None


class AuditResponse(BaseModel):
    """Full report plus the fail-on verdict."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    passed: bool = Field(description="False when the fail-on policy is triggered.")
    fail_on: FailOnPolicy
    report: AuditReport
