"""Pydantic schemas for suggested SQL fixes and the outcome of applying them."""

from typing import Literal

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

FixType = Literal[
    "create_table",
    "add_column",
    "create_function",
    "enable_rls",
    "add_rls_policy",
    "add_foreign_key",
    "create_index",
]

FixSeverity = Literal["low", "medium", "high"]

FIX_SEVERITY_VALUES: tuple[FixSeverity, ...] = ("low", "medium", "high")

# Reversible, additive operations; everything else needs explicit confirmation.
AUTO_APPLY_FIX_TYPES: frozenset[str] = frozenset({"create_index", "enable_rls"})


class SuggestedFix(BaseModel):
    """A proposed remediation: literal SQL plus enough metadata to decide whether to run it."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "frozen": True}

    type: FixType
    description: str = Field(..., min_length=1)
    sql: str = Field(..., min_length=1, description="Complete, independently executable SQL.")
    table: str | None = None
    function: str | None = None
    severity: FixSeverity
    auto_apply: bool = Field(
        default=False,
        description="True only for reversible, additive fix types.",
    )


class FixDetail(BaseModel):
    """Outcome of one attempted fix."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    fix: SuggestedFix
    success: bool
    error: str | None = Field(
        default=None,
        description="Database error text, verbatim, when the fix failed.",
    )


class FixResult(BaseModel):
    """Aggregate outcome of a fix batch. applied + failed + skipped == fixes considered."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    success: bool
    applied_fixes: int = Field(default=0, ge=0)
    failed_fixes: int = Field(default=0, ge=0)
    skipped_fixes: int = Field(default=0, ge=0)
    details: list[FixDetail] = Field(
        default_factory=list,
        description="One entry per attempted (applied or failed) fix, in execution order.",
    )
