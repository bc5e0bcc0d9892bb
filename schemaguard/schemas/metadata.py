"""Pydantic schemas for the two models being diffed: live database metadata and code expectations."""

from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

# Shared config: immutable after construction, camelCase on the wire, field names accepted on input.
FROZEN_CAMEL_CONFIG: dict[str, Any] = {
    "frozen": True,
    "alias_generator": to_camel,
    "populate_by_name": True,
}


class TablePolicy(BaseModel):
    """One row-level-security policy attached to a table."""

    model_config = FROZEN_CAMEL_CONFIG

    name: str = Field(..., min_length=1, description="Policy name, unique within its table.")
    action: str | None = Field(
        default=None,
        description="Command the policy applies to (SELECT, INSERT, UPDATE, DELETE, ALL).",
    )
    using: str | None = Field(default=None, description="USING expression, if any.")
    check: str | None = Field(default=None, description="WITH CHECK expression, if any.")


class Relation(BaseModel):
    """A foreign-key edge: table.column -> references_table.references_column."""

    model_config = FROZEN_CAMEL_CONFIG

    table: str = Field(..., min_length=1)
    column: str = Field(..., min_length=1)
    references_table: str = Field(..., min_length=1)
    references_column: str = Field(..., min_length=1)


class FunctionArgument(BaseModel):
    """One argument of a stored function; optional when it has a default value."""

    model_config = FROZEN_CAMEL_CONFIG

    name: str = Field(..., min_length=1)
    optional: bool = False


class FunctionSignature(BaseModel):
    """Call contract of a stored function: ordered arguments and return type."""

    model_config = FROZEN_CAMEL_CONFIG

    args: tuple[FunctionArgument, ...] = Field(default_factory=tuple)
    returns: str | None = None

    @field_validator("args")
    @classmethod
    def validate_unique_arg_names(
        cls, v: tuple[FunctionArgument, ...]
    ) -> tuple[FunctionArgument, ...]:
        names = [arg.name for arg in v]
        if len(names) != len(set(names)):
            raise ValueError(f"argument names must be unique, got {names}")
        return v

    @property
    def arg_names(self) -> list[str]:
        return [arg.name for arg in self.args]

    @property
    def required_arg_names(self) -> list[str]:
        return [arg.name for arg in self.args if not arg.optional]


class TableRLS(BaseModel):
    """Row-level-security state of one table."""

    model_config = FROZEN_CAMEL_CONFIG

    enabled: bool
    policies: tuple[TablePolicy, ...] = Field(default_factory=tuple)

    @field_validator("policies")
    @classmethod
    def validate_unique_policy_names(
        cls, v: tuple[TablePolicy, ...]
    ) -> tuple[TablePolicy, ...]:
        names = [p.name for p in v]
        if len(names) != len(set(names)):
            raise ValueError(f"policy names must be unique within a table, got {names}")
        return v


class DatabaseMetadata(BaseModel):
    """Snapshot of the live schema. Built once per run, never mutated."""

    model_config = FROZEN_CAMEL_CONFIG

    tables: tuple[str, ...] = Field(default_factory=tuple)
    functions: tuple[str, ...] = Field(default_factory=tuple)
    table_columns: dict[str, tuple[str, ...]] = Field(default_factory=dict)
    relations: tuple[Relation, ...] = Field(default_factory=tuple)
    function_signatures: dict[str, FunctionSignature] = Field(default_factory=dict)
    rls: dict[str, TableRLS] = Field(default_factory=dict)


class CodeScanResult(BaseModel):
    """Snapshot of what the application code expects of the database."""

    model_config = FROZEN_CAMEL_CONFIG

    tables: tuple[str, ...] = Field(default_factory=tuple)
    functions: tuple[str, ...] = Field(default_factory=tuple)
    rpc_arguments: dict[str, tuple[str, ...]] = Field(
        default_factory=dict,
        description="RPC name -> argument names passed at call sites; positional calls use $1, $2, ...",
    )
    files_scanned: int = Field(default=0, ge=0)
    files_skipped: int = Field(
        default=0,
        ge=0,
        description="Files that could not be decoded or parsed and contributed no references.",
    )
