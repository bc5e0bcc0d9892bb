"""Pydantic schemas for audit invocation options and database connection details."""

import os
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic.alias_generators import to_camel

from schemaguard.core.config import DEFAULT_AUDIT_LAYERS, VALID_DATABASE_URL_PREFIXES
from schemaguard.schemas.fixes import FixSeverity
from schemaguard.schemas.report import FailOnPolicy

DatabaseProvider = Literal["supabase", "postgres", "custom"]

_OPTIONS_CONFIG: dict[str, Any] = {
    "alias_generator": to_camel,
    "populate_by_name": True,
    "extra": "forbid",
}


class DatabaseConnection(BaseModel):
    """Credentials for the target database. key is the API key (Supabase) or password (Postgres)."""

    model_config = _OPTIONS_CONFIG

    url: str = Field(..., min_length=1, description="Supabase project URL or Postgres connection string.")
    key: SecretStr = Field(default=SecretStr(""), description="Supabase API key or Postgres password.")
    service_key: SecretStr | None = Field(
        default=None,
        description="Service role key; required for RLS inspection and SQL execution on Supabase.",
    )
    db_schema: str = Field(default="public", min_length=1, alias="schema")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("connection url must be set and non-empty")
        return v.strip()


class AuditOptions(BaseModel):
    """Options for one audit run. Malformed options abort the run before any layer starts."""

    model_config = _OPTIONS_CONFIG

    source_root: str = Field(default_factory=os.getcwd)
    provider: DatabaseProvider = "supabase"
    connection: DatabaseConnection
    layers: list[str] = Field(default_factory=lambda: list(DEFAULT_AUDIT_LAYERS))
    output_path: str | None = None
    project_ref: str | None = None
    timeout_ms: int = Field(
        default=8000,
        gt=0,
        validation_alias=AliasChoices("timeout_ms", "timeoutMs", "timeout"),
    )
    fail_on: FailOnPolicy = "error"
    auto_fix: bool = False
    max_fix_severity: FixSeverity = "medium"
    confirm_fixes: bool = Field(
        default=False,
        description="Operator confirmation: also run fixes that are not auto-applicable.",
    )
    # Opaque, provider-owned settings (e.g. custom adapter path, SQL RPC name). Not validated here.
    extra: dict[str, Any] = Field(default_factory=dict)

    @field_validator("layers")
    @classmethod
    def validate_layers(cls, v: list[str]) -> list[str]:
        layers = [layer.strip() for layer in v if layer and layer.strip()]
        if not layers:
            raise ValueError("at least one layer must be configured")
        if len(layers) != len(set(layers)):
            raise ValueError(f"layer ids must be unique, got {layers}")
        return layers

    @field_validator("source_root")
    @classmethod
    def validate_source_root(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("source_root must be non-empty")
        return v.strip()

    @model_validator(mode="after")
    def validate_connection_for_provider(self) -> "AuditOptions":
        url = self.connection.url
        if self.provider == "supabase":
            lowered = url.lower()
            if not (lowered.startswith("http://") or lowered.startswith("https://")):
                raise ValueError("supabase connection url must use http or https")
            if not self.connection.key.get_secret_value().strip():
                raise ValueError("supabase connection requires an API key")
        elif self.provider == "postgres":
            if not any(url.startswith(prefix) for prefix in VALID_DATABASE_URL_PREFIXES):
                raise ValueError(
                    "postgres connection url must be a PostgreSQL URL (e.g. postgresql://)"
                )
        return self

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0
