"""Application configuration loaded from environment variables."""

from functools import lru_cache
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Allowed URL schemes for DATABASE_URL (module-level so validators can use it).
VALID_DATABASE_URL_PREFIXES = (
    "postgresql://",
    "postgresql+psycopg2://",
    "postgres://",
    "postgres+psycopg2://",
)

# Layer ids run when AUDIT_LAYERS is not set.
DEFAULT_AUDIT_LAYERS = ("schema", "rls", "consistency")

DEFAULT_EXCLUDE_DIRS = (
    ".git",
    "node_modules",
    ".venv",
    "venv",
    "__pycache__",
    "dist",
    "build",
    ".next",
)


class Settings(BaseSettings):
    """Validated application settings from env and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    APP_ENV: Literal["dev", "prod"] = "dev"
    DEBUG: bool = False
    API_V1_PREFIX: str = "/api/v1"

    # Which scanner adapter introspects the target database.
    DB_PROVIDER: Literal["supabase", "postgres", "custom"] = "supabase"
    DB_SCHEMA: str = "public"

    # Postgres provider: plain connection string.
    DATABASE_URL: str | None = None

    # Supabase provider: project URL + anon key; service role key unlocks RLS inspection and auto-fix.
    SUPABASE_URL: str | None = None
    SUPABASE_ANON_KEY: SecretStr | None = None
    SUPABASE_SERVICE_ROLE_KEY: SecretStr | None = None

    # Audit run defaults (overridable per invocation)
    AUDIT_SOURCE_ROOT: str | None = None
    AUDIT_LAYERS: str = ",".join(DEFAULT_AUDIT_LAYERS)
    AUDIT_TIMEOUT_MS: int = 8000
    AUDIT_FAIL_ON: Literal["warn", "error", "never"] = "error"
    AUDIT_REPORT_PATH: str | None = None
    AUDIT_PROJECT_REF: str | None = None

    # Auto-fix is opt-in; only fixes at or below this severity are ever executed.
    AUTO_FIX_ENABLED: bool = False
    AUTO_FIX_MAX_SEVERITY: Literal["low", "medium", "high"] = "medium"

    CODE_SCAN_EXCLUDE_DIRS: str = ",".join(DEFAULT_EXCLUDE_DIRS)
    CODE_SCAN_MAX_WORKERS: int = 8

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        if not any(v.strip().startswith(prefix) for prefix in VALID_DATABASE_URL_PREFIXES):
            raise ValueError(
                "DATABASE_URL must be a PostgreSQL URL (e.g. postgresql:// or postgresql+psycopg2://)"
            )
        return v.strip()

    @field_validator("SUPABASE_URL")
    @classmethod
    def validate_supabase_url(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        s = v.strip().rstrip("/").lower()
        if not (s.startswith("http://") or s.startswith("https://")):
            raise ValueError(
                "SUPABASE_URL must use http or https (e.g. https://abcd.supabase.co)"
            )
        return v.strip().rstrip("/")

    @field_validator("DB_SCHEMA")
    @classmethod
    def validate_db_schema(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("DB_SCHEMA must be set and non-empty")
        return v.strip()

    @field_validator("AUDIT_LAYERS")
    @classmethod
    def validate_audit_layers(cls, v: str) -> str:
        layers = [part.strip() for part in (v or "").split(",") if part.strip()]
        if not layers:
            raise ValueError("AUDIT_LAYERS must name at least one layer")
        return ",".join(layers)

    @field_validator("AUDIT_TIMEOUT_MS")
    @classmethod
    def validate_audit_timeout(cls, v: int) -> int:
        if v <= 0 or v > 120_000:
            raise ValueError(
                "AUDIT_TIMEOUT_MS must be greater than 0 and at most 120000"
            )
        return v

    @field_validator("CODE_SCAN_MAX_WORKERS")
    @classmethod
    def validate_max_workers(cls, v: int) -> int:
        if v < 1 or v > 64:
            raise ValueError("CODE_SCAN_MAX_WORKERS must be between 1 and 64")
        return v

    @property
    def audit_layers(self) -> list[str]:
        return [part.strip() for part in self.AUDIT_LAYERS.split(",") if part.strip()]

    @property
    def exclude_dirs(self) -> frozenset[str]:
        return frozenset(
            part.strip() for part in self.CODE_SCAN_EXCLUDE_DIRS.split(",") if part.strip()
        )


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance (safe to call from dependencies)."""
    return Settings()


settings = get_settings()
