"""Error taxonomy for the audit engine. Scanner-level errors are downgraded to layer status by the orchestrator."""


class SchemaGuardError(Exception):
    """Base error for SchemaGuard; carries a human-readable message."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ScannerConfigError(SchemaGuardError):
    """Unknown provider or unloadable custom scanner adapter."""


class ScannerConnectionError(SchemaGuardError):
    """Database unreachable or credentials rejected."""


class ScannerTimeoutError(SchemaGuardError):
    """A database network operation exceeded the configured timeout. Safe to retry with backoff."""


class IntrospectionError(SchemaGuardError):
    """A metadata query failed partway; no partial snapshot is ever returned."""


class ExecutionError(SchemaGuardError):
    """SQL failed against the live database. The message is the database's error text, verbatim."""

    def __init__(self, message: str, sql: str | None = None) -> None:
        self.sql = sql
        super().__init__(message)


class ParseError(SchemaGuardError):
    """A source file could not be decoded or parsed; it contributes no references."""

    def __init__(self, message: str, path: str | None = None) -> None:
        self.path = path
        super().__init__(message)


class OptionsValidationError(SchemaGuardError):
    """Malformed audit options; raised before any layer runs."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = errors or []
        super().__init__(message)
