from __future__ import annotations

from typing import Protocol, runtime_checkable

from schemaguard.schemas.metadata import DatabaseMetadata, FunctionSignature, TableRLS
from schemaguard.schemas.options import DatabaseConnection


@runtime_checkable
class DatabaseScanner(Protocol):
    """Capability interface every provider adapter implements."""

    provider: str

    async def connect(self, connection: DatabaseConnection) -> None:
        ...

    async def scan_schema(self) -> DatabaseMetadata:
        ...

    async def check_rls(self, tables: list[str]) -> dict[str, TableRLS]:
        ...

    async def get_columns(self, table: str) -> list[str]:
        ...

    async def get_function_signature(self, name: str) -> FunctionSignature | None:
        ...

    async def execute_sql(self, sql: str) -> None:
        ...

    async def is_healthy(self) -> bool:
        ...

    async def disconnect(self) -> None:
        ...
