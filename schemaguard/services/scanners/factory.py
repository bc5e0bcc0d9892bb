from __future__ import annotations

import importlib
from typing import Any, Callable

from schemaguard.core.errors import ScannerConfigError
from schemaguard.services.scanners.base import DatabaseScanner
from schemaguard.services.scanners.postgres import PostgresScanner
from schemaguard.services.scanners.supabase import SupabaseScanner

ScannerFactory = Callable[[int, dict[str, Any]], DatabaseScanner]

_SCANNER_FACTORIES: dict[str, ScannerFactory] = {
    "supabase": lambda timeout_ms, extra: SupabaseScanner(timeout_ms=timeout_ms, extra=extra),
    "postgres": lambda timeout_ms, extra: PostgresScanner(timeout_ms=timeout_ms, extra=extra),
}


def register_scanner(provider: str, factory: ScannerFactory) -> None:
    # Let hosts plug in adapters (or override built-ins) without touching callers.
    _SCANNER_FACTORIES[provider.strip().lower()] = factory


def registered_providers() -> list[str]:
    return sorted({*_SCANNER_FACTORIES, "custom"})


def _load_adapter(path: str) -> type:
    """Resolve 'package.module:ClassName' (or 'package.module.ClassName') to a class."""
    module_name, sep, attr = path.partition(":")
    if not sep:
        module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise ScannerConfigError(
            f"custom adapter must look like 'package.module:ClassName', got {path!r}"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ScannerConfigError(f"cannot import custom adapter module {module_name!r}: {e}") from e
    adapter = getattr(module, attr, None)
    if adapter is None:
        raise ScannerConfigError(f"module {module_name!r} has no attribute {attr!r}")
    return adapter


def get_database_scanner(
    provider: str,
    timeout_ms: int = 8000,
    extra: dict[str, Any] | None = None,
) -> DatabaseScanner:
    extra = dict(extra or {})
    name = (provider or "supabase").strip().lower()

    factory = _SCANNER_FACTORIES.get(name)
    if factory is not None:
        scanner = factory(timeout_ms, extra)
    elif name == "custom":
        adapter_path = extra.get("adapter")
        if not adapter_path:
            raise ScannerConfigError(
                "provider 'custom' requires extra['adapter'] = 'package.module:ClassName'"
            )
        adapter = _load_adapter(str(adapter_path))
        scanner = adapter(timeout_ms=timeout_ms, extra=extra)
    else:
        raise ScannerConfigError(f"database provider not registered: {provider!r}")

    if not isinstance(scanner, DatabaseScanner):
        raise ScannerConfigError(
            f"{type(scanner).__name__} does not implement the DatabaseScanner interface"
        )
    return scanner
