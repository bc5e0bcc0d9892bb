"""Shared route dependencies."""

from schemaguard.services.scanners.base import DatabaseScanner


def get_scanner() -> DatabaseScanner | None:
    """Scanner override for audit runs; None means build one from settings via the provider factory."""
    return None
