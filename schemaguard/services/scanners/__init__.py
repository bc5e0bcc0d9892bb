"""Database scanner adapters, one per provider, behind the DatabaseScanner interface."""

from schemaguard.services.scanners.base import DatabaseScanner
from schemaguard.services.scanners.factory import get_database_scanner, register_scanner
from schemaguard.services.scanners.postgres import PostgresScanner
from schemaguard.services.scanners.supabase import SupabaseScanner

__all__ = [
    "DatabaseScanner",
    "PostgresScanner",
    "SupabaseScanner",
    "get_database_scanner",
    "register_scanner",
]
