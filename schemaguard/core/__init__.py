"""Core configuration and error taxonomy."""

from schemaguard.core.config import get_settings, settings
from schemaguard.core.errors import SchemaGuardError

__all__ = ["get_settings", "settings", "SchemaGuardError"]
