"""Health check endpoint with optional database connectivity check."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from schemaguard.api.v1.deps import get_scanner
from schemaguard.core.config import Settings, get_settings
from schemaguard.core.errors import SchemaGuardError
from schemaguard.schemas.health import HealthResponse
from schemaguard.services.orchestrator import options_from_settings
from schemaguard.services.scanners.base import DatabaseScanner
from schemaguard.services.scanners.factory import get_database_scanner

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/", response_model=HealthResponse)
async def get_health(
    settings: Annotated[Settings, Depends(get_settings)],
    scanner_override: Annotated[DatabaseScanner | None, Depends(get_scanner)],
) -> HealthResponse:
    """
    Return service health status and target database connectivity.
    database is omitted when no connection is configured.
    """
    try:
        options = options_from_settings(settings)
    except SchemaGuardError:
        return HealthResponse(environment=settings.APP_ENV, provider=settings.DB_PROVIDER)

    try:
        scanner = scanner_override or get_database_scanner(
            options.provider, timeout_ms=options.timeout_ms, extra=options.extra
        )
    except SchemaGuardError as e:
        logger.warning("Health check scanner unavailable", extra={"error": e.message})
        return HealthResponse(
            environment=settings.APP_ENV, provider=settings.DB_PROVIDER, database="disconnected"
        )

    connected = False
    try:
        await scanner.connect(options.connection)
        connected = await scanner.is_healthy()
    except SchemaGuardError as e:
        logger.warning("Health check database unreachable", extra={"error": e.message})
    finally:
        await scanner.disconnect()

    return HealthResponse(
        environment=settings.APP_ENV,
        provider=options.provider,
        database="connected" if connected else "disconnected",
    )
