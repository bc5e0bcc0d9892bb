"""FastAPI application entrypoint: wiring, middleware and audit error mapping."""

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from schemaguard.api.v1 import router as v1_router
from schemaguard.core.config import settings
from schemaguard.core.errors import OptionsValidationError
from schemaguard.services.layers import registered_layer_ids
from schemaguard.services.scanners.factory import registered_providers

app = FastAPI(
    title="SchemaGuard API",
    description="Audit a database schema against the identifiers application code expects.",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.APP_ENV == "dev" else [],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(v1_router, prefix=settings.API_V1_PREFIX)


@app.exception_handler(OptionsValidationError)
async def options_validation_handler(request: Request, exc: OptionsValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": exc.errors or [exc.message]})


@app.get("/")
def root() -> dict[str, object]:
    """Discovery payload: available layers and database providers."""
    return {
        "service": "schemaguard",
        "api": settings.API_V1_PREFIX,
        "layers": registered_layer_ids(),
        "providers": registered_providers(),
    }
