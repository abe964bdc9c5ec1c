"""
FastAPI application entry point.

Configures logging, creates the database tables on startup and registers
the import, session, record, mapping and candidate routers.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.routers import candidates, import_sessions, imports, mappings, records
from .core.config import settings
from .core.logging_config import configure_logging

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create database tables unless SKIP_DB_INIT=1 (tests, external migrations)."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
        yield
        return

    from .db.session import init_db

    try:
        init_db()
    except Exception:
        logger.exception("Failed to initialize database tables; the application cannot start")
        raise

    yield


app = FastAPI(
    title="TollSync API",
    version="1.0.0",
    description="Toll-usage CSV ingestion, deduplication and reconciliation against fleet records",
    lifespan=lifespan,
)

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
allowed_origins = [origin.strip() for origin in allowed_origins]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies and parameters are reported as 400, like every other invalid argument."""
    return JSONResponse(
        status_code=400,
        content={
            "detail": {
                "error": "ValidationError",
                "message": "Request is malformed",
                "details": {"errors": [
                    {"loc": list(err.get("loc", [])), "msg": err.get("msg", "")} for err in exc.errors()
                ]},
            }
        },
    )


app.include_router(imports.router)
app.include_router(import_sessions.router)
app.include_router(records.router)
app.include_router(mappings.router)
app.include_router(candidates.router)


@app.get("/health")
async def health_check():
    """Liveness probe."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "tollsync",
    }
