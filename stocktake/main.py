from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
import traceback

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from stocktake.config import settings
from stocktake.api.deps import get_capabilities
from stocktake.api.v1.router import api_router
from stocktake.database import get_db, init_db


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create missing tables (Alembic owns schema changes in production)
    - Resolve run store capabilities once
    """
    # Startup
    logger.info("Starting %s v%s", settings.APP_NAME, settings.APP_VERSION)
    await init_db()
    get_capabilities()

    yield

    # Shutdown
    logger.info("Shutting down...")


# OpenAPI Tags with detailed descriptions
OPENAPI_TAGS = [
    {"name": "Counting Runs", "description": "Start, complete, restart and release zone counts"},
    {"name": "Inventory Sessions", "description": "Conflicting and resolved products of a counting campaign"},
    {"name": "Shop Inventory", "description": "Shop-wide counting summary and reset"},
    {"name": "Zones", "description": "Zone occupancy and per-zone conflict detail"},
    {"name": "Inventory Reports", "description": "Finalized zone figures and CSV exports"},
    {"name": "Health", "description": "Service and database health"},
]

API_DESCRIPTION = """
## Stocktake Counting Service

Coordinates physical stock counts performed by several operators across the
zones of a shop, and reconciles the counts when they disagree.

### Counting flow

1. **First count** of a zone by one operator
2. **Second count** by another operator once the first is completed
3. **Tie-break count** when the first two disagree

Only one run per zone and count type can be in progress at a time.

### Error Codes

| Code | Description |
|------|-------------|
| 400 | Bad Request - Invalid lines or unknown operator |
| 404 | Not Found - Zone, run, session or shop doesn't exist |
| 409 | Conflict - Count held by another operator or prerequisite missing |
| 500 | Internal Server Error |
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    """Faults that escape the services become a 500 with a JSON body."""
    logger.error(
        "Unhandled %s on %s %s", type(exc).__name__, request.method, request.url.path,
        exc_info=exc,
    )
    body = {
        "error": "Internal server error",
        "type": type(exc).__name__,
        "path": request.url.path,
    }
    if settings.DEBUG:
        body["error"] = str(exc)
        body["traceback"] = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
    return JSONResponse(status_code=500, content=body)


@app.get("/health", tags=["Health"])
async def health_check(db: AsyncSession = Depends(get_db)):
    """Liveness plus a round trip to the database."""
    checks = {"database": "connected"}
    try:
        await db.scalar(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("Health check database failure: %s", e)
        checks["database"] = f"error: {e}"

    healthy = checks["database"] == "connected"
    payload = {
        "status": "healthy" if healthy else "unhealthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }
    if not healthy:
        return JSONResponse(status_code=503, content=payload)
    return payload
