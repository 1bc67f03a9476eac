from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.api.v1.router import api_router
from app.core.exceptions import ReturnWorkflowError
from app.database import init_db, async_session_factory
from app.jobs.scheduler import start_scheduler, shutdown_scheduler


logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create tables
    - Re-arm persisted return deadlines
    - Start background scheduler (deadline + refund outbox sweeps)
    """
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()

    if settings.SCHEDULER_ENABLED:
        from app.jobs.return_jobs import rehydrate_deadlines

        await rehydrate_deadlines()
        start_scheduler()

    yield

    # Shutdown
    shutdown_scheduler()
    logger.info("Shutting down...")


# OpenAPI Tags with detailed descriptions
OPENAPI_TAGS = [
    {"name": "Customer Returns", "description": "Submit and follow return requests"},
    {"name": "Store Returns", "description": "Seller decisions, package info, courier shipment and disposition"},
    {"name": "GHN", "description": "Pick shifts and courier status webhook"},
]

API_DESCRIPTION = """
## Return & Refund Orchestrator

Takes a return request from submission through the shop decision, the
courier pickup and delivery, to the refund. Every waiting state expires
after `RETURN_SLA_HOURS` (48h by default):

| State | Timeout outcome |
|-------|-----------------|
| PENDING | AUTO_REFUNDED (or APPROVED with `RETURN_PENDING_TIMEOUT_ACTION=AUTO_APPROVE`) |
| APPROVED | CANCELLED |
| SHIPPING, not picked up | back to APPROVED, courier order cancelled |
| SHIPPING, picked up, not delivered after `RETURN_TRANSIT_SLA_HOURS` (168h) | AUTO_REFUNDED |
| SHIPPING, delivered | AUTO_REFUNDED |

Caller identity comes from the `X-Store-Id` / `X-Customer-Id` headers set by the gateway.
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
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


@app.exception_handler(ReturnWorkflowError)
async def return_workflow_exception_handler(request: Request, exc: ReturnWorkflowError):
    """Domain errors carry their own status code and machine-readable code."""
    if exc.http_status >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint with database validation."""
    from sqlalchemy import text
    from datetime import datetime, timezone

    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        }
    }

    # Check database connectivity
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status
