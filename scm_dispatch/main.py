import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from scm_dispatch.config import settings
from scm_dispatch.database import async_session_factory, init_db
from scm_dispatch.exceptions import DispatchError
from scm_dispatch.api.v1.router import api_router
from scm_dispatch.jobs.assignment_retry import AssignmentRetryScheduler
from scm_dispatch.jobs.scheduler import start_scheduler, shutdown_scheduler
from scm_dispatch.services.carrier_assignment_service import CarrierAssignmentService
from scm_dispatch.services.carrier_notifier import CarrierNotifier
from scm_dispatch.services.quote_collector import QuoteCollector
from scm_dispatch.services.routing_service import RoutingService

logger = logging.getLogger(__name__)


def build_services(app: FastAPI, session_factory=async_session_factory) -> None:
    """Construct the long-lived services once and keep them on app.state."""
    notifier = CarrierNotifier()
    assignment_service = CarrierAssignmentService(
        session_factory=session_factory,
        notifier=notifier,
        routing_service=RoutingService(),
    )
    app.state.session_factory = session_factory
    app.state.notifier = notifier
    app.state.assignment_service = assignment_service
    app.state.retry_scheduler = AssignmentRetryScheduler(assignment_service)
    app.state.quote_collector = QuoteCollector(session_factory=session_factory)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Configure logging from LOG_LEVEL
    - Create tables
    - Build services, start the notification worker and the scheduler
    """
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    await init_db()
    build_services(app)
    app.state.notifier.start()

    if settings.SCHEDULER_ENABLED:
        start_scheduler(app.state.retry_scheduler, app.state.quote_collector)

    yield

    # Shutdown
    shutdown_scheduler()
    await app.state.notifier.stop()
    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Carrier Assignment", "description": "Batch carrier assignment and carrier responses"},
    {"name": "Carriers", "description": "Carrier polling and availability webhook"},
    {"name": "Shipping", "description": "Quick estimates and real-time carrier quotes"},
    {"name": "Jobs", "description": "Assignment retry sweeps and scheduler status"},
]

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Include API router
app.include_router(api_router)


@app.exception_handler(DispatchError)
async def dispatch_exception_handler(request: Request, exc: DispatchError):
    """Domain errors carry their own status code."""
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={**exc.to_dict(), "path": str(request.url.path)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "type": type(exc).__name__,
            "path": str(request.url.path),
            "method": request.method,
        },
    )


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Health check endpoint with database validation."""
    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        }
    }

    session_factory = getattr(request.app.state, "session_factory", async_session_factory)
    try:
        async with session_factory() as session:
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
