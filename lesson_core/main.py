"""FastAPI application entry point."""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError

from lesson_core.core.config import settings
from lesson_core.core.errors import ConcurrencyConflict, StoreUnavailable, ValidationError
from lesson_core.database import init_db
from lesson_core.api.lessons import router as lessons_router

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    debug=settings.debug
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    logger.info("Starting up lesson core...")
    logger.info(f"APP_ENV={settings.app_env} (is_prod={settings.is_prod})")

    if settings.is_prod and not settings.cron_secret:
        logger.warning("CRON_SECRET not set. /cron/reset-quotas is unprotected.")

    # Initialize database
    try:
        init_db()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")

    if settings.cache_enabled:
        from lesson_core.services.cache import redis_available
        if redis_available():
            logger.info("Cache enabled (Redis available)")
        else:
            logger.warning("Cache enabled but Redis not available, continuing without cache")
    else:
        logger.info("Cache disabled (CACHE_ENABLED=false)")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    logger.info("Shutting down...")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "service": settings.app_name
    }


# Include API routers
app.include_router(lessons_router, prefix="/api/v1", tags=["Lessons"])


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    logger.info(f"Validation error: {exc}")
    return JSONResponse(status_code=400, content={"detail": exc.message, "field": exc.field})


@app.exception_handler(ConcurrencyConflict)
async def concurrency_conflict_handler(request: Request, exc: ConcurrencyConflict):
    logger.warning(f"Concurrency conflict: {exc}")
    return JSONResponse(status_code=409, content={"detail": "Request conflicted with a concurrent update. Please retry."})


@app.exception_handler(StoreUnavailable)
@app.exception_handler(DBAPIError)
async def store_unavailable_handler(request: Request, exc: Exception):
    logger.error(f"Store unavailable: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable. Please try again."})


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler - never expose stack traces."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "An internal error occurred. Please try again later."}
    )
