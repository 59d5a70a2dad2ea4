"""
POS Sales Sync API - Main Application

SECURITY FEATURES:
- Conditional API docs (disabled in production by default)
- Structured logging without tokens or credentials
- Production-hardened configuration
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from app.api.v2.router import api_router
from app.webhooks.square import square_router
from app.config import settings
from app.core.logging import configure_logging, RequestIdMiddleware
from app.core.sentry import init_sentry
from app.database import init_db
from app.exceptions import register_exception_handlers
# Import all models to register them with SQLAlchemy metadata before init_db()
from app.models import IntegrationConnection, SalesImport, Sale, SaleItem, DailySalesSummary  # noqa: F401
from app.tasks.square_sync_scheduler import start_square_sync_scheduler, stop_square_sync_scheduler

configure_logging(debug=settings.DEBUG)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting POS Sales Sync API...")
    logger.info(f"Environment: {settings.ENVIRONMENT}, Square environment: {settings.SQUARE_ENVIRONMENT}")
    init_sentry()
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        # SECURITY: Don't log full exception details which may contain credentials
        logger.error(f"Database initialization failed: {type(e).__name__}")
        logger.warning("App starting without database - some features may not work")

    if settings.SQUARE_SYNC_ENABLED:
        start_square_sync_scheduler()
    yield
    stop_square_sync_scheduler()
    logger.info("Shutting down POS Sales Sync API...")


docs_url = "/docs" if settings.DOCS_ENABLED else None
redoc_url = "/redoc" if settings.DOCS_ENABLED else None

app = FastAPI(
    title="POS Sales Sync API",
    description="Imports completed point-of-sale transactions into the operations dashboard",
    version="1.0.0",
    docs_url=docs_url,
    redoc_url=redoc_url,
    lifespan=lifespan,
)

allowed_origins = [settings.FRONTEND_URL]
if not settings.is_production:
    allowed_origins.extend([
        "http://localhost:3000",
        "http://localhost:5173",
    ])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIdMiddleware)
register_exception_handlers(app)

# Include routers
app.include_router(api_router, prefix="/api/v2")
app.include_router(square_router, prefix="/webhooks/square", tags=["webhooks"])


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
    }


# For running with uvicorn directly (development only)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=5001,
        reload=settings.DEBUG,
    )
