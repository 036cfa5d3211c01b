"""
Main FastAPI application
Entry point for the PNR Status Tracker
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from sqlalchemy import text
import logging
from datetime import datetime

from pnr_tracker.utils.config import settings
from pnr_tracker.utils.database import init_db
from pnr_tracker.utils.dependencies import build_scheduler
from pnr_tracker.api.V1 import admin
from pnr_tracker.core.status_source import HTTPStatusSource
from pnr_tracker.models.schemas import HealthCheckResponse

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan events
    Builds the status-check pipeline on startup and stops it on shutdown
    """
    logger.info(f"🚀 Starting {settings.APP_NAME}...")

    init_db()
    logger.info("✅ Database initialized")

    status_source = HTTPStatusSource()
    if await status_source.test_connection():
        logger.info("✅ Status source reachable")
    else:
        logger.warning(f"⚠️ Status source not reachable at {settings.STATUS_SOURCE_URL}")

    scheduler = build_scheduler(status_source=status_source)
    app.state.scheduler = scheduler
    scheduler.start()

    if scheduler.stats.is_running:
        logger.info(f"⏰ Status checks scheduled: {settings.SCHEDULER_CRON}")
    else:
        logger.info("⏸️ Status check scheduler disabled")

    logger.info(f"🌐 API running at {settings.HOST}:{settings.PORT}")
    logger.info(f"📚 Documentation available at http://{settings.HOST}:{settings.PORT}/docs")

    yield

    logger.info(f"👋 Shutting down {settings.APP_NAME}...")
    scheduler.stop()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="""
    ## PNR Status Tracker API

    Periodically re-checks tracked reservation codes (PNRs) and notifies owners when
    their status changes.

    ### Features
    * ⏰ **Scheduled checks**: Cron-driven batch checks of every active PNR
    * 🔁 **Retries**: Transient upstream failures are retried with backoff
    * 🔔 **Notifications**: Reliable queue with retry and a failed-notification inbox
    * 🗂️ **History**: Every check is recorded per PNR
    * 📦 **Archiving**: Completed journeys are retired automatically

    ### Getting Started
    1. Configure `STATUS_SOURCE_URL` and SMTP settings in `.env`
    2. Set `SCHEDULER_ENABLED=true` to arm the timer
    3. Use `/docs` for interactive API documentation
    """,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

# CORS middleware for frontend integration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors"""
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": "An internal server error occurred",
            "type": type(exc).__name__
        }
    )


app.include_router(admin.router, prefix=settings.API_V1_PREFIX)


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information"""
    return {
        "message": f"{settings.APP_NAME} API",
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "redoc": "/redoc",
        "health": "/health"
    }


@app.get("/health", response_model=HealthCheckResponse, tags=["Health"])
async def health_check(request: Request):
    """
    Health check endpoint

    Returns database connectivity and whether the scheduler timer is armed
    """
    from pnr_tracker.utils.database import engine

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database health check failed: {str(e)}")
        db_connected = False

    scheduler = getattr(request.app.state, "scheduler", None)
    scheduler_running = bool(scheduler and scheduler.stats.is_running)

    return HealthCheckResponse(
        status="healthy" if db_connected else "degraded",
        timestamp=datetime.utcnow(),
        version=settings.APP_VERSION,
        database_connected=db_connected,
        scheduler_running=scheduler_running
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "pnr_tracker.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG
    )
