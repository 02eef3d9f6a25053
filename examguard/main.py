"""
examguard Integrity Service - FastAPI Application
"""
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .proctor import api as proctor_api
from .utils import setup_logging

logger = logging.getLogger("examguard.http")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging on startup, release detector workers on shutdown."""
    setup_logging(
        service_name="examguard",
        level=settings.LOG_LEVEL,
        log_to_file=settings.LOG_TO_FILE,
        log_dir=settings.LOG_DIR
    )
    logger.info(f"Database: {'configured' if settings.DATABASE_URL else 'in-memory'}")
    logger.info(f"Detector weights: {settings.DETECTOR_MODEL_PATH or 'none (degraded mode)'}")

    yield

    if proctor_api._monitor is not None:
        proctor_api._monitor.shutdown()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description="Integrity monitoring for proctored online exams",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan
)


# ============================================================================
# Request Logging Middleware
# ============================================================================

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests with timing."""
    start = time.time()
    method = request.method
    path = request.url.path

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(f"{method} {path} failed: {e}")
        raise

    duration_ms = int((time.time() - start) * 1000)
    if path not in ["/health", "/api/proctor/health", "/favicon.ico"]:
        logger.info(f"{method} {path} -> {response.status_code} in {duration_ms}ms")
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,  # Must be False when using wildcard origin
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(proctor_api.router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": "1.0.0"
    }
