# Load environment variables FIRST before any other imports
from dotenv import load_dotenv
load_dotenv()

import os
import logging
import sentry_sdk
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dailylearn import __version__
from dailylearn.config import get_settings
from dailylearn.database import engine, Base
from dailylearn.errors import ServiceError, http_status_for
from dailylearn.routers import daily_flow, notifications, ai_answers
from dailylearn.services.background_tasks import shutdown_job_runner
from dailylearn.services.scheduler import start_scheduler, shutdown_scheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

settings = get_settings()

# Initialize Sentry for error monitoring
if settings.sentry_dsn:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        traces_sample_rate=0.1,  # 10% of transactions for performance monitoring
        environment=settings.environment,
    )

# Create database tables
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup and shutdown."""
    if settings.enable_scheduler:
        start_scheduler()
    else:
        logger.info("Daily scheduler disabled via ENABLE_SCHEDULER=false")

    yield  # Application runs here

    logger.info("Shutting down...")
    shutdown_scheduler()
    shutdown_job_runner()


tags_metadata = [
    {
        "name": "daily",
        "description": "Daily feed, streaks, per-day stats and the manual daily flow trigger.",
    },
    {
        "name": "notifications",
        "description": "Push token registration, delivery history and admin notification tools.",
    },
    {
        "name": "ai-answers",
        "description": "Pre-generated AI answers: read, regenerate, invalidate.",
    },
]

app = FastAPI(
    title="DailyLearn API",
    description="Daily question-and-answer content pipeline for the DailyLearn app.",
    version=__version__,
    lifespan=lifespan,
    openapi_tags=tags_metadata,
)

ALLOWED_ORIGINS = [
    "http://localhost:3000",  # Next.js dev server
]

# Allow additional origins from environment (for preview deploys)
extra_origins = os.getenv("CORS_ALLOWED_ORIGINS", "")
if extra_origins:
    ALLOWED_ORIGINS.extend([o.strip() for o in extra_origins.split(",") if o.strip()])

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Content-Type", "Accept", "X-User-Id", "X-Admin-Key"],
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    status_code = http_status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "kind": exc.kind.value},
    )


# Include routers
app.include_router(daily_flow.router)  # Feed, streaks, daily stats
app.include_router(notifications.router)  # Push notifications
app.include_router(ai_answers.router)  # AI answer cache


@app.get("/")
def root():
    return {
        "message": "DailyLearn API",
        "version": __version__,
        "docs": "/docs"
    }


@app.get("/health")
def health_check():
    return {"status": "healthy"}
