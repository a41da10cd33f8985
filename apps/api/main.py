"""
Performance Feedback Loop - FastAPI Backend
Application entry point with health checks, feedback triggers and aggregate views.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import metrics_mode, settings, validate_feedback_settings
from database import init_db
from logging_config import configure_logging
from routers import feedback, health

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    configure_logging()
    logger.info("Starting Performance Feedback Loop API (metrics_mode=%s)", metrics_mode())
    validate_feedback_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            await init_db()
            logger.info("Database schema verified.")
        except Exception as e:
            logger.warning("Database bootstrap skipped: %s", e)
    yield
    logger.info("Shutting down API...")


app = FastAPI(
    title="Performance Feedback Loop API",
    description="Collect post engagement metrics and roll them into product and style performance",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(feedback.router, prefix="/feedback", tags=["Feedback"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Performance Feedback Loop API",
        "version": "0.1.0",
        "status": "running"
    }
