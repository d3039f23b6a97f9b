"""
Main FastAPI application entry point.
"""
import logging
import os
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.database import engine, Base, SessionLocal
from app.core.logging_config import setup_logging
from app.api.protected import router as protected_router
from app.api.v1.router import api_router
from app.middleware.request_logging import RequestLoggingMiddleware

# Register models with Base.metadata
from app.models import ApiKey  # noqa: F401

setup_logging()
logger = logging.getLogger(__name__)


def run_migrations() -> None:
    """Apply Alembic migrations when a real DATABASE_URL is configured."""
    if not os.getenv("DATABASE_URL"):
        logger.info("[MIGRATION] DATABASE_URL not set, skipping migrations (local dev mode)")
        return

    from alembic import command
    from alembic.config import Config

    trace_id = str(uuid.uuid4())
    try:
        logger.info("[MIGRATION] DATABASE_URL detected, running Alembic migrations...")
        command.upgrade(Config("alembic.ini"), "head")
        logger.info("[MIGRATION] Alembic migrations completed (or already up-to-date)")
    except Exception as e:
        # Startup continues; /health reports the database state
        logger.warning(f"[MIGRATION] [{trace_id}] Alembic migration failed: {e}")
        logger.debug(f"[MIGRATION] [{trace_id}] Migration error details:", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    logger.info(f"Starting up {settings.APP_NAME} API...")

    run_migrations()

    # Fallback for local dev without Alembic
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created/verified successfully")
    except SQLAlchemyError as e:
        logger.error(f"Failed to create database tables: {e}", exc_info=True)

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        logger.info("Database connectivity verified")
    except SQLAlchemyError as e:
        trace_id = str(uuid.uuid4())
        logger.error(f"[{trace_id}] Database connectivity test failed: {e}", exc_info=True)

    yield
    logger.info(f"Shutting down {settings.APP_NAME} API...")


app = FastAPI(
    title="Rot Keys API",
    description="Issue, manage and validate rot- API keys with monthly usage limits",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    redirect_slashes=False,
)

app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(protected_router, prefix="/api", tags=["protected"])
app.include_router(api_router, prefix="/api/v1")


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors with trace_id."""
    trace_id = getattr(request.state, "trace_id", str(uuid.uuid4()))

    logger.error(
        f"[{trace_id}] Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True
    )

    if isinstance(exc, SQLAlchemyError):
        error_detail = "Database error occurred"
        error_type = "DatabaseError"
    else:
        error_detail = str(exc) if settings.DEBUG else "Internal server error"
        error_type = type(exc).__name__

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": error_detail,
            "trace_id": trace_id,
            "error": error_type,
        },
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Rot Keys API",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Liveness check; does not touch the database. Use /health/db for readiness."""
    return {"status": "ok"}


@app.get("/health/db")
async def health_check_db():
    """Return 200 if the database is reachable, 503 if not."""
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        return {"status": "ok", "database": "connected"}
    except SQLAlchemyError as e:
        trace_id = str(uuid.uuid4())
        logger.warning(f"[{trace_id}] Database health check failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "trace_id": trace_id,
            }
        )
