"""Measure Engine - FastAPI entry point.

Criteria-tree matching, component library linking, edit propagation and
deterministic patient evaluation for clinical quality measures.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from measure_engine.config.settings import get_settings
from measure_engine.config.logging_config import setup_logging, get_logger
from measure_engine.storage.database import dispose_engine, init_db
from measure_engine.api.responses import HealthCheckResponse
from measure_engine.api.routes import library, measures

setup_logging(log_level=get_settings().log_level)
logger = get_logger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: database init and engine disposal."""
    logger.info("Starting Measure Engine")
    await init_db()
    logger.info("Database initialized")

    yield

    logger.info("Shutting down Measure Engine")
    await dispose_engine()


app = FastAPI(
    title="Measure Engine",
    description="Criteria-tree matching and evaluation for clinical quality measures",
    version=VERSION,
    lifespan=lifespan,
)

settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "X-Requested-With"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    error_id = str(uuid.uuid4())[:8]
    logger.error("Unhandled exception", error_id=error_id, error=str(exc), path=request.url.path, exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error", "error_id": error_id})


# Routes
app.include_router(library.router, prefix="/api/v1")
app.include_router(measures.router, prefix="/api/v1")


@app.get("/health", response_model=HealthCheckResponse)
async def health_check():
    return HealthCheckResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=VERSION,
        platform="measure-engine",
        components={"database": True},
    )


@app.get("/")
async def root():
    return {
        "name": "Measure Engine",
        "version": VERSION,
        "description": "Criteria-tree matching and evaluation for clinical quality measures",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("measure_engine.main:app", host="0.0.0.0", port=8001, reload=True)
