"""
Feature Flags & Experiments API

A FastAPI application that evaluates hierarchical feature flags, assigns
users to experiment variants, records conversions and detects winners.
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import asyncio
import logging
import time

from fitflags.config import settings
from fitflags.database import init_db
from fitflags.errors import ExperimentationError
from fitflags.routers import assignments, auth_routes, conversions, experiments, flags, results, usage
from fitflags.scheduler import periodic_jobs_loop

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifecycle management.
    Initializes the database and starts the periodic rollout/statistics jobs.
    """
    logger.info("Starting Feature Flags & Experiments API...")
    init_db()
    logger.info("Database initialized")

    jobs = None
    if settings.scheduler_interval_seconds > 0:
        jobs = asyncio.create_task(periodic_jobs_loop(settings.scheduler_interval_seconds))
    yield
    if jobs is not None:
        jobs.cancel()
        try:
            await jobs
        except asyncio.CancelledError:
            pass
    logger.info("Shutting down Feature Flags & Experiments API...")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Add request timing header for performance monitoring."""
    start_time = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = str(time.time() - start_time)
    return response


@app.get("/health", tags=["health"])
async def health_check():
    """Liveness plus whether the rollout/statistics loop is configured."""
    return {
        "status": "healthy",
        "version": settings.api_version,
        "service": "fitflags",
        "periodic_jobs": (
            f"every {settings.scheduler_interval_seconds}s"
            if settings.scheduler_interval_seconds > 0 else "disabled"
        )
    }


@app.get("/", tags=["health"])
async def root():
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "docs": "/docs",
        "health": "/health",
        "auth": "/auth/token",
        "evaluate": "/flags/{feature_name}/evaluation/{user_id}",
        "assign": "/experiments/{experiment_id}/assignment/{user_id}"
    }


app.include_router(auth_routes.router)
app.include_router(flags.router)
app.include_router(experiments.router)
app.include_router(assignments.router)
app.include_router(assignments.feature_router)
app.include_router(conversions.router)
app.include_router(conversions.event_type_router)
app.include_router(results.router)
app.include_router(results.rollout_router)
app.include_router(usage.router)


@app.exception_handler(ExperimentationError)
async def experimentation_error_handler(request: Request, exc: ExperimentationError):
    """NotFound -> 404, ValidationError -> 400, with the message as detail."""
    logger.info(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unexpected errors.
    Logs the error and returns a sanitized response.
    """
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "An internal error occurred. Please try again later."}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
