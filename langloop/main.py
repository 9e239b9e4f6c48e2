"""Main FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from langloop import __version__
from langloop.api import health, tasks, webhooks
from langloop.config import get_settings
from langloop.db.session import init_db
from langloop.middleware.rate_limit import limiter
from langloop.services.container import build_services

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting langloop...")

    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    services = build_services(settings)
    app.state.services = services

    try:
        await services.work_log.initialize()
    except (RedisError, OSError) as e:
        if settings.processing_mode == "work_log":
            logger.error(f"Work log initialization failed: {e}")
            raise
        logger.warning(f"Work log unavailable, continuing in webhook mode: {e}")

    logger.info(f"langloop started in {settings.processing_mode} mode")

    yield

    logger.info("Shutting down langloop...")
    await services.close()


app = FastAPI(
    title="langloop",
    description="""
## Translation orchestration with human review loops

Each task translates one article into several languages. Every language is
machine-translated, scored against the editorial guidelines and, when the
score is below the confidence threshold, sent to human reviewers and scored
again until it converges or runs out of review iterations.

Stage transitions are driven by signed webhook events posted to
`/v1/webhooks` with `X-Babel-Request-Signature` / `X-Babel-Request-Timestamp`
(or the `X-Prolific-*` pair for the review marketplace).
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


# Include routers
app.include_router(health.router)
app.include_router(tasks.router)
app.include_router(webhooks.router)


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with service info."""
    return {
        "service": "langloop",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "langloop.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
