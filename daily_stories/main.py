import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from . import __version__
from .core.config import settings
from .core.errors import EngagementError, engagement_error_handler
from .core.logging import setup_logging
from .core.monitoring import monitor_requests, set_system_info
from .database import init_db
from .middleware.rate_limit import limiter
from .routes import health, members, monitoring, ratings, stats, stories

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("Starting up application...")
    init_db()
    environment = "production" if os.getenv("ENV") == "production" else "development"
    set_system_info(__version__, environment)
    logger.info(f"API Version: {settings.API_V1_STR}")
    logger.info(f"Environment: {environment}")
    yield
    logger.info("Shutting down application...")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=__version__,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(EngagementError, engagement_error_handler)

    app.middleware("http")(monitor_requests)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            settings.FRONTEND_URL,
            "http://localhost:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for module in (stories, ratings, members, stats, health):
        app.include_router(module.router, prefix=settings.API_V1_STR)
    app.include_router(monitoring.router)
    app.include_router(health.router)

    @app.get("/")
    async def root():
        return {"status": "healthy", "message": settings.PROJECT_NAME}

    return app


app = create_app()
