from datetime import datetime, timezone
import logging
import os

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Dict

from .. import __version__
from ..cache.story_cache import StoryCache
from ..database import test_database_connection
from .dependencies import get_story_cache

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: str
    environment: str
    checks: Dict[str, bool]


@router.get("", response_model=HealthResponse)
def health_check(cache: StoryCache = Depends(get_story_cache)):
    """Basic health check endpoint"""
    checks = {
        "database": test_database_connection(),
        "cache": cache.backend.ping(),
    }
    return HealthResponse(
        status="healthy" if all(checks.values()) else "degraded",
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
        environment="production" if os.getenv("ENV") == "production" else "development",
        checks=checks,
    )
