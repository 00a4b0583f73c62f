from fastapi import APIRouter, Depends

from ..services import AnalyticsService
from .dependencies import get_analytics_service

router = APIRouter(prefix="/stats", tags=["stats"])


@router.get("/global")
def global_rating_stats(analytics: AnalyticsService = Depends(get_analytics_service)):
    return analytics.get_global_rating_stats()
