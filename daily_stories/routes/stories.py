import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status

from ..core.config import settings
from ..middleware.rate_limit import get_client_ip, limiter
from ..models.interaction import Interaction, InteractionCreate
from ..models.rating import RatingResult, RatingSubmit
from ..models.reading import ReadingProgress, ReadingProgressUpdate
from ..models.story import PublicationUpdate, PublishingHistoryEntry
from ..models.view import Attribution, RecordViewRequest, ViewContext, ViewResult
from ..services import AnalyticsService, EngagementService, StoryService
from .dependencies import (
    get_analytics_service,
    get_device_id,
    get_engagement_service,
    get_member_id,
    get_optional_member_id,
    get_story_service,
)

router = APIRouter(prefix="/stories", tags=["stories"])
logger = logging.getLogger(__name__)


# Leaderboards are declared before /{story_id} so their paths win the match

@router.get("/top-rated")
def top_rated_stories(
    limit: int = Query(10, ge=1, le=100),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    return analytics.get_top_rated_stories(limit)


@router.get("/most-rated")
def most_rated_stories(
    limit: int = Query(10, ge=1, le=100),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    return analytics.get_most_rated_stories(limit)


@router.get("/trending")
def trending_stories(
    days: int = Query(7, ge=1, le=365),
    limit: int = Query(10, ge=1, le=100),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    return analytics.get_trending_stories(days, limit)


@router.get("/{story_id}")
def get_story(story_id: int, stories: StoryService = Depends(get_story_service)):
    return stories.get_story(story_id)


# Views

@router.post("/{story_id}/view", response_model=ViewResult)
@limiter.limit(settings.VIEW_RATE_LIMIT)
def record_view(
    request: Request,
    story_id: int,
    payload: Optional[RecordViewRequest] = None,
    member_id: Optional[int] = Depends(get_optional_member_id),
    device_id: Optional[str] = Depends(get_device_id),
    engagement: EngagementService = Depends(get_engagement_service),
):
    metadata = payload.model_dump(exclude_none=True) if payload else None
    attribution = Attribution(member_id=member_id, device_id=device_id, ip_address=get_client_ip(request))
    context = ViewContext(
        session_id=request.headers.get("X-Session-ID"),
        user_agent=request.headers.get("User-Agent"),
        referrer=request.headers.get("Referer"),
        metadata=metadata or None,
    )
    return engagement.record_view(story_id, attribution, context)


# Ratings

@router.get("/{story_id}/rating")
def get_story_rating(
    story_id: int,
    member_id: Optional[int] = Depends(get_optional_member_id),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    return analytics.get_story_rating(story_id, member_id)


@router.post("/{story_id}/rating", response_model=RatingResult)
def submit_rating(
    story_id: int,
    payload: RatingSubmit,
    response: Response,
    member_id: int = Depends(get_member_id),
    engagement: EngagementService = Depends(get_engagement_service),
):
    result = engagement.submit_rating(member_id, story_id, payload.rating, payload.comment)
    if result.created:
        response.status_code = status.HTTP_201_CREATED
    return result


@router.delete("/{story_id}/rating", status_code=status.HTTP_204_NO_CONTENT)
def delete_rating(
    story_id: int,
    member_id: int = Depends(get_member_id),
    engagement: EngagementService = Depends(get_engagement_service),
):
    engagement.delete_rating(member_id, story_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Interactions

@router.post("/{story_id}/interactions", response_model=Interaction, status_code=status.HTTP_201_CREATED)
def record_interaction(
    story_id: int,
    payload: InteractionCreate,
    member_id: int = Depends(get_member_id),
    engagement: EngagementService = Depends(get_engagement_service),
):
    return engagement.record_interaction(member_id, story_id, payload.action, payload.metadata)


@router.post("/{story_id}/interactions/toggle", response_model=Interaction)
def toggle_interaction(
    story_id: int,
    payload: InteractionCreate,
    member_id: int = Depends(get_member_id),
    engagement: EngagementService = Depends(get_engagement_service),
):
    return engagement.toggle_interaction(member_id, story_id, payload.action)


@router.delete("/{story_id}/interactions", status_code=status.HTTP_204_NO_CONTENT)
def remove_interaction(
    story_id: int,
    action: str = Query(...),
    member_id: int = Depends(get_member_id),
    engagement: EngagementService = Depends(get_engagement_service),
):
    engagement.remove_interaction(member_id, story_id, action)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Reading progress

@router.get("/{story_id}/progress", response_model=ReadingProgress)
def get_reading_progress(
    story_id: int,
    member_id: int = Depends(get_member_id),
    engagement: EngagementService = Depends(get_engagement_service),
):
    return engagement.get_reading_progress(member_id, story_id)


@router.put("/{story_id}/progress", response_model=ReadingProgress)
def update_reading_progress(
    story_id: int,
    payload: ReadingProgressUpdate,
    member_id: int = Depends(get_member_id),
    engagement: EngagementService = Depends(get_engagement_service),
):
    return engagement.update_reading_progress(member_id, story_id, payload.progress, payload.time_spent)


# Analytics

@router.get("/{story_id}/analytics/ratings")
def rating_analytics(story_id: int, analytics: AnalyticsService = Depends(get_analytics_service)):
    return analytics.get_story_rating_analytics(story_id)


@router.get("/{story_id}/analytics/rating-trends")
def rating_trends(
    story_id: int,
    days: int = Query(30, ge=1, le=365),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    return analytics.get_story_rating_trends(story_id, days)


@router.get("/{story_id}/analytics/views")
def view_analytics(
    story_id: int,
    period: str = Query("week"),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    return analytics.get_story_view_analytics(story_id, period)


@router.get("/{story_id}/analytics/interactions")
def interaction_analytics(story_id: int, analytics: AnalyticsService = Depends(get_analytics_service)):
    return analytics.get_story_interaction_stats(story_id)


# Publication (CMS)

@router.put("/{story_id}/publication", response_model=PublishingHistoryEntry)
def update_publication(
    story_id: int,
    payload: PublicationUpdate,
    member_id: Optional[int] = Depends(get_optional_member_id),
    stories: StoryService = Depends(get_story_service),
):
    return stories.set_publication_state(
        story_id,
        payload.active,
        payload.active_from,
        payload.active_until,
        changed_by=member_id,
        notes=payload.notes,
    )


@router.get("/{story_id}/publication/history", response_model=List[PublishingHistoryEntry])
def publication_history(story_id: int, stories: StoryService = Depends(get_story_service)):
    return stories.get_publishing_history(story_id)


@router.delete("/{story_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_story(story_id: int, stories: StoryService = Depends(get_story_service)):
    stories.delete_story(story_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
