from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from ..cache.story_cache import StoryCache, get_cache
from ..database import get_db
from ..services import AnalyticsService, EngagementService, MemberService, StoryService


def get_story_cache() -> StoryCache:
    return get_cache()


def get_engagement_service(
    db: Session = Depends(get_db),
    cache: StoryCache = Depends(get_story_cache),
) -> EngagementService:
    return EngagementService(db, cache)


def get_analytics_service(
    db: Session = Depends(get_db),
    cache: StoryCache = Depends(get_story_cache),
) -> AnalyticsService:
    return AnalyticsService(db, cache)


def get_story_service(
    db: Session = Depends(get_db),
    cache: StoryCache = Depends(get_story_cache),
) -> StoryService:
    return StoryService(db, cache)


def get_member_service(
    db: Session = Depends(get_db),
    cache: StoryCache = Depends(get_story_cache),
) -> MemberService:
    return MemberService(db, cache)


# The upstream auth layer resolves the member and forwards the id in X-Member-ID
def get_optional_member_id(x_member_id: Optional[int] = Header(None)) -> Optional[int]:
    return x_member_id


def get_member_id(member_id: Optional[int] = Depends(get_optional_member_id)) -> int:
    if member_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authenticated member required"
        )
    return member_id


def get_device_id(x_device_id: Optional[str] = Header(None)) -> Optional[str]:
    return x_device_id or None
