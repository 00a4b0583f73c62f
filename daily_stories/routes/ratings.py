from fastapi import APIRouter, Depends

from ..models.rating import MemberRating
from ..services import EngagementService
from .dependencies import get_engagement_service, get_member_id

router = APIRouter(prefix="/ratings", tags=["ratings"])


@router.post("/{rating_id}/helpful")
def mark_helpful(
    rating_id: int,
    member_id: int = Depends(get_member_id),
    engagement: EngagementService = Depends(get_engagement_service),
):
    return {"rating_id": rating_id, "helpful_count": engagement.mark_rating_helpful(rating_id)}


@router.post("/{rating_id}/verify", response_model=MemberRating)
def verify_rating(rating_id: int, engagement: EngagementService = Depends(get_engagement_service)):
    """Moderation: mark a rating as coming from a verified reader."""
    return engagement.verify_rating(rating_id)
