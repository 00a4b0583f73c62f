import logging

from fastapi import APIRouter, Depends, HTTPException, status

from ..services import AnalyticsService, MemberService
from .dependencies import get_analytics_service, get_member_id, get_member_service

router = APIRouter(prefix="/members", tags=["members"])
logger = logging.getLogger(__name__)


def _require_self(member_id: int, current_member_id: int) -> None:
    if member_id != current_member_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Members can only access their own account"
        )


@router.get("/{member_id}/engagement")
def member_engagement(
    member_id: int,
    current_member_id: int = Depends(get_member_id),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    _require_self(member_id, current_member_id)
    return analytics.get_member_engagement_stats(member_id)


@router.delete("/{member_id}")
def delete_account(
    member_id: int,
    current_member_id: int = Depends(get_member_id),
    members: MemberService = Depends(get_member_service),
):
    _require_self(member_id, current_member_id)
    removed = members.delete_member_account(member_id)
    logger.info(f"Member {member_id} deleted their account")
    return {"status": "deleted", "removed": removed}
