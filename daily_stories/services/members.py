import logging
from typing import Dict

from sqlalchemy import delete, select, update

from ..cache.story_cache import GLOBAL_TAG, LEADERBOARDS_TAG, member_tag, story_tag
from ..core.errors import NotFoundError
from ..models.interaction import MemberStoryInteraction
from ..models.member import Member
from ..models.rating import MemberStoryRating
from ..models.reading import MemberReadingHistory
from ..models.view import StoryView
from .aggregation import recompute_rating_aggregate
from .base import ServiceBase, unit_of_work

logger = logging.getLogger(__name__)


class MemberService(ServiceBase):
    def delete_member_account(self, member_id: int) -> Dict[str, int]:
        """Remove a member and everything attributed to them in one transaction.

        Ratings are deleted and every story they touched gets its aggregate
        recomputed. Views stay as anonymous traffic so story view counters
        keep matching the view rows.
        """
        with unit_of_work(self.db, "delete_member_account", member_id=member_id):
            member = self.db.get(Member, member_id)
            if member is None:
                raise NotFoundError("Member", member_id)

            touched = set()
            for model in (MemberStoryRating, MemberStoryInteraction, MemberReadingHistory):
                touched.update(
                    self.db.execute(select(model.story_id).where(model.member_id == member_id).distinct()).scalars()
                )
            rated = set(
                self.db.execute(
                    select(MemberStoryRating.story_id).where(MemberStoryRating.member_id == member_id)
                ).scalars()
            )

            counts = {}
            for name, model in (
                ("reading_history", MemberReadingHistory),
                ("interactions", MemberStoryInteraction),
                ("ratings", MemberStoryRating),
            ):
                counts[name] = self.db.execute(
                    delete(model)
                    .where(model.member_id == member_id)
                ).rowcount
            counts["views_detached"] = self.db.execute(
                update(StoryView)
                .where(StoryView.member_id == member_id)
                .values(member_id=None)
            ).rowcount

            for story_id in sorted(rated):
                recompute_rating_aggregate(self.db, story_id)

            self.db.delete(member)

        logger.info(f"Deleted member {member_id}: {counts}", extra={"member_id": member_id})
        self.cache.invalidate(
            member_tag(member_id),
            *[story_tag(story_id) for story_id in sorted(touched)],
            LEADERBOARDS_TAG,
            GLOBAL_TAG,
        )
        return counts
