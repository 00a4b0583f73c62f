import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from ..cache.story_cache import GLOBAL_TAG, LEADERBOARDS_TAG, story_tag
from ..core.errors import InvalidArgumentError
from ..models.interaction import MemberStoryInteraction
from ..models.rating import MemberStoryRating
from ..models.reading import MemberReadingHistory
from ..models.story import PublishingHistoryEntry, StoryPublishingHistory
from ..utils.time_buckets import isoformat, to_naive_utc, utcnow
from .base import ServiceBase, unit_of_work

logger = logging.getLogger(__name__)


def _publication_action(was_active: Optional[bool], active: bool) -> str:
    if active and not was_active:
        return "published"
    if was_active and not active:
        return "unpublished"
    return "rescheduled"


class StoryService(ServiceBase):
    """Publication window management for stories owned by the CMS."""

    def get_story(self, story_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        with unit_of_work(self.db, "get_story", story_id=story_id):
            story = self._get_story(story_id)
            return {
                "id": story.id,
                "title": story.title,
                "views": story.views,
                "active": story.active,
                "active_from": isoformat(story.active_from),
                "active_until": isoformat(story.active_until),
                "is_publishable": story.is_publishable(now),
            }

    def set_publication_state(
        self,
        story_id: int,
        active: bool,
        active_from: Optional[datetime] = None,
        active_until: Optional[datetime] = None,
        changed_by: Optional[int] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PublishingHistoryEntry:
        active_from, active_until = to_naive_utc(active_from), to_naive_utc(active_until)
        if active_from is not None and active_until is not None and active_until <= active_from:
            raise InvalidArgumentError("active_until", "Publication window must end after it starts")
        now = now or utcnow()

        with unit_of_work(self.db, "set_publication_state", story_id=story_id):
            story = self._get_story(story_id)
            entry = StoryPublishingHistory(
                story_id=story_id,
                action=_publication_action(story.active, active),
                previous_active=story.active,
                new_active=active,
                previous_active_from=story.active_from,
                previous_active_until=story.active_until,
                new_active_from=active_from,
                new_active_until=active_until,
                changed_by=changed_by,
                notes=notes,
                created_at=now,
            )
            story.active = active
            story.active_from = active_from
            story.active_until = active_until
            story.updated_at = now
            self.db.add(entry)
            self.db.flush()
            result = PublishingHistoryEntry.model_validate(entry)

        logger.info(f"Story {story_id} {result.action}", extra={"story_id": story_id})
        self.cache.invalidate(story_tag(story_id), LEADERBOARDS_TAG, GLOBAL_TAG)
        return result

    def get_publishing_history(self, story_id: int) -> List[PublishingHistoryEntry]:
        with unit_of_work(self.db, "get_publishing_history", story_id=story_id):
            story = self._get_story(story_id)
            return [PublishingHistoryEntry.model_validate(entry) for entry in story.publishing_history]

    def delete_story(self, story_id: int) -> None:
        """Delete a story together with every view, rating, interaction and reading row it owns."""
        with unit_of_work(self.db, "delete_story", story_id=story_id):
            story = self._get_story(story_id)
            member_ids = set()
            for model in (MemberStoryRating, MemberStoryInteraction, MemberReadingHistory):
                member_ids.update(
                    self.db.execute(select(model.member_id).where(model.story_id == story_id).distinct()).scalars()
                )
            self.db.delete(story)

        logger.info(f"Deleted story {story_id}", extra={"story_id": story_id})
        self.cache.invalidate_story(story_id, sorted(member_ids))
