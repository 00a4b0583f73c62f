import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..cache.story_cache import member_tag, story_tag
from ..core.config import settings
from ..core.errors import (
    AlreadyRatedError,
    DuplicateInteractionError,
    InvalidArgumentError,
    NotAvailableError,
    NotFoundError,
    TransientStoreError,
)
from ..core.monitoring import record_event
from ..models.interaction import TOGGLE_PAIRS, VALID_ACTIONS, Interaction, MemberStoryInteraction
from ..models.rating import MemberRating, MemberStoryRating, RatingResult
from ..models.reading import MemberReadingHistory, ReadingProgress
from ..models.story import Story
from ..models.view import Attribution, StoryView, ViewContext, ViewResult
from ..utils.time_buckets import utcnow
from .aggregation import (
    RatingFact,
    RatingSnapshot,
    apply_rating_change,
    is_finite_number,
    recompute_rating_aggregate,
    validate_rating_value,
)
from .base import ServiceBase, unit_of_work

logger = logging.getLogger(__name__)

T = TypeVar("T")

# A lost insert race is retried once; the second attempt sees the winner's row
CONFLICT_ATTEMPTS = 2


def clean_comment(comment: Optional[str]) -> Optional[str]:
    if comment is None:
        return None
    comment = comment.strip()
    return comment or None


def insert_or_ignore(db: Session, table, values: Dict[str, Any], conflict_columns) -> bool:
    """INSERT ... ON CONFLICT DO NOTHING. Returns True when a row was written."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=conflict_columns)
    elif dialect == "sqlite":
        stmt = sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=conflict_columns)
    else:
        conditions = [table.c[column] == values[column] for column in conflict_columns]
        if db.execute(select(table.c.id).where(*conditions)).first() is not None:
            return False
        stmt = table.insert().values(**values)
    return db.execute(stmt).rowcount > 0


class EngagementService(ServiceBase):
    """Write paths for views, ratings, interactions and reading progress.

    Every operation runs in a single transaction together with the derived
    state it affects, and invalidates cached reads only after the commit.
    """

    def __init__(
        self,
        db: Session,
        cache,
        dedup_window_minutes: Optional[int] = None,
        incremental_aggregation: Optional[bool] = None,
    ):
        super().__init__(db, cache)
        self.dedup_window = timedelta(minutes=dedup_window_minutes or settings.VIEW_DEDUP_WINDOW_MINUTES)
        if incremental_aggregation is None:
            incremental_aggregation = settings.INCREMENTAL_AGGREGATION
        self.incremental_aggregation = incremental_aggregation

    def _get_available_story(self, story_id: int, now: datetime, lock: bool = False) -> Story:
        story = self._get_story(story_id, lock=lock)
        if not story.is_publishable(now):
            raise NotAvailableError(story_id)
        return story

    def _retry_on_conflict(self, operation: str, attempt: Callable[[], T]) -> T:
        last_error = None
        for _ in range(CONFLICT_ATTEMPTS):
            try:
                return attempt()
            except IntegrityError as e:
                logger.warning(f"{operation} lost a write race, retrying: {str(e.orig)}")
                last_error = e
        raise TransientStoreError(f"{operation} kept conflicting, please retry") from last_error

    # Views

    @staticmethod
    def _attribution_filter(attribution: Attribution):
        if attribution.member_id is not None:
            return StoryView.member_id == attribution.member_id
        if attribution.device_id:
            return StoryView.device_id == attribution.device_id
        if attribution.ip_address:
            return StoryView.ip_address == attribution.ip_address
        raise InvalidArgumentError("attribution", "A member, device or IP address is required to record a view")

    def record_view(
        self,
        story_id: int,
        attribution: Attribution,
        context: Optional[ViewContext] = None,
        now: Optional[datetime] = None,
    ) -> ViewResult:
        now = now or utcnow()
        context = context or ViewContext()
        same_viewer = self._attribution_filter(attribution)

        with unit_of_work(self.db, "record_view", story_id=story_id):
            # Row lock serializes concurrent first views, so the check below sees the winner's row
            self._get_available_story(story_id, now, lock=True)
            if attribution.member_id is not None:
                self._require_member(attribution.member_id)

            already_seen = self.db.execute(
                select(StoryView.id)
                .where(
                    StoryView.story_id == story_id,
                    same_viewer,
                    StoryView.viewed_at > now - self.dedup_window,
                )
                .limit(1)
            ).first() is not None

            if not already_seen:
                self.db.add(StoryView(
                    story_id=story_id,
                    member_id=attribution.member_id,
                    device_id=attribution.device_id,
                    ip_address=attribution.ip_address,
                    session_id=context.session_id,
                    user_agent=context.user_agent,
                    referrer=context.referrer,
                    view_metadata=context.metadata,
                    viewed_at=now,
                ))
                self.db.execute(
                    update(Story)
                    .where(Story.id == story_id)
                    .values(views=Story.views + 1)
                )
                if attribution.member_id is not None:
                    insert_or_ignore(
                        self.db,
                        MemberStoryInteraction.__table__,
                        {
                            "member_id": attribution.member_id,
                            "story_id": story_id,
                            "action": "view",
                            "created_at": now,
                            "updated_at": now,
                        },
                        ["member_id", "story_id", "action"],
                    )

            total_views = self.db.execute(select(Story.views).where(Story.id == story_id)).scalar_one()

        if already_seen:
            record_event("view", "duplicate")
            return ViewResult(is_new_view=False, total_views=total_views)

        record_event("view")
        self.cache.invalidate_story(story_id, [attribution.member_id])
        return ViewResult(is_new_view=True, total_views=total_views, viewed_at=now)

    # Ratings

    @staticmethod
    def _validate_rating(rating) -> None:
        if not validate_rating_value(rating):
            raise InvalidArgumentError("rating", "Rating must be a whole number between 1 and 5")

    def _find_rating(self, member_id: int, story_id: int) -> Optional[MemberStoryRating]:
        return self.db.execute(
            select(MemberStoryRating)
            .where(MemberStoryRating.member_id == member_id, MemberStoryRating.story_id == story_id)
            .with_for_update()
        ).scalar_one_or_none()

    def _refresh_aggregate(self, story_id: int, removed: Optional[RatingFact], added: Optional[RatingFact]):
        if self.incremental_aggregation:
            return apply_rating_change(self.db, story_id, removed, added)
        return recompute_rating_aggregate(self.db, story_id)

    @staticmethod
    def _rating_result(row: MemberStoryRating, created: bool, aggregate) -> RatingResult:
        snapshot = RatingSnapshot.from_aggregate(aggregate) if aggregate is not None else RatingSnapshot()
        return RatingResult(
            rating=MemberRating.model_validate(row),
            created=created,
            total_ratings=snapshot.total,
            average_rating=snapshot.average,
            rating_distribution=dict(snapshot.distribution),
        )

    def submit_rating(
        self,
        member_id: int,
        story_id: int,
        rating: int,
        comment: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RatingResult:
        """Create the member's rating for a story, or replace it if one exists."""
        self._validate_rating(rating)
        comment = clean_comment(comment)
        now = now or utcnow()
        result = self._retry_on_conflict(
            "submit_rating",
            lambda: self._upsert_rating(member_id, story_id, rating, comment, now),
        )
        record_event("rating", "created" if result.created else "updated")
        self.cache.invalidate_story(story_id, [member_id])
        return result

    def _upsert_rating(
        self, member_id: int, story_id: int, rating: int, comment: Optional[str], now: datetime
    ) -> RatingResult:
        with unit_of_work(self.db, "submit_rating", story_id=story_id, member_id=member_id):
            self._get_story(story_id)
            self._require_member(member_id)

            row = self._find_rating(member_id, story_id)
            removed = None
            if row is None:
                row = MemberStoryRating(
                    member_id=member_id,
                    story_id=story_id,
                    rating=rating,
                    comment=comment,
                    is_verified=False,
                    helpful_count=0,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(row)
                created = True
            else:
                removed = RatingFact.from_row(row)
                row.rating = rating
                row.comment = comment
                row.updated_at = now
                created = False

            self.db.flush()
            aggregate = self._refresh_aggregate(story_id, removed, RatingFact.from_row(row))
            return self._rating_result(row, created, aggregate)

    def create_rating(
        self,
        member_id: int,
        story_id: int,
        rating: int,
        comment: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RatingResult:
        """Strict insert: a second rating for the same member and story is an error."""
        self._validate_rating(rating)
        comment = clean_comment(comment)
        now = now or utcnow()

        with unit_of_work(self.db, "create_rating", story_id=story_id, member_id=member_id):
            self._get_story(story_id)
            self._require_member(member_id)
            if self._find_rating(member_id, story_id) is not None:
                raise AlreadyRatedError(member_id, story_id)

            row = MemberStoryRating(
                member_id=member_id,
                story_id=story_id,
                rating=rating,
                comment=comment,
                is_verified=False,
                helpful_count=0,
                created_at=now,
                updated_at=now,
            )
            self.db.add(row)
            try:
                self.db.flush()
            except IntegrityError:
                raise AlreadyRatedError(member_id, story_id)
            aggregate = self._refresh_aggregate(story_id, None, RatingFact.from_row(row))
            result = self._rating_result(row, True, aggregate)

        record_event("rating", "created")
        self.cache.invalidate_story(story_id, [member_id])
        return result

    def delete_rating(self, member_id: int, story_id: int) -> None:
        with unit_of_work(self.db, "delete_rating", story_id=story_id, member_id=member_id):
            row = self._find_rating(member_id, story_id)
            if row is None:
                raise NotFoundError("Rating", f"member {member_id} / story {story_id}")
            removed = RatingFact.from_row(row)
            self.db.delete(row)
            self.db.flush()
            self._refresh_aggregate(story_id, removed, None)

        record_event("rating", "deleted")
        self.cache.invalidate_story(story_id, [member_id])

    def verify_rating(self, rating_id: int) -> MemberRating:
        with unit_of_work(self.db, "verify_rating", rating_id=rating_id):
            row = self.db.get(MemberStoryRating, rating_id, with_for_update=True)
            if row is None:
                raise NotFoundError("Rating", rating_id)
            story_id, member_id = row.story_id, row.member_id
            changed = not row.is_verified
            if changed:
                removed = RatingFact.from_row(row)
                row.is_verified = True
                self.db.flush()
                self._refresh_aggregate(story_id, removed, RatingFact.from_row(row))
            result = MemberRating.model_validate(row)

        if changed:
            self.cache.invalidate_story(story_id, [member_id])
        return result

    def mark_rating_helpful(self, rating_id: int) -> int:
        """Atomically bump a rating's helpful counter and return the new value."""
        with unit_of_work(self.db, "mark_rating_helpful", rating_id=rating_id):
            updated = self.db.execute(
                update(MemberStoryRating)
                .where(MemberStoryRating.id == rating_id)
                .values(helpful_count=MemberStoryRating.helpful_count + 1)
            ).rowcount
            if not updated:
                raise NotFoundError("Rating", rating_id)
            story_id, helpful_count = self.db.execute(
                select(MemberStoryRating.story_id, MemberStoryRating.helpful_count)
                .where(MemberStoryRating.id == rating_id)
            ).one()

        self.cache.invalidate(story_tag(story_id))
        return helpful_count

    # Interactions

    @staticmethod
    def _validate_action(action) -> str:
        action = getattr(action, "value", action)
        if action not in VALID_ACTIONS:
            raise InvalidArgumentError("action", f"Action must be one of: {', '.join(VALID_ACTIONS)}")
        return action

    def _find_interaction(self, member_id: int, story_id: int, action: str) -> Optional[MemberStoryInteraction]:
        return self.db.execute(
            select(MemberStoryInteraction)
            .where(
                MemberStoryInteraction.member_id == member_id,
                MemberStoryInteraction.story_id == story_id,
                MemberStoryInteraction.action == action,
            )
            .with_for_update()
        ).scalar_one_or_none()

    def record_interaction(
        self,
        member_id: int,
        story_id: int,
        action: str,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Interaction:
        """Insert-if-absent. An existing (member, story, action) row is a DuplicateInteractionError."""
        action = self._validate_action(action)
        now = now or utcnow()

        with unit_of_work(self.db, "record_interaction", story_id=story_id, member_id=member_id):
            self._get_available_story(story_id, now)
            self._require_member(member_id)
            if self._find_interaction(member_id, story_id, action) is not None:
                raise DuplicateInteractionError(member_id, story_id, action)

            row = MemberStoryInteraction(
                member_id=member_id,
                story_id=story_id,
                action=action,
                interaction_metadata=metadata,
                created_at=now,
                updated_at=now,
            )
            self.db.add(row)
            try:
                self.db.flush()
            except IntegrityError:
                raise DuplicateInteractionError(member_id, story_id, action)
            result = Interaction.model_validate(row)

        record_event("interaction")
        self.cache.invalidate_story(story_id, [member_id])
        return result

    def toggle_interaction(
        self,
        member_id: int,
        story_id: int,
        action: str,
        now: Optional[datetime] = None,
    ) -> Interaction:
        """Turn an existing like into a dislike or the reverse, in place."""
        action = self._validate_action(action)
        if action not in TOGGLE_PAIRS:
            raise InvalidArgumentError("action", "Only like and dislike can be toggled")
        opposite = TOGGLE_PAIRS[action]
        now = now or utcnow()

        with unit_of_work(self.db, "toggle_interaction", story_id=story_id, member_id=member_id):
            self._get_available_story(story_id, now)
            row = self._find_interaction(member_id, story_id, action)
            if row is None:
                raise NotFoundError("Interaction", f"{action} by member {member_id} on story {story_id}")
            if self._find_interaction(member_id, story_id, opposite) is not None:
                raise DuplicateInteractionError(member_id, story_id, opposite)

            row.action = opposite
            row.updated_at = now
            try:
                self.db.flush()
            except IntegrityError:
                raise DuplicateInteractionError(member_id, story_id, opposite)
            result = Interaction.model_validate(row)

        record_event("interaction", "toggled")
        self.cache.invalidate_story(story_id, [member_id])
        return result

    def remove_interaction(self, member_id: int, story_id: int, action: str) -> None:
        action = self._validate_action(action)
        with unit_of_work(self.db, "remove_interaction", story_id=story_id, member_id=member_id):
            deleted = self.db.execute(
                delete(MemberStoryInteraction)
                .where(
                    MemberStoryInteraction.member_id == member_id,
                    MemberStoryInteraction.story_id == story_id,
                    MemberStoryInteraction.action == action,
                )
            ).rowcount
            if not deleted:
                raise NotFoundError("Interaction", f"{action} by member {member_id} on story {story_id}")

        record_event("interaction", "removed")
        self.cache.invalidate_story(story_id, [member_id])

    # Reading progress

    def update_reading_progress(
        self,
        member_id: int,
        story_id: int,
        progress: float,
        additional_time_spent: int = 0,
        now: Optional[datetime] = None,
    ) -> ReadingProgress:
        """Replace progress (clamped to 0-100) and add to the accumulated reading time.

        A lower progress than before is accepted as-is; time spent never goes down.
        """
        if not is_finite_number(progress):
            raise InvalidArgumentError("progress", "Progress must be a number between 0 and 100")
        if not isinstance(additional_time_spent, int) or isinstance(additional_time_spent, bool):
            raise InvalidArgumentError("time_spent", "Time spent must be a whole number of seconds")
        progress = max(0.0, min(100.0, float(progress)))
        additional_time_spent = max(0, additional_time_spent)
        now = now or utcnow()

        result = self._retry_on_conflict(
            "update_reading_progress",
            lambda: self._upsert_progress(member_id, story_id, progress, additional_time_spent, now),
        )
        record_event("reading_progress")
        self.cache.invalidate(story_tag(story_id), member_tag(member_id))
        return result

    def _upsert_progress(
        self, member_id: int, story_id: int, progress: float, additional_time_spent: int, now: datetime
    ) -> ReadingProgress:
        with unit_of_work(self.db, "update_reading_progress", story_id=story_id, member_id=member_id):
            self._get_story(story_id)
            self._require_member(member_id)

            row = self.db.execute(
                select(MemberReadingHistory)
                .where(MemberReadingHistory.member_id == member_id, MemberReadingHistory.story_id == story_id)
                .with_for_update()
            ).scalar_one_or_none()
            if row is None:
                row = MemberReadingHistory(
                    member_id=member_id,
                    story_id=story_id,
                    reading_progress=progress,
                    time_spent=additional_time_spent,
                    last_read_at=now,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(row)
            else:
                row.reading_progress = progress
                # Evaluated by the database so concurrent updates both count
                row.time_spent = MemberReadingHistory.time_spent + additional_time_spent
                row.last_read_at = now
                row.updated_at = now

            self.db.flush()
            self.db.refresh(row)
            return ReadingProgress.model_validate(row)

    def mark_reading_completed(
        self,
        member_id: int,
        story_id: int,
        additional_time_spent: int = 0,
        now: Optional[datetime] = None,
    ) -> ReadingProgress:
        return self.update_reading_progress(member_id, story_id, 100, additional_time_spent, now=now)

    def get_reading_progress(self, member_id: int, story_id: int) -> ReadingProgress:
        with unit_of_work(self.db, "get_reading_progress", story_id=story_id, member_id=member_id):
            self._get_story(story_id)
            row = self.db.execute(
                select(MemberReadingHistory)
                .where(MemberReadingHistory.member_id == member_id, MemberReadingHistory.story_id == story_id)
            ).scalar_one_or_none()
            if row is None:
                return ReadingProgress(
                    member_id=member_id,
                    story_id=story_id,
                    reading_progress=0,
                    time_spent=0,
                    last_read_at=None,
                    is_completed=False,
                )
            return ReadingProgress.model_validate(row)
