import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select

from ..cache.story_cache import GLOBAL_TAG, LEADERBOARDS_TAG, member_tag, story_tag
from ..core.config import settings
from ..core.errors import InvalidArgumentError
from ..models.interaction import NEGATIVE_ACTIONS, POSITIVE_ACTIONS, VALID_ACTIONS, MemberStoryInteraction
from ..models.member import Member
from ..models.rating import MemberRating, MemberStoryRating, StoryRatingAggregate
from ..models.reading import MemberReadingHistory
from ..models.story import Story
from ..models.view import StoryView
from ..utils.time_buckets import (
    PERIOD_DAYS,
    bucket_by_day,
    isoformat,
    period_start,
    utcnow,
    zero_filled_counts,
)
from .aggregation import (
    RatingSnapshot,
    interaction_sentiment_score,
    is_reliable,
    percentage,
    quality_score,
    ratio,
    rating_percentages,
    recommendation_rate,
    round_half_up,
    sentiment_label,
)
from .base import ServiceBase, unit_of_work

logger = logging.getLogger(__name__)

EXCELLENT_THRESHOLD = 4.5
RECENT_RATINGS_LIMIT = 5
MAX_LEADERBOARD_SIZE = 100
MAX_TREND_DAYS = 365
MAX_TIMELINE_DAYS = 90
# Timeline length used for the open-ended "all" period
DEFAULT_TIMELINE_DAYS = 30


def _check_limit(limit: int) -> int:
    if not isinstance(limit, int) or not 1 <= limit <= MAX_LEADERBOARD_SIZE:
        raise InvalidArgumentError("limit", f"Limit must be between 1 and {MAX_LEADERBOARD_SIZE}")
    return limit


def _check_days(days: int) -> int:
    if not isinstance(days, int) or not 1 <= days <= MAX_TREND_DAYS:
        raise InvalidArgumentError("days", f"Days must be between 1 and {MAX_TREND_DAYS}")
    return days


class AnalyticsService(ServiceBase):
    """Read side: rating, view, interaction and member analytics.

    Every result is served through the story cache. Rating figures come from
    the aggregate rows, never from a rescan of the raw ratings.
    """

    def __init__(
        self,
        db,
        cache,
        reliability_floor: Optional[int] = None,
        high_quality_threshold: Optional[float] = None,
        trending_min_ratings: Optional[int] = None,
    ):
        super().__init__(db, cache)
        self.reliability_floor = reliability_floor or settings.MIN_RATINGS_FOR_RELIABILITY
        self.high_quality_threshold = high_quality_threshold or settings.HIGH_QUALITY_THRESHOLD
        self.trending_min_ratings = trending_min_ratings or settings.TRENDING_MIN_RATINGS

    def _snapshot(self, story_id: int) -> RatingSnapshot:
        row = self.db.execute(
            select(StoryRatingAggregate).where(StoryRatingAggregate.story_id == story_id)
        ).scalar_one_or_none()
        return RatingSnapshot.from_aggregate(row) if row is not None else RatingSnapshot()

    def _is_high_quality(self, snapshot: RatingSnapshot) -> bool:
        return is_reliable(snapshot, self.reliability_floor) and snapshot.average >= self.high_quality_threshold

    # Ratings

    def get_story_rating_analytics(self, story_id: int) -> Dict[str, Any]:
        with unit_of_work(self.db, "get_story_rating_analytics", story_id=story_id):
            self._get_story(story_id)
            return self.cache.remember(
                f"rating_analytics:{story_id}",
                settings.CACHE_TTL_STORY,
                [story_tag(story_id)],
                lambda: self._rating_analytics(story_id),
            )

    def _rating_analytics(self, story_id: int) -> Dict[str, Any]:
        snapshot = self._snapshot(story_id)
        distribution = snapshot.distribution
        return {
            "story_id": story_id,
            "basic_stats": {
                "average_rating": snapshot.average,
                "total_ratings": snapshot.total,
                "quality_score": quality_score(snapshot, self.reliability_floor),
                "recommendation_rate": recommendation_rate(snapshot),
                "is_reliable": is_reliable(snapshot, self.reliability_floor),
                "is_high_quality": self._is_high_quality(snapshot),
            },
            "distribution": {
                "counts": dict(distribution),
                "percentages": rating_percentages(snapshot),
            },
            "quality_metrics": {
                "verified_count": snapshot.verified_count,
                "verified_average": snapshot.verified_average or 0,
                "verified_percentage": percentage(snapshot.verified_count, snapshot.total),
                "comments_count": snapshot.comments_count,
                "comments_percentage": percentage(snapshot.comments_count, snapshot.total),
            },
            "sentiment_analysis": {
                "sentiment": sentiment_label(snapshot.average, snapshot.total),
                "positive_percentage": percentage(distribution.get(4, 0) + distribution.get(5, 0), snapshot.total),
                "negative_percentage": percentage(distribution.get(1, 0) + distribution.get(2, 0), snapshot.total),
            },
            "recent_activity": {
                "last_rated_at": isoformat(snapshot.last_rated_at),
                "recent_ratings": self._recent_ratings(story_id),
            },
        }

    def _recent_ratings(self, story_id: int) -> List[Dict[str, Any]]:
        rows = self.db.execute(
            select(MemberStoryRating.rating, MemberStoryRating.comment, MemberStoryRating.created_at, Member.name)
            .outerjoin(Member, Member.id == MemberStoryRating.member_id)
            .where(MemberStoryRating.story_id == story_id)
            .order_by(MemberStoryRating.created_at.desc(), MemberStoryRating.id.desc())
            .limit(RECENT_RATINGS_LIMIT)
        ).all()
        return [
            {
                "rating": row.rating,
                "comment": row.comment,
                "member_name": row.name or "Anonymous",
                "created_at": isoformat(row.created_at),
            }
            for row in rows
        ]

    def get_story_rating(self, story_id: int, member_id: Optional[int] = None) -> Dict[str, Any]:
        """Aggregate summary for a story plus the caller's own rating, if any."""
        with unit_of_work(self.db, "get_story_rating", story_id=story_id):
            self._get_story(story_id)
            summary = self.cache.remember(
                f"rating_summary:{story_id}",
                settings.CACHE_TTL_STORY,
                [story_tag(story_id)],
                lambda: self._rating_summary(story_id),
            )
            member_rating = None
            if member_id is not None:
                row = self.db.execute(
                    select(MemberStoryRating)
                    .where(MemberStoryRating.member_id == member_id, MemberStoryRating.story_id == story_id)
                ).scalar_one_or_none()
                if row is not None:
                    member_rating = MemberRating.model_validate(row).model_dump(mode="json")
        summary["member_rating"] = member_rating
        return summary

    def _rating_summary(self, story_id: int) -> Dict[str, Any]:
        snapshot = self._snapshot(story_id)
        return {
            "story_id": story_id,
            "total_ratings": snapshot.total,
            "average_rating": snapshot.average,
            "rating_distribution": dict(snapshot.distribution),
            "sentiment": sentiment_label(snapshot.average, snapshot.total),
        }

    def get_story_rating_trends(self, story_id: int, days: int = 30, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        days = _check_days(days)
        now = now or utcnow()
        with unit_of_work(self.db, "get_story_rating_trends", story_id=story_id):
            self._get_story(story_id)
            return self.cache.remember(
                f"rating_trends:{story_id}:{days}:{now:%Y-%m-%d}",
                settings.CACHE_TTL_TRENDS,
                [story_tag(story_id)],
                lambda: self._rating_trends(story_id, now - timedelta(days=days)),
            )

    def _rating_trends(self, story_id: int, since: datetime) -> List[Dict[str, Any]]:
        rows = self.db.execute(
            select(MemberStoryRating.rating, MemberStoryRating.created_at)
            .where(MemberStoryRating.story_id == story_id, MemberStoryRating.created_at >= since)
            .order_by(MemberStoryRating.created_at)
        ).all()
        trends = []
        for day, day_rows in bucket_by_day(rows, lambda row: row.created_at).items():
            total_sum = sum(row.rating for row in day_rows)
            trends.append({
                "date": day.isoformat(),
                "count": len(day_rows),
                "average": ratio(total_sum, len(day_rows)),
                "total_sum": total_sum,
            })
        return trends

    # Views

    def get_story_view_analytics(self, story_id: int, period: str = "week", now: Optional[datetime] = None) -> Dict[str, Any]:
        if period not in PERIOD_DAYS:
            raise InvalidArgumentError("period", f"Period must be one of: {', '.join(PERIOD_DAYS)}")
        now = now or utcnow()
        with unit_of_work(self.db, "get_story_view_analytics", story_id=story_id):
            story = self._get_story(story_id)
            total_views = story.views
            return self.cache.remember(
                f"view_analytics:{story_id}:{period}:{now:%Y-%m-%d}",
                settings.CACHE_TTL_STORY,
                [story_tag(story_id)],
                lambda: self._view_analytics(story_id, total_views, period, now),
            )

    def _view_analytics(self, story_id: int, total_views: int, period: str, now: datetime) -> Dict[str, Any]:
        start = period_start(period, now)
        query = select(StoryView).where(StoryView.story_id == story_id, StoryView.viewed_at <= now)
        if start is not None:
            query = query.where(StoryView.viewed_at >= start)
        views = self.db.execute(query.order_by(StoryView.viewed_at)).scalars().all()

        viewers = set()
        breakdown = {"member": 0, "guest": 0, "anonymous": 0}
        for view in views:
            breakdown[view.viewer_type] += 1
            if view.member_id is not None:
                viewers.add(("member", view.member_id))
            elif view.device_id:
                viewers.add(("device", view.device_id))
            else:
                viewers.add(("ip", view.ip_address))

        by_day = bucket_by_day(views, lambda view: view.viewed_at)
        counts = {day: len(day_views) for day, day_views in by_day.items()}

        period_days = PERIOD_DAYS[period]
        if period_days is None:
            span = (now.date() - views[0].viewed_at.date()).days + 1 if views else 1
            timeline_days = DEFAULT_TIMELINE_DAYS
        else:
            span = period_days
            timeline_days = min(period_days, MAX_TIMELINE_DAYS)

        peak_day = None
        if counts:
            day, count = max(counts.items(), key=lambda item: (item[1], item[0]))
            peak_day = {"date": day.isoformat(), "views": count}

        engaged = self.db.execute(
            select(func.count(MemberStoryInteraction.id))
            .where(MemberStoryInteraction.story_id == story_id, MemberStoryInteraction.action != "view")
        ).scalar_one()

        return {
            "story_id": story_id,
            "period": period,
            "total_views": total_views,
            "period_views": len(views),
            "unique_viewers": len(viewers),
            "viewer_breakdown": breakdown,
            "daily_average": ratio(len(views), span),
            "peak_day": peak_day,
            "timeline": zero_filled_counts(counts, now.date(), timeline_days),
            "engagement_rate": percentage(engaged, total_views, 2),
        }

    # Interactions

    def _action_counts(self, *conditions) -> Dict[str, int]:
        rows = self.db.execute(
            select(MemberStoryInteraction.action, func.count(MemberStoryInteraction.id))
            .where(*conditions)
            .group_by(MemberStoryInteraction.action)
        ).all()
        found = dict(rows)
        return {action: found.get(action, 0) for action in VALID_ACTIONS}

    def get_story_interaction_stats(self, story_id: int) -> Dict[str, Any]:
        with unit_of_work(self.db, "get_story_interaction_stats", story_id=story_id):
            self._get_story(story_id)
            return self.cache.remember(
                f"interaction_stats:{story_id}",
                settings.CACHE_TTL_STORY,
                [story_tag(story_id)],
                lambda: self._interaction_stats(story_id),
            )

    def _interaction_stats(self, story_id: int) -> Dict[str, Any]:
        actions = self._action_counts(MemberStoryInteraction.story_id == story_id)
        unique_members, last_interaction = self.db.execute(
            select(
                func.count(func.distinct(MemberStoryInteraction.member_id)),
                func.max(MemberStoryInteraction.created_at),
            ).where(MemberStoryInteraction.story_id == story_id)
        ).one()
        positive = sum(actions[action] for action in POSITIVE_ACTIONS)
        return {
            "story_id": story_id,
            "total_interactions": sum(actions.values()),
            "actions": actions,
            "unique_members": unique_members,
            "sentiment_score": interaction_sentiment_score(actions),
            "engagement_rate": percentage(positive, actions["view"], 2),
            "last_interaction": isoformat(last_interaction),
        }

    # Members

    def get_member_engagement_stats(self, member_id: int) -> Dict[str, Any]:
        with unit_of_work(self.db, "get_member_engagement_stats", member_id=member_id):
            self._require_member(member_id)
            return self.cache.remember(
                f"member_engagement:{member_id}",
                settings.CACHE_TTL_MEMBER,
                [member_tag(member_id)],
                lambda: self._member_engagement(member_id),
            )

    def _member_engagement(self, member_id: int) -> Dict[str, Any]:
        actions = self._action_counts(MemberStoryInteraction.member_id == member_id)
        total = sum(actions.values())
        positive = sum(actions[action] for action in POSITIVE_ACTIONS)
        negative = sum(actions[action] for action in NEGATIVE_ACTIONS)
        unique_stories, last_interaction = self.db.execute(
            select(
                func.count(func.distinct(MemberStoryInteraction.story_id)),
                func.max(MemberStoryInteraction.created_at),
            ).where(MemberStoryInteraction.member_id == member_id)
        ).one()

        engagement_score = 0.0
        if total:
            diversity = min(unique_stories / 10, 1)
            engagement_score = round_half_up((diversity * 0.3 + (positive / total) * 0.7) * 100, 2)

        ratings_given, ratings_sum = self.db.execute(
            select(func.count(MemberStoryRating.id), func.coalesce(func.sum(MemberStoryRating.rating), 0))
            .where(MemberStoryRating.member_id == member_id)
        ).one()

        history = self.db.execute(
            select(MemberReadingHistory).where(MemberReadingHistory.member_id == member_id)
        ).scalars().all()
        stories_read = len(history)
        completed = sum(1 for row in history if row.is_completed)
        in_progress = sum(1 for row in history if 0 < row.reading_progress < 100)
        total_time = sum(row.time_spent for row in history)
        average_progress = (
            round_half_up(sum(row.reading_progress for row in history) / stories_read, 2) if stories_read else 0.0
        )

        return {
            "member_id": member_id,
            "interactions": {
                "total_interactions": total,
                "actions": actions,
                "unique_stories": unique_stories,
                "positive_interactions": positive,
                "negative_interactions": negative,
                "engagement_score": engagement_score,
                "last_interaction": isoformat(last_interaction),
            },
            "ratings": {
                "ratings_given": ratings_given,
                "average_rating_given": ratio(ratings_sum, ratings_given),
            },
            "reading": {
                "stories_read": stories_read,
                "completed_stories": completed,
                "in_progress_stories": in_progress,
                "total_time_spent": total_time,
                "average_time_per_story": ratio(total_time, stories_read),
                "average_progress": average_progress,
                "completion_rate": percentage(completed, stories_read),
            },
        }

    # Leaderboards

    def _leaderboard(self, query) -> List[Dict[str, Any]]:
        rows = self.db.execute(query.join(Story, Story.id == StoryRatingAggregate.story_id)
                               .add_columns(Story.title)).all()
        entries = []
        for aggregate, title in rows:
            snapshot = RatingSnapshot.from_aggregate(aggregate)
            entries.append({
                "story_id": aggregate.story_id,
                "title": title,
                "average_rating": snapshot.average,
                "total_ratings": snapshot.total,
                "quality_score": quality_score(snapshot, self.reliability_floor),
                "sentiment": sentiment_label(snapshot.average, snapshot.total),
                "last_rated_at": isoformat(snapshot.last_rated_at),
            })
        return entries

    def get_top_rated_stories(self, limit: int = 10) -> List[Dict[str, Any]]:
        limit = _check_limit(limit)
        query = (
            select(StoryRatingAggregate)
            .where(
                StoryRatingAggregate.total_ratings >= self.reliability_floor,
                StoryRatingAggregate.average_rating >= self.high_quality_threshold,
            )
            .order_by(StoryRatingAggregate.average_rating.desc(), StoryRatingAggregate.total_ratings.desc())
            .limit(limit)
        )
        with unit_of_work(self.db, "get_top_rated_stories"):
            return self.cache.remember(
                f"top_rated:{limit}",
                settings.CACHE_TTL_LEADERBOARD,
                [LEADERBOARDS_TAG],
                lambda: self._leaderboard(query),
            )

    def get_most_rated_stories(self, limit: int = 10) -> List[Dict[str, Any]]:
        limit = _check_limit(limit)
        query = (
            select(StoryRatingAggregate)
            .order_by(StoryRatingAggregate.total_ratings.desc(), StoryRatingAggregate.average_rating.desc())
            .limit(limit)
        )
        with unit_of_work(self.db, "get_most_rated_stories"):
            return self.cache.remember(
                f"most_rated:{limit}",
                settings.CACHE_TTL_LEADERBOARD,
                [LEADERBOARDS_TAG],
                lambda: self._leaderboard(query),
            )

    def get_trending_stories(self, days: int = 7, limit: int = 10, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Stories rated within the last ``days`` with enough ratings to rank."""
        days = _check_days(days)
        limit = _check_limit(limit)
        now = now or utcnow()
        query = (
            select(StoryRatingAggregate)
            .where(
                StoryRatingAggregate.last_rated_at >= now - timedelta(days=days),
                StoryRatingAggregate.total_ratings >= self.trending_min_ratings,
            )
            .order_by(StoryRatingAggregate.average_rating.desc(), StoryRatingAggregate.total_ratings.desc())
            .limit(limit)
        )
        with unit_of_work(self.db, "get_trending_stories"):
            return self.cache.remember(
                f"trending:{days}:{limit}:{now:%Y-%m-%d}",
                settings.CACHE_TTL_TRENDS,
                [LEADERBOARDS_TAG],
                lambda: self._leaderboard(query),
            )

    def get_global_rating_stats(self) -> Dict[str, Any]:
        with unit_of_work(self.db, "get_global_rating_stats"):
            return self.cache.remember(
                "global_rating_stats",
                settings.CACHE_TTL_GLOBAL,
                [GLOBAL_TAG],
                self._global_rating_stats,
            )

    def _global_rating_stats(self) -> Dict[str, Any]:
        stories_rated, ratings_given, verified_total = self.db.execute(
            select(
                func.count(StoryRatingAggregate.id),
                func.coalesce(func.sum(StoryRatingAggregate.total_ratings), 0),
                func.coalesce(func.sum(StoryRatingAggregate.verified_ratings_count), 0),
            )
        ).one()
        averages = self.db.execute(select(StoryRatingAggregate.average_rating)).scalars().all()

        def count_where(*conditions) -> int:
            return self.db.execute(select(func.count(StoryRatingAggregate.id)).where(*conditions)).scalar_one()

        return {
            "total_stories_rated": stories_rated,
            "total_ratings_given": ratings_given,
            "global_average_rating": round_half_up(sum(averages) / len(averages), 2) if averages else 0.0,
            "high_quality_stories": count_where(
                StoryRatingAggregate.total_ratings >= self.reliability_floor,
                StoryRatingAggregate.average_rating >= self.high_quality_threshold,
            ),
            "excellent_stories": count_where(StoryRatingAggregate.average_rating >= EXCELLENT_THRESHOLD),
            "stories_with_comments": count_where(StoryRatingAggregate.comments_count > 0),
            "verified_ratings_total": verified_total,
        }
