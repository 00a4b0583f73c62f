"""Rating aggregation.

``RatingSnapshot`` is the derived state of one story's ratings. It can be
built by folding every rating (``from_ratings``) or moved forward by one
signed delta (``apply``); both must always agree. The classification helpers
are pure functions of a snapshot and are computed on read, never stored.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ..core.monitoring import AGGREGATE_RECOMPUTES
from ..models.interaction import NEGATIVE_ACTIONS, NEUTRAL_ACTIONS, POSITIVE_ACTIONS
from ..models.rating import MAX_RATING, MIN_RATING, VALID_RATINGS, MemberStoryRating, StoryRatingAggregate

RELIABILITY_FLOOR = 5
UNRATED = "unrated"

SENTIMENT_BANDS = (
    (4.5, "excellent"),
    (4.0, "very_good"),
    (3.5, "good"),
    (3.0, "average"),
    (2.0, "poor"),
)


def round_half_up(value, places: int = 2) -> float:
    """Round like the dashboards do: halves go away from zero."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def ratio(numerator: int, denominator: int, places: int = 2) -> float:
    """numerator / denominator rounded half-up, computed without float error."""
    if denominator == 0:
        return 0.0
    quantum = Decimal(1).scaleb(-places)
    return float((Decimal(numerator) / Decimal(denominator)).quantize(quantum, rounding=ROUND_HALF_UP))


def percentage(part: int, whole: int, places: int = 1) -> float:
    return ratio(part * 100, whole, places)


def empty_distribution() -> Dict[int, int]:
    return {value: 0 for value in VALID_RATINGS}


@dataclass(frozen=True)
class RatingFact:
    """The parts of a rating row that feed the aggregate."""

    rating: int
    is_verified: bool = False
    has_comment: bool = False
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: MemberStoryRating) -> "RatingFact":
        return cls(
            rating=row.rating,
            is_verified=bool(row.is_verified),
            has_comment=bool((row.comment or "").strip()),
            created_at=row.created_at,
        )


@dataclass(frozen=True)
class RatingSnapshot:
    total: int = 0
    sum: int = 0
    distribution: Mapping[int, int] = field(default_factory=empty_distribution)
    verified_count: int = 0
    verified_sum: int = 0
    comments_count: int = 0
    last_rated_at: Optional[datetime] = None

    @classmethod
    def from_ratings(cls, facts: Iterable[RatingFact]) -> "RatingSnapshot":
        snapshot = cls()
        for fact in facts:
            snapshot = snapshot._add(fact)
        return snapshot

    @classmethod
    def from_aggregate(cls, row: StoryRatingAggregate) -> "RatingSnapshot":
        stored = row.rating_distribution or {}
        return cls(
            total=row.total_ratings,
            sum=row.sum_ratings,
            distribution={value: int(stored.get(str(value), stored.get(value, 0))) for value in VALID_RATINGS},
            verified_count=row.verified_ratings_count or 0,
            verified_sum=row.verified_sum_ratings or 0,
            comments_count=row.comments_count or 0,
            last_rated_at=row.last_rated_at,
        )

    @property
    def is_empty(self) -> bool:
        return self.total == 0

    @property
    def average(self) -> float:
        return ratio(self.sum, self.total)

    @property
    def verified_average(self) -> Optional[float]:
        if self.verified_count == 0:
            return None
        return ratio(self.verified_sum, self.verified_count)

    def _add(self, fact: RatingFact) -> "RatingSnapshot":
        distribution = dict(self.distribution)
        distribution[fact.rating] = distribution.get(fact.rating, 0) + 1
        last_rated_at = self.last_rated_at
        if fact.created_at is not None and (last_rated_at is None or fact.created_at > last_rated_at):
            last_rated_at = fact.created_at
        return replace(
            self,
            total=self.total + 1,
            sum=self.sum + fact.rating,
            distribution=distribution,
            verified_count=self.verified_count + (1 if fact.is_verified else 0),
            verified_sum=self.verified_sum + (fact.rating if fact.is_verified else 0),
            comments_count=self.comments_count + (1 if fact.has_comment else 0),
            last_rated_at=last_rated_at,
        )

    def _remove(self, fact: RatingFact) -> "RatingSnapshot":
        distribution = dict(self.distribution)
        distribution[fact.rating] = distribution.get(fact.rating, 0) - 1
        return replace(
            self,
            total=self.total - 1,
            sum=self.sum - fact.rating,
            distribution=distribution,
            verified_count=self.verified_count - (1 if fact.is_verified else 0),
            verified_sum=self.verified_sum - (fact.rating if fact.is_verified else 0),
            comments_count=self.comments_count - (1 if fact.has_comment else 0),
            last_rated_at=self.last_rated_at if self.total > 1 else None,
        )

    def apply(self, removed: Optional[RatingFact], added: Optional[RatingFact]) -> Optional["RatingSnapshot"]:
        """Move the snapshot by one rating change.

        Returns None when the result cannot be derived exactly from the delta:
        dropping the rating that set ``last_rated_at`` needs the next-latest
        timestamp, which only a rescan knows.
        """
        snapshot = self
        if removed is not None:
            if (
                snapshot.total > 1
                and removed.created_at is not None
                and removed.created_at == snapshot.last_rated_at
                and (added is None or added.created_at is None or added.created_at < removed.created_at)
            ):
                return None
            snapshot = snapshot._remove(removed)
        if added is not None:
            snapshot = snapshot._add(added)
        if snapshot.total < 0 or any(count < 0 for count in snapshot.distribution.values()):
            return None
        return snapshot

    def write_to(self, row: StoryRatingAggregate) -> StoryRatingAggregate:
        row.total_ratings = self.total
        row.sum_ratings = self.sum
        row.average_rating = self.average
        row.rating_distribution = {str(value): self.distribution.get(value, 0) for value in VALID_RATINGS}
        row.verified_ratings_count = self.verified_count
        row.verified_sum_ratings = self.verified_sum
        row.verified_average_rating = self.verified_average
        row.comments_count = self.comments_count
        row.last_rated_at = self.last_rated_at
        return row


# Classification

def quality_score(snapshot: RatingSnapshot, reliability_floor: int = RELIABILITY_FLOOR) -> float:
    """0-100: up to 80 points from the average, up to 20 from volume."""
    if snapshot.total < reliability_floor:
        return 0.0
    rating_score = (snapshot.average / MAX_RATING) * 80
    volume_bonus = min(snapshot.total / 100, 1) * 20
    return round_half_up(rating_score + volume_bonus, 1)


def recommendation_rate(snapshot: RatingSnapshot) -> float:
    """Share of 4 and 5 star ratings, in percent."""
    recommending = snapshot.distribution.get(4, 0) + snapshot.distribution.get(5, 0)
    return percentage(recommending, snapshot.total)


def sentiment_label(average: float, total: Optional[int] = None) -> str:
    if total == 0:
        return UNRATED
    for lower_bound, label in SENTIMENT_BANDS:
        if average >= lower_bound:
            return label
    return "terrible"


def rating_percentages(snapshot: RatingSnapshot) -> Dict[int, float]:
    return {value: percentage(snapshot.distribution.get(value, 0), snapshot.total) for value in VALID_RATINGS}


def is_reliable(snapshot: RatingSnapshot, reliability_floor: int = RELIABILITY_FLOOR) -> bool:
    return snapshot.total >= reliability_floor


def interaction_sentiment_score(action_counts: Mapping[str, int]) -> float:
    """(positive - negative) / (positive + negative + neutral) * 100."""
    positive = sum(action_counts.get(action, 0) for action in POSITIVE_ACTIONS)
    negative = sum(action_counts.get(action, 0) for action in NEGATIVE_ACTIONS)
    neutral = sum(action_counts.get(action, 0) for action in NEUTRAL_ACTIONS)
    return ratio((positive - negative) * 100, positive + negative + neutral)


def validate_rating_value(value) -> bool:
    return (
        isinstance(value, int)
        and not isinstance(value, bool)
        and MIN_RATING <= value <= MAX_RATING
    )


def is_finite_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


# Aggregate store

def load_rating_facts(db: Session, story_id: int) -> List[RatingFact]:
    rows = db.execute(
        select(
            MemberStoryRating.rating,
            MemberStoryRating.is_verified,
            MemberStoryRating.comment,
            MemberStoryRating.created_at,
        ).where(MemberStoryRating.story_id == story_id)
    ).all()
    return [
        RatingFact(
            rating=row.rating,
            is_verified=bool(row.is_verified),
            has_comment=bool((row.comment or "").strip()),
            created_at=row.created_at,
        )
        for row in rows
    ]


def _locked_aggregate(db: Session, story_id: int) -> Optional[StoryRatingAggregate]:
    return db.execute(
        select(StoryRatingAggregate)
        .where(StoryRatingAggregate.story_id == story_id)
        .with_for_update()
    ).scalar_one_or_none()


def store_snapshot(db: Session, story_id: int, snapshot: RatingSnapshot) -> Optional[StoryRatingAggregate]:
    """Upsert the aggregate row, or delete it when there are no ratings left."""
    row = _locked_aggregate(db, story_id)
    if snapshot.is_empty:
        if row is not None:
            db.delete(row)
            db.flush()
        return None
    if row is None:
        row = StoryRatingAggregate(story_id=story_id)
        db.add(row)
    snapshot.write_to(row)
    db.flush()
    return row


def recompute_rating_aggregate(db: Session, story_id: int) -> Optional[StoryRatingAggregate]:
    """Rebuild a story's aggregate from all of its ratings. Runs in the caller's transaction."""
    db.flush()
    snapshot = RatingSnapshot.from_ratings(load_rating_facts(db, story_id))
    AGGREGATE_RECOMPUTES.labels(mode="rescan").inc()
    return store_snapshot(db, story_id, snapshot)


def apply_rating_change(
    db: Session,
    story_id: int,
    removed: Optional[RatingFact],
    added: Optional[RatingFact],
) -> Optional[StoryRatingAggregate]:
    """Apply one rating change as a delta, falling back to a rescan when needed."""
    db.flush()
    row = _locked_aggregate(db, story_id)
    current = RatingSnapshot.from_aggregate(row) if row is not None else RatingSnapshot()
    if row is None and removed is not None:
        return recompute_rating_aggregate(db, story_id)
    snapshot = current.apply(removed, added)
    if snapshot is None:
        return recompute_rating_aggregate(db, story_id)
    AGGREGATE_RECOMPUTES.labels(mode="delta").inc()
    return store_snapshot(db, story_id, snapshot)


def rebuild_all_aggregates(db: Session) -> Dict[str, Any]:
    """Repair pass: rescan every rated story and drop aggregates with no ratings behind them."""
    rated = set(db.execute(select(MemberStoryRating.story_id).distinct()).scalars())
    aggregated = set(db.execute(select(StoryRatingAggregate.story_id)).scalars())
    for story_id in sorted(rated):
        recompute_rating_aggregate(db, story_id)
    orphaned = aggregated - rated
    if orphaned:
        db.execute(delete(StoryRatingAggregate).where(StoryRatingAggregate.story_id.in_(orphaned)))
    return {"rebuilt": len(rated), "removed": len(orphaned), "story_ids": sorted(rated | orphaned)}
