from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field
from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, SmallInteger, Text, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from ..database import Base
from ..utils.time_buckets import utcnow

MIN_RATING = 1
MAX_RATING = 5
VALID_RATINGS = tuple(range(MIN_RATING, MAX_RATING + 1))


class MemberStoryRating(Base):
    __tablename__ = "member_story_ratings"
    __table_args__ = (
        UniqueConstraint("member_id", "story_id", name="uq_member_story_rating"),
    )

    id = Column(Integer, primary_key=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    story_id = Column(Integer, ForeignKey("stories.id", ondelete="CASCADE"), nullable=False, index=True)
    rating = Column(SmallInteger, nullable=False)
    comment = Column(Text, nullable=True)
    is_verified = Column(Boolean, nullable=False, default=False)
    helpful_count = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    story = relationship("Story", back_populates="ratings")


class StoryRatingAggregate(Base):
    """Derived per-story rating summary. Always rebuildable from member_story_ratings."""

    __tablename__ = "story_rating_aggregates"

    id = Column(Integer, primary_key=True)
    story_id = Column(Integer, ForeignKey("stories.id", ondelete="CASCADE"), nullable=False, unique=True)
    total_ratings = Column(Integer, nullable=False, default=0)
    sum_ratings = Column(Integer, nullable=False, default=0)
    average_rating = Column(Float, nullable=False, default=0)
    # {"1": n, ..., "5": n}
    rating_distribution = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)
    verified_ratings_count = Column(Integer, nullable=False, default=0)
    verified_sum_ratings = Column(Integer, nullable=False, default=0)
    verified_average_rating = Column(Float, nullable=True)
    comments_count = Column(Integer, nullable=False, default=0)
    last_rated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    story = relationship("Story", back_populates="rating_aggregate")


# Pydantic models
class RatingSubmit(BaseModel):
    # Range is enforced by the service so every caller gets the same error
    rating: int
    comment: Optional[str] = Field(None, max_length=1000)


class MemberRating(BaseModel):
    id: int
    member_id: int
    story_id: int
    rating: int
    comment: Optional[str] = None
    is_verified: bool
    helpful_count: int
    created_at: datetime

    class Config:
        from_attributes = True


class RatingResult(BaseModel):
    rating: MemberRating
    created: bool
    total_ratings: int
    average_rating: float
    rating_distribution: Dict[int, int]
