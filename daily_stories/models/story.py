from datetime import datetime
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Table, Text
from sqlalchemy.orm import relationship

from ..database import Base
from ..utils.time_buckets import utcnow

story_tags = Table(
    "story_tags",
    Base.metadata,
    Column("story_id", Integer, ForeignKey("stories.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime, default=utcnow)


class Tag(Base):
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, unique=True)


class Story(Base):
    __tablename__ = "stories"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=True)
    excerpt = Column(Text, nullable=True)
    category_id = Column(Integer, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)

    # Publication window
    active = Column(Boolean, nullable=False, default=False)
    active_from = Column(DateTime, nullable=True)
    active_until = Column(DateTime, nullable=True)

    # Denormalized counter, only ever changed through an atomic UPDATE
    views = Column(Integer, nullable=False, default=0, server_default="0")

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    category = relationship("Category")
    tags = relationship("Tag", secondary=story_tags)

    story_views = relationship("StoryView", back_populates="story", cascade="all, delete-orphan")
    interactions = relationship("MemberStoryInteraction", back_populates="story", cascade="all, delete-orphan")
    ratings = relationship("MemberStoryRating", back_populates="story", cascade="all, delete-orphan")
    rating_aggregate = relationship(
        "StoryRatingAggregate", back_populates="story", uselist=False, cascade="all, delete-orphan"
    )
    reading_history = relationship("MemberReadingHistory", back_populates="story", cascade="all, delete-orphan")
    publishing_history = relationship(
        "StoryPublishingHistory",
        back_populates="story",
        cascade="all, delete-orphan",
        order_by="StoryPublishingHistory.id",
    )

    def is_publishable(self, now: datetime) -> bool:
        """Active, already started and not yet expired at ``now``."""
        if not self.active:
            return False
        if self.active_from is not None and self.active_from > now:
            return False
        return self.active_until is None or self.active_until > now


class StoryPublishingHistory(Base):
    """Append-only log of publication window changes."""

    __tablename__ = "story_publishing_history"

    id = Column(Integer, primary_key=True)
    story_id = Column(Integer, ForeignKey("stories.id", ondelete="CASCADE"), nullable=False, index=True)
    action = Column(String(32), nullable=False)  # published, unpublished, rescheduled
    previous_active = Column(Boolean, nullable=True)
    new_active = Column(Boolean, nullable=False)
    previous_active_from = Column(DateTime, nullable=True)
    previous_active_until = Column(DateTime, nullable=True)
    new_active_from = Column(DateTime, nullable=True)
    new_active_until = Column(DateTime, nullable=True)
    changed_by = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    story = relationship("Story", back_populates="publishing_history")


# Pydantic models
class PublicationUpdate(BaseModel):
    active: bool
    active_from: Optional[datetime] = None
    active_until: Optional[datetime] = None
    notes: Optional[str] = None


class PublishingHistoryEntry(BaseModel):
    id: int
    story_id: int
    action: str
    previous_active: Optional[bool] = None
    new_active: bool
    new_active_from: Optional[datetime] = None
    new_active_until: Optional[datetime] = None
    changed_by: Optional[int] = None
    notes: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True
