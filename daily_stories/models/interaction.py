import enum
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel
from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from ..database import Base
from ..utils.time_buckets import utcnow


class InteractionAction(str, enum.Enum):
    LIKE = "like"
    DISLIKE = "dislike"
    BOOKMARK = "bookmark"
    SHARE = "share"
    VIEW = "view"
    REPORT = "report"


VALID_ACTIONS = tuple(action.value for action in InteractionAction)
POSITIVE_ACTIONS = ("like", "bookmark", "share")
NEGATIVE_ACTIONS = ("dislike", "report")
NEUTRAL_ACTIONS = ("view",)
TOGGLE_PAIRS = {"like": "dislike", "dislike": "like"}


class MemberStoryInteraction(Base):
    __tablename__ = "member_story_interactions"
    __table_args__ = (
        UniqueConstraint("member_id", "story_id", "action", name="uq_member_story_action"),
    )

    id = Column(Integer, primary_key=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    story_id = Column(Integer, ForeignKey("stories.id", ondelete="CASCADE"), nullable=False, index=True)
    action = Column(String(20), nullable=False)
    interaction_metadata = Column("metadata", JSON().with_variant(JSONB, "postgresql"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    story = relationship("Story", back_populates="interactions")


# Pydantic models
class InteractionCreate(BaseModel):
    action: str
    metadata: Optional[Dict[str, Any]] = None


class Interaction(BaseModel):
    id: int
    member_id: int
    story_id: int
    action: str
    created_at: datetime

    class Config:
        from_attributes = True
