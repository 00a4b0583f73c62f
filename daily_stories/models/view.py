from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field
from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from ..database import Base
from ..utils.time_buckets import utcnow


class StoryView(Base):
    __tablename__ = "story_views"
    __table_args__ = (
        Index("ix_story_views_story_member_time", "story_id", "member_id", "viewed_at"),
        Index("ix_story_views_story_device_time", "story_id", "device_id", "viewed_at"),
        Index("ix_story_views_story_ip_time", "story_id", "ip_address", "viewed_at"),
    )

    id = Column(Integer, primary_key=True)
    story_id = Column(Integer, ForeignKey("stories.id", ondelete="CASCADE"), nullable=False)
    # Null for guests, and for members whose account was deleted
    member_id = Column(Integer, ForeignKey("members.id", ondelete="SET NULL"), nullable=True)
    device_id = Column(String(255), nullable=True)
    session_id = Column(String(255), nullable=True)
    user_agent = Column(Text, nullable=True)
    ip_address = Column(String(45), nullable=True)
    referrer = Column(Text, nullable=True)
    view_metadata = Column("metadata", JSON().with_variant(JSONB, "postgresql"), nullable=True)
    viewed_at = Column(DateTime, default=utcnow, nullable=False)

    story = relationship("Story", back_populates="story_views")

    @property
    def viewer_type(self) -> str:
        if self.member_id is not None:
            return "member"
        if self.device_id:
            return "guest"
        return "anonymous"


# Pydantic models
class Attribution(BaseModel):
    """Who produced an event: member, else device, else IP."""

    member_id: Optional[int] = None
    device_id: Optional[str] = None
    ip_address: Optional[str] = None


class ViewContext(BaseModel):
    session_id: Optional[str] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class RecordViewRequest(BaseModel):
    reading_time: Optional[int] = Field(None, ge=0)
    scroll_percentage: Optional[float] = Field(None, ge=0, le=100)


class ViewResult(BaseModel):
    is_new_view: bool
    total_views: int
    viewed_at: Optional[datetime] = None
