from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field
from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, UniqueConstraint
from sqlalchemy.orm import relationship

from ..database import Base
from ..utils.time_buckets import utcnow

COMPLETED_PROGRESS = 100.0


class MemberReadingHistory(Base):
    __tablename__ = "member_reading_history"
    __table_args__ = (
        UniqueConstraint("member_id", "story_id", name="uq_member_story_reading"),
    )

    id = Column(Integer, primary_key=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    story_id = Column(Integer, ForeignKey("stories.id", ondelete="CASCADE"), nullable=False, index=True)
    reading_progress = Column(Float, nullable=False, default=0)
    time_spent = Column(Integer, nullable=False, default=0)  # seconds
    last_read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    story = relationship("Story", back_populates="reading_history")

    @property
    def is_completed(self) -> bool:
        return self.reading_progress >= COMPLETED_PROGRESS


# Pydantic models
class ReadingProgressUpdate(BaseModel):
    progress: float
    time_spent: int = Field(0, description="Seconds read since the previous update")


class ReadingProgress(BaseModel):
    member_id: int
    story_id: int
    reading_progress: float
    time_spent: int
    last_read_at: Optional[datetime] = None
    is_completed: bool

    class Config:
        from_attributes = True
