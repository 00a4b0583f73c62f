import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.errors import EngagementError, NotFoundError, TransientStoreError
from ..models.member import Member
from ..models.story import Story

logger = logging.getLogger(__name__)


@contextmanager
def unit_of_work(db: Session, operation: str, **context) -> Iterator[Session]:
    """Commit everything done inside the block, or nothing.

    Domain errors and constraint violations are re-raised untouched after the
    rollback so callers can translate them; any other storage failure becomes
    a retryable ``TransientStoreError``.
    """
    try:
        yield db
        db.commit()
    except (EngagementError, IntegrityError):
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"{operation} failed: {str(e)}", extra=context)
        raise TransientStoreError(f"{operation} failed, please retry") from e
    except Exception:
        db.rollback()
        raise


class ServiceBase:
    def __init__(self, db: Session, cache):
        self.db = db
        self.cache = cache

    def _get_story(self, story_id: int, lock: bool = False) -> Story:
        story = self.db.get(Story, story_id, with_for_update=True if lock else None)
        if story is None:
            raise NotFoundError("Story", story_id)
        return story

    def _require_member(self, member_id: int) -> None:
        exists = self.db.execute(select(Member.id).where(Member.id == member_id)).scalar_one_or_none()
        if exists is None:
            raise NotFoundError("Member", member_id)
