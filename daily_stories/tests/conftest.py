import os

# Settings are read at import time, so the test environment goes in first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CACHE_BACKEND", "memory")

from datetime import datetime, timedelta
from itertools import count

import pytest
from sqlalchemy.orm import sessionmaker

from daily_stories.cache import MemoryCacheBackend, StoryCache
from daily_stories.database import Base, build_engine
from daily_stories.models import Member, Story
from daily_stories.services import AnalyticsService, EngagementService, MemberService, StoryService

NOW = datetime(2024, 5, 15, 12, 0, 0)


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def cache_backend():
    return MemoryCacheBackend()


@pytest.fixture
def cache(cache_backend):
    return StoryCache(cache_backend, prefix="test")


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_member(db):
    ids = count(1)

    def factory(**overrides):
        n = next(ids)
        member = Member(name=f"Member {n}", email=f"member{n}@example.com", **overrides)
        db.add(member)
        db.flush()
        member_id = member.id
        db.commit()
        return member_id

    return factory


@pytest.fixture
def make_story(db, now):
    def factory(active=True, active_from=None, active_until=None, title="A story", **overrides):
        story = Story(
            title=title,
            active=active,
            active_from=active_from if active_from is not None else now - timedelta(days=1),
            active_until=active_until,
            views=0,
            **overrides,
        )
        db.add(story)
        db.flush()
        story_id = story.id
        db.commit()
        return story_id

    return factory


@pytest.fixture
def engagement(db, cache):
    return EngagementService(db, cache, dedup_window_minutes=30, incremental_aggregation=False)


@pytest.fixture
def incremental_engagement(db, cache):
    return EngagementService(db, cache, dedup_window_minutes=30, incremental_aggregation=True)


@pytest.fixture
def analytics(db, cache):
    return AnalyticsService(db, cache, reliability_floor=5, high_quality_threshold=4.0, trending_min_ratings=3)


@pytest.fixture
def stories(db, cache):
    return StoryService(db, cache)


@pytest.fixture
def members(db, cache):
    return MemberService(db, cache)
