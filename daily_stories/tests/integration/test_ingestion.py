from datetime import timedelta

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from daily_stories.core.errors import (
    AlreadyRatedError,
    DuplicateInteractionError,
    InvalidArgumentError,
    NotAvailableError,
    NotFoundError,
    TransientStoreError,
)
from daily_stories.models import (
    MemberStoryInteraction,
    MemberStoryRating,
    Story,
    StoryRatingAggregate,
    StoryView,
)
from daily_stories.models.view import Attribution, ViewContext
from daily_stories.services.aggregation import RatingSnapshot, load_rating_facts


def story_views(db, story_id):
    return db.execute(select(Story.views).where(Story.id == story_id)).scalar_one()


def view_rows(db, story_id):
    return db.execute(select(func.count(StoryView.id)).where(StoryView.story_id == story_id)).scalar_one()


def aggregate_row(db, story_id):
    return db.execute(
        select(StoryRatingAggregate).where(StoryRatingAggregate.story_id == story_id)
    ).scalar_one_or_none()


# Views

def test_repeated_views_inside_window_count_once(db, engagement, make_story, make_member, now):
    story_id = make_story()
    member_id = make_member()
    attribution = Attribution(member_id=member_id)

    results = [
        engagement.record_view(story_id, attribution, now=now + timedelta(minutes=minute))
        for minute in range(5)
    ]

    assert [r.is_new_view for r in results] == [True, False, False, False, False]
    assert story_views(db, story_id) == 1
    assert view_rows(db, story_id) == 1
    assert results[-1].total_views == 1


def test_view_after_window_counts_again(db, engagement, make_story, now):
    story_id = make_story()
    attribution = Attribution(device_id="device-1")

    engagement.record_view(story_id, attribution, now=now)
    inside = engagement.record_view(story_id, attribution, now=now + timedelta(minutes=29, seconds=59))
    at_edge = engagement.record_view(story_id, attribution, now=now + timedelta(minutes=30))

    assert inside.is_new_view is False
    assert at_edge.is_new_view is True
    assert at_edge.total_views == 2
    assert view_rows(db, story_id) == 2


def test_attribution_prefers_member_then_device_then_ip(db, engagement, make_story, make_member, now):
    story_id = make_story()
    member_id = make_member()

    engagement.record_view(story_id, Attribution(device_id="shared", ip_address="10.0.0.1"), now=now)
    # Same device, but the member key takes precedence and has not been seen
    member_view = engagement.record_view(
        story_id, Attribution(member_id=member_id, device_id="shared"), now=now
    )
    # Different device from the same address is a different viewer
    other_device = engagement.record_view(
        story_id, Attribution(device_id="other", ip_address="10.0.0.1"), now=now
    )
    ip_only = engagement.record_view(story_id, Attribution(ip_address="10.0.0.1"), now=now)

    assert member_view.is_new_view is True
    assert other_device.is_new_view is True
    assert ip_only.is_new_view is False
    assert story_views(db, story_id) == 3


def test_member_view_records_single_view_interaction(db, engagement, make_story, make_member, now):
    story_id = make_story()
    member_id = make_member()

    engagement.record_view(story_id, Attribution(member_id=member_id), now=now)
    engagement.record_view(story_id, Attribution(member_id=member_id), now=now + timedelta(hours=2))

    actions = db.execute(
        select(MemberStoryInteraction.action).where(MemberStoryInteraction.member_id == member_id)
    ).scalars().all()
    assert actions == ["view"]
    assert story_views(db, story_id) == 2


def test_view_stores_context(db, engagement, make_story, now):
    story_id = make_story()
    context = ViewContext(session_id="s-1", user_agent="ua", referrer="https://ref", metadata={"scroll": 40})

    engagement.record_view(story_id, Attribution(ip_address="10.0.0.2"), context, now=now)

    view = db.execute(select(StoryView).where(StoryView.story_id == story_id)).scalar_one()
    assert view.session_id == "s-1"
    assert view.view_metadata == {"scroll": 40}
    assert view.viewer_type == "anonymous"


@pytest.mark.parametrize("active,starts_in,ends_in", [
    (False, None, None),
    (True, timedelta(hours=1), None),
    (True, None, timedelta(minutes=-1)),
    (True, None, timedelta(0)),
])
def test_views_on_unpublished_story_are_rejected(db, engagement, make_story, now, active, starts_in, ends_in):
    story_id = make_story(
        active=active,
        active_from=now + starts_in if starts_in is not None else None,
        active_until=now + ends_in if ends_in is not None else None,
    )

    with pytest.raises(NotAvailableError):
        engagement.record_view(story_id, Attribution(device_id="d"), now=now)
    assert story_views(db, story_id) == 0


def test_story_without_start_date_is_available(engagement, make_story, db, now):
    story = db.get(Story, make_story())
    story.active_from = None
    db.commit()

    assert engagement.record_view(story.id, Attribution(device_id="d"), now=now).is_new_view is True


def test_view_requires_some_attribution(engagement, make_story, now):
    with pytest.raises(InvalidArgumentError):
        engagement.record_view(make_story(), Attribution(), now=now)


def test_view_on_missing_story(engagement, now):
    with pytest.raises(NotFoundError):
        engagement.record_view(999, Attribution(device_id="d"), now=now)


# Ratings

def test_rerating_replaces_previous_rating(db, engagement, make_story, make_member, now):
    story_id = make_story()
    member_id = make_member()

    first = engagement.submit_rating(member_id, story_id, 3, now=now)
    second = engagement.submit_rating(member_id, story_id, 5, now=now + timedelta(minutes=1))

    assert first.created is True
    assert second.created is False
    assert second.total_ratings == 1
    assert second.average_rating == 5.0
    aggregate = aggregate_row(db, story_id)
    assert aggregate.total_ratings == 1
    assert aggregate.average_rating == 5.0


def test_aggregate_matches_known_ratings(db, engagement, make_story, make_member, now):
    story_id = make_story()
    for value in (5, 5, 4, 3, 1):
        result = engagement.submit_rating(make_member(), story_id, value, now=now)

    assert result.total_ratings == 5
    assert result.average_rating == 3.6
    assert result.rating_distribution == {1: 1, 2: 0, 3: 1, 4: 1, 5: 2}
    aggregate = aggregate_row(db, story_id)
    assert aggregate.sum_ratings == 18
    assert aggregate.rating_distribution == {"1": 1, "2": 0, "3": 1, "4": 1, "5": 2}


def test_deleting_last_rating_removes_aggregate(db, engagement, make_story, make_member, now):
    story_id = make_story()
    member_id = make_member()
    engagement.submit_rating(member_id, story_id, 4, now=now)

    engagement.delete_rating(member_id, story_id)

    assert aggregate_row(db, story_id) is None


def test_delete_missing_rating(engagement, make_story, make_member):
    with pytest.raises(NotFoundError):
        engagement.delete_rating(make_member(), make_story())


@pytest.mark.parametrize("value", [0, 6, 3.5, "4", None, True])
def test_rating_out_of_range_is_rejected(db, engagement, make_story, make_member, value):
    story_id = make_story()

    with pytest.raises(InvalidArgumentError):
        engagement.submit_rating(make_member(), story_id, value)
    assert aggregate_row(db, story_id) is None


def test_rating_unknown_member(engagement, make_story):
    with pytest.raises(NotFoundError):
        engagement.submit_rating(404, make_story(), 4)


def test_comments_are_trimmed(db, engagement, make_story, make_member, now):
    story_id = make_story()
    engagement.submit_rating(make_member(), story_id, 4, comment="   ", now=now)
    result = engagement.submit_rating(make_member(), story_id, 5, comment="  Lovely  ", now=now)

    assert result.rating.comment == "Lovely"
    assert aggregate_row(db, story_id).comments_count == 1


def test_create_rating_is_strict(engagement, make_story, make_member, now):
    story_id = make_story()
    member_id = make_member()
    engagement.create_rating(member_id, story_id, 4, now=now)

    with pytest.raises(AlreadyRatedError):
        engagement.create_rating(member_id, story_id, 2, now=now)


def test_verify_rating_updates_verified_metrics(db, engagement, make_story, make_member, now):
    story_id = make_story()
    result = engagement.submit_rating(make_member(), story_id, 4, now=now)
    engagement.submit_rating(make_member(), story_id, 2, now=now)

    verified = engagement.verify_rating(result.rating.id)

    assert verified.is_verified is True
    aggregate = aggregate_row(db, story_id)
    assert aggregate.verified_ratings_count == 1
    assert aggregate.verified_average_rating == 4.0


def test_mark_rating_helpful_increments(engagement, make_story, make_member, now):
    result = engagement.submit_rating(make_member(), make_story(), 4, now=now)

    assert engagement.mark_rating_helpful(result.rating.id) == 1
    assert engagement.mark_rating_helpful(result.rating.id) == 2
    with pytest.raises(NotFoundError):
        engagement.mark_rating_helpful(999)


def test_incremental_mode_matches_full_rescan(db, incremental_engagement, make_story, make_member, now):
    story_id = make_story()
    members = [make_member() for _ in range(4)]
    for offset, (member_id, value) in enumerate(zip(members, (5, 2, 4, 3))):
        incremental_engagement.submit_rating(member_id, story_id, value, now=now + timedelta(minutes=offset))
    incremental_engagement.submit_rating(members[1], story_id, 5, now=now + timedelta(minutes=10))
    incremental_engagement.delete_rating(members[3], story_id)
    incremental_engagement.delete_rating(members[0], story_id)

    stored = RatingSnapshot.from_aggregate(aggregate_row(db, story_id))
    assert stored == RatingSnapshot.from_ratings(load_rating_facts(db, story_id))
    assert stored.total == 2
    assert stored.average == 4.5


def test_failed_write_leaves_no_partial_state(db, engagement, make_story, make_member, now, monkeypatch):
    story_id = make_story()
    member_id = make_member()

    def broken_recompute(*args, **kwargs):
        raise InvalidArgumentError("rating", "boom")

    monkeypatch.setattr("daily_stories.services.ingestion.recompute_rating_aggregate", broken_recompute)
    with pytest.raises(InvalidArgumentError):
        engagement.submit_rating(member_id, story_id, 4, now=now)

    assert db.execute(select(func.count(MemberStoryRating.id))).scalar_one() == 0
    assert aggregate_row(db, story_id) is None


def storage_down(*args, **kwargs):
    raise OperationalError("UPDATE story_rating_aggregates", {}, Exception("server closed the connection"))


def test_storage_failure_during_rating_is_transient(db, engagement, make_story, make_member, now, monkeypatch):
    story_id = make_story()
    member_id = make_member()
    monkeypatch.setattr("daily_stories.services.ingestion.recompute_rating_aggregate", storage_down)

    with pytest.raises(TransientStoreError):
        engagement.submit_rating(member_id, story_id, 4, now=now)

    assert db.execute(select(func.count(MemberStoryRating.id))).scalar_one() == 0
    assert aggregate_row(db, story_id) is None


def test_storage_failure_during_view_keeps_counter(db, engagement, make_story, make_member, now, monkeypatch):
    story_id = make_story()
    member_id = make_member()
    monkeypatch.setattr("daily_stories.services.ingestion.insert_or_ignore", storage_down)

    with pytest.raises(TransientStoreError):
        engagement.record_view(story_id, Attribution(member_id=member_id), now=now)

    assert story_views(db, story_id) == 0
    assert view_rows(db, story_id) == 0


def test_unexpected_error_rolls_back_flushed_rows(db, engagement, make_story, make_member, now, monkeypatch):
    story_id = make_story()
    member_id = make_member()

    def broken_recompute(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr("daily_stories.services.ingestion.recompute_rating_aggregate", broken_recompute)
    with pytest.raises(RuntimeError):
        engagement.submit_rating(member_id, story_id, 4, now=now)

    # same session: a missing rollback would still show the flushed rating
    assert db.execute(select(func.count(MemberStoryRating.id))).scalar_one() == 0


def test_record_view_locks_the_story_row(db, engagement, make_story, now):
    story_id = make_story()
    selects = []

    def capture(orm_execute_state):
        if orm_execute_state.is_select:
            selects.append(str(orm_execute_state.statement.compile(dialect=postgresql.dialect())))

    event.listen(db, "do_orm_execute", capture)
    try:
        engagement.record_view(story_id, Attribution(device_id="device-1"), now=now)
    finally:
        event.remove(db, "do_orm_execute", capture)

    assert any("FROM stories" in sql and "FOR UPDATE" in sql for sql in selects)


# Interactions

def test_duplicate_interaction_is_rejected(engagement, make_story, make_member, now):
    story_id = make_story()
    member_id = make_member()
    engagement.record_interaction(member_id, story_id, "like", now=now)

    with pytest.raises(DuplicateInteractionError):
        engagement.record_interaction(member_id, story_id, "like", now=now)


def test_interaction_on_unpublished_story(engagement, make_story, make_member, now):
    story_id = make_story(active=False)

    with pytest.raises(NotAvailableError):
        engagement.record_interaction(make_member(), story_id, "like", now=now)


def test_unknown_action_is_rejected(engagement, make_story, make_member, now):
    with pytest.raises(InvalidArgumentError):
        engagement.record_interaction(make_member(), make_story(), "applaud", now=now)


def test_toggle_swaps_like_and_dislike(db, engagement, make_story, make_member, now):
    story_id = make_story()
    member_id = make_member()
    engagement.record_interaction(member_id, story_id, "like", now=now)

    toggled = engagement.toggle_interaction(member_id, story_id, "like", now=now)

    assert toggled.action == "dislike"
    actions = db.execute(
        select(MemberStoryInteraction.action).where(MemberStoryInteraction.member_id == member_id)
    ).scalars().all()
    assert actions == ["dislike"]


def test_toggle_without_existing_row(engagement, make_story, make_member, now):
    with pytest.raises(NotFoundError):
        engagement.toggle_interaction(make_member(), make_story(), "like", now=now)


def test_toggle_into_existing_opposite(engagement, make_story, make_member, now):
    story_id = make_story()
    member_id = make_member()
    engagement.record_interaction(member_id, story_id, "like", now=now)
    engagement.record_interaction(member_id, story_id, "dislike", now=now)

    with pytest.raises(DuplicateInteractionError):
        engagement.toggle_interaction(member_id, story_id, "like", now=now)


def test_only_like_and_dislike_toggle(engagement, make_story, make_member, now):
    with pytest.raises(InvalidArgumentError):
        engagement.toggle_interaction(make_member(), make_story(), "bookmark", now=now)


def test_remove_interaction(engagement, make_story, make_member, now):
    story_id = make_story()
    member_id = make_member()
    engagement.record_interaction(member_id, story_id, "bookmark", now=now)

    engagement.remove_interaction(member_id, story_id, "bookmark")
    with pytest.raises(NotFoundError):
        engagement.remove_interaction(member_id, story_id, "bookmark")
    # Removed rows can be recorded again
    assert engagement.record_interaction(member_id, story_id, "bookmark", now=now).action == "bookmark"


# Reading progress

def test_progress_is_replaced_and_time_accumulates(engagement, make_story, make_member, now):
    story_id = make_story()
    member_id = make_member()

    engagement.update_reading_progress(member_id, story_id, 80, 30, now=now)
    result = engagement.update_reading_progress(member_id, story_id, 20, 10, now=now + timedelta(minutes=5))

    assert result.reading_progress == 20
    assert result.time_spent == 40
    assert result.is_completed is False
    assert result.last_read_at == now + timedelta(minutes=5)


def test_progress_is_clamped(engagement, make_story, make_member, now):
    story_id = make_story()
    member_id = make_member()

    assert engagement.update_reading_progress(member_id, story_id, 150, now=now).reading_progress == 100
    assert engagement.update_reading_progress(member_id, story_id, -5, now=now).reading_progress == 0


def test_negative_time_is_ignored(engagement, make_story, make_member, now):
    story_id = make_story()
    member_id = make_member()
    engagement.update_reading_progress(member_id, story_id, 10, 60, now=now)

    assert engagement.update_reading_progress(member_id, story_id, 20, -30, now=now).time_spent == 60


@pytest.mark.parametrize("progress", [float("nan"), float("inf"), "50", None])
def test_malformed_progress_is_rejected(engagement, make_story, make_member, progress):
    with pytest.raises(InvalidArgumentError):
        engagement.update_reading_progress(make_member(), make_story(), progress)


def test_mark_reading_completed(engagement, make_story, make_member, now):
    story_id = make_story()
    member_id = make_member()
    engagement.update_reading_progress(member_id, story_id, 40, 100, now=now)

    result = engagement.mark_reading_completed(member_id, story_id, 20, now=now)

    assert result.is_completed is True
    assert result.time_spent == 120


def test_reading_progress_defaults_when_unread(engagement, make_story, make_member):
    result = engagement.get_reading_progress(make_member(), make_story())

    assert result.reading_progress == 0
    assert result.time_spent == 0
    assert result.is_completed is False
