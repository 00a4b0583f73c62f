import pytest
from httpx import ASGITransport, AsyncClient

from daily_stories.database import get_db
from daily_stories.main import app
from daily_stories.middleware.rate_limit import limiter
from daily_stories.routes.dependencies import get_story_cache

API = "/api/v1"


@pytest.fixture
def client_app(session_factory, cache):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_story_cache] = lambda: cache
    limiter.reset()
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def member_headers(make_member):
    return {"X-Member-ID": str(make_member())}


def client(app):
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_record_view_deduplicates(client_app, make_story):
    story_id = make_story()
    async with client(client_app) as ac:
        first = await ac.post(f"{API}/stories/{story_id}/view", headers={"X-Device-ID": "phone-1"})
        second = await ac.post(f"{API}/stories/{story_id}/view", headers={"X-Device-ID": "phone-1"})

    assert first.status_code == 200
    assert first.json()["is_new_view"] is True
    assert second.json() == {"is_new_view": False, "total_views": 1, "viewed_at": None}


@pytest.mark.asyncio
async def test_view_on_unpublished_story_is_conflict(client_app, make_story):
    story_id = make_story(active=False)
    async with client(client_app) as ac:
        response = await ac.post(f"{API}/stories/{story_id}/view")

    assert response.status_code == 409
    assert response.json()["detail"]["error_code"] == "STORY_NOT_AVAILABLE"


@pytest.mark.asyncio
async def test_view_on_missing_story_is_not_found(client_app):
    async with client(client_app) as ac:
        response = await ac.post(f"{API}/stories/999/view")

    assert response.status_code == 404
    assert response.json()["detail"]["metadata"] == {"resource": "Story", "id": 999}


@pytest.mark.asyncio
async def test_rating_flow(client_app, make_story, member_headers):
    story_id = make_story()
    async with client(client_app) as ac:
        created = await ac.post(f"{API}/stories/{story_id}/rating", json={"rating": 3}, headers=member_headers)
        updated = await ac.post(
            f"{API}/stories/{story_id}/rating", json={"rating": 5, "comment": "Loved it"}, headers=member_headers
        )
        summary = await ac.get(f"{API}/stories/{story_id}/rating", headers=member_headers)
        deleted = await ac.delete(f"{API}/stories/{story_id}/rating", headers=member_headers)
        after = await ac.get(f"{API}/stories/{story_id}/rating")

    assert created.status_code == 201
    assert updated.status_code == 200
    assert updated.json()["total_ratings"] == 1
    assert updated.json()["average_rating"] == 5.0
    assert summary.json()["member_rating"]["comment"] == "Loved it"
    assert deleted.status_code == 204
    assert after.json()["total_ratings"] == 0
    assert after.json()["sentiment"] == "unrated"


@pytest.mark.asyncio
async def test_invalid_rating_is_unprocessable(client_app, make_story, member_headers):
    story_id = make_story()
    async with client(client_app) as ac:
        response = await ac.post(f"{API}/stories/{story_id}/rating", json={"rating": 9}, headers=member_headers)

    assert response.status_code == 422
    assert response.json()["detail"]["error_code"] == "INVALID_ARGUMENT"


@pytest.mark.asyncio
async def test_rating_requires_member(client_app, make_story):
    story_id = make_story()
    async with client(client_app) as ac:
        response = await ac.post(f"{API}/stories/{story_id}/rating", json={"rating": 4})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_interactions(client_app, make_story, member_headers):
    story_id = make_story()
    url = f"{API}/stories/{story_id}/interactions"
    async with client(client_app) as ac:
        liked = await ac.post(url, json={"action": "like"}, headers=member_headers)
        duplicate = await ac.post(url, json={"action": "like"}, headers=member_headers)
        toggled = await ac.post(f"{url}/toggle", json={"action": "like"}, headers=member_headers)
        stats = await ac.get(f"{API}/stories/{story_id}/analytics/interactions")
        removed = await ac.delete(url, params={"action": "dislike"}, headers=member_headers)
        missing = await ac.delete(url, params={"action": "dislike"}, headers=member_headers)

    assert liked.status_code == 201
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"]["error_code"] == "DUPLICATE_INTERACTION"
    assert toggled.json()["action"] == "dislike"
    assert stats.json()["actions"]["dislike"] == 1
    assert removed.status_code == 204
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_reading_progress(client_app, make_story, member_headers):
    story_id = make_story()
    url = f"{API}/stories/{story_id}/progress"
    async with client(client_app) as ac:
        await ac.put(url, json={"progress": 80, "time_spent": 30}, headers=member_headers)
        response = await ac.put(url, json={"progress": 20, "time_spent": 10}, headers=member_headers)
        current = await ac.get(url, headers=member_headers)

    assert response.status_code == 200
    assert response.json()["reading_progress"] == 20
    assert response.json()["time_spent"] == 40
    assert current.json()["time_spent"] == 40


@pytest.mark.asyncio
async def test_analytics_endpoints(client_app, make_story, member_headers):
    story_id = make_story()
    async with client(client_app) as ac:
        await ac.post(f"{API}/stories/{story_id}/rating", json={"rating": 4}, headers=member_headers)
        await ac.post(f"{API}/stories/{story_id}/view", headers=member_headers)
        ratings = await ac.get(f"{API}/stories/{story_id}/analytics/ratings")
        views = await ac.get(f"{API}/stories/{story_id}/analytics/views", params={"period": "month"})
        bad_period = await ac.get(f"{API}/stories/{story_id}/analytics/views", params={"period": "decade"})
        trends = await ac.get(f"{API}/stories/{story_id}/analytics/rating-trends")
        top = await ac.get(f"{API}/stories/top-rated")
        most = await ac.get(f"{API}/stories/most-rated", params={"limit": 5})
        trending = await ac.get(f"{API}/stories/trending")
        global_stats = await ac.get(f"{API}/stats/global")

    assert ratings.json()["basic_stats"]["total_ratings"] == 1
    assert views.json()["total_views"] == 1
    assert len(views.json()["timeline"]) == 30
    assert bad_period.status_code == 422
    assert trends.json()[0]["count"] == 1
    assert top.json() == []
    assert most.json()[0]["story_id"] == story_id
    assert trending.json() == []
    assert global_stats.json()["total_ratings_given"] == 1


@pytest.mark.asyncio
async def test_member_endpoints(client_app, make_story, make_member):
    story_id = make_story()
    member_id = make_member()
    headers = {"X-Member-ID": str(member_id)}
    async with client(client_app) as ac:
        await ac.post(f"{API}/stories/{story_id}/interactions", json={"action": "share"}, headers=headers)
        engagement = await ac.get(f"{API}/members/{member_id}/engagement", headers=headers)
        forbidden = await ac.get(f"{API}/members/{member_id + 1}/engagement", headers=headers)
        deleted = await ac.delete(f"{API}/members/{member_id}", headers=headers)
        gone = await ac.get(f"{API}/members/{member_id}/engagement", headers=headers)

    assert engagement.json()["interactions"]["positive_interactions"] == 1
    assert forbidden.status_code == 403
    assert deleted.json()["removed"]["interactions"] == 1
    assert gone.status_code == 404


@pytest.mark.asyncio
async def test_publication_endpoint(client_app, make_story):
    story_id = make_story(active=False)
    async with client(client_app) as ac:
        published = await ac.put(f"{API}/stories/{story_id}/publication", json={"active": True})
        story = await ac.get(f"{API}/stories/{story_id}")
        history = await ac.get(f"{API}/stories/{story_id}/publication/history")

    assert published.json()["action"] == "published"
    assert story.json()["is_publishable"] is True
    assert len(history.json()) == 1


@pytest.mark.asyncio
async def test_health_and_metrics(client_app):
    async with client(client_app) as ac:
        health = await ac.get("/health")
        metrics = await ac.get("/metrics")

    assert health.status_code == 200
    assert health.json()["checks"] == {"database": True, "cache": True}
    assert metrics.status_code == 200
    assert "engagement_events_total" in metrics.text
