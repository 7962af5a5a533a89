"""API tests for the TopicBot FastAPI application."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from topicbot.app import app, get_embedding_provider, get_generator, get_session_factory
from topicbot.core import repositories
from topicbot.core.db import create_all
from topicbot.core.errors import PersistenceFailure
from topicbot.core.settings import settings
from topicbot.core.time import utcnow
from topicbot.embedding.provider import EmbeddingProvider
from topicbot.llm.providers import MockTopicGenerator


class OneHotEmbedder(EmbeddingProvider):
    """Embeddings of the configured dimension, one axis per story keyword."""

    KEYWORDS = ("election", "football")

    def __init__(self, dimension):
        self.dimension = dimension

    def embed(self, text):
        vector = [0.0] * self.dimension
        lowered = text.lower()
        axis = next((i for i, k in enumerate(self.KEYWORDS) if k in lowered), len(self.KEYWORDS))
        vector[axis] = 1.0
        return vector


async def seed_items(session_factory):
    now = utcnow()
    stories = [
        ("https://e.com/1", "Election results announced", 1),
        ("https://e.com/2", "Election turnout hits record", 2),
        ("https://e.com/3", "Football match ends in a draw", 3),
    ]
    async with session_factory() as session:
        for url, title, hours_ago in stories:
            await repositories.insert_news_item_if_new(session, {
                "url": url,
                "title": title,
                "published_at": now - timedelta(hours=hours_ago),
            })


@pytest.fixture
def client():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    generator = MockTopicGenerator()
    embedder = OneHotEmbedder(settings.embedding_dimension)

    app.dependency_overrides[get_session_factory] = lambda: factory
    app.dependency_overrides[get_generator] = lambda: generator
    app.dependency_overrides[get_embedding_provider] = lambda: embedder
    try:
        with TestClient(app) as test_client:
            test_client.portal.call(create_all, engine)
            test_client.portal.call(seed_items, factory)
            yield test_client
            test_client.portal.call(engine.dispose)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def processed(client):
    response = client.post("/process", json={"timeframe": "24h"})
    assert response.status_code == 200
    return response.json()


def topic_ids_by_title(client):
    return {t["title"]: t["id"] for t in client.get("/topics", params={"limit": 100}).json()}


def test_health_check(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "topicbot"
    assert data["generator"]["provider"] == "mock"
    assert data["embedding"]["status"] == "healthy"


def test_process_creates_topics(processed):
    assert processed["status"] == "success"
    report = processed["report"]
    assert report["loaded"] == 3
    assert report["embedded"] == 3
    assert report["topics_created"] == 2
    assert len(report["topic_ids"]) == 2


def test_ranked_topics(client, processed):
    response = client.get("/topics")

    assert response.status_code == 200
    topics = response.json()
    assert len(topics) == 2
    titles = [t["title"] for t in topics]
    # the election topic has two members and is newer
    assert titles[0] == "Election results announced"
    assert set(topics[0]["score"]) >= {"final_score", "recency_score", "discussion_score"}


def test_ranked_topics_by_category(client, processed):
    response = client.get("/topics", params={"category": "sports"})

    assert response.status_code == 200
    assert [t["category"] for t in response.json()] == ["sports"]


def test_topics_limit_is_validated(client):
    assert client.get("/topics", params={"limit": 0}).status_code == 422
    assert client.get("/topics", params={"limit": 101}).status_code == 422


def test_feedback_flow(client, processed):
    sports_id = topic_ids_by_title(client)["Football match ends in a draw"]

    up = client.post(f"/topics/{sports_id}/feedback", json={"viewer_id": "v1", "direction": "up"})
    down = client.post(f"/topics/{sports_id}/feedback", json={"viewer_id": "v1", "direction": "down"})

    assert up.status_code == 200
    assert up.json()["up_count"] == 1
    assert up.json()["changed"] is True
    assert down.status_code == 200
    assert (down.json()["up_count"], down.json()["down_count"]) == (0, 1)
    assert down.json()["previous"] == "up"
    assert down.json()["topic_score"] == -1.0

    prefs = client.get("/preferences/v1").json()
    assert prefs["disliked_topics"] == [sports_id]
    assert prefs["liked_topics"] == []


def test_feedback_changes_viewer_ranking(client, processed):
    sports_id = topic_ids_by_title(client)["Football match ends in a draw"]
    for _ in range(2):
        client.post(f"/topics/{sports_id}/feedback", json={"viewer_id": "fan", "direction": "up"})

    fan_view = client.get("/topics", params={"viewer_id": "fan"}).json()

    assert fan_view[0]["id"] == sports_id
    assert fan_view[0]["up_count"] == 1


def test_feedback_unknown_topic(client):
    response = client.post("/topics/9999/feedback", json={"viewer_id": "v1", "direction": "up"})

    assert response.status_code == 404


def test_feedback_invalid_direction(client, processed):
    topic_id = processed["report"]["topic_ids"][0]

    response = client.post(f"/topics/{topic_id}/feedback", json={"viewer_id": "v1", "direction": "sideways"})

    assert response.status_code == 422


def test_preferences_defaults_and_update(client):
    defaults = client.get("/preferences/v2")
    assert defaults.status_code == 200
    assert defaults.json()["default_timeframe"] == "24h"
    assert defaults.json()["categories"] == []

    updated = client.put("/preferences/v2", json={"categories": ["Sports"], "default_timeframe": "7d"})
    assert updated.status_code == 200
    assert updated.json()["categories"] == ["sports"]
    assert updated.json()["default_timeframe"] == "7d"

    assert client.get("/preferences/v2").json()["default_timeframe"] == "7d"


def test_preferences_reject_unknown_timeframe(client):
    response = client.put("/preferences/v3", json={"default_timeframe": "1y"})

    assert response.status_code == 422


def test_preferences_storage_outage(client):
    outage = AsyncMock(side_effect=PersistenceFailure("get_or_create_preferences failed: database is locked"))

    with patch("topicbot.core.repositories.get_or_create_preferences", outage):
        read = client.get("/preferences/v4")
        write = client.put("/preferences/v4", json={"categories": ["sports"]})

    assert read.status_code == 503
    assert write.status_code == 503
    assert "database is locked" in read.json()["detail"]
