"""Shared fixtures and builders for the test suite."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from topicbot.core.db import create_all
from topicbot.core.entities import NewsItemRecord, TopicRecord

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_item(item_id, embedding, hours_ago=0.0, title=None, body="", source=None):
    """News item published ``hours_ago`` before NOW."""
    return NewsItemRecord(
        id=item_id,
        url=f"https://news.example.com/{item_id}",
        title=title or f"Story {item_id}",
        body=body,
        source=source,
        published_at=NOW - timedelta(hours=hours_ago),
        embedding=list(embedding) if embedding is not None else None,
    )


def make_topic(topic_id, category="general", members=3, hours_ago=1.0, up=0, down=0):
    return TopicRecord(
        id=topic_id,
        title=f"Topic {topic_id}",
        category=category,
        created_at=NOW - timedelta(hours=hours_ago),
        item_ids=list(range(1, members + 1)),
        up_count=up,
        down_count=down,
    )


@pytest.fixture
def now():
    return NOW


@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite database with all tables created."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    await create_all(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()
