"""Tests for repository functions against an in-memory SQLite database."""

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from topicbot.core import repositories
from topicbot.core.entities import PreferenceState, TopicDraft, Vote
from topicbot.core.errors import PersistenceFailure
from tests.conftest import NOW


def item_data(url, hours_ago=0.0, title="Story", body="", source_id=None):
    return {
        "url": url,
        "title": title,
        "body": body,
        "source_id": source_id,
        "published_at": NOW - timedelta(hours=hours_ago),
    }


@pytest.mark.asyncio
async def test_insert_deduplicates_by_normalized_url(session_factory):
    async with session_factory() as session:
        created, first = await repositories.insert_news_item_if_new(
            session, item_data("https://News.example.com/a?id=1&utm_source=feed", title="  Big   story ")
        )
        again, second = await repositories.insert_news_item_if_new(
            session, item_data("https://news.example.com/a?id=1#comments")
        )

    assert created is True
    assert again is False
    assert second.id == first.id
    assert first.title == "Big story"
    assert first.embedding is None


@pytest.mark.asyncio
async def test_insert_requires_url(session_factory):
    async with session_factory() as session:
        with pytest.raises(ValueError):
            await repositories.insert_news_item_if_new(session, item_data(""))


@pytest.mark.asyncio
async def test_items_in_timeframe(session_factory):
    async with session_factory() as session:
        source = await repositories.upsert_source(session, {"name": "Wire", "url": "https://wire.example.com/rss"})
        await repositories.insert_news_item_if_new(session, item_data("https://e.com/1", hours_ago=1))
        await repositories.insert_news_item_if_new(session, item_data("https://e.com/2", hours_ago=30))
        await repositories.insert_news_item_if_new(
            session, item_data("https://e.com/3", hours_ago=2, source_id=source.id)
        )

        recent = await repositories.get_news_items_in_timeframe(session, NOW - timedelta(hours=24))
        from_source = await repositories.get_news_items_in_timeframe(
            session, NOW - timedelta(hours=24), source_ids=[source.id]
        )

    assert [item.url for item in recent] == ["https://e.com/1", "https://e.com/3"]
    assert recent[0].published_at == NOW - timedelta(hours=1)
    assert [item.url for item in from_source] == ["https://e.com/3"]


@pytest.mark.asyncio
async def test_embedding_is_written_once(session_factory):
    async with session_factory() as session:
        _, item = await repositories.insert_news_item_if_new(session, item_data("https://e.com/1"))

        assert await repositories.update_item_embedding(session, item.id, [1.0, 0.0]) is True
        assert await repositories.update_item_embedding(session, item.id, [0.0, 1.0]) is False

    async with session_factory() as session:
        [stored] = await repositories.get_news_items_in_timeframe(session, NOW - timedelta(hours=1))

    assert stored.embedding == [1.0, 0.0]


@pytest.mark.asyncio
async def test_save_topics_assigns_members(session_factory):
    async with session_factory() as session:
        ids = []
        for n in range(1, 5):
            _, item = await repositories.insert_news_item_if_new(session, item_data(f"https://e.com/{n}", hours_ago=n))
            ids.append(item.id)

        first, second = await repositories.save_topics(session, [
            TopicDraft(title="First", category="sports", item_ids=ids[:2], tags=["a"]),
            TopicDraft(title="Second", category="politics", item_ids=ids[2:], degraded=True),
        ])
        [later] = await repositories.save_topics(
            session, [TopicDraft(title="Later", category="sports", item_ids=[ids[0]])]
        )

    async with session_factory() as session:
        items = {item.id: item for item in await repositories.get_news_items_in_timeframe(session, NOW - timedelta(days=1))}
        stored = await repositories.get_topic(session, first.id)
        untouched = await repositories.get_topic(session, second.id)

    assert first.id != second.id
    assert first.item_ids == ids[:2]
    assert stored.item_ids == [ids[1]]
    assert stored.tags == ["a"]
    assert stored.member_count == 1
    assert untouched.item_ids == ids[2:]
    assert later.item_ids == [ids[0]]
    assert items[ids[0]].topic_id == later.id
    assert items[ids[1]].topic_id == first.id
    assert items[ids[2]].topic_id == second.id


@pytest.mark.asyncio
async def test_list_topics_filters(session_factory):
    async with session_factory() as session:
        await repositories.save_topics(session, [
            TopicDraft(title="A", category="sports", item_ids=[]),
            TopicDraft(title="B", category="politics", item_ids=[]),
        ])

        sports = await repositories.list_topics(session, category="Sports")
        everything = await repositories.list_topics(session)
        future = await repositories.list_topics(session, since=NOW + timedelta(days=3650))

    assert [t.title for t in sports] == ["A"]
    assert len(everything) == 2
    assert future == []


@pytest.mark.asyncio
async def test_missing_topic(session_factory):
    async with session_factory() as session:
        assert await repositories.get_topic(session, 999) is None
        state = PreferenceState(viewer_id="v1", topic_votes={999: Vote.UP})
        assert await repositories.record_vote(session, state, 999, up_delta=1) is False
        assert await repositories.get_or_create_preferences(session, "v1") == PreferenceState(viewer_id="v1")


@pytest.mark.asyncio
async def test_record_vote_updates_counters_and_preferences(session_factory):
    async with session_factory() as session:
        [topic] = await repositories.save_topics(session, [TopicDraft(title="T", category="general", item_ids=[])])

        first = PreferenceState(viewer_id="v1", topic_votes={topic.id: Vote.UP})
        second = PreferenceState(viewer_id="v2", topic_votes={topic.id: Vote.UP})
        switched = PreferenceState(viewer_id="v2", topic_votes={topic.id: Vote.DOWN})
        assert await repositories.record_vote(session, first, topic.id, up_delta=1)
        assert await repositories.record_vote(session, second, topic.id, up_delta=1)
        assert await repositories.record_vote(session, switched, topic.id, up_delta=-1, down_delta=1)

    async with session_factory() as session:
        stored = await repositories.get_topic(session, topic.id)
        v2 = await repositories.get_or_create_preferences(session, "v2")

    assert (stored.up_count, stored.down_count) == (1, 1)
    assert v2.topic_votes == {topic.id: Vote.DOWN}


@pytest.mark.asyncio
async def test_preferences_round_trip(session_factory):
    async with session_factory() as session:
        created = await repositories.get_or_create_preferences(session, "v1", default_categories=["sports"])
        created.topic_scores[5] = 1.0
        created.topic_votes[5] = Vote.UP
        created.topic_votes[6] = Vote.DOWN
        created.category_affinity["sports"] = 0.1
        await repositories.save_preferences(session, created)

    async with session_factory() as session:
        loaded = await repositories.get_or_create_preferences(session, "v1")

    assert loaded == PreferenceState(
        viewer_id="v1",
        categories=["sports"],
        default_timeframe="24h",
        topic_scores={5: 1.0},
        topic_votes={5: Vote.UP, 6: Vote.DOWN},
        category_affinity={"sports": 0.1},
    )
    assert loaded.liked_topics == [5]
    assert loaded.disliked_topics == [6]


@pytest.mark.asyncio
async def test_update_preference_settings_keeps_history(session_factory):
    async with session_factory() as session:
        state = await repositories.get_or_create_preferences(session, "v1")
        state.topic_votes[3] = Vote.UP
        await repositories.save_preferences(session, state)

        updated = await repositories.update_preference_settings(
            session, "v1", categories=[" Sports ", ""], default_timeframe="7d"
        )

    assert updated.categories == ["sports"]
    assert updated.sources == []
    assert updated.default_timeframe == "7d"
    assert updated.topic_votes == {3: Vote.UP}


@pytest.mark.asyncio
async def test_active_categories_in_display_order(session_factory):
    async with session_factory() as session:
        await repositories.upsert_category(session, "Sports", sort_order=2)
        await repositories.upsert_category(session, "politics", sort_order=1)
        await repositories.upsert_category(session, "world", sort_order=1, is_active=False)
        await repositories.upsert_category(session, "business", sort_order=1)
        await repositories.upsert_category(session, "sports", sort_order=0)

        names = await repositories.get_active_categories(session)

    assert names == ["sports", "business", "politics"]


@pytest.mark.asyncio
async def test_upsert_source_updates_existing(session_factory):
    async with session_factory() as session:
        first = await repositories.upsert_source(session, {"name": "Wire", "url": "https://wire.example.com/rss"})
        second = await repositories.upsert_source(
            session, {"name": "Wire (paused)", "url": "https://wire.example.com/rss", "active": False}
        )
        active = await repositories.list_active_sources(session)

    assert second.id == first.id
    assert second.name == "Wire (paused)"
    assert active == []


@pytest.mark.asyncio
async def test_storage_errors_become_persistence_failures():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    try:
        async with factory() as session:
            with pytest.raises(PersistenceFailure):
                await repositories.get_topic(session, 1)
            with pytest.raises(PersistenceFailure):
                await repositories.save_topics(session, [TopicDraft(title="T", category="general", item_ids=[1])])
    finally:
        await engine.dispose()
