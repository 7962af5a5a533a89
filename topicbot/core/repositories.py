"""Repository layer for database operations.

Async CRUD for news items, topics, categories, sources and viewer preferences.
Every SQLAlchemy error is rolled back and re-raised as ``PersistenceFailure``.
"""

import functools
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import desc, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from topicbot.core.entities import (
    NewsItemRecord, PreferenceState, TopicDraft, TopicRecord, Vote,
)
from topicbot.core.errors import PersistenceFailure
from topicbot.core.logging import get_logger
from topicbot.core.models import Category, NewsItem, Source, Topic, UserPreference
from topicbot.core.time import ensure_utc, utcnow
from topicbot.core.utils import clean_text, sha1_url

logger = get_logger(__name__)


def persistence_operation(func: Callable) -> Callable:
    """Roll back and wrap SQLAlchemy errors raised by a repository function."""

    @functools.wraps(func)
    async def wrapper(session: AsyncSession, *args, **kwargs):
        try:
            return await func(session, *args, **kwargs)
        except SQLAlchemyError as e:
            logger.error(f"{func.__name__} failed: {e}")
            await session.rollback()
            raise PersistenceFailure(f"{func.__name__} failed: {e}") from e

    return wrapper


# =============================================================================
# CONVERSIONS
# =============================================================================

def _item_record(item: NewsItem) -> NewsItemRecord:
    return NewsItemRecord(
        id=item.id,
        url=item.url,
        title=item.title,
        body=item.body or "",
        source=item.source_name,
        published_at=ensure_utc(item.published_at),
        embedding=list(item.embedding) if item.embedding is not None else None,
        topic_id=item.topic_id,
    )


def _topic_record(topic: Topic) -> TopicRecord:
    return TopicRecord(
        id=topic.id,
        title=topic.title,
        summary=topic.summary or "",
        category=topic.category,
        tags=list(topic.tags or []),
        item_ids=list(topic.item_ids or []),
        created_at=ensure_utc(topic.created_at),
        updated_at=ensure_utc(topic.updated_at),
        up_count=topic.up_count or 0,
        down_count=topic.down_count or 0,
    )


def _preference_state(row: UserPreference) -> PreferenceState:
    # JSON object keys come back as strings
    return PreferenceState(
        viewer_id=row.viewer_id,
        categories=list(row.categories or []),
        sources=list(row.sources or []),
        default_timeframe=row.default_timeframe or "24h",
        topic_scores={int(k): float(v) for k, v in (row.topic_scores or {}).items()},
        topic_votes={int(k): Vote(v) for k, v in (row.topic_votes or {}).items()},
        category_affinity={str(k): float(v) for k, v in (row.category_affinity or {}).items()},
    )


# =============================================================================
# SOURCES & CATEGORIES
# =============================================================================

@persistence_operation
async def upsert_source(session: AsyncSession, record: Dict[str, Any]) -> Source:
    """
    Upsert a source by URL.

    Args:
        session: Database session
        record: Mapping with ``url`` and optional ``name``, ``type``, ``active``

    Returns:
        Source object (existing or newly created)
    """
    url = record.get('url')
    if not url:
        raise ValueError("Source record missing required 'url' field")

    result = await session.execute(select(Source).where(Source.url == url))
    source = result.scalar_one_or_none()

    if source is None:
        source = Source(url=url)
        session.add(source)
        logger.info(f"Created new source: {record.get('name', url)} ({url})")

    source.name = record.get('name', source.name or url)
    source.type = record.get('type', source.type or 'rss')
    source.active = record.get('active', True if source.active is None else source.active)

    await session.commit()
    await session.refresh(source)
    return source


@persistence_operation
async def list_active_sources(session: AsyncSession) -> List[Source]:
    """Get list of all active sources."""
    result = await session.execute(
        select(Source).where(Source.active.is_(True)).order_by(Source.name)
    )
    return list(result.scalars().all())


@persistence_operation
async def upsert_category(session: AsyncSession, name: str,
                          sort_order: int = 0, is_active: bool = True) -> Category:
    """Create or update a category by (lowercased) name."""
    name = name.strip().lower()
    if not name:
        raise ValueError("Category name cannot be empty")

    result = await session.execute(select(Category).where(Category.name == name))
    category = result.scalar_one_or_none()
    if category is None:
        category = Category(name=name)
        session.add(category)

    category.sort_order = sort_order
    category.is_active = is_active
    await session.commit()
    await session.refresh(category)
    return category


@persistence_operation
async def get_active_categories(session: AsyncSession) -> List[str]:
    """Names of active categories in display order."""
    result = await session.execute(
        select(Category.name)
        .where(Category.is_active.is_(True))
        .order_by(Category.sort_order, Category.name)
    )
    return [name for name in result.scalars().all()]


# =============================================================================
# NEWS ITEMS
# =============================================================================

@persistence_operation
async def insert_news_item_if_new(session: AsyncSession,
                                  data: Dict[str, Any]) -> Tuple[bool, NewsItemRecord]:
    """
    Insert a news item unless one with the same normalized URL exists.

    Args:
        session: Database session
        data: Mapping with ``url``, ``title``, ``published_at`` and optional
            ``body``, ``source_id``, ``source_name``

    Returns:
        Tuple of (was_created, item)
    """
    url = (data.get('url') or '').strip()
    if not url:
        raise ValueError("News item missing required 'url' field")
    url_sha1 = sha1_url(url)

    result = await session.execute(select(NewsItem).where(NewsItem.url_sha1 == url_sha1))
    existing = result.scalar_one_or_none()
    if existing is not None:
        logger.debug(f"News item already exists with url_sha1: {url_sha1[:8]}...")
        return False, _item_record(existing)

    item = NewsItem(
        url=url,
        url_sha1=url_sha1,
        title=clean_text(data.get('title', '')),
        body=clean_text(data.get('body', '')) or None,
        source_id=data.get('source_id'),
        source_name=data.get('source_name'),
        published_at=ensure_utc(data.get('published_at')) or utcnow(),
        fetched_at=utcnow(),
    )
    session.add(item)

    try:
        await session.commit()
    except IntegrityError:
        # Another writer inserted the same URL between our check and commit
        await session.rollback()
        result = await session.execute(select(NewsItem).where(NewsItem.url_sha1 == url_sha1))
        existing = result.scalar_one_or_none()
        if existing is None:
            raise
        logger.debug(f"Race condition: item was inserted by another writer: {url_sha1[:8]}...")
        return False, _item_record(existing)

    await session.refresh(item)
    return True, _item_record(item)


@persistence_operation
async def get_news_items_in_timeframe(session: AsyncSession, since: datetime,
                                      source_ids: Optional[Sequence[int]] = None,
                                      limit: Optional[int] = None) -> List[NewsItemRecord]:
    """
    News items published at or after ``since``, most recent first.

    Args:
        session: Database session
        since: Earliest publication time
        source_ids: Restrict to these sources when given
        limit: Maximum number of items to return
    """
    stmt = (
        select(NewsItem)
        .where(NewsItem.published_at >= since)
        .order_by(desc(NewsItem.published_at), NewsItem.id)
    )
    if source_ids:
        stmt = stmt.where(NewsItem.source_id.in_(list(source_ids)))
    if limit:
        stmt = stmt.limit(limit)

    result = await session.execute(stmt)
    items = [_item_record(item) for item in result.scalars().all()]
    logger.debug(f"Retrieved {len(items)} news items since {since.isoformat()}")
    return items


@persistence_operation
async def update_item_embedding(session: AsyncSession, item_id: int,
                                embedding: Sequence[float]) -> bool:
    """
    Store an item's embedding unless it already has one.

    Returns:
        True if the embedding was written
    """
    stmt = (
        update(NewsItem)
        .where(NewsItem.id == item_id, NewsItem.embedding.is_(None))
        .values(embedding=[float(v) for v in embedding], embedded_at=utcnow())
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount > 0


# =============================================================================
# TOPICS
# =============================================================================

async def _release_members(session: AsyncSession, item_ids: List[int], now: datetime) -> None:
    """Drop ``item_ids`` from the topics that currently own them."""
    result = await session.execute(
        select(NewsItem.topic_id)
        .where(NewsItem.id.in_(item_ids), NewsItem.topic_id.is_not(None))
        .distinct()
    )
    owner_ids = list(result.scalars().all())
    if not owner_ids:
        return

    moved = set(item_ids)
    result = await session.execute(select(Topic).where(Topic.id.in_(owner_ids)))
    for owner in result.scalars().all():
        owner.item_ids = [i for i in (owner.item_ids or []) if i not in moved]
        owner.updated_at = now
    logger.debug(f"Released {len(moved)} items from topics {sorted(owner_ids)}")


async def _add_topic(session: AsyncSession, draft: TopicDraft, now: datetime) -> Topic:
    member_ids = list(draft.item_ids)
    if member_ids:
        await _release_members(session, member_ids, now)

    topic = Topic(
        title=draft.title,
        summary=draft.summary or "",
        category=draft.category,
        tags=list(draft.tags),
        item_ids=member_ids,
        degraded=draft.degraded,
        created_at=now,
        updated_at=now,
    )
    session.add(topic)
    await session.flush()

    if member_ids:
        await session.execute(
            update(NewsItem)
            .where(NewsItem.id.in_(member_ids))
            .values(topic_id=topic.id)
        )
    return topic


@persistence_operation
async def save_topics(session: AsyncSession, drafts: Iterable[TopicDraft]) -> List[TopicRecord]:
    """
    Persist a batch of topic drafts in one transaction.

    Member items move to their new topic and are removed from the ``item_ids``
    of the topic that owned them before, so no item belongs to two topics.
    """
    now = utcnow()
    topics = [await _add_topic(session, draft, now) for draft in drafts]
    await session.commit()
    logger.info(f"Saved {len(topics)} topics")
    return [_topic_record(topic) for topic in topics]


@persistence_operation
async def get_topic(session: AsyncSession, topic_id: int) -> Optional[TopicRecord]:
    """Get a topic by id."""
    topic = await session.get(Topic, topic_id, populate_existing=True)
    return _topic_record(topic) if topic is not None else None


@persistence_operation
async def list_topics(session: AsyncSession, category: Optional[str] = None,
                      since: Optional[datetime] = None,
                      limit: Optional[int] = None) -> List[TopicRecord]:
    """Topics, newest first, optionally filtered by category and creation time."""
    stmt = select(Topic).order_by(desc(Topic.created_at), desc(Topic.id))
    if category:
        stmt = stmt.where(Topic.category == category.strip().lower())
    if since is not None:
        stmt = stmt.where(Topic.created_at >= since)
    if limit:
        stmt = stmt.limit(limit)

    result = await session.execute(stmt)
    return [_topic_record(topic) for topic in result.scalars().all()]


async def _bump_counters(session: AsyncSession, topic_id: int,
                         up_delta: int, down_delta: int) -> bool:
    # Single UPDATE so concurrent writers never lose each other's increments
    stmt = (
        update(Topic)
        .where(Topic.id == topic_id)
        .values(
            up_count=Topic.up_count + up_delta,
            down_count=Topic.down_count + down_delta,
            updated_at=utcnow(),
        )
    )
    result = await session.execute(stmt)
    return result.rowcount > 0


# =============================================================================
# USER PREFERENCES
# =============================================================================

@persistence_operation
async def get_or_create_preferences(session: AsyncSession, viewer_id: str,
                                    default_categories: Optional[Sequence[str]] = None) -> PreferenceState:
    """Load a viewer's preference state, creating it with defaults on first use."""
    row = await session.get(UserPreference, viewer_id, populate_existing=True)
    if row is None:
        row = UserPreference(
            viewer_id=viewer_id,
            categories=list(default_categories or []),
            sources=[],
            default_timeframe="24h",
            topic_scores={},
            topic_votes={},
            category_affinity={},
        )
        session.add(row)
        await session.commit()
        await session.refresh(row)
        logger.info(f"Created default preferences for viewer {viewer_id}")
    return _preference_state(row)


async def _write_preferences(session: AsyncSession, state: PreferenceState) -> None:
    row = await session.get(UserPreference, state.viewer_id)
    if row is None:
        row = UserPreference(viewer_id=state.viewer_id)
        session.add(row)

    # Fresh containers so SQLAlchemy detects the JSON changes
    row.categories = list(state.categories)
    row.sources = list(state.sources)
    row.default_timeframe = state.default_timeframe
    row.topic_scores = {str(k): v for k, v in state.topic_scores.items()}
    row.topic_votes = {str(k): v.value for k, v in state.topic_votes.items()}
    row.category_affinity = dict(state.category_affinity)
    await session.flush()


@persistence_operation
async def save_preferences(session: AsyncSession, state: PreferenceState) -> None:
    """Write a viewer's full preference state."""
    await _write_preferences(session, state)
    await session.commit()


@persistence_operation
async def record_vote(session: AsyncSession, state: PreferenceState, topic_id: int,
                      up_delta: int = 0, down_delta: int = 0) -> bool:
    """
    Apply a vote's counter deltas and the viewer's new state in one transaction.

    Either both the topic counters and the stored vote change, or neither
    does, so a retried vote is always measured against what was committed.

    Args:
        session: Database session
        state: Viewer state that already includes the new vote
        topic_id: Topic voted on
        up_delta: Change to the topic's up counter
        down_delta: Change to the topic's down counter

    Returns:
        False if the topic does not exist; nothing is written then
    """
    if up_delta or down_delta:
        if not await _bump_counters(session, topic_id, up_delta, down_delta):
            await session.rollback()
            return False
    await _write_preferences(session, state)
    await session.commit()
    return True


@persistence_operation
async def update_preference_settings(session: AsyncSession, viewer_id: str,
                                     categories: Optional[Sequence[str]] = None,
                                     sources: Optional[Sequence[str]] = None,
                                     default_timeframe: Optional[str] = None) -> PreferenceState:
    """Explicit preference edit; feedback history is left untouched."""
    state = await get_or_create_preferences(session, viewer_id)
    if categories is not None:
        state.categories = [c.strip().lower() for c in categories if c and c.strip()]
    if sources is not None:
        state.sources = [s.strip() for s in sources if s and s.strip()]
    if default_timeframe is not None:
        state.default_timeframe = default_timeframe
    await save_preferences(session, state)
    return state
