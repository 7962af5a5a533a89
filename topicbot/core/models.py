"""Database models for TopicBot."""
from sqlalchemy import (
    BigInteger, Boolean, DateTime, ForeignKey, Integer, JSON, String, Text,
)
from sqlalchemy.orm import mapped_column

from .db import Base
from .time import utcnow

# BIGINT primary keys do not autoincrement on SQLite
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


class Source(Base):
    """News sources table."""
    __tablename__ = "sources"

    id = mapped_column(BigIntPK, primary_key=True)
    name = mapped_column(String(200), nullable=False)
    type = mapped_column(String(32), nullable=False, default="rss")  # rss | web | x | instagram
    url = mapped_column(String(1000), unique=True, nullable=False)
    active = mapped_column(Boolean, default=True, nullable=False)


class Category(Base):
    """Admin-managed category registry; topics are labelled with active names."""
    __tablename__ = "categories"

    id = mapped_column(BigIntPK, primary_key=True)
    name = mapped_column(String(64), unique=True, nullable=False)
    is_active = mapped_column(Boolean, default=True, nullable=False)
    sort_order = mapped_column(Integer, default=0, nullable=False)


class NewsItem(Base):
    """Fetched news items, embedded once and assigned to at most one topic."""
    __tablename__ = "news_items"

    id = mapped_column(BigIntPK, primary_key=True)
    source_id = mapped_column(ForeignKey("sources.id"), index=True, nullable=True)
    source_name = mapped_column(String(200), nullable=True)
    title = mapped_column(String(800), nullable=False)
    body = mapped_column(Text, nullable=True)
    url = mapped_column(String(1500), nullable=False)
    url_sha1 = mapped_column(String(40), unique=True, nullable=False, index=True)
    published_at = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    fetched_at = mapped_column(DateTime(timezone=True), default=utcnow)
    embedding = mapped_column(JSON(none_as_null=True), nullable=True)  # list[float], dimension D
    embedded_at = mapped_column(DateTime(timezone=True), nullable=True)
    topic_id = mapped_column(ForeignKey("topics.id"), index=True, nullable=True)


class Topic(Base):
    """Topics materialized from one cluster of news items."""
    __tablename__ = "topics"

    id = mapped_column(BigIntPK, primary_key=True)
    title = mapped_column(String(500), nullable=False)
    summary = mapped_column(Text, nullable=False, default="")
    category = mapped_column(String(64), nullable=False, index=True)
    tags = mapped_column(JSON, nullable=False, default=list)
    item_ids = mapped_column(JSON, nullable=False, default=list)  # most recent first
    up_count = mapped_column(Integer, nullable=False, default=0)
    down_count = mapped_column(Integer, nullable=False, default=0)
    degraded = mapped_column(Boolean, nullable=False, default=False)
    created_at = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class UserPreference(Base):
    """Per-viewer preference and feedback state."""
    __tablename__ = "user_preferences"

    viewer_id = mapped_column(String(64), primary_key=True)
    categories = mapped_column(JSON, nullable=False, default=list)
    sources = mapped_column(JSON, nullable=False, default=list)
    default_timeframe = mapped_column(String(8), nullable=False, default="24h")
    topic_scores = mapped_column(JSON, nullable=False, default=dict)  # {topic_id: score}
    topic_votes = mapped_column(JSON, nullable=False, default=dict)  # {topic_id: "up"|"down"}
    category_affinity = mapped_column(JSON, nullable=False, default=dict)  # {category: affinity}
    created_at = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
