"""Plain domain objects passed between the engines.

The clustering, ranking and feedback code works on these dataclasses and never
on ORM rows, so the engines can be exercised without a database.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


class Vote(str, Enum):
    """Direction of a viewer's feedback on a topic."""
    UP = "up"
    DOWN = "down"

    @property
    def sign(self) -> int:
        return 1 if self is Vote.UP else -1


@dataclass
class NewsItemRecord:
    """A fetched news item, possibly embedded and assigned to a topic."""
    id: int
    url: str
    title: str
    published_at: datetime
    body: str = ""
    source: Optional[str] = None
    embedding: Optional[List[float]] = None
    topic_id: Optional[int] = None


@dataclass
class TopicDraft:
    """A categorized cluster that has not been persisted yet."""
    title: str
    category: str
    item_ids: List[int]
    summary: str = ""
    tags: List[str] = field(default_factory=list)
    degraded: bool = False
    degraded_reason: Optional[str] = None


@dataclass
class TopicRecord:
    """A persisted topic as seen by the ranking engine."""
    id: int
    title: str
    category: str
    created_at: datetime
    summary: str = ""
    tags: List[str] = field(default_factory=list)
    item_ids: List[int] = field(default_factory=list)
    updated_at: Optional[datetime] = None
    up_count: int = 0
    down_count: int = 0

    @property
    def member_count(self) -> int:
        return len(self.item_ids)


@dataclass
class PreferenceState:
    """Per-viewer preferences and feedback history."""
    viewer_id: str
    categories: List[str] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)
    default_timeframe: str = "24h"
    topic_scores: Dict[int, float] = field(default_factory=dict)
    topic_votes: Dict[int, Vote] = field(default_factory=dict)
    category_affinity: Dict[str, float] = field(default_factory=dict)

    @property
    def liked_topics(self) -> List[int]:
        return sorted(tid for tid, vote in self.topic_votes.items() if vote is Vote.UP)

    @property
    def disliked_topics(self) -> List[int]:
        return sorted(tid for tid, vote in self.topic_votes.items() if vote is Vote.DOWN)
