"""Per-viewer topic ranking.

    discussion = log(1 + member_count) + up_count - down_count
    recency    = exp(-age_hours / half_life_hours)
    preference = 1 + clamp(category_affinity[category])
    feedback   = topic_scores[topic_id]
    final      = (discussion * w1 + recency * w2) * preference + feedback * w3

Ranking is pure: it reads topics and viewer state and never mutates them.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from topicbot.core.config import RankingConfig, clamp
from topicbot.core.entities import PreferenceState, TopicRecord
from topicbot.core.logging import get_logger
from topicbot.core.time import ensure_utc, hours_between, utcnow

logger = get_logger(__name__)


@dataclass
class TopicScore:
    """A topic together with the components of its score for one viewer."""
    topic: TopicRecord
    discussion_score: float
    recency_score: float
    preference_multiplier: float
    feedback_adjustment: float
    final_score: float
    age_hours: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "discussion_score": round(self.discussion_score, 4),
            "recency_score": round(self.recency_score, 4),
            "preference_multiplier": round(self.preference_multiplier, 4),
            "feedback_adjustment": round(self.feedback_adjustment, 4),
            "final_score": round(self.final_score, 4),
            "age_hours": round(self.age_hours, 2),
        }


class RankingEngine:
    """Orders topics for a viewer by discussion, recency and preference."""

    def __init__(self, config: RankingConfig):
        self.config = config

    def score(self, topic: TopicRecord, viewer: Optional[PreferenceState] = None,
              now: Optional[datetime] = None) -> TopicScore:
        """Score one topic for one viewer (an absent viewer is neutral)."""
        now = ensure_utc(now) or utcnow()
        config = self.config

        discussion = math.log1p(topic.member_count) + topic.up_count - topic.down_count
        age_hours = hours_between(topic.created_at, now)
        recency = math.exp(-age_hours / config.half_life_hours)

        affinity = 0.0
        feedback = 0.0
        if viewer is not None:
            affinity = viewer.category_affinity.get(topic.category, 0.0)
            feedback = viewer.topic_scores.get(topic.id, 0.0)
        preference = 1.0 + clamp(affinity, config.affinity_min, config.affinity_max)

        final = (
            (discussion * config.discussion_weight + recency * config.recency_weight) * preference
            + feedback * config.feedback_weight
        )
        return TopicScore(
            topic=topic,
            discussion_score=discussion,
            recency_score=recency,
            preference_multiplier=preference,
            feedback_adjustment=feedback,
            final_score=final,
            age_hours=age_hours,
        )

    def rank_scored(self, topics: Iterable[TopicRecord], viewer: Optional[PreferenceState] = None,
                    category: Optional[str] = None, limit: Optional[int] = None,
                    now: Optional[datetime] = None) -> List[TopicScore]:
        """
        Score, filter and order topics for a viewer.

        Args:
            topics: Candidate topics
            viewer: Viewer preference state, or None for a neutral ranking
            category: Keep only topics of this category
            limit: Maximum number of results (defaults to the configured limit)
            now: Reference time for recency

        Returns:
            Scores ordered by final score, then newer topic, then lower id
        """
        now = ensure_utc(now) or utcnow()
        limit = self.config.default_limit if limit is None else limit
        if limit <= 0:
            return []

        wanted = category.strip().lower() if category else None
        scored = [
            self.score(topic, viewer, now)
            for topic in topics
            if wanted is None or topic.category == wanted
        ]
        scored.sort(key=lambda s: (
            -s.final_score,
            -ensure_utc(s.topic.created_at).timestamp(),
            s.topic.id,
        ))
        return scored[:limit]

    def rank(self, topics: Iterable[TopicRecord], viewer: Optional[PreferenceState] = None,
             category: Optional[str] = None, limit: Optional[int] = None,
             now: Optional[datetime] = None) -> List[TopicRecord]:
        """Ordered topics for a viewer; see ``rank_scored``."""
        return [s.topic for s in self.rank_scored(topics, viewer, category, limit, now)]
