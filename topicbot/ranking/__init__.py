"""Per-viewer ranking and feedback."""

from .feedback import FeedbackStore, FeedbackUpdater, SqlFeedbackStore, vote_delta
from .rank import RankingEngine, TopicScore

__all__ = [
    "FeedbackStore",
    "FeedbackUpdater",
    "SqlFeedbackStore",
    "vote_delta",
    "RankingEngine",
    "TopicScore",
]
