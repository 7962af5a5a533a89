"""Error taxonomy for the topic pipeline.

Only ``PersistenceFailure`` aborts a processing run. Every other error is
caught at the component boundary, logged, and turned into a skipped item,
a degraded topic or a fallback path.
"""
from typing import Optional


class TopicBotError(Exception):
    """Base class for all topicbot errors."""


class SkippedInput(TopicBotError):
    """A news item was excluded from clustering (no or invalid embedding)."""

    def __init__(self, item_id: int, reason: str):
        super().__init__(f"item {item_id} skipped: {reason}")
        self.item_id = item_id
        self.reason = reason


class EmbeddingUnavailable(TopicBotError):
    """The embedding provider could not produce a vector."""


class IndexUnavailable(TopicBotError):
    """The vector similarity index is absent or failed; use the fallback path."""


class GeneratorUnavailable(TopicBotError):
    """The category/summary generator failed or returned an unusable answer."""


class GeneratorTimeout(GeneratorUnavailable):
    """The category/summary generator did not answer within the timeout."""


class CategorizationDegraded(TopicBotError):
    """A topic was materialized with default title/summary/category."""

    def __init__(self, reason: str, cause: Optional[BaseException] = None):
        super().__init__(reason)
        self.reason = reason
        self.cause = cause


class PersistenceFailure(TopicBotError):
    """A storage operation failed; the current run is aborted."""


class TopicNotFound(TopicBotError):
    """No topic exists with the requested id."""

    def __init__(self, topic_id: int):
        super().__init__(f"topic {topic_id} not found")
        self.topic_id = topic_id
