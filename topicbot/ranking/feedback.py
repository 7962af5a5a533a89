"""Apply viewer likes/dislikes to topic counters and viewer preferences.

The viewer's last vote per topic is stored, and every new vote is applied as a
delta relative to it: switching from up to down removes the earlier up
instead of counting both. Repeating the current vote changes nothing.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Union

from topicbot.core import repositories
from topicbot.core.config import FeedbackConfig
from topicbot.core.entities import PreferenceState, TopicRecord, Vote
from topicbot.core.errors import TopicNotFound
from topicbot.core.locks import KeyedLocks
from topicbot.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class VoteDelta:
    """Change implied by moving from a previous vote to a new one."""
    step: int  # new sign minus previous sign, in [-2, 2]
    up_delta: int
    down_delta: int


def vote_delta(previous: Optional[Vote], direction: Vote) -> VoteDelta:
    """
    Delta between the viewer's stored vote and a new one.

    >>> vote_delta(Vote.UP, Vote.DOWN)
    VoteDelta(step=-2, up_delta=-1, down_delta=1)
    """
    if previous is direction:
        return VoteDelta(0, 0, 0)
    step = direction.sign - (previous.sign if previous is not None else 0)
    up_delta = int(direction is Vote.UP) - int(previous is Vote.UP)
    down_delta = int(direction is Vote.DOWN) - int(previous is Vote.DOWN)
    return VoteDelta(step, up_delta, down_delta)


@dataclass
class FeedbackResult:
    viewer_id: str
    topic_id: int
    direction: Vote
    previous: Optional[Vote]
    changed: bool
    topic_score: float
    category: str
    category_affinity: float
    up_count: int
    down_count: int


class FeedbackStore(ABC):
    """Storage used by the feedback updater."""

    @abstractmethod
    async def get_topic(self, topic_id: int) -> Optional[TopicRecord]:
        pass

    @abstractmethod
    async def load_preferences(self, viewer_id: str) -> PreferenceState:
        pass

    @abstractmethod
    async def record_vote(self, state: PreferenceState, topic_id: int,
                          up_delta: int, down_delta: int) -> bool:
        """
        Atomically add the deltas to the topic counters and store ``state``.

        Concurrent counter updates must not be lost, and a failure must leave
        both the counters and the stored state unchanged. Returns False if
        the topic no longer exists.
        """
        pass


class SqlFeedbackStore(FeedbackStore):
    """Feedback store backed by the repository functions, one session per call."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def get_topic(self, topic_id: int) -> Optional[TopicRecord]:
        async with self.session_factory() as session:
            return await repositories.get_topic(session, topic_id)

    async def load_preferences(self, viewer_id: str) -> PreferenceState:
        async with self.session_factory() as session:
            return await repositories.get_or_create_preferences(session, viewer_id)

    async def record_vote(self, state: PreferenceState, topic_id: int,
                          up_delta: int, down_delta: int) -> bool:
        async with self.session_factory() as session:
            return await repositories.record_vote(session, state, topic_id, up_delta, down_delta)


class FeedbackUpdater:
    """
    Applies feedback signals.

    Viewer state is serialized per viewer and counter updates per topic, so
    different viewers voting on different topics never wait on each other.
    """

    def __init__(self, config: FeedbackConfig, store: FeedbackStore):
        self.config = config
        self.store = store
        self._viewer_locks = KeyedLocks()
        self._topic_locks = KeyedLocks()

    async def apply_feedback(self, viewer_id: str, topic_id: int,
                             direction: Union[Vote, str]) -> FeedbackResult:
        """
        Record a viewer's up/down vote on a topic.

        Args:
            viewer_id: Voting viewer
            topic_id: Topic voted on
            direction: "up" or "down"

        Returns:
            FeedbackResult with the viewer's new state for this topic

        Raises:
            TopicNotFound: no topic with this id
            ValueError: direction is neither "up" nor "down"
            PersistenceFailure: the vote could not be stored; nothing changed
        """
        direction = Vote(direction)
        topic = await self.store.get_topic(topic_id)
        if topic is None:
            raise TopicNotFound(topic_id)

        async with self._viewer_locks.hold(viewer_id):
            state = await self.store.load_preferences(viewer_id)
            previous = state.topic_votes.get(topic_id)
            delta = vote_delta(previous, direction)

            if delta.step == 0:
                logger.debug(f"Viewer {viewer_id} repeated {direction.value} on topic {topic_id}")
            else:
                state.topic_scores[topic_id] = (
                    state.topic_scores.get(topic_id, 0.0) + delta.step * self.config.score_step
                )
                affinity = state.category_affinity.get(topic.category, 0.0)
                state.category_affinity[topic.category] = self.config.clamp_affinity(
                    affinity + delta.step * self.config.affinity_step
                )
                state.topic_votes[topic_id] = direction

                async with self._topic_locks.hold(topic_id):
                    recorded = await self.store.record_vote(
                        state, topic_id, delta.up_delta, delta.down_delta,
                    )
                if not recorded:
                    raise TopicNotFound(topic_id)
                logger.info(
                    f"Viewer {viewer_id} voted {direction.value} on topic {topic_id} "
                    f"(previous={previous.value if previous else None})"
                )

        refreshed = await self.store.get_topic(topic_id) or topic
        return FeedbackResult(
            viewer_id=viewer_id,
            topic_id=topic_id,
            direction=direction,
            previous=previous,
            changed=delta.step != 0,
            topic_score=state.topic_scores.get(topic_id, 0.0),
            category=topic.category,
            category_affinity=state.category_affinity.get(topic.category, 0.0),
            up_count=refreshed.up_count,
            down_count=refreshed.down_count,
        )
