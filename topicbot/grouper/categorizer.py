"""Turn clusters into topic drafts through the category/summary generator.

A generator failure, timeout or out-of-set category never aborts the run: the
topic is still produced with a heuristic title, an empty summary and the
default category, and the degradation is logged.
"""

import asyncio
from typing import List, Optional, Sequence

from topicbot.core.config import CategorizerConfig
from topicbot.core.entities import NewsItemRecord, TopicDraft
from topicbot.core.errors import CategorizationDegraded, GeneratorTimeout, GeneratorUnavailable
from topicbot.core.logging import get_logger
from topicbot.core.time import ensure_utc
from topicbot.core.utils import truncate
from topicbot.llm.models import MAX_TAGS, GeneratedTopic
from topicbot.llm.providers import MAX_TITLE_LENGTH, TopicGenerator, format_cluster_text

logger = get_logger(__name__)


def by_recency(items: Sequence[NewsItemRecord]) -> List[NewsItemRecord]:
    return sorted(items, key=lambda item: (-ensure_utc(item.published_at).timestamp(), item.id))


class TopicCategorizer:
    """Materializes one topic draft per cluster."""

    def __init__(self, generator: TopicGenerator, config: CategorizerConfig):
        self.generator = generator
        self.config = config

    def cluster_text(self, members: Sequence[NewsItemRecord]) -> str:
        """Generator input: the most recent members, cut to the character budget."""
        sample = members[:self.config.max_items]
        text = format_cluster_text([{"title": m.title, "body": m.body} for m in sample])
        return text[:self.config.max_chars]

    async def materialize(self, cluster: Sequence[NewsItemRecord]) -> TopicDraft:
        """
        Build a topic draft for one cluster.

        Args:
            cluster: Member news items (any order)

        Returns:
            TopicDraft with a category from the configured set
        """
        if not cluster:
            raise ValueError("Cannot materialize an empty cluster")
        members = by_recency(cluster)
        item_ids = [m.id for m in members]

        try:
            generated = await self._generate(members)
        except CategorizationDegraded as e:
            logger.warning(
                f"Categorization degraded for cluster of {len(members)} items "
                f"(newest item {members[0].id}): {e.reason}"
            )
            return self.fallback_draft(members, reason=e.reason)

        category = generated.category
        if category not in self.config.allowed:
            logger.warning(
                f"Generator returned category {category!r} outside the configured set, "
                f"using {self.config.default_category!r}"
            )
            category = self.config.default_category

        return TopicDraft(
            title=generated.title,
            summary=generated.summary,
            category=category,
            tags=list(generated.tags)[:MAX_TAGS],
            item_ids=item_ids,
        )

    async def _generate(self, members: Sequence[NewsItemRecord]) -> GeneratedTopic:
        text = self.cluster_text(members)
        try:
            return await asyncio.wait_for(
                self.generator.categorize(text, self.config.categories),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise CategorizationDegraded(
                f"generator timed out after {self.config.timeout_seconds}s",
                GeneratorTimeout(str(e)),
            ) from e
        except GeneratorUnavailable as e:
            raise CategorizationDegraded(f"generator unavailable: {e}", e) from e

    def fallback_draft(self, members: Sequence[NewsItemRecord],
                       reason: Optional[str] = None) -> TopicDraft:
        """Heuristic topic: newest item's title, empty summary, default category."""
        members = by_recency(members)
        return TopicDraft(
            title=truncate(members[0].title, MAX_TITLE_LENGTH) or "Untitled topic",
            summary="",
            category=self.config.default_category,
            tags=[],
            item_ids=[m.id for m in members],
            degraded=True,
            degraded_reason=reason,
        )

    async def materialize_all(self, clusters: Sequence[Sequence[NewsItemRecord]]) -> List[TopicDraft]:
        """
        Materialize clusters concurrently, at most ``workers`` generator calls at a time.

        A failure in one cluster never cancels its siblings; any unexpected
        error is turned into a degraded draft for that cluster alone.
        """
        semaphore = asyncio.Semaphore(self.config.workers)

        async def run(cluster):
            async with semaphore:
                return await self.materialize(cluster)

        results = await asyncio.gather(*(run(c) for c in clusters), return_exceptions=True)

        drafts = []
        for cluster, result in zip(clusters, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(f"Unexpected categorization error for cluster of {len(cluster)} items: {result}")
                drafts.append(self.fallback_draft(cluster, reason=f"unexpected error: {result}"))
            else:
                drafts.append(result)

        degraded = sum(1 for d in drafts if d.degraded)
        logger.info(f"Materialized {len(drafts)} topics ({degraded} degraded)")
        return drafts
