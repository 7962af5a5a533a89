"""Processing run orchestrator.

One run turns the news items of a timeframe into new topics:
1. Load: news items published inside the timeframe (optionally per source)
2. Embed: items still lacking an embedding, with bounded parallelism
3. Cluster: greedy seed-and-grow over the embedded candidate set
4. Categorize: one generator call per cluster, concurrently
5. Persist: new topics, with member items pointed at them

Only persistence failures abort a run.
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from topicbot.core import repositories
from topicbot.core.config import CategorizerConfig, ClusteringConfig
from topicbot.core.db import get_sessionmaker
from topicbot.core.errors import PersistenceFailure
from topicbot.core.logging import get_logger
from topicbot.core.settings import Settings, get_settings
from topicbot.core.time import DEFAULT_TIMEFRAME, TIMEFRAMES, parse_timeframe
from topicbot.embedding.provider import EmbeddingProvider, SentenceTransformerProvider, embed_missing
from topicbot.grouper.categorizer import TopicCategorizer
from topicbot.grouper.cluster import TopicClusterer
from topicbot.grouper.similarity import NearestNeighborsIndex, VectorIndex
from topicbot.llm.providers import GeneratorFactory, TopicGenerator

logger = get_logger(__name__)


@dataclass
class ProcessingReport:
    """Counters describing one processing run."""
    timeframe: str
    loaded: int = 0
    embedded: int = 0
    embedding_failures: int = 0
    skipped: int = 0
    clusters: int = 0
    unclustered: int = 0
    topics_created: int = 0
    degraded: int = 0
    used_fallback: bool = False
    runtime_seconds: float = 0.0
    topic_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TopicPipeline:
    """Wires the engines to the persistence layer for one processing run."""

    def __init__(self, session_factory, clustering_config: ClusteringConfig,
                 categorizer_config: CategorizerConfig, generator: TopicGenerator,
                 embedding_provider: Optional[EmbeddingProvider] = None,
                 index_factory: Optional[Callable[[], VectorIndex]] = None,
                 embedding_workers: int = 4):
        self.session_factory = session_factory
        self.clustering_config = clustering_config
        self.categorizer_config = categorizer_config
        self.generator = generator
        self.embedding_provider = embedding_provider
        self.index_factory = index_factory
        self.embedding_workers = embedding_workers

    async def run(self, timeframe: str = DEFAULT_TIMEFRAME,
                  source_ids: Optional[Sequence[int]] = None,
                  now: Optional[datetime] = None) -> ProcessingReport:
        """
        Process the news items of one timeframe into topics.

        Args:
            timeframe: "24h", "7d" or "30d" (unknown values mean 24h)
            source_ids: Restrict the run to these sources
            now: Reference time for the timeframe window

        Returns:
            ProcessingReport for the run

        Raises:
            PersistenceFailure: loading or saving failed; no topic of this run is kept
        """
        start_time = time.time()
        timeframe = (timeframe or "").strip().lower()
        if timeframe not in TIMEFRAMES:
            timeframe = DEFAULT_TIMEFRAME
        report = ProcessingReport(timeframe=timeframe)
        since = parse_timeframe(timeframe, now)

        logger.info(f"Starting processing run: timeframe={timeframe}, sources={list(source_ids or []) or 'all'}")

        try:
            async with self.session_factory() as session:
                # Step 1: Load candidate items
                items = await repositories.get_news_items_in_timeframe(session, since, source_ids)
                report.loaded = len(items)
                logger.info(f"Loaded {len(items)} news items since {since.isoformat()}")

                if not items:
                    report.runtime_seconds = time.time() - start_time
                    logger.warning("No news items in timeframe, nothing to process")
                    return report

                # Step 2: Embed items lacking an embedding
                if self.embedding_provider is not None:
                    vectors, failures = await embed_missing(
                        items, self.embedding_provider, self.embedding_workers
                    )
                    for item in items:
                        if item.id in vectors:
                            item.embedding = vectors[item.id]
                            await repositories.update_item_embedding(session, item.id, item.embedding)
                    report.embedded = len(vectors)
                    report.embedding_failures = len(failures)

                # Step 3: Cluster
                categorizer_config = await self._categorizer_config(session)
                index = self.index_factory() if self.index_factory else None
                clusterer = TopicClusterer(self.clustering_config, index=index)
                result = await asyncio.to_thread(clusterer.cluster, items)
                report.skipped = len(result.skipped)
                report.clusters = len(result.clusters)
                report.unclustered = len(result.unclustered)
                report.used_fallback = result.used_fallback

                # Step 4: Categorize
                by_id = {item.id: item for item in items}
                categorizer = TopicCategorizer(self.generator, categorizer_config)
                drafts = await categorizer.materialize_all(
                    [[by_id[item_id] for item_id in members] for members in result.clusters]
                )
                report.degraded = sum(1 for draft in drafts if draft.degraded)

                # Step 5: Persist
                topics = await repositories.save_topics(session, drafts)
                report.topics_created = len(topics)
                report.topic_ids = [topic.id for topic in topics]

        except PersistenceFailure as e:
            logger.error(f"Processing run aborted after {time.time() - start_time:.2f}s: {e}")
            raise

        report.runtime_seconds = time.time() - start_time
        logger.info(
            f"Processing run completed in {report.runtime_seconds:.2f}s: "
            f"{report.topics_created} topics from {report.loaded} items "
            f"({report.skipped} skipped, {report.degraded} degraded)"
        )
        return report

    async def _categorizer_config(self, session) -> CategorizerConfig:
        """Use the active category registry when it has entries."""
        categories = await repositories.get_active_categories(session)
        if not categories:
            return self.categorizer_config
        return self.categorizer_config.with_categories(categories)


async def run_processing(timeframe: str = DEFAULT_TIMEFRAME,
                         source_ids: Optional[Sequence[int]] = None,
                         settings: Settings = None,
                         session_factory=None,
                         generator: Optional[TopicGenerator] = None,
                         embedding_provider: Optional[EmbeddingProvider] = None) -> ProcessingReport:
    """
    Run one processing pass with components built from settings.

    Args:
        timeframe: "24h", "7d" or "30d"
        source_ids: Restrict the run to these sources
        settings: Settings to use instead of the global ones
        session_factory: Session factory to use instead of the application one
        generator: Generator to use instead of the configured one
        embedding_provider: Embedding provider to use instead of the configured one
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_sessionmaker()

    own_generator = generator is None
    generator = generator or GeneratorFactory.from_settings(settings)
    pipeline = TopicPipeline(
        session_factory=session_factory,
        clustering_config=ClusteringConfig.from_settings(settings),
        categorizer_config=CategorizerConfig.from_settings(settings),
        generator=generator,
        embedding_provider=embedding_provider or SentenceTransformerProvider.from_settings(settings),
        index_factory=NearestNeighborsIndex if settings.use_vector_index else None,
        embedding_workers=settings.embedding_workers,
    )
    try:
        return await pipeline.run(timeframe, source_ids)
    finally:
        if own_generator:
            await generator.aclose()
