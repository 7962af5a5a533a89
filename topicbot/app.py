"""TopicBot FastAPI application."""

from functools import lru_cache
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator

from topicbot import __version__
from topicbot.core import repositories
from topicbot.core.config import FeedbackConfig, RankingConfig
from topicbot.core.db import get_sessionmaker
from topicbot.core.entities import PreferenceState, Vote
from topicbot.core.errors import PersistenceFailure, TopicNotFound
from topicbot.core.logging import get_logger, setup_logging
from topicbot.core.settings import settings
from topicbot.core.time import TIMEFRAMES, parse_timeframe
from topicbot.embedding.provider import EmbeddingProvider, SentenceTransformerProvider
from topicbot.grouper.pipeline import run_processing
from topicbot.llm.providers import GeneratorFactory, TopicGenerator
from topicbot.ranking.feedback import FeedbackUpdater, SqlFeedbackStore
from topicbot.ranking.rank import RankingEngine

# Setup logging
setup_logging("topicbot")
logger = get_logger(__name__)

app = FastAPI(title="TopicBot", version=__version__, description="News topic clustering and ranking API")


class ProcessRequest(BaseModel):
    """Request model for a processing run."""
    timeframe: str = Field(default="24h", description="24h, 7d or 30d")
    source_ids: Optional[List[int]] = Field(default=None, description="Restrict to these sources")


class ProcessResponse(BaseModel):
    """Response model for a processing run."""
    status: str
    message: str
    report: Dict[str, Any]


class RankedTopic(BaseModel):
    id: int
    title: str
    summary: str
    category: str
    tags: List[str]
    item_ids: List[int]
    up_count: int
    down_count: int
    created_at: str
    score: Dict[str, float]


class FeedbackRequest(BaseModel):
    viewer_id: str = Field(..., min_length=1, max_length=64)
    direction: Vote


class FeedbackResponse(BaseModel):
    topic_id: int
    direction: Vote
    previous: Optional[Vote]
    changed: bool
    up_count: int
    down_count: int
    topic_score: float
    category: str
    category_affinity: float


class PreferencesUpdate(BaseModel):
    """Explicit preference edit; omitted fields are left unchanged."""
    categories: Optional[List[str]] = None
    sources: Optional[List[str]] = None
    default_timeframe: Optional[str] = None

    @field_validator('default_timeframe')
    @classmethod
    def validate_timeframe(cls, v):
        if v is not None and v not in TIMEFRAMES:
            raise ValueError(f"default_timeframe must be one of {sorted(TIMEFRAMES)}")
        return v


class PreferencesResponse(BaseModel):
    viewer_id: str
    categories: List[str]
    sources: List[str]
    default_timeframe: str
    liked_topics: List[int]
    disliked_topics: List[int]
    topic_scores: Dict[int, float]
    category_affinity: Dict[str, float]

    @classmethod
    def from_state(cls, state: PreferenceState) -> "PreferencesResponse":
        return cls(
            viewer_id=state.viewer_id,
            categories=state.categories,
            sources=state.sources,
            default_timeframe=state.default_timeframe,
            liked_topics=state.liked_topics,
            disliked_topics=state.disliked_topics,
            topic_scores=state.topic_scores,
            category_affinity=state.category_affinity,
        )


def get_session_factory():
    """Session factory dependency (overridden in tests)."""
    return get_sessionmaker()


@lru_cache()
def get_generator() -> TopicGenerator:
    return GeneratorFactory.from_settings(settings)


@lru_cache()
def get_embedding_provider() -> EmbeddingProvider:
    return SentenceTransformerProvider.from_settings(settings)


def get_ranking_engine() -> RankingEngine:
    return RankingEngine(RankingConfig.from_settings(settings))


@lru_cache()
def _feedback_updater_for(session_factory) -> FeedbackUpdater:
    # One updater per session factory so its per-topic and per-viewer locks are shared
    return FeedbackUpdater(FeedbackConfig.from_settings(settings), SqlFeedbackStore(session_factory))


def get_feedback_updater(session_factory=Depends(get_session_factory)) -> FeedbackUpdater:
    return _feedback_updater_for(session_factory)


@app.get("/healthz")
async def health_check(generator: TopicGenerator = Depends(get_generator),
                       embedding_provider: EmbeddingProvider = Depends(get_embedding_provider)):
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "topicbot",
        "generator": await generator.health_check(),
        "embedding": embedding_provider.health_check(),
    }


@app.post("/process", response_model=ProcessResponse)
async def process(request: ProcessRequest,
                  session_factory=Depends(get_session_factory),
                  generator: TopicGenerator = Depends(get_generator),
                  embedding_provider: EmbeddingProvider = Depends(get_embedding_provider)):
    """Cluster the timeframe's news items into new topics."""
    try:
        report = await run_processing(
            timeframe=request.timeframe,
            source_ids=request.source_ids,
            settings=settings,
            session_factory=session_factory,
            generator=generator,
            embedding_provider=embedding_provider,
        )
    except PersistenceFailure as e:
        logger.error(f"Processing run failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Processing run failed: {e}"
        )

    return ProcessResponse(
        status="success",
        message=f"Created {report.topics_created} topics from {report.loaded} news items",
        report=report.to_dict(),
    )


@app.get("/topics", response_model=List[RankedTopic])
async def ranked_topics(viewer_id: Optional[str] = Query(None, max_length=64),
                        category: Optional[str] = None,
                        timeframe: Optional[str] = None,
                        limit: Optional[int] = Query(None, ge=1, le=100),
                        session_factory=Depends(get_session_factory),
                        engine: RankingEngine = Depends(get_ranking_engine)):
    """Topics ranked for a viewer (or neutrally, without a viewer)."""
    try:
        async with session_factory() as session:
            viewer = None
            if viewer_id:
                viewer = await repositories.get_or_create_preferences(session, viewer_id)
            since = parse_timeframe(timeframe or (viewer.default_timeframe if viewer else None))
            topics = await repositories.list_topics(session, category=category, since=since)
    except PersistenceFailure as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    scored = engine.rank_scored(topics, viewer, category=category, limit=limit)
    return [
        RankedTopic(
            id=s.topic.id,
            title=s.topic.title,
            summary=s.topic.summary,
            category=s.topic.category,
            tags=s.topic.tags,
            item_ids=s.topic.item_ids,
            up_count=s.topic.up_count,
            down_count=s.topic.down_count,
            created_at=s.topic.created_at.isoformat(),
            score=s.to_dict(),
        )
        for s in scored
    ]


@app.post("/topics/{topic_id}/feedback", response_model=FeedbackResponse)
async def topic_feedback(topic_id: int, request: FeedbackRequest,
                         updater: FeedbackUpdater = Depends(get_feedback_updater)):
    """Record a viewer's up/down vote on a topic."""
    try:
        result = await updater.apply_feedback(request.viewer_id, topic_id, request.direction)
    except TopicNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Topic {topic_id} not found")
    except PersistenceFailure as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return FeedbackResponse(
        topic_id=result.topic_id,
        direction=result.direction,
        previous=result.previous,
        changed=result.changed,
        up_count=result.up_count,
        down_count=result.down_count,
        topic_score=result.topic_score,
        category=result.category,
        category_affinity=result.category_affinity,
    )


@app.get("/preferences/{viewer_id}", response_model=PreferencesResponse)
async def get_preferences(viewer_id: str, session_factory=Depends(get_session_factory)):
    try:
        async with session_factory() as session:
            state = await repositories.get_or_create_preferences(session, viewer_id)
    except PersistenceFailure as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return PreferencesResponse.from_state(state)


@app.put("/preferences/{viewer_id}", response_model=PreferencesResponse)
async def update_preferences(viewer_id: str, request: PreferencesUpdate,
                             session_factory=Depends(get_session_factory)):
    try:
        async with session_factory() as session:
            state = await repositories.update_preference_settings(
                session,
                viewer_id,
                categories=request.categories,
                sources=request.sources,
                default_timeframe=request.default_timeframe,
            )
    except PersistenceFailure as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return PreferencesResponse.from_state(state)


@app.on_event("shutdown")
async def shutdown_event():
    """Shutdown event handler."""
    logger.info("Shutting down topicbot service")
    await get_generator().aclose()


if __name__ == "__main__":
    logger.info("Starting topicbot service via uvicorn")
    uvicorn.run(
        "topicbot.app:app",
        host=settings.service_host,
        port=settings.service_port or 8000,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
