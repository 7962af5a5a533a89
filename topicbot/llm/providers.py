"""
Category/summary generator interface and implementations.

A generator receives the text of one cluster and proposes a title, summary,
tags and a category from the allowed set. The mock generator is a
deterministic keyword heuristic for development and tests; the Perplexity
generator calls the chat-completions API.
"""

import json
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from topicbot.core.errors import GeneratorTimeout, GeneratorUnavailable
from topicbot.core.logging import get_logger
from topicbot.core.settings import Settings, get_settings
from topicbot.core.utils import frequent_words, truncate
from .models import MAX_TAGS, GeneratedTopic

logger = get_logger(__name__)

MAX_TITLE_LENGTH = 80

CATEGORY_KEYWORDS = {
    'politics': ['election', 'president', 'government', 'senate', 'congress', 'minister',
                 'vote', 'policy', 'democrat', 'republican'],
    'sports': ['game', 'match', 'team', 'player', 'score', 'championship', 'league',
               'tournament', 'win', 'coach'],
    'technology': ['tech', 'ai', 'software', 'app', 'google', 'apple', 'microsoft',
                   'startup', 'digital', 'computer', 'robot'],
    'business': ['market', 'stock', 'company', 'business', 'ceo', 'profit', 'revenue',
                 'investment', 'trade', 'economy'],
    'entertainment': ['movie', 'film', 'music', 'celebrity', 'actor', 'singer', 'concert',
                      'album', 'tv', 'show'],
    'science': ['research', 'study', 'scientist', 'discovery', 'space', 'nasa', 'climate',
                'medical', 'health'],
    'world': ['international', 'global', 'country', 'nation', 'foreign', 'diplomacy',
              'war', 'peace'],
}

TITLE_LINE = re.compile(r'^Title:\s*(.*)$', re.MULTILINE)
DESCRIPTION_LINE = re.compile(r'^Description:\s*(.*)$', re.MULTILINE)


def format_cluster_text(documents: Sequence[Dict[str, str]]) -> str:
    """
    Render member items as the text block sent to a generator.

    Args:
        documents: Dicts with ``title`` and ``body``, most recent first
    """
    blocks = []
    for doc in documents:
        lines = [f"Title: {doc.get('title') or ''}".rstrip()]
        if doc.get('body'):
            lines.append(f"Description: {doc['body']}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


class TopicGenerator(ABC):
    """Abstract base class for category/summary generators."""

    @abstractmethod
    async def categorize(self, text: str, categories: Sequence[str]) -> GeneratedTopic:
        """
        Propose descriptive fields for one cluster.

        Args:
            text: Member items rendered by ``format_cluster_text``
            categories: Allowed category labels

        Returns:
            GeneratedTopic (its category may still be outside ``categories``)

        Raises:
            GeneratorUnavailable: the generator failed or answered unusably
            GeneratorTimeout: the generator did not answer in time
        """
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Check generator health and availability."""
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Generator identification name."""
        pass

    async def aclose(self) -> None:
        """Release network resources, if any."""


class MockTopicGenerator(TopicGenerator):
    """
    Keyword-heuristic generator.

    The title comes from the most recent item, the summary from its
    description, the category from the first allowed category whose keywords
    appear in the text, and tags from the category plus frequent title words.
    """

    def __init__(self):
        self.call_count = 0

    @property
    def provider_name(self) -> str:
        return "mock"

    async def health_check(self) -> Dict[str, Any]:
        """Always healthy for the mock generator."""
        return {
            "status": "healthy",
            "provider": self.provider_name,
            "calls_made": self.call_count,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def categorize(self, text: str, categories: Sequence[str]) -> GeneratedTopic:
        self.call_count += 1
        titles = [t.strip() for t in TITLE_LINE.findall(text or "") if t.strip()]
        descriptions = [d.strip() for d in DESCRIPTION_LINE.findall(text or "") if d.strip()]
        if not titles:
            raise GeneratorUnavailable("mock generator received no titles")

        category = self.guess_category(text, categories)
        return GeneratedTopic(
            title=truncate(titles[0], MAX_TITLE_LENGTH),
            summary=descriptions[0] if descriptions else titles[0],
            tags=self.extract_tags(titles, category),
            category=category,
        )

    @staticmethod
    def guess_category(text: str, categories: Sequence[str]) -> str:
        words = set(re.findall(r"[a-z0-9]+", (text or "").lower()))
        for category in categories:
            keywords = CATEGORY_KEYWORDS.get(category.lower(), [])
            if any(keyword in words for keyword in keywords):
                return category.lower()
        return "general"

    @staticmethod
    def extract_tags(titles: Sequence[str], category: str) -> List[str]:
        tags = [category]
        for word in frequent_words(titles, limit=MAX_TAGS):
            if word not in tags:
                tags.append(word)
        return tags[:MAX_TAGS]


SYSTEM_PROMPT = (
    "You are a news analysis assistant. Describe the single story covered by the "
    "given news items. Return valid JSON only, no explanations."
)

USER_PROMPT = """Categories: {categories}

News items:
{text}

Return a JSON object:
{{"title": "Topic title", "summary": "1-2 sentence summary", "tags": ["up to 5 short tags"], "category": "one of the categories"}}

Return ONLY valid JSON."""

JSON_OBJECT = re.compile(r'\{[\s\S]*\}')


class PerplexityTopicGenerator(TopicGenerator):
    """Generator backed by the Perplexity chat-completions API."""

    def __init__(self, api_key: Optional[str] = None, model: str = "sonar",
                 base_url: str = "https://api.perplexity.ai",
                 timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self.call_count = 0
        self.error_count = 0
        self.total_processing_time = 0.0
        self.last_error: Optional[str] = None

    @property
    def provider_name(self) -> str:
        return "perplexity"

    async def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy" if self.api_key else "unconfigured",
            "provider": self.provider_name,
            "model": self.model,
            "calls_made": self.call_count,
            "errors": self.error_count,
            "last_error": self.last_error,
            "avg_response_time": self.total_processing_time / max(self.call_count, 1),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def categorize(self, text: str, categories: Sequence[str]) -> GeneratedTopic:
        if not self.api_key:
            raise GeneratorUnavailable("PERPLEXITY_API_KEY not set")

        start_time = time.time()
        self.call_count += 1
        prompt = USER_PROMPT.format(categories=", ".join(categories), text=text)
        try:
            content = await self._call_api(prompt)
            return self.parse_response(content)
        except httpx.TimeoutException as e:
            self._record_error(f"timeout: {e}")
            raise GeneratorTimeout(f"Perplexity request timed out: {e}") from e
        except httpx.HTTPError as e:
            self._record_error(str(e))
            raise GeneratorUnavailable(f"Perplexity request failed: {e}") from e
        except GeneratorUnavailable as e:
            self._record_error(str(e))
            raise
        finally:
            self.total_processing_time += time.time() - start_time

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4.0),
        retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.TimeoutException, httpx.NetworkError)),
        reraise=True
    )
    async def _call_api(self, prompt: str) -> str:
        response = await self.client.post(
            "/chat/completions",
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                "temperature": 0.2,
                "max_tokens": 1024,
            },
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        response.raise_for_status()
        try:
            return response.json()["choices"][0]["message"]["content"].strip()
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise GeneratorUnavailable(f"Unexpected Perplexity response shape: {e}") from e

    @staticmethod
    def parse_response(content: str) -> GeneratedTopic:
        """Extract the JSON object from a model answer."""
        match = JSON_OBJECT.search(content or "")
        if not match:
            raise GeneratorUnavailable("Invalid JSON response from Perplexity")
        try:
            return GeneratedTopic.model_validate(json.loads(match.group(0)))
        except (json.JSONDecodeError, ValidationError) as e:
            raise GeneratorUnavailable(f"Unusable Perplexity answer: {e}") from e

    def _record_error(self, message: str) -> None:
        self.error_count += 1
        self.last_error = message
        logger.warning(f"Perplexity generator error: {message}")

    async def aclose(self) -> None:
        await self.client.aclose()


class GeneratorFactory:
    """Factory for creating generator instances."""

    _providers = {
        "mock": MockTopicGenerator,
        "perplexity": PerplexityTopicGenerator,
    }

    @classmethod
    def create(cls, mode: str = "mock", **config) -> TopicGenerator:
        """
        Create a generator instance.

        Args:
            mode: Type of generator ("mock", "perplexity")
            **config: Generator-specific configuration

        Returns:
            TopicGenerator instance
        """
        mode = (mode or "mock").strip().lower()
        if mode not in cls._providers:
            logger.warning(f"Unknown generator mode: {mode}, falling back to mock")
            mode = "mock"
        return cls._providers[mode](**config)

    @classmethod
    def from_settings(cls, settings: Settings = None) -> TopicGenerator:
        settings = settings or get_settings()
        mode = (settings.llm_mode or "mock").strip().lower()
        if mode == "perplexity":
            if not settings.perplexity_api_key:
                logger.warning("LLM_MODE=perplexity but PERPLEXITY_API_KEY is not set, using mock")
                return cls.create("mock")
            return cls.create(
                "perplexity",
                api_key=settings.perplexity_api_key,
                model=settings.perplexity_model,
                base_url=settings.perplexity_base_url,
                timeout=settings.generator_timeout_seconds,
            )
        return cls.create(mode)

    @classmethod
    def register_provider(cls, name: str, provider_class):
        """Register a new generator type."""
        cls._providers[name] = provider_class

    @classmethod
    def list_providers(cls) -> List[str]:
        """List available generator types."""
        return list(cls._providers.keys())
