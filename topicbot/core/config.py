"""Explicit per-component configuration objects.

Each engine receives one of these in its constructor instead of reading the
global settings, so tests can run the engines with arbitrary parameters.
"""
from dataclasses import dataclass, field
from typing import FrozenSet, Tuple

from .settings import Settings, get_settings


def clamp(value: float, lower: float, upper: float) -> float:
    """Clamp ``value`` into ``[lower, upper]``."""
    return max(lower, min(upper, value))


@dataclass(frozen=True)
class ClusteringConfig:
    """Similarity threshold and cluster size bounds."""
    threshold: float = 0.65
    min_size: int = 1
    max_size: int = 20
    candidate_limit: int = 50
    dimension: int = 384

    def __post_init__(self):
        if not -1.0 <= self.threshold <= 1.0:
            raise ValueError(f"threshold must be within [-1, 1], got {self.threshold}")
        if self.min_size < 1:
            raise ValueError("min_size must be at least 1")
        if self.max_size < self.min_size:
            raise ValueError(f"max_size ({self.max_size}) must be >= min_size ({self.min_size})")
        if self.candidate_limit < 1:
            raise ValueError("candidate_limit must be at least 1")
        if self.dimension < 1:
            raise ValueError("dimension must be at least 1")

    @classmethod
    def from_settings(cls, settings: Settings = None) -> "ClusteringConfig":
        settings = settings or get_settings()
        return cls(
            threshold=settings.clustering_threshold,
            min_size=settings.min_cluster_size,
            max_size=settings.max_cluster_size,
            candidate_limit=settings.clustering_candidate_limit,
            dimension=settings.embedding_dimension,
        )


@dataclass(frozen=True)
class CategorizerConfig:
    """Category set, degradation default and generator call limits."""
    categories: Tuple[str, ...] = ("general",)
    default_category: str = "general"
    timeout_seconds: float = 30.0
    workers: int = 4
    max_items: int = 10
    max_chars: int = 8000
    allowed: FrozenSet[str] = field(init=False, repr=False)

    def __post_init__(self):
        default = self.default_category.strip().lower()
        if not default:
            raise ValueError("default_category cannot be empty")
        names = [c.strip().lower() for c in self.categories if c and c.strip()]
        if default not in names:
            names.append(default)
        # dict.fromkeys keeps the configured order while dropping duplicates
        object.__setattr__(self, "categories", tuple(dict.fromkeys(names)))
        object.__setattr__(self, "default_category", default)
        object.__setattr__(self, "allowed", frozenset(self.categories))
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.workers < 1:
            raise ValueError("workers must be at least 1")

    def with_categories(self, categories) -> "CategorizerConfig":
        """Copy of this config using another category set."""
        return CategorizerConfig(
            categories=tuple(categories),
            default_category=self.default_category,
            timeout_seconds=self.timeout_seconds,
            workers=self.workers,
            max_items=self.max_items,
            max_chars=self.max_chars,
        )

    @classmethod
    def from_settings(cls, settings: Settings = None) -> "CategorizerConfig":
        settings = settings or get_settings()
        return cls(
            categories=tuple(settings.categories),
            default_category=settings.default_category,
            timeout_seconds=settings.generator_timeout_seconds,
            workers=settings.categorizer_workers,
            max_items=settings.categorizer_max_items,
            max_chars=settings.categorizer_max_chars,
        )


@dataclass(frozen=True)
class RankingConfig:
    """Weights of the per-viewer ranking formula."""
    discussion_weight: float = 1.0
    recency_weight: float = 2.0
    feedback_weight: float = 1.0
    half_life_hours: float = 24.0
    affinity_min: float = -0.5
    affinity_max: float = 1.0
    default_limit: int = 5

    def __post_init__(self):
        if self.half_life_hours <= 0:
            raise ValueError("half_life_hours must be positive")
        if self.affinity_min > self.affinity_max:
            raise ValueError("affinity_min must be <= affinity_max")
        if self.affinity_min <= -1.0:
            # preference multiplier is 1 + affinity and must stay positive
            raise ValueError("affinity_min must be greater than -1")

    @classmethod
    def from_settings(cls, settings: Settings = None) -> "RankingConfig":
        settings = settings or get_settings()
        return cls(
            discussion_weight=settings.ranking_discussion_weight,
            recency_weight=settings.ranking_recency_weight,
            feedback_weight=settings.ranking_feedback_weight,
            half_life_hours=settings.recency_half_life_hours,
            affinity_min=settings.affinity_min,
            affinity_max=settings.affinity_max,
            default_limit=settings.ranking_default_limit,
        )


@dataclass(frozen=True)
class FeedbackConfig:
    """Step sizes applied by the feedback updater."""
    score_step: float = 1.0
    affinity_step: float = 0.1
    affinity_min: float = -0.5
    affinity_max: float = 1.0

    def __post_init__(self):
        if self.score_step <= 0 or self.affinity_step <= 0:
            raise ValueError("feedback steps must be positive")
        if self.affinity_min > self.affinity_max:
            raise ValueError("affinity_min must be <= affinity_max")

    def clamp_affinity(self, value: float) -> float:
        return clamp(value, self.affinity_min, self.affinity_max)

    @classmethod
    def from_settings(cls, settings: Settings = None) -> "FeedbackConfig":
        settings = settings or get_settings()
        return cls(
            score_step=settings.feedback_score_step,
            affinity_step=settings.affinity_step,
            affinity_min=settings.affinity_min,
            affinity_max=settings.affinity_max,
        )
