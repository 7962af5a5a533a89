"""
Category/summary generators.

- models: pydantic model of a generator answer
- providers: generator interface, mock and Perplexity implementations, factory
"""

from .models import GeneratedTopic
from .providers import (
    GeneratorFactory,
    MockTopicGenerator,
    PerplexityTopicGenerator,
    TopicGenerator,
    format_cluster_text,
)

__all__ = [
    "GeneratedTopic",
    "GeneratorFactory",
    "MockTopicGenerator",
    "PerplexityTopicGenerator",
    "TopicGenerator",
    "format_cluster_text",
]
