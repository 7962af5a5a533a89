"""
Pydantic models for generator answers.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

MAX_TAGS = 5


class GeneratedTopic(BaseModel):
    """Descriptive fields proposed by a generator for one cluster."""
    title: str = Field(..., min_length=1, max_length=500, description="Topic headline")
    summary: str = Field("", description="One or two sentence summary")
    tags: List[str] = Field(default_factory=list, description="Lowercase keyword tags")
    category: Optional[str] = Field(None, description="Proposed category label")

    @field_validator('title', 'summary', mode='before')
    @classmethod
    def strip_text(cls, v):
        return str(v).strip() if v is not None else ""

    @field_validator('tags', mode='before')
    @classmethod
    def normalize_tags(cls, v):
        """Lowercase, drop blanks and duplicates, keep at most five."""
        if isinstance(v, str):
            v = v.split(',')
        tags = []
        for tag in v or []:
            tag = str(tag).strip().lower()
            if tag and tag not in tags:
                tags.append(tag)
        return tags[:MAX_TAGS]

    @field_validator('category')
    @classmethod
    def normalize_category(cls, v):
        if v is None:
            return None
        return str(v).strip().lower() or None
