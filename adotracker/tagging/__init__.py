"""Tag generation and the tagging engine."""

from adotracker.tagging.engine import TaggingEngine
from adotracker.tagging.generators import (
    FallbackTagGenerator,
    KeywordTagGenerator,
    OpenAITagGenerator,
    TagGenerator,
    build_tag_generator,
    categorize_tag,
)

__all__ = [
    "TaggingEngine",
    "TagGenerator",
    "KeywordTagGenerator",
    "OpenAITagGenerator",
    "FallbackTagGenerator",
    "build_tag_generator",
    "categorize_tag",
]
