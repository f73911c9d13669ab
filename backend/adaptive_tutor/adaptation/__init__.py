"""Learner adaptation: directive generation and adaptation logging."""

from .directives import (
    AdaptiveDirectives,
    LearningStyle,
    build_adaptive_directives,
    format_directives_for_prompt,
    generate_directives,
)
from .logger import AdaptationLogger

__all__ = [
    "AdaptationLogger",
    "AdaptiveDirectives",
    "LearningStyle",
    "build_adaptive_directives",
    "format_directives_for_prompt",
    "generate_directives",
]
