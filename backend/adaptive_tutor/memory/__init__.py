"""Learner profile and session memory."""

from .enricher import ProfileEnricher, detect_topics
from .profile import LearnerProfileView, ProfileManager, merge_topics
from .session import SessionMemory

__all__ = [
    "ProfileEnricher",
    "detect_topics",
    "LearnerProfileView",
    "ProfileManager",
    "merge_topics",
    "SessionMemory",
]
