"""HTTP and WebSocket surface."""

from . import rules, tutor

__all__ = ["rules", "tutor"]
