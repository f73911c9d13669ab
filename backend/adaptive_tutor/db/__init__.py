"""Database package for the Adaptive Tutor."""

from .base import (
    Base,
    close_all,
    create_tables,
    get_tutor_session,
    get_tutor_session_maker,
    init_databases,
)
from .store import TutorStore

__all__ = [
    "Base",
    "close_all",
    "create_tables",
    "get_tutor_session",
    "get_tutor_session_maker",
    "init_databases",
    "TutorStore",
]
