"""Database layer: SQLAlchemy models and session."""

from server.db.models import Base, Question
from server.db.session import get_session_factory, init_db

__all__ = [
    "Base",
    "Question",
    "get_session_factory",
    "init_db",
]
