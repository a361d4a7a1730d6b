"""Database package exports."""

from app.db.base import Base
from app.db.session import (
    dispose_engine,
    get_db_session,
    get_engine,
    get_request_engine,
    get_session_factory,
)

__all__ = [
    "Base",
    "dispose_engine",
    "get_db_session",
    "get_engine",
    "get_request_engine",
    "get_session_factory",
]
