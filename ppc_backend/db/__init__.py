"""Database helpers for the research export service."""

from __future__ import annotations

from .config import DatabaseSettings, get_database_settings
from .models import Base, research_view_metadata
from .session import get_engine, get_session_factory, session_scope

__all__ = [
    "Base",
    "research_view_metadata",
    "DatabaseSettings",
    "get_database_settings",
    "get_engine",
    "get_session_factory",
    "session_scope",
]
