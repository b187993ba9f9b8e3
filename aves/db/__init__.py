"""Async database access for the learning loop."""

from aves.db.database import async_session_scope, dispose_engine, get_async_session_factory

__all__ = ["async_session_scope", "dispose_engine", "get_async_session_factory"]
