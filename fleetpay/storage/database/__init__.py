"""Database package."""

from .base import Base, create_db_engine, get_session, init_db

__all__ = ["Base", "create_db_engine", "get_session", "init_db"]
