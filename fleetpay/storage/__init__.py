"""Persistence layer: SQLAlchemy models, sessions and storage error classification."""
