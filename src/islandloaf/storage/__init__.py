"""Durable storage for the orchestration core."""

from .database import Database, from_iso, to_iso, utcnow

__all__ = [
    "Database",
    "from_iso",
    "to_iso",
    "utcnow",
]
