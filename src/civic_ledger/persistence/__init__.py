"""Persistence layer - Primary store port and audit journal."""

from .journal import AuditJournal
from .store import PersistencePort, SQLiteStore

__all__ = ["AuditJournal", "PersistencePort", "SQLiteStore"]
