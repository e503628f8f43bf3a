"""SQLite-backed batch history persistence."""

from playbook_runner.history.repository import SQLiteHistoryStore

__all__ = ["SQLiteHistoryStore"]
