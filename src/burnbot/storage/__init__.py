"""Durable record persistence.

SQLite database management and the typed document store for rewards,
burns, metrics snapshots, and milestones.
"""

from burnbot.storage.database import RecordDatabase
from burnbot.storage.store import RecordStore

__all__ = ["RecordDatabase", "RecordStore"]
