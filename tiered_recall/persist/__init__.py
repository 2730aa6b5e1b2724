"""
Persistence layer for conversation memory.

Provides:
- SQLite database with WAL and transactional writes
- Turn store (turns, sessions, tier transition log)
"""

from .sqlite_store import TurnDatabase
from .turn_store import TurnStore, IndexUpdate

__all__ = [
    "TurnDatabase",
    "TurnStore",
    "IndexUpdate",
]
