"""Job and deck storage."""

from deckforge.persistence.store import (
    DeckStore,
    InMemoryDeckStore,
    InMemoryJobStore,
    JobStore,
    KeyedLocks,
)

__all__ = [
    "DeckStore",
    "InMemoryDeckStore",
    "InMemoryJobStore",
    "JobStore",
    "KeyedLocks",
]
