"""
Job and deck storage interfaces with in-memory implementations.

Decks are append-only: save_deck assigns the next version for the
(course, module) pair under that pair's lock, so versions increase
monotonically even when two jobs finish the same module at once.
"""

from __future__ import annotations

import asyncio
import copy
import dataclasses
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional

from deckforge.errors import DeckVersionConflict
from deckforge.generation.models import Deck

if TYPE_CHECKING:
    from deckforge.orchestrator.models import Job, JobStatus


class KeyedLocks:
    """Lazily created asyncio locks, one per key."""

    def __init__(self) -> None:
        self._locks: dict[Any, asyncio.Lock] = {}

    def __call__(self, key: Any) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


class DeckStore(ABC):
    @abstractmethod
    async def save_deck(self, deck: Deck, expected_version: Optional[int] = None) -> Deck:
        """
        Persist a new deck version; returns the stored deck with its version set.

        With `expected_version`, the save only happens if the module's latest
        version (0 when there is none) still equals it.

        Raises:
            DeckVersionConflict: If the latest version moved on
        """

    @abstractmethod
    async def get_latest_deck(self, course_id: str, module_id: str) -> Optional[Deck]:
        ...

    @abstractmethod
    async def get_latest_for_module(self, module_id: str) -> Optional[Deck]:
        """Latest deck for a module id regardless of course."""

    @abstractmethod
    async def list_versions(self, course_id: str, module_id: str) -> list[Deck]:
        """All versions, newest first."""

    @abstractmethod
    async def count_decks(self) -> int:
        ...


class JobStore(ABC):
    @abstractmethod
    async def save(self, job: Job) -> None:
        ...

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def list(self, status: Optional[JobStatus] = None, limit: int = 50) -> list[Job]:
        """Jobs newest first, optionally filtered by status."""


class InMemoryDeckStore(DeckStore):
    def __init__(self) -> None:
        self._decks: dict[tuple[str, str], list[Deck]] = {}
        self._module_locks = KeyedLocks()

    async def save_deck(self, deck: Deck, expected_version: Optional[int] = None) -> Deck:
        key = (deck.course_id, deck.module_id)
        async with self._module_locks(key):
            versions = self._decks.setdefault(key, [])
            current = versions[-1].version if versions else 0
            if expected_version is not None and current != expected_version:
                raise DeckVersionConflict(deck.course_id, deck.module_id, expected_version, current)
            next_version = current + 1
            stored = dataclasses.replace(copy.deepcopy(deck), version=next_version)
            versions.append(stored)
            return copy.deepcopy(stored)

    async def get_latest_deck(self, course_id: str, module_id: str) -> Optional[Deck]:
        versions = self._decks.get((str(course_id), str(module_id)))
        return copy.deepcopy(versions[-1]) if versions else None

    async def get_latest_for_module(self, module_id: str) -> Optional[Deck]:
        latest = [
            versions[-1]
            for (_, mid), versions in self._decks.items()
            if mid == str(module_id) and versions
        ]
        if not latest:
            return None
        return copy.deepcopy(max(latest, key=lambda d: d.generated_at))

    async def list_versions(self, course_id: str, module_id: str) -> list[Deck]:
        versions = self._decks.get((str(course_id), str(module_id)), [])
        return [copy.deepcopy(d) for d in reversed(versions)]

    async def count_decks(self) -> int:
        return sum(len(v) for v in self._decks.values())


class InMemoryJobStore(JobStore):
    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}

    async def save(self, job: Job) -> None:
        self._jobs[job.job_id] = copy.deepcopy(job)

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def list(self, status: Optional[JobStatus] = None, limit: int = 50) -> list[Job]:
        jobs = [j for j in self._jobs.values() if status is None or j.status == status]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [copy.deepcopy(j) for j in jobs[:limit]]
