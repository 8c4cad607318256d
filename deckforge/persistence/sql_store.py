"""
SQLAlchemy-backed job and deck stores.

The ORM session API is synchronous; every store call runs in a worker thread
via asyncio.to_thread so the event loop keeps serving other jobs. Any
SQLAlchemy failure surfaces as PersistenceError.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Optional, TypeVar

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from deckforge.db.database import session_scope
from deckforge.errors import DeckVersionConflict, PersistenceError
from deckforge.generation.models import Deck
from deckforge.orchestrator.models import Job, JobStatus
from deckforge.persistence.models import FlashcardDeckRecord, OrchestratorJobRecord
from deckforge.persistence.store import DeckStore, JobStore, KeyedLocks

T = TypeVar("T")


class _SqlStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def _run(self, operation: str, fn: Callable[[Session], T]) -> T:
        def work() -> T:
            with session_scope(self.session_factory) as session:
                return fn(session)

        try:
            return await asyncio.to_thread(work)
        except SQLAlchemyError as e:
            logger.error(f"Database error during {operation}: {e}")
            raise PersistenceError(f"Database error during {operation}") from e


class SqlDeckStore(_SqlStore, DeckStore):
    def __init__(self, session_factory: sessionmaker):
        super().__init__(session_factory)
        self._module_locks = KeyedLocks()

    async def save_deck(self, deck: Deck, expected_version: Optional[int] = None) -> Deck:
        key = (deck.course_id, deck.module_id)

        def write(session: Session) -> Deck:
            current = session.scalar(
                select(func.max(FlashcardDeckRecord.version)).where(
                    FlashcardDeckRecord.course_id == deck.course_id,
                    FlashcardDeckRecord.module_id == deck.module_id,
                )
            )
            current = current or 0
            if expected_version is not None and current != expected_version:
                raise DeckVersionConflict(deck.course_id, deck.module_id, expected_version, current)
            record = FlashcardDeckRecord.from_deck(deck)
            record.version = current + 1
            session.add(record)
            session.flush()
            return record.to_deck()

        async with self._module_locks(key):
            return await self._run("save_deck", write)

    async def get_latest_deck(self, course_id: str, module_id: str) -> Optional[Deck]:
        def read(session: Session) -> Optional[Deck]:
            record = session.scalars(
                select(FlashcardDeckRecord)
                .where(
                    FlashcardDeckRecord.course_id == str(course_id),
                    FlashcardDeckRecord.module_id == str(module_id),
                )
                .order_by(FlashcardDeckRecord.version.desc())
                .limit(1)
            ).first()
            return record.to_deck() if record else None

        return await self._run("get_latest_deck", read)

    async def get_latest_for_module(self, module_id: str) -> Optional[Deck]:
        def read(session: Session) -> Optional[Deck]:
            record = session.scalars(
                select(FlashcardDeckRecord)
                .where(FlashcardDeckRecord.module_id == str(module_id))
                .order_by(FlashcardDeckRecord.generated_at.desc(), FlashcardDeckRecord.version.desc())
                .limit(1)
            ).first()
            return record.to_deck() if record else None

        return await self._run("get_latest_for_module", read)

    async def list_versions(self, course_id: str, module_id: str) -> list[Deck]:
        def read(session: Session) -> list[Deck]:
            records = session.scalars(
                select(FlashcardDeckRecord)
                .where(
                    FlashcardDeckRecord.course_id == str(course_id),
                    FlashcardDeckRecord.module_id == str(module_id),
                )
                .order_by(FlashcardDeckRecord.version.desc())
            ).all()
            return [r.to_deck() for r in records]

        return await self._run("list_versions", read)

    async def count_decks(self) -> int:
        def read(session: Session) -> int:
            return session.scalar(select(func.count(FlashcardDeckRecord.id))) or 0

        return await self._run("count_decks", read)


class SqlJobStore(_SqlStore, JobStore):
    async def save(self, job: Job) -> None:
        payload = job.to_dict()

        def write(session: Session) -> None:
            session.merge(
                OrchestratorJobRecord(
                    job_id=job.job_id,
                    mode=job.mode.value,
                    status=job.status.value,
                    outcome=job.outcome.value if job.outcome else None,
                    triggered_by=job.triggered_by.value,
                    priority=int(job.priority),
                    payload=payload,
                    created_at=job.created_at,
                    completed_at=job.completed_at,
                )
            )

        await self._run("save_job", write)

    async def get(self, job_id: str) -> Optional[Job]:
        def read(session: Session) -> Optional[Job]:
            record = session.get(OrchestratorJobRecord, job_id)
            return Job.from_dict(record.payload) if record else None

        return await self._run("get_job", read)

    async def list(self, status: Optional[JobStatus] = None, limit: int = 50) -> list[Job]:
        def read(session: Session) -> list[Job]:
            query = select(OrchestratorJobRecord)
            if status is not None:
                query = query.where(OrchestratorJobRecord.status == status.value)
            query = query.order_by(OrchestratorJobRecord.created_at.desc()).limit(limit)
            return [Job.from_dict(r.payload) for r in session.scalars(query).all()]

        return await self._run("list_jobs", read)
