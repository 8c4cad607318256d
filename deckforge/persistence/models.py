"""
SQLAlchemy models for durable job and deck storage.

Tables:
- flashcard_decks: one row per deck version; cards stored as JSON
- orchestrator_jobs: one row per job; full job snapshot stored as JSON
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from deckforge.generation.models import CandidateCard, Deck


class Base(DeclarativeBase):
    pass


class FlashcardDeckRecord(Base):
    """One immutable deck version for a (course, module) pair."""

    __tablename__ = "flashcard_decks"
    __table_args__ = (
        UniqueConstraint("course_id", "module_id", "version", name="uq_flashcard_decks_module_version"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deck_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    course_id: Mapped[str] = mapped_column(String(128), index=True)
    module_id: Mapped[str] = mapped_column(String(128), index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    module_title: Mapped[str] = mapped_column(Text, default="")
    job_id: Mapped[Optional[str]] = mapped_column(String(64))

    cards: Mapped[list] = mapped_column(JSON, nullable=False)
    warnings: Mapped[list] = mapped_column(JSON, default=list)
    stage_a: Mapped[Optional[dict]] = mapped_column(JSON)

    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<FlashcardDeckRecord(module={self.course_id}/{self.module_id}, v{self.version})>"

    @classmethod
    def from_deck(cls, deck: Deck) -> FlashcardDeckRecord:
        return cls(
            deck_id=deck.deck_id,
            course_id=deck.course_id,
            module_id=deck.module_id,
            version=deck.version,
            module_title=deck.module_title,
            job_id=deck.job_id,
            cards=[c.to_dict() for c in deck.cards],
            warnings=list(deck.warnings),
            stage_a=deck.stage_a,
            generated_at=deck.generated_at,
        )

    def to_deck(self) -> Deck:
        return Deck(
            deck_id=self.deck_id,
            module_id=self.module_id,
            course_id=self.course_id,
            module_title=self.module_title or "",
            cards=[CandidateCard.from_dict(c) for c in self.cards or []],
            generated_at=self.generated_at,
            version=self.version,
            job_id=self.job_id,
            warnings=list(self.warnings or []),
            stage_a=self.stage_a,
        )


class OrchestratorJobRecord(Base):
    """Snapshot of a generation job, rewritten on every state change."""

    __tablename__ = "orchestrator_jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    mode: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    outcome: Mapped[Optional[str]] = mapped_column(String(32))
    triggered_by: Mapped[str] = mapped_column(String(32), default="api")
    priority: Mapped[int] = mapped_column(Integer, default=1)

    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<OrchestratorJobRecord(job_id={self.job_id}, status={self.status})>"
