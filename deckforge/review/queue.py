"""
Review queue for cards that failed evidence verification.

Flagged cards wait here with their verdict. Approving a card writes a new
deck version in which that card is visible to students; the deck the item was
flagged in must still be the module's latest version, otherwise the approval
is rejected as stale.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from loguru import logger

from deckforge.errors import CardNotFound, DeckVersionConflict, InvalidRequest, StaleReviewItem
from deckforge.generation.models import (
    CandidateCard,
    Deck,
    Evidence,
    ReviewStatus,
    new_deck_id,
    utcnow,
)
from deckforge.persistence.store import DeckStore


@dataclass
class ReviewItem:
    card: CandidateCard
    course_id: str
    module_id: str
    module_title: str
    deck_id: str
    deck_version: int
    submitted_at: datetime = field(default_factory=utcnow)
    edited_by: Optional[str] = None
    edited_at: Optional[datetime] = None

    @property
    def card_id(self) -> str:
        return self.card.card_id

    @property
    def hallucination_risk(self) -> str:
        return (self.card.verification or {}).get("hallucination_risk", "high")

    def to_dict(self) -> dict[str, Any]:
        return {
            "card_id": self.card_id,
            "course_id": self.course_id,
            "module_id": self.module_id,
            "module_title": self.module_title,
            "deck_id": self.deck_id,
            "deck_version": self.deck_version,
            "card": self.card.to_dict(),
            "verification": self.card.verification,
            "submitted_at": self.submitted_at.isoformat(),
            "edited_by": self.edited_by,
            "edited_at": self.edited_at.isoformat() if self.edited_at else None,
        }


def _stale(item: ReviewItem, latest_version: Optional[int]) -> StaleReviewItem:
    return StaleReviewItem(
        f"Card {item.card_id} was flagged in deck v{item.deck_version} but the latest "
        f"version is v{latest_version if latest_version is not None else 'none'}",
        details={
            "card_id": item.card_id,
            "item_version": item.deck_version,
            "latest_version": latest_version,
        },
    )


class ReviewQueue:
    """Pending review items keyed by card id, guarded by one asyncio lock."""

    def __init__(self, deck_store: DeckStore):
        self.deck_store = deck_store
        self._items: dict[str, ReviewItem] = {}
        self._lock = asyncio.Lock()

    async def submit(self, deck: Deck, cards: Optional[list[CandidateCard]] = None) -> int:
        """
        Queue a deck's flagged cards, replacing the module's earlier items.

        Returns:
            Number of items queued
        """
        cards = deck.pending_cards() if cards is None else cards
        async with self._lock:
            stale = [
                card_id
                for card_id, item in self._items.items()
                if item.course_id == deck.course_id and item.module_id == deck.module_id
            ]
            for card_id in stale:
                del self._items[card_id]

            for card in cards:
                self._items[card.card_id] = ReviewItem(
                    card=card,
                    course_id=deck.course_id,
                    module_id=deck.module_id,
                    module_title=deck.module_title,
                    deck_id=deck.deck_id,
                    deck_version=deck.version,
                )

        if cards:
            logger.info(
                f"Review queue: {len(cards)} cards from {deck.course_id}/{deck.module_id} "
                f"v{deck.version} awaiting review"
            )
        return len(cards)

    async def get(self, card_id: str) -> ReviewItem:
        item = self._items.get(card_id)
        if item is None:
            raise CardNotFound(card_id)
        return item

    async def list_pending(
        self,
        course_id: Optional[str] = None,
        module_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[ReviewItem]:
        items = [
            item
            for item in self._items.values()
            if (course_id is None or item.course_id == str(course_id))
            and (module_id is None or item.module_id == str(module_id))
        ]
        items.sort(key=lambda i: (i.submitted_at, i.card_id))
        return items[:limit]

    async def stats(self) -> dict[str, Any]:
        items = list(self._items.values())
        return {
            "pending": len(items),
            "by_course": dict(Counter(i.course_id for i in items)),
            "by_risk": dict(Counter(i.hallucination_risk for i in items)),
            "edited": sum(1 for i in items if i.edited_by),
        }

    async def approve(self, card_id: str, reviewer: Optional[str] = None) -> Deck:
        """
        Publish a flagged card by writing a new deck version.

        Raises:
            CardNotFound: If the card is not pending review
            StaleReviewItem: If the module has a newer deck than the one the
                item was flagged in
        """
        async with self._lock:
            item = self._items.get(card_id)
            if item is None:
                raise CardNotFound(card_id)

            latest = await self.deck_store.get_latest_deck(item.course_id, item.module_id)
            if latest is None or latest.version != item.deck_version:
                raise _stale(item, latest.version if latest else None)

            approved = item.card.with_changes(
                review_status=ReviewStatus.APPROVED,
                verification={
                    **(item.card.verification or {}),
                    "reviewed_by": reviewer,
                    "reviewed_at": utcnow().isoformat(),
                },
            )
            cards = [approved if c.card_id == card_id else c for c in latest.cards]
            if not any(c.card_id == card_id for c in latest.cards):
                cards.append(approved)

            try:
                saved = await self.deck_store.save_deck(
                    Deck(
                        deck_id=new_deck_id(),
                        module_id=latest.module_id,
                        course_id=latest.course_id,
                        module_title=latest.module_title,
                        cards=cards,
                        job_id=latest.job_id,
                        warnings=list(latest.warnings),
                        stage_a=latest.stage_a,
                    ),
                    expected_version=item.deck_version,
                )
            except DeckVersionConflict as e:
                # A regeneration landed between the read and the save
                raise _stale(item, e.current) from e
            del self._items[card_id]

            # Siblings flagged in the superseded version now belong to the new one
            for other in self._items.values():
                if (
                    other.course_id == item.course_id
                    and other.module_id == item.module_id
                    and other.deck_version == item.deck_version
                ):
                    other.deck_version = saved.version
                    other.deck_id = saved.deck_id

        logger.info(f"Card {card_id} approved by {reviewer or 'unknown'}; deck now v{saved.version}")
        return saved

    async def edit(
        self,
        card_id: str,
        *,
        question: Optional[str] = None,
        answer: Optional[str] = None,
        evidence: Optional[list[Evidence]] = None,
        editor: Optional[str] = None,
    ) -> ReviewItem:
        """Update a pending card. The item stays pending until approved."""
        if question is None and answer is None and evidence is None:
            raise InvalidRequest("Nothing to edit: provide question, answer or evidence")

        async with self._lock:
            item = self._items.get(card_id)
            if item is None:
                raise CardNotFound(card_id)

            changes: dict[str, Any] = {}
            if question is not None:
                changes["question"] = question.strip()
            if answer is not None:
                changes["answer"] = answer.strip()
            if evidence is not None:
                changes["evidence"] = list(evidence)
            item.card = item.card.with_changes(**changes)
            item.edited_by = editor
            item.edited_at = utcnow()

        logger.info(f"Card {card_id} edited by {editor or 'unknown'}")
        return item
