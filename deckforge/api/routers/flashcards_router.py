"""
Review queue router.

Admin endpoints for cards that failed evidence verification: list them,
correct them, and approve them into a new deck version.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from deckforge.api.dependencies import get_review_queue as review_queue_dep
from deckforge.api.dependencies import require_admin
from deckforge.generation.models import Evidence, EvidencePayload
from deckforge.review.queue import ReviewQueue

router = APIRouter()


# ========================================
# Request Models
# ========================================


class EditCardRequest(BaseModel):
    """Fields to change on a pending card. Omitted fields are left as they are."""

    question: Optional[str] = Field(default=None, min_length=5)
    answer: Optional[str] = Field(default=None, min_length=1)
    evidence: Optional[list[EvidencePayload]] = None


# ========================================
# Review Queue Endpoints
# ========================================


@router.get("/review-queue", summary="Cards awaiting review")
async def get_review_queue(
    course_id: Optional[str] = None,
    module_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=500),
    _reviewer: str = Depends(require_admin),
    queue: ReviewQueue = Depends(review_queue_dep),
) -> dict[str, Any]:
    items = await queue.list_pending(course_id=course_id, module_id=module_id, limit=limit)
    return {
        "success": True,
        "data": {
            "items": [item.to_dict() for item in items],
            "count": len(items),
            "stats": await queue.stats(),
        },
    }


@router.post("/{card_id}/approve", summary="Approve a flagged card")
async def approve_card(
    card_id: str,
    reviewer: str = Depends(require_admin),
    queue: ReviewQueue = Depends(review_queue_dep),
) -> dict[str, Any]:
    """
    Publish a flagged card.

    Writes a new deck version for the card's module. Returns 409 if the card
    was flagged in a deck that has since been regenerated.
    """
    deck = await queue.approve(card_id, reviewer=reviewer)
    return {
        "success": True,
        "data": {
            "card_id": card_id,
            "deck_id": deck.deck_id,
            "course_id": deck.course_id,
            "module_id": deck.module_id,
            "version": deck.version,
            "visible_cards": len(deck.visible_cards()),
        },
    }


@router.post("/{card_id}/edit", summary="Edit a flagged card")
async def edit_card(
    card_id: str,
    body: EditCardRequest,
    reviewer: str = Depends(require_admin),
    queue: ReviewQueue = Depends(review_queue_dep),
) -> dict[str, Any]:
    evidence = None
    if body.evidence is not None:
        evidence = [Evidence(**payload.model_dump()) for payload in body.evidence]
    item = await queue.edit(
        card_id,
        question=body.question,
        answer=body.answer,
        evidence=evidence,
        editor=reviewer,
    )
    return {"success": True, "data": item.to_dict()}
