"""
Student-facing module router.

Only published and approved cards of a module's latest deck are exposed.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends

from deckforge.api.dependencies import get_container, rate_limit
from deckforge.container import Container
from deckforge.errors import DeckNotFound

router = APIRouter()


@router.get("/{module_id}/flashcards", summary="Flashcards for a module")
async def get_module_flashcards(
    module_id: str,
    course_id: Optional[str] = None,
    _caller: str = Depends(rate_limit("status")),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    """
    Get the visible flashcards of a module's latest deck.

    Pass `course_id` when module ids are not unique across courses.
    """
    if course_id:
        deck = await container.deck_store.get_latest_deck(course_id, module_id)
    else:
        deck = await container.deck_store.get_latest_for_module(module_id)
    if deck is None:
        raise DeckNotFound(
            f"No flashcards generated for module {module_id}",
            details={"module_id": module_id},
        )

    cards = deck.visible_cards()
    return {
        "success": True,
        "data": {
            "module_id": deck.module_id,
            "course_id": deck.course_id,
            "module_title": deck.module_title,
            "deck_id": deck.deck_id,
            "version": deck.version,
            "generated_at": deck.generated_at.isoformat(),
            "flashcards": [
                {
                    "card_id": c.card_id,
                    "question": c.question,
                    "answer": c.answer,
                    "difficulty": c.difficulty.value,
                    "bloom_level": c.bloom_level.value,
                    "evidence": [e.to_dict() for e in c.evidence],
                }
                for c in cards
            ],
            "count": len(cards),
        },
    }
