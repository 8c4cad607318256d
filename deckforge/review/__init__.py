"""Approval gate for cards that failed verification."""

from deckforge.review.queue import ReviewItem, ReviewQueue

__all__ = ["ReviewItem", "ReviewQueue"]
