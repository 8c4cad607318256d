"""deckforge: resilient LLM flashcard generation for course modules."""

__version__ = "0.1.0"
