"""Two-stage flashcard generation: summarize (Stage A), then generate (Stage B)."""

from deckforge.generation.models import (
    BloomLevel,
    CandidateCard,
    CardDifficulty,
    Chunk,
    Deck,
    Difficulty,
    Evidence,
    Provider,
    ReviewStatus,
    StageAOutput,
)
from deckforge.generation.stage_a import Summarizer, summarize_mock
from deckforge.generation.stage_b import (
    CardGenerator,
    GenerationResult,
    difficulty_mix,
    generate_mock,
)

__all__ = [
    "BloomLevel",
    "CandidateCard",
    "CardDifficulty",
    "Chunk",
    "Deck",
    "Difficulty",
    "Evidence",
    "Provider",
    "ReviewStatus",
    "StageAOutput",
    "Summarizer",
    "summarize_mock",
    "CardGenerator",
    "GenerationResult",
    "difficulty_mix",
    "generate_mock",
]
