"""
Data model for the two-stage flashcard pipeline.

Dataclasses carry data between stages and into storage; the pydantic schemas
at the bottom validate raw LLM replies before they become dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def new_deck_id() -> str:
    return f"deck_{uuid4().hex[:16]}"


# =============================================================================
# Enums
# =============================================================================


class Provider(str, Enum):
    """Where a chunk's source file lives."""

    LOCAL = "local"
    GOOGLE_DRIVE = "google_drive"
    ONEDRIVE = "onedrive"
    CLOUDINARY = "cloudinary"
    OTHER = "other"


class Difficulty(str, Enum):
    """Module-level difficulty estimated by Stage A."""

    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class CardDifficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class BloomLevel(str, Enum):
    REMEMBER = "Remember"
    UNDERSTAND = "Understand"
    APPLY = "Apply"
    ANALYZE = "Analyze"
    EVALUATE = "Evaluate"
    CREATE = "Create"


class ReviewStatus(str, Enum):
    PUBLISHED = "published"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"


VISIBLE_REVIEW_STATUSES = (ReviewStatus.PUBLISHED, ReviewStatus.APPROVED)


# =============================================================================
# Pipeline dataclasses
# =============================================================================


@dataclass(frozen=True)
class Chunk:
    """A unit of extracted source text. Read-only to the pipeline."""

    chunk_id: str
    text: str
    source_file: str = ""
    provider: Provider = Provider.LOCAL
    slide_or_page: Optional[str] = None
    heading: Optional[str] = None
    tokens_est: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Chunk:
        text = data.get("text", "")
        slide = data.get("slide_or_page")
        provider = data.get("provider") or Provider.LOCAL.value
        try:
            provider = Provider(provider)
        except ValueError:
            provider = Provider.OTHER
        return cls(
            chunk_id=str(data["chunk_id"]),
            text=text,
            source_file=data.get("source_file", ""),
            provider=provider,
            slide_or_page=str(slide) if slide is not None else None,
            heading=data.get("heading"),
            tokens_est=data.get("tokens_est") or (len(text) + 3) // 4,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "text": self.text,
            "source_file": self.source_file,
            "provider": self.provider.value,
            "slide_or_page": self.slide_or_page,
            "heading": self.heading,
            "tokens_est": self.tokens_est,
        }


@dataclass
class StageAOutput:
    """Module summary produced by Stage A and consumed by Stage B of the same run."""

    module_id: str
    summaries: list[str]
    learning_objectives: list[str]
    key_terms: list[str]
    content_themes: list[str] = field(default_factory=list)
    estimated_difficulty: Difficulty = Difficulty.INTERMEDIATE
    chunk_count: int = 0
    processing_time_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "module_id": self.module_id,
            "summaries": list(self.summaries),
            "learning_objectives": list(self.learning_objectives),
            "key_terms": list(self.key_terms),
            "content_themes": list(self.content_themes),
            "estimated_difficulty": self.estimated_difficulty.value,
            "chunk_count": self.chunk_count,
            "processing_time_ms": self.processing_time_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StageAOutput:
        return cls(
            module_id=str(data["module_id"]),
            summaries=list(data.get("summaries", [])),
            learning_objectives=list(data.get("learning_objectives", [])),
            key_terms=list(data.get("key_terms", [])),
            content_themes=list(data.get("content_themes", [])),
            estimated_difficulty=Difficulty(data.get("estimated_difficulty", "intermediate")),
            chunk_count=data.get("chunk_count", 0),
            processing_time_ms=data.get("processing_time_ms", 0),
        )


@dataclass
class Evidence:
    """A citation tying a card to a chunk excerpt."""

    chunk_id: str
    excerpt: str
    source_file: Optional[str] = None
    loc: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "excerpt": self.excerpt,
            "source_file": self.source_file,
            "loc": self.loc,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Evidence:
        return cls(
            chunk_id=str(data.get("chunk_id", "")),
            excerpt=data.get("excerpt", ""),
            source_file=data.get("source_file"),
            loc=data.get("loc"),
        )


@dataclass
class CandidateCard:
    """
    A generated flashcard.

    Created by Stage B; `verification` is filled in by the verifier. Once
    persisted into a Deck the card is never changed in place; edits and
    approvals produce copies via `with_changes`.
    """

    card_id: str
    question: str
    answer: str
    difficulty: CardDifficulty = CardDifficulty.MEDIUM
    evidence: list[Evidence] = field(default_factory=list)
    bloom_level: BloomLevel = BloomLevel.UNDERSTAND
    rationale: str = ""
    confidence_score: float = 0.8
    learning_objective_ref: Optional[str] = None
    verification: Optional[dict[str, Any]] = None
    review_status: ReviewStatus = ReviewStatus.PENDING_REVIEW

    @property
    def has_evidence(self) -> bool:
        return any(e.excerpt and e.excerpt.strip() for e in self.evidence)

    def with_changes(self, **changes: Any) -> CandidateCard:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "card_id": self.card_id,
            "question": self.question,
            "answer": self.answer,
            "difficulty": self.difficulty.value,
            "evidence": [e.to_dict() for e in self.evidence],
            "bloom_level": self.bloom_level.value,
            "rationale": self.rationale,
            "confidence_score": self.confidence_score,
            "learning_objective_ref": self.learning_objective_ref,
            "verification": self.verification,
            "review_status": self.review_status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CandidateCard:
        return cls(
            card_id=data["card_id"],
            question=data["question"],
            answer=data["answer"],
            difficulty=CardDifficulty(data.get("difficulty", "medium")),
            evidence=[Evidence.from_dict(e) for e in data.get("evidence", [])],
            bloom_level=BloomLevel(data.get("bloom_level", "Understand")),
            rationale=data.get("rationale", ""),
            confidence_score=data.get("confidence_score", 0.8),
            learning_objective_ref=data.get("learning_objective_ref"),
            verification=data.get("verification"),
            review_status=ReviewStatus(data.get("review_status", "pending_review")),
        )


@dataclass
class Deck:
    """
    One immutable version of a module's flashcards.

    `version` is assigned by the DeckStore when saved.
    """

    deck_id: str
    module_id: str
    course_id: str
    module_title: str
    cards: list[CandidateCard]
    generated_at: datetime = field(default_factory=utcnow)
    version: int = 0
    job_id: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    stage_a: Optional[dict[str, Any]] = None

    def visible_cards(self) -> list[CandidateCard]:
        """Cards a student may see: published or approved."""
        return [c for c in self.cards if c.review_status in VISIBLE_REVIEW_STATUSES]

    def pending_cards(self) -> list[CandidateCard]:
        return [c for c in self.cards if c.review_status == ReviewStatus.PENDING_REVIEW]

    def to_dict(self, include_stage_a: bool = True) -> dict[str, Any]:
        data = {
            "deck_id": self.deck_id,
            "module_id": self.module_id,
            "course_id": self.course_id,
            "module_title": self.module_title,
            "cards": [c.to_dict() for c in self.cards],
            "generated_at": self.generated_at.isoformat(),
            "version": self.version,
            "job_id": self.job_id,
            "warnings": list(self.warnings),
        }
        if include_stage_a:
            data["stage_a"] = self.stage_a
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Deck:
        return cls(
            deck_id=data["deck_id"],
            module_id=str(data["module_id"]),
            course_id=str(data["course_id"]),
            module_title=data.get("module_title", ""),
            cards=[CandidateCard.from_dict(c) for c in data.get("cards", [])],
            generated_at=parse_datetime(data.get("generated_at")) or utcnow(),
            version=data.get("version", 0),
            job_id=data.get("job_id"),
            warnings=list(data.get("warnings", [])),
            stage_a=data.get("stage_a"),
        )


# =============================================================================
# LLM response schemas
# =============================================================================


class StageAResponse(BaseModel):
    """Validated Stage A reply. Optional fields are coerced, not rejected."""

    summary: str = Field(min_length=1)
    learning_objectives: list[str] = Field(min_length=2)
    key_terms: list[str] = Field(min_length=1)
    content_themes: list[str] = Field(default_factory=list)
    estimated_difficulty: Difficulty = Difficulty.INTERMEDIATE

    @field_validator("summary", mode="before")
    @classmethod
    def join_summary_points(cls, v: Any) -> Any:
        if isinstance(v, list):
            return " ".join(
                str(p.get("point", "")) if isinstance(p, dict) else str(p) for p in v
            ).strip()
        return v

    @field_validator("learning_objectives", mode="before")
    @classmethod
    def truncate_objectives(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [str(o).strip() for o in v if str(o).strip()][:10]
        return v

    @field_validator("key_terms", mode="before")
    @classmethod
    def flatten_terms(cls, v: Any) -> Any:
        if isinstance(v, list):
            terms = []
            for item in v:
                term = (item.get("term") or item.get("topic")) if isinstance(item, dict) else item
                if term and str(term).strip():
                    terms.append(str(term).strip())
            return terms
        return v

    @field_validator("content_themes", mode="before")
    @classmethod
    def default_themes(cls, v: Any) -> Any:
        return v if isinstance(v, list) else []

    @field_validator("estimated_difficulty", mode="before")
    @classmethod
    def coerce_difficulty(cls, v: Any) -> Any:
        value = str(v).lower().strip() if v is not None else ""
        if value in {d.value for d in Difficulty}:
            return value
        return Difficulty.INTERMEDIATE.value


class EvidencePayload(BaseModel):
    chunk_id: str = ""
    excerpt: str = ""
    source_file: Optional[str] = None
    loc: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def accept_text_alias(cls, data: Any) -> Any:
        if isinstance(data, dict) and "excerpt" not in data and "text" in data:
            data = {**data, "excerpt": data["text"]}
        if isinstance(data, dict) and data.get("loc") is not None:
            data = {**data, "loc": str(data["loc"])}
        if isinstance(data, dict) and data.get("chunk_id") is not None:
            data = {**data, "chunk_id": str(data["chunk_id"])}
        return data


class GeneratedCardPayload(BaseModel):
    """One card as emitted by Stage B, before ids and evidence matching."""

    question: str = Field(min_length=5)
    answer: str = Field(min_length=1)
    difficulty: CardDifficulty = CardDifficulty.MEDIUM
    bloom_level: BloomLevel = BloomLevel.UNDERSTAND
    evidence: list[EvidencePayload] = Field(default_factory=list)
    evidence_quote: Optional[str] = None
    rationale: str = ""
    confidence_score: float = Field(default=0.8, ge=0.0, le=1.0)
    learning_objective_ref: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def accept_short_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "question" not in data and "q" in data:
            data["question"] = data.pop("q")
        if "answer" not in data and "a" in data:
            data["answer"] = data.pop("a")
        if "confidence_score" not in data and "confidence" in data:
            data["confidence_score"] = data.pop("confidence")
        if data.get("rationale") is None:
            data["rationale"] = ""
        return data

    @field_validator("difficulty", mode="before")
    @classmethod
    def coerce_difficulty(cls, v: Any) -> Any:
        value = str(v).lower().strip() if v is not None else ""
        return value if value in {d.value for d in CardDifficulty} else CardDifficulty.MEDIUM.value

    @field_validator("bloom_level", mode="before")
    @classmethod
    def coerce_bloom(cls, v: Any) -> Any:
        value = str(v).strip().capitalize() if v is not None else ""
        return value if value in {b.value for b in BloomLevel} else BloomLevel.UNDERSTAND.value

    @field_validator("confidence_score", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> Any:
        try:
            return max(0.0, min(1.0, float(v)))
        except (TypeError, ValueError):
            return 0.8


class VerificationVerdict(BaseModel):
    """LLM-as-judge verdict for one card."""

    is_supported: bool
    confidence: float = Field(ge=0.0, le=1.0)
    issues: list[str] = Field(default_factory=list)
    evidence_coverage: str = "partial"
    hallucination_detected: bool = False
    explanation: str = ""

    @field_validator("evidence_coverage", mode="before")
    @classmethod
    def coerce_coverage(cls, v: Any) -> Any:
        value = str(v).lower().strip() if v is not None else ""
        return value if value in ("full", "partial", "none") else "partial"

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> Any:
        try:
            return max(0.0, min(1.0, float(v)))
        except (TypeError, ValueError):
            return 0.5
