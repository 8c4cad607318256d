"""
Evidence Verifier - hallucination gate for generated cards.

Checks that each card's answer is grounded in the excerpts it cites.

Modes:
- heuristic: lexical overlap between answer and evidence, plus guards
- llm: LLM-as-judge through the resilience registry, falling back to the
  heuristic when the model is unavailable or its verdict is malformed

Two guards hold in both modes:
- a card with no evidence is never verified (risk high)
- a number in the answer that appears in no excerpt fails the card
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from loguru import logger
from pydantic import ValidationError

from deckforge.errors import (
    CancellationError,
    ContentError,
    MalformedOutput,
    PersistentDependencyError,
    TransientDependencyError,
)
from deckforge.generation.models import CandidateCard, VerificationVerdict
from deckforge.generation.prompts import VERIFICATION_SYSTEM_PROMPT, build_verification_prompt
from deckforge.generation.text_utils import content_words, extract_numbers, jaccard
from deckforge.llm.json_parsing import parse_llm_json
from deckforge.resilience.retry import VERIFICATION_RETRY, RetryOptions

if TYPE_CHECKING:
    from deckforge.llm.client import LLMClient
    from deckforge.resilience.cancellation import CancellationToken
    from deckforge.resilience.registry import ResilienceRegistry

NO_EVIDENCE_ISSUE = "No evidence provided"
NUMERIC_ISSUE_PREFIX = "Numeric values not grounded in evidence"
MIN_ANSWER_CHARS = 20

COVERAGE_LEVELS = {"full": 1.0, "partial": 0.5, "none": 0.0}


class VerificationMode(str, Enum):
    HEURISTIC = "heuristic"
    LLM = "llm"


class HallucinationRisk(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class VerificationResult:
    verified: bool
    confidence: float
    issues: list[str] = field(default_factory=list)
    evidence_coverage: float = 0.0
    hallucination_risk: HallucinationRisk = HallucinationRisk.HIGH
    note: str = ""
    mode: VerificationMode = VerificationMode.HEURISTIC
    card_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "verified": self.verified,
            "confidence": round(self.confidence, 3),
            "issues": list(self.issues),
            "evidence_coverage": round(self.evidence_coverage, 3),
            "hallucination_risk": self.hallucination_risk.value,
            "note": self.note,
            "mode": self.mode.value,
        }


@dataclass
class BatchVerificationResult:
    results: list[VerificationResult]
    total_verified: int
    total_failed: int
    verification_rate: float
    processing_time_ms: int

    def for_card(self, card_id: str) -> Optional[VerificationResult]:
        return next((r for r in self.results if r.card_id == card_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [{"card_id": r.card_id, **r.to_dict()} for r in self.results],
            "total_verified": self.total_verified,
            "total_failed": self.total_failed,
            "verification_rate": round(self.verification_rate, 3),
            "processing_time_ms": self.processing_time_ms,
        }


def _excerpts(card: CandidateCard) -> list[str]:
    return [e.excerpt for e in card.evidence if e.excerpt and e.excerpt.strip()]


def ungrounded_numbers(answer: str, excerpts: list[str]) -> list[str]:
    """Numbers in the answer that appear in none of the excerpts."""
    evidence_numbers = set(extract_numbers(" ".join(excerpts)))
    return [n for n in dict.fromkeys(extract_numbers(answer)) if n not in evidence_numbers]


def _no_evidence_result(mode: VerificationMode) -> VerificationResult:
    return VerificationResult(
        verified=False,
        confidence=0.9,
        issues=[NO_EVIDENCE_ISSUE],
        evidence_coverage=0.0,
        hallucination_risk=HallucinationRisk.HIGH,
        note="Card has no evidence to verify against",
        mode=mode,
    )


def _apply_numeric_guard(result: VerificationResult, card: CandidateCard) -> VerificationResult:
    missing = ungrounded_numbers(card.answer, _excerpts(card))
    if missing:
        result.issues.append(f"{NUMERIC_ISSUE_PREFIX}: {', '.join(missing)}")
        result.hallucination_risk = HallucinationRisk.HIGH
        result.verified = False
    return result


class EvidenceVerifier:
    """Routes each card to verified (publishable) or failed (review)."""

    def __init__(
        self,
        llm: Optional[LLMClient] = None,
        registry: Optional[ResilienceRegistry] = None,
        retry_options: RetryOptions = VERIFICATION_RETRY,
        coverage_threshold: float = 0.5,
        default_mode: VerificationMode = VerificationMode.HEURISTIC,
        dependency: str = "llm",
    ):
        self.llm = llm
        self.registry = registry
        self.retry_options = retry_options
        self.coverage_threshold = coverage_threshold
        self.default_mode = default_mode
        self.dependency = dependency

    def verify_heuristic(self, card: CandidateCard) -> VerificationResult:
        excerpts = _excerpts(card)
        if not excerpts:
            return _no_evidence_result(VerificationMode.HEURISTIC)

        issues: list[str] = []
        if len(card.answer.strip()) < MIN_ANSWER_CHARS:
            issues.append("Answer is too short")

        answer_words = content_words(card.answer)
        evidence_words = content_words(" ".join(excerpts))
        similarity = jaccard(answer_words, evidence_words)
        coverage = len(answer_words & evidence_words) / len(answer_words) if answer_words else 0.0
        combined = similarity * 0.4 + coverage * 0.6

        verified = coverage >= self.coverage_threshold
        if coverage < 0.3:
            risk = HallucinationRisk.HIGH
            issues.append("Low overlap between answer and evidence")
        elif coverage < 0.5:
            risk = HallucinationRisk.MEDIUM
            issues.append("Moderate overlap, some claims may not be supported")
        else:
            risk = HallucinationRisk.LOW

        result = VerificationResult(
            verified=verified,
            confidence=min(1.0, 0.7 + combined * 0.2),
            issues=issues,
            evidence_coverage=coverage,
            hallucination_risk=risk,
            mode=VerificationMode.HEURISTIC,
        )
        result = _apply_numeric_guard(result, card)
        result.note = (
            f"Answer adequately supported (coverage: {coverage:.0%})"
            if result.verified
            else f"Insufficient evidence support (coverage: {coverage:.0%})"
        )
        return result

    async def _llm_verdict(
        self,
        card: CandidateCard,
        cancel_token: Optional[CancellationToken],
    ) -> VerificationVerdict:
        prompt = build_verification_prompt(
            card.question,
            card.answer,
            [(e.chunk_id, e.excerpt) for e in card.evidence if e.excerpt.strip()],
        )

        async def attempt() -> VerificationVerdict:
            response = await self.llm.complete(
                prompt,
                system_prompt=VERIFICATION_SYSTEM_PROMPT,
                temperature=0.1,
                max_output_tokens=1024,
            )
            data = parse_llm_json(response.text, label=f"verify:{card.card_id}")
            if not isinstance(data, dict):
                raise MalformedOutput(f"verify:{card.card_id}: expected a JSON object")
            try:
                return VerificationVerdict.model_validate(data)
            except ValidationError as e:
                raise MalformedOutput(f"verify:{card.card_id}: verdict failed validation") from e

        return await self.registry.call(
            self.dependency,
            attempt,
            self.retry_options,
            cancel_token=cancel_token,
            label=f"verify:{card.card_id}",
        )

    async def verify_llm(
        self,
        card: CandidateCard,
        cancel_token: Optional[CancellationToken] = None,
    ) -> VerificationResult:
        if not _excerpts(card):
            return _no_evidence_result(VerificationMode.LLM)

        if self.llm is None or self.registry is None:
            result = self.verify_heuristic(card)
            result.issues.append("LLM verification unavailable; heuristic used")
            return result

        try:
            verdict = await self._llm_verdict(card, cancel_token)
        except CancellationError:
            raise
        except (ContentError, TransientDependencyError, PersistentDependencyError) as e:
            logger.warning(f"[Verifier] LLM verification failed for {card.card_id}, using heuristic: {e}")
            result = self.verify_heuristic(card)
            result.issues.append(f"LLM verification failed ({type(e).__name__}); heuristic used")
            return result

        if verdict.hallucination_detected or verdict.evidence_coverage == "none":
            risk = HallucinationRisk.HIGH
        elif verdict.evidence_coverage == "partial":
            risk = HallucinationRisk.MEDIUM
        else:
            risk = HallucinationRisk.LOW

        result = VerificationResult(
            verified=verdict.is_supported and not verdict.hallucination_detected,
            confidence=verdict.confidence,
            issues=list(verdict.issues),
            evidence_coverage=COVERAGE_LEVELS[verdict.evidence_coverage],
            hallucination_risk=risk,
            note=verdict.explanation,
            mode=VerificationMode.LLM,
        )
        return _apply_numeric_guard(result, card)

    async def verify_card_evidence(
        self,
        card: CandidateCard,
        mode: Optional[VerificationMode] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> VerificationResult:
        mode = VerificationMode(mode) if mode else self.default_mode
        if mode == VerificationMode.LLM:
            result = await self.verify_llm(card, cancel_token)
        else:
            result = self.verify_heuristic(card)
        result.card_id = card.card_id
        return result

    async def verify_cards_batch(
        self,
        cards: list[CandidateCard],
        mode: Optional[VerificationMode] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> BatchVerificationResult:
        """
        Verify cards one at a time.

        An error on one card becomes a failed verdict for that card only.
        """
        start = time.perf_counter()
        results: list[VerificationResult] = []

        for card in cards:
            try:
                result = await self.verify_card_evidence(card, mode, cancel_token)
            except CancellationError:
                raise
            except Exception as e:  # Intentionally broad - one bad card must not sink the batch
                logger.exception(f"[Verifier] Error verifying {card.card_id}")
                result = VerificationResult(
                    verified=False,
                    confidence=0.0,
                    issues=[f"Verification error: {e}"],
                    hallucination_risk=HallucinationRisk.HIGH,
                    note="Verification raised an error",
                    mode=VerificationMode(mode) if mode else self.default_mode,
                    card_id=card.card_id,
                )
            results.append(result)

        total_verified = sum(1 for r in results if r.verified)
        total = len(results)
        batch = BatchVerificationResult(
            results=results,
            total_verified=total_verified,
            total_failed=total - total_verified,
            verification_rate=total_verified / total if total else 0.0,
            processing_time_ms=int((time.perf_counter() - start) * 1000),
        )
        logger.info(
            f"[Verifier] Batch complete: {total_verified}/{total} verified "
            f"({batch.verification_rate:.0%}) in {batch.processing_time_ms}ms"
        )
        return batch
