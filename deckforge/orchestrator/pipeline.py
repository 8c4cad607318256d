"""
Per-module generation pipeline.

fetch chunks -> Stage A -> Stage B -> excerpt reconciliation -> dedupe ->
verify -> publish/flag -> save deck version -> queue flagged cards

Stage errors never escape: they become the module's ModuleResult. The one
exception is PersistenceError, which fails the whole job.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from loguru import logger

from deckforge.errors import (
    CancellationError,
    InsufficientContent,
    PersistenceError,
    PersistentDependencyError,
    truncate_error,
)
from deckforge.generation.models import (
    CandidateCard,
    Deck,
    ReviewStatus,
    new_deck_id,
    utcnow,
)
from deckforge.generation.text_utils import content_words, jaccard
from deckforge.orchestrator.models import JobSettings, ModuleResult, ModuleStatus
from deckforge.resilience.retry import DOCUMENT_FETCH_RETRY, RetryOptions
from deckforge.verification.evidence_verifier import VerificationMode
from deckforge.verification.excerpt_matcher import (
    CorrectionStatus,
    apply_corrections,
    reconcile_card_evidence,
)

if TYPE_CHECKING:
    from config import Settings
    from deckforge.content.fetcher import ContentFetcher, ModuleRef
    from deckforge.generation.stage_a import Summarizer
    from deckforge.generation.stage_b import CardGenerator
    from deckforge.persistence.store import DeckStore
    from deckforge.resilience.cancellation import CancellationToken
    from deckforge.resilience.registry import ResilienceRegistry
    from deckforge.review.queue import ReviewQueue
    from deckforge.verification.evidence_verifier import EvidenceVerifier


@dataclass
class PipelineConfig:
    target_card_count: int = 10
    min_cards: int = 1
    min_chunks: int = 1
    verification_mode: str = "heuristic"
    dedupe_threshold: float = 0.85
    cancel_policy: str = "finish"

    @classmethod
    def from_settings(cls, settings: Settings) -> PipelineConfig:
        return cls(
            target_card_count=settings.target_card_count,
            min_cards=settings.min_cards,
            min_chunks=settings.min_chunks,
            verification_mode=settings.verification_mode,
            dedupe_threshold=settings.dedupe_threshold,
            cancel_policy=settings.cancel_policy,
        )

    def merged(self, overrides: JobSettings) -> PipelineConfig:
        """Apply a job's per-run overrides."""
        values: dict[str, Any] = {
            "target_card_count": overrides.target_card_count,
            "min_cards": overrides.min_cards,
            "verification_mode": overrides.verification_mode,
            "dedupe_threshold": overrides.dedupe_threshold,
            "cancel_policy": overrides.cancel_policy,
        }
        merged = PipelineConfig(**vars(self))
        for name, value in values.items():
            if value is not None:
                setattr(merged, name, value)
        return merged


def dedupe_cards(cards: list[CandidateCard], threshold: float) -> tuple[list[CandidateCard], list[str]]:
    """
    Drop cards whose question is near-identical to an earlier one.

    Returns:
        (kept cards, removed card ids)
    """
    kept: list[CandidateCard] = []
    kept_words: list[set[str]] = []
    removed: list[str] = []
    for card in cards:
        words = content_words(card.question, min_length=3)
        if any(jaccard(words, other) > threshold for other in kept_words):
            removed.append(card.card_id)
            continue
        kept.append(card)
        kept_words.append(words)
    return kept, removed


class ModulePipeline:
    """Drives one module from raw chunks to a saved deck."""

    def __init__(
        self,
        content_fetcher: ContentFetcher,
        summarizer: Summarizer,
        generator: CardGenerator,
        verifier: EvidenceVerifier,
        deck_store: DeckStore,
        review_queue: ReviewQueue,
        registry: ResilienceRegistry,
        fetch_retry: RetryOptions = DOCUMENT_FETCH_RETRY,
    ):
        self.content_fetcher = content_fetcher
        self.summarizer = summarizer
        self.generator = generator
        self.verifier = verifier
        self.deck_store = deck_store
        self.review_queue = review_queue
        self.registry = registry
        self.fetch_retry = fetch_retry

    async def run(
        self,
        job_id: str,
        module: ModuleRef,
        config: PipelineConfig,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ModuleResult:
        """
        Process one module and describe what happened.

        Raises:
            PersistenceError: If the deck could not be stored
        """
        log = logger.bind(job_id=job_id, module_id=module.module_id)
        started_at = utcnow()
        start = time.perf_counter()
        result = ModuleResult(
            module_id=module.module_id,
            course_id=module.course_id,
            module_title=module.display_title,
            success=False,
            status=ModuleStatus.FAILED,
            started_at=started_at,
        )

        try:
            await self._process(job_id, module, config, cancel_token, result)
            result.success = True
            result.status = ModuleStatus.SUCCEEDED
        except PersistenceError:
            raise
        except CancellationError as e:
            result.status = ModuleStatus.CANCELLED
            result.error = type(e).__name__
            result.error_message = truncate_error(str(e))
            log.info(f"Module {module.module_id} cancelled")
        except PersistentDependencyError as e:
            result.status = ModuleStatus.SKIPPED
            result.error = type(e).__name__
            result.error_message = truncate_error(str(e))
            log.warning(f"Module {module.module_id} skipped: {e}")
        except Exception as e:  # Intentionally broad - stage errors become module results
            result.status = ModuleStatus.FAILED
            result.error = type(e).__name__
            result.error_message = truncate_error(str(e))
            if getattr(e, "attempts", None):
                result.warnings.append(f"Gave up after {e.attempts} attempts")
            if isinstance(e, (InsufficientContent,)) or hasattr(e, "error_code"):
                log.warning(f"Module {module.module_id} failed: {type(e).__name__}: {e}")
            else:
                log.exception(f"Unexpected error processing module {module.module_id}")

        result.completed_at = utcnow()
        result.duration_ms = int((time.perf_counter() - start) * 1000)
        return result

    async def _process(
        self,
        job_id: str,
        module: ModuleRef,
        config: PipelineConfig,
        cancel_token: Optional[CancellationToken],
        result: ModuleResult,
    ) -> None:
        log = logger.bind(job_id=job_id, module_id=module.module_id)

        chunks = await self.registry.call(
            "content_fetcher",
            lambda: self.content_fetcher.fetch_chunks(module.course_id, module.module_id),
            self.fetch_retry,
            cancel_token=cancel_token,
            label=f"fetch:{module.course_id}/{module.module_id}",
        )
        if len(chunks) < max(config.min_chunks, 1):
            raise InsufficientContent(
                f"Module {module.module_id} has {len(chunks)} content chunks "
                f"(minimum {max(config.min_chunks, 1)})"
            )

        stage_a = await self.summarizer.run(
            chunks, module.module_id, module.title or None, cancel_token=cancel_token
        )
        generation = await self.generator.generate(
            stage_a,
            chunks,
            target_count=config.target_card_count,
            min_cards=config.min_cards,
            module_id=module.module_id,
            cancel_token=cancel_token,
        )
        warnings = list(generation.warnings)

        cards: list[CandidateCard] = []
        for card in generation.cards:
            corrections = reconcile_card_evidence(card, chunks)
            missing = sum(1 for c in corrections if c.status == CorrectionStatus.MISSING)
            corrected = sum(1 for c in corrections if c.status == CorrectionStatus.CORRECTED)
            if missing:
                warnings.append(f"{card.card_id}: {missing} excerpt(s) not found in source")
            if corrected:
                log.debug(f"{card.card_id}: {corrected} excerpt(s) corrected")
            cards.append(apply_corrections(card, corrections, chunks))

        cards, removed = dedupe_cards(cards, config.dedupe_threshold)
        if removed:
            warnings.append(f"Removed {len(removed)} duplicate cards: {', '.join(removed)}")

        batch = await self.verifier.verify_cards_batch(
            cards, VerificationMode(config.verification_mode), cancel_token
        )

        final_cards: list[CandidateCard] = []
        for card in cards:
            verdict = batch.for_card(card.card_id)
            publish = bool(verdict and verdict.verified and card.has_evidence)
            final_cards.append(
                card.with_changes(
                    verification=verdict.to_dict() if verdict else None,
                    review_status=ReviewStatus.PUBLISHED if publish else ReviewStatus.PENDING_REVIEW,
                )
            )

        if cancel_token is not None and config.cancel_policy == "abandon":
            cancel_token.raise_if_cancelled()

        deck = await self.deck_store.save_deck(
            Deck(
                deck_id=new_deck_id(),
                module_id=module.module_id,
                course_id=module.course_id,
                module_title=module.display_title,
                cards=final_cards,
                job_id=job_id,
                warnings=warnings,
                stage_a=stage_a.to_dict(),
            )
        )
        flagged = deck.pending_cards()
        await self.review_queue.submit(deck, flagged)

        result.deck_id = deck.deck_id
        result.deck_version = deck.version
        result.generated_count = len(final_cards)
        result.verified_count = len(final_cards) - len(flagged)
        result.review_count = len(flagged)
        result.verification_rate = batch.verification_rate
        result.warnings.extend(warnings)

        log.info(
            f"Module {module.module_id}: deck v{deck.version} saved with {len(final_cards)} cards "
            f"({result.verified_count} published, {len(flagged)} flagged for review)"
        )
