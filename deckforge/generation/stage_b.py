"""
Stage B - Flashcard Generation.

Turns Stage A's summary plus the module chunks into candidate cards, each
citing the chunk excerpts that support its answer. Cards are validated one by
one; a bad entry is dropped with a warning instead of failing the batch.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from loguru import logger
from pydantic import ValidationError

from deckforge.errors import GenerationEmpty, InsufficientContent, MalformedOutput
from deckforge.generation.models import (
    BloomLevel,
    CandidateCard,
    CardDifficulty,
    Chunk,
    Difficulty,
    Evidence,
    GeneratedCardPayload,
    StageAOutput,
)
from deckforge.generation.prompts import STAGE_B_SYSTEM_PROMPT, build_stage_b_prompt
from deckforge.generation.text_utils import (
    normalize_whitespace,
    split_sentences,
    truncate_words,
)
from deckforge.llm.json_parsing import parse_llm_json
from deckforge.resilience.retry import GENERATION_RETRY, RetryOptions

if TYPE_CHECKING:
    from deckforge.llm.client import LLMClient
    from deckforge.resilience.cancellation import CancellationToken
    from deckforge.resilience.registry import ResilienceRegistry

MAX_ANSWER_WORDS = 40

# (easy, medium, hard) share of cards per module difficulty
DIFFICULTY_RATIOS: dict[Difficulty, tuple[float, float, float]] = {
    Difficulty.BEGINNER: (0.5, 0.4, 0.1),
    Difficulty.INTERMEDIATE: (0.3, 0.5, 0.2),
    Difficulty.ADVANCED: (0.2, 0.4, 0.4),
}

MOCK_BLOOM_CYCLE = (BloomLevel.REMEMBER, BloomLevel.UNDERSTAND, BloomLevel.APPLY)


@dataclass
class GenerationResult:
    cards: list[CandidateCard]
    warnings: list[str] = field(default_factory=list)
    processing_time_ms: int = 0


def make_card_id(module_id: str, n: int) -> str:
    return f"M{module_id}_C{n}"


def difficulty_mix(estimated: Difficulty, count: int) -> dict[str, int]:
    """Split `count` cards into easy/medium/hard for a module of the given difficulty."""
    easy_ratio, _, hard_ratio = DIFFICULTY_RATIOS.get(
        estimated, DIFFICULTY_RATIOS[Difficulty.INTERMEDIATE]
    )
    easy = round(count * easy_ratio)
    hard = round(count * hard_ratio)
    if easy + hard > count:
        hard = max(0, count - easy)
    return {
        CardDifficulty.EASY.value: easy,
        CardDifficulty.MEDIUM.value: count - easy - hard,
        CardDifficulty.HARD.value: hard,
    }


def _difficulty_sequence(mix: dict[str, int]) -> list[CardDifficulty]:
    sequence: list[CardDifficulty] = []
    for level, count in mix.items():
        sequence.extend([CardDifficulty(level)] * count)
    return sequence


def match_evidence_quote(quote: str, chunks: list[Chunk]) -> Optional[Evidence]:
    """
    Attach a bare evidence quote to the chunk that contains it.

    Falls back to a 50-character prefix match; returns None when no chunk
    contains the quote.
    """
    normalized_quote = normalize_whitespace(quote).lower()
    if not normalized_quote:
        return None

    prefix = normalized_quote[:50]
    partial: Optional[Chunk] = None
    for chunk in chunks:
        normalized_chunk = normalize_whitespace(chunk.text).lower()
        if normalized_quote in normalized_chunk:
            return Evidence(chunk_id=chunk.chunk_id, excerpt=quote.strip())
        if partial is None and prefix in normalized_chunk:
            partial = chunk

    if partial is not None:
        return Evidence(chunk_id=partial.chunk_id, excerpt=quote.strip())
    return None


def _build_evidence(
    payload: GeneratedCardPayload,
    chunks: list[Chunk],
    chunk_map: dict[str, Chunk],
) -> list[Evidence]:
    evidence: list[Evidence] = []
    for item in payload.evidence:
        excerpt = item.excerpt.strip()
        if not excerpt:
            continue
        chunk = chunk_map.get(item.chunk_id)
        if chunk is None:
            matched = match_evidence_quote(excerpt, chunks)
            if matched is None:
                evidence.append(Evidence(chunk_id=item.chunk_id, excerpt=excerpt, loc=item.loc))
                continue
            chunk = chunk_map[matched.chunk_id]
        evidence.append(
            Evidence(
                chunk_id=chunk.chunk_id,
                excerpt=excerpt,
                source_file=item.source_file or chunk.source_file or None,
                loc=item.loc or chunk.slide_or_page,
            )
        )

    if not evidence and payload.evidence_quote:
        matched = match_evidence_quote(payload.evidence_quote, chunks)
        if matched is not None:
            chunk = chunk_map[matched.chunk_id]
            matched.source_file = chunk.source_file or None
            matched.loc = chunk.slide_or_page
            evidence.append(matched)
    return evidence


def parse_stage_b_response(
    text: str,
    module_id: str,
    chunks: list[Chunk],
    target_count: Optional[int] = None,
) -> GenerationResult:
    """
    Parse a Stage B reply into candidate cards.

    Raises:
        MalformedOutput: If the reply has no parseable card list
    """
    data = parse_llm_json(text, label=f"stage_b:{module_id}")
    raw_cards: Any = data.get("cards") if isinstance(data, dict) else data
    if not isinstance(raw_cards, list):
        raise MalformedOutput(f"stage_b:{module_id}: response has no 'cards' list")

    chunk_map = {c.chunk_id: c for c in chunks}
    cards: list[CandidateCard] = []
    warnings: list[str] = []

    for index, raw in enumerate(raw_cards, start=1):
        try:
            payload = GeneratedCardPayload.model_validate(raw)
        except ValidationError as e:
            warnings.append(f"Card {index} skipped: failed validation ({e.error_count()} errors)")
            continue

        card_id = make_card_id(module_id, len(cards) + 1)
        answer = payload.answer.strip()
        if len(answer.split()) > MAX_ANSWER_WORDS:
            answer = truncate_words(answer, MAX_ANSWER_WORDS)
            warnings.append(f"{card_id}: answer truncated to {MAX_ANSWER_WORDS} words")

        evidence = _build_evidence(payload, chunks, chunk_map)
        if not evidence:
            warnings.append(f"{card_id}: no evidence cited")

        cards.append(
            CandidateCard(
                card_id=card_id,
                question=payload.question.strip(),
                answer=answer,
                difficulty=payload.difficulty,
                evidence=evidence,
                bloom_level=payload.bloom_level,
                rationale=payload.rationale,
                confidence_score=payload.confidence_score,
                learning_objective_ref=payload.learning_objective_ref,
            )
        )

    if target_count is not None and len(cards) > target_count:
        warnings.append(f"Trimmed {len(cards) - target_count} cards above the requested {target_count}")
        cards = cards[:target_count]

    return GenerationResult(cards=cards, warnings=warnings)


def generate_mock(
    stage_a: StageAOutput,
    chunks: list[Chunk],
    module_id: str,
    target_count: int,
) -> GenerationResult:
    """
    Deterministic cards: one per source sentence, round-robin across chunks.

    The question is the sentence's opening; the answer is the full sentence,
    cited verbatim as evidence.
    """
    per_chunk = [
        [s for s in split_sentences(chunk.text) if len(s.split()) >= 6] for chunk in chunks
    ]
    picked: list[tuple[Chunk, str]] = []
    seen: set[str] = set()
    depth = 0
    while len(picked) < target_count and any(depth < len(s) for s in per_chunk):
        for chunk, sentences in zip(chunks, per_chunk):
            if depth < len(sentences) and len(picked) < target_count:
                sentence = sentences[depth]
                key = sentence.lower()
                if key not in seen:
                    seen.add(key)
                    picked.append((chunk, sentence))
        depth += 1

    difficulties = _difficulty_sequence(
        difficulty_mix(stage_a.estimated_difficulty, max(len(picked), 1))
    )
    objectives = stage_a.learning_objectives or [None]

    cards = []
    for i, (chunk, sentence) in enumerate(picked):
        words = sentence.split()
        opening = " ".join(words[: max(3, len(words) // 2)])
        cards.append(
            CandidateCard(
                card_id=make_card_id(module_id, i + 1),
                question=f"Complete the statement: {opening} ...",
                answer=truncate_words(sentence, MAX_ANSWER_WORDS),
                difficulty=difficulties[i % len(difficulties)],
                evidence=[
                    Evidence(
                        chunk_id=chunk.chunk_id,
                        excerpt=sentence,
                        source_file=chunk.source_file or None,
                        loc=chunk.slide_or_page,
                    )
                ],
                bloom_level=MOCK_BLOOM_CYCLE[i % len(MOCK_BLOOM_CYCLE)],
                rationale=f"Recall of a key statement from {chunk.heading or chunk.chunk_id}",
                confidence_score=0.8,
                learning_objective_ref=objectives[i % len(objectives)],
            )
        )

    warnings = []
    if len(cards) < target_count:
        warnings.append(f"Only {len(cards)} of {target_count} requested cards could be generated")
    return GenerationResult(cards=cards, warnings=warnings)


class CardGenerator:
    """Runs Stage B for one module at a time."""

    def __init__(
        self,
        llm: Optional[LLMClient],
        registry: ResilienceRegistry,
        retry_options: RetryOptions = GENERATION_RETRY,
        mock: bool = False,
        dependency: str = "llm",
    ):
        self.llm = llm
        self.registry = registry
        self.retry_options = retry_options
        self.mock = mock or llm is None
        self.dependency = dependency

    async def generate(
        self,
        stage_a: StageAOutput,
        chunks: list[Chunk],
        *,
        target_count: int = 10,
        min_cards: int = 1,
        module_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> GenerationResult:
        """
        Generate candidate cards.

        Raises:
            InsufficientContent: If `chunks` is empty
            GenerationEmpty: If fewer than `min_cards` valid cards come back
            MalformedOutput: If the reply stays unparseable after retries
        """
        module_id = module_id or stage_a.module_id
        if not chunks:
            raise InsufficientContent(f"Module {module_id} has no content chunks")

        start = time.perf_counter()
        logger.info(f"[StageB] Starting for module {module_id}: target {target_count} cards")

        if self.mock:
            result = generate_mock(stage_a, chunks, module_id, target_count)
        else:
            prompt = build_stage_b_prompt(
                stage_a, chunks, target_count, difficulty_mix(stage_a.estimated_difficulty, target_count)
            )

            async def attempt() -> GenerationResult:
                response = await self.llm.complete(
                    prompt,
                    system_prompt=STAGE_B_SYSTEM_PROMPT,
                    temperature=0.4,
                    max_output_tokens=4096,
                )
                return parse_stage_b_response(response.text, module_id, chunks, target_count)

            result = await self.registry.call(
                self.dependency,
                attempt,
                self.retry_options,
                cancel_token=cancel_token,
                label=f"stage_b:{module_id}",
            )

        result.processing_time_ms = int((time.perf_counter() - start) * 1000)
        for warning in result.warnings:
            logger.warning(f"[StageB] {module_id}: {warning}")

        if len(result.cards) < min_cards:
            raise GenerationEmpty(
                f"Stage B produced {len(result.cards)} valid cards for module {module_id} "
                f"(minimum {min_cards})",
                details={"warnings": result.warnings[:10]},
            )

        logger.info(f"[StageB] Module {module_id}: {len(result.cards)} cards generated")
        return result
