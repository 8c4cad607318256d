"""
Stage A - Module Summarization.

Condenses a module's chunks into a summary, learning objectives, key terms,
themes and an estimated difficulty. Stage B uses this to steer card coverage.

Two modes:
- LLM: one JSON-returning call through the resilience registry
- Mock: deterministic, offline; used by tests and the default configuration
"""

from __future__ import annotations

import time
from collections import Counter
from typing import TYPE_CHECKING, Optional

from loguru import logger
from pydantic import ValidationError

from deckforge.errors import InsufficientContent, MalformedOutput
from deckforge.generation.models import Chunk, Difficulty, StageAOutput, StageAResponse
from deckforge.generation.prompts import STAGE_A_SYSTEM_PROMPT, build_stage_a_prompt
from deckforge.generation.text_utils import STOPWORDS, split_sentences, tokenize
from deckforge.llm.json_parsing import parse_llm_json
from deckforge.resilience.retry import GENERATION_RETRY, RetryOptions

if TYPE_CHECKING:
    from deckforge.llm.client import LLMClient
    from deckforge.resilience.cancellation import CancellationToken
    from deckforge.resilience.registry import ResilienceRegistry

OBJECTIVE_VERBS = ("Define", "Explain", "Describe", "Apply", "Compare", "Analyze")
MAX_MOCK_KEY_TERMS = 8


def parse_stage_a_response(text: str) -> StageAResponse:
    """
    Parse and validate a Stage A reply.

    Raises:
        MalformedOutput: If the reply is not JSON or fails the schema
    """
    data = parse_llm_json(text, label="stage_a")
    if not isinstance(data, dict):
        raise MalformedOutput("stage_a: expected a JSON object")
    try:
        return StageAResponse.model_validate(data)
    except ValidationError as e:
        raise MalformedOutput(f"stage_a: schema validation failed: {e.error_count()} errors") from e


def summarize_mock(
    chunks: list[Chunk],
    module_id: str,
    module_title: Optional[str] = None,
) -> StageAOutput:
    """Deterministic summary built from lead sentences and word frequencies."""
    summaries = []
    all_sentences: list[str] = []
    for chunk in chunks:
        sentences = split_sentences(chunk.text)
        all_sentences.extend(sentences)
        if sentences:
            summaries.append(sentences[0])

    counts: Counter[str] = Counter()
    for chunk in chunks:
        for word in tokenize(chunk.text):
            if len(word) >= 5 and word not in STOPWORDS:
                counts[word] += 1
    key_terms = [term for term, _ in counts.most_common(MAX_MOCK_KEY_TERMS)]
    if not key_terms:
        key_terms = [module_title or f"module {module_id}"]

    objective_count = max(2, min(len(OBJECTIVE_VERBS), len(key_terms)))
    learning_objectives = [
        f"{OBJECTIVE_VERBS[i]} {key_terms[i % len(key_terms)]}" for i in range(objective_count)
    ]

    headings = list(dict.fromkeys(c.heading for c in chunks if c.heading))
    content_themes = headings or [t.title() for t in key_terms[:3]]

    word_total = sum(len(s.split()) for s in all_sentences)
    avg_sentence_len = word_total / len(all_sentences) if all_sentences else 0
    if avg_sentence_len < 12:
        difficulty = Difficulty.BEGINNER
    elif avg_sentence_len < 22:
        difficulty = Difficulty.INTERMEDIATE
    else:
        difficulty = Difficulty.ADVANCED

    return StageAOutput(
        module_id=module_id,
        summaries=summaries[:10],
        learning_objectives=learning_objectives,
        key_terms=key_terms,
        content_themes=content_themes,
        estimated_difficulty=difficulty,
        chunk_count=len(chunks),
    )


class Summarizer:
    """Runs Stage A for one module at a time."""

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

    async def run(
        self,
        chunks: list[Chunk],
        module_id: str,
        module_title: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> StageAOutput:
        """
        Summarize a module.

        Raises:
            InsufficientContent: If `chunks` is empty (no LLM call is made)
            MalformedOutput: If the reply stays unparseable after retries
            CircuitOpenError: If the LLM dependency circuit is open
        """
        if not chunks:
            raise InsufficientContent(f"Module {module_id} has no content chunks")

        start = time.perf_counter()
        logger.info(f"[StageA] Starting for module {module_id} with {len(chunks)} chunks")

        if self.mock:
            output = summarize_mock(chunks, module_id, module_title)
        else:
            output = await self._run_llm(chunks, module_id, module_title, cancel_token)

        output.processing_time_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            f"[StageA] Module {module_id}: {len(output.learning_objectives)} objectives, "
            f"{len(output.key_terms)} key terms, difficulty={output.estimated_difficulty.value}"
        )
        return output

    async def _run_llm(
        self,
        chunks: list[Chunk],
        module_id: str,
        module_title: Optional[str],
        cancel_token: Optional[CancellationToken],
    ) -> StageAOutput:
        prompt = build_stage_a_prompt(chunks, module_title)

        async def attempt() -> StageAResponse:
            response = await self.llm.complete(
                prompt,
                system_prompt=STAGE_A_SYSTEM_PROMPT,
                temperature=0.3,
                max_output_tokens=2048,
            )
            return parse_stage_a_response(response.text)

        parsed = await self.registry.call(
            self.dependency,
            attempt,
            self.retry_options,
            cancel_token=cancel_token,
            label=f"stage_a:{module_id}",
        )

        summaries = [p.strip() for p in parsed.summary.split("\n\n") if p.strip()]
        return StageAOutput(
            module_id=module_id,
            summaries=summaries,
            learning_objectives=parsed.learning_objectives,
            key_terms=parsed.key_terms,
            content_themes=parsed.content_themes,
            estimated_difficulty=parsed.estimated_difficulty,
            chunk_count=len(chunks),
        )
