"""
Unit tests for Stage B flashcard generation.
"""

import json

import pytest

from deckforge.errors import GenerationEmpty, InsufficientContent, MalformedOutput
from deckforge.generation.models import CardDifficulty, Difficulty
from deckforge.generation.prompts import STAGE_B_FEW_SHOT
from deckforge.generation.stage_a import summarize_mock
from deckforge.generation.stage_b import (
    MAX_ANSWER_WORDS,
    CardGenerator,
    difficulty_mix,
    generate_mock,
    match_evidence_quote,
    parse_stage_b_response,
)
from deckforge.llm.client import ScriptedLLMClient
from deckforge.resilience.registry import ResilienceRegistry
from deckforge.resilience.retry import RetryOptions

FAST_RETRY = RetryOptions(max_retries=2, initial_delay_ms=1, jitter=False, max_malformed_retries=1)


def _reply(cards):
    return json.dumps({"cards": cards})


@pytest.fixture
def registry(recording_sleep):
    return ResilienceRegistry(sleep=recording_sleep)


@pytest.fixture
def stage_a(hr_chunks):
    return summarize_mock(hr_chunks, "m1", "HR Basics")


class TestDifficultyMix:
    @pytest.mark.parametrize("difficulty", list(Difficulty))
    @pytest.mark.parametrize("count", [1, 3, 10, 17])
    def test_sums_to_count(self, difficulty, count):
        mix = difficulty_mix(difficulty, count)
        assert sum(mix.values()) == count
        assert all(v >= 0 for v in mix.values())

    def test_beginner_leans_easy(self):
        mix = difficulty_mix(Difficulty.BEGINNER, 10)
        assert mix["easy"] > mix["hard"]


class TestMatchEvidenceQuote:
    def test_exact_match_ignores_whitespace_and_case(self, hr_chunks):
        evidence = match_evidence_quote("MANAGERS conduct formal   performance reviews", hr_chunks)
        assert evidence.chunk_id == "hr-2"

    def test_no_match(self, hr_chunks):
        assert match_evidence_quote("Quantum chromodynamics governs quarks", hr_chunks) is None


class TestParseStageBResponse:
    def test_valid_cards(self, hr_chunks):
        text = _reply(
            [
                {
                    "question": "How long does structured onboarding last?",
                    "answer": "At least 90 days.",
                    "difficulty": "EASY",
                    "bloom_level": "remember",
                    "evidence": [{"chunk_id": "hr-1", "excerpt": "lasts at least 90 days"}],
                }
            ]
        )
        result = parse_stage_b_response(text, "m1", hr_chunks)

        card = result.cards[0]
        assert card.card_id == "Mm1_C1"
        assert card.difficulty == CardDifficulty.EASY
        assert card.bloom_level.value == "Remember"
        assert card.evidence[0].source_file == "hr101/module1.pdf"
        assert card.evidence[0].loc == "1"
        assert result.warnings == []

    def test_invalid_card_dropped_with_warning(self, hr_chunks):
        text = _reply(
            [
                {"question": "Q?", "answer": ""},
                {"q": "How often are reviews held?", "a": "Twice a year.", "evidence_quote": "twice each year"},
            ]
        )
        result = parse_stage_b_response(text, "m1", hr_chunks)

        assert len(result.cards) == 1
        assert result.cards[0].card_id == "Mm1_C1"
        assert result.cards[0].evidence[0].chunk_id == "hr-2"
        assert any("Card 1 skipped" in w for w in result.warnings)

    def test_long_answer_truncated(self, hr_chunks):
        long_answer = " ".join(["word"] * 60)
        result = parse_stage_b_response(
            _reply([{"question": "What is a long answer?", "answer": long_answer}]), "m1", hr_chunks
        )
        assert len(result.cards[0].answer.split()) <= MAX_ANSWER_WORDS + 1
        assert any("truncated" in w for w in result.warnings)
        assert any("no evidence cited" in w for w in result.warnings)

    def test_trimmed_to_target(self, hr_chunks):
        cards = [{"question": f"Question number {i}?", "answer": "Answer."} for i in range(5)]
        result = parse_stage_b_response(_reply(cards), "m1", hr_chunks, target_count=3)
        assert len(result.cards) == 3

    def test_missing_cards_list(self, hr_chunks):
        with pytest.raises(MalformedOutput):
            parse_stage_b_response('{"flashcards": "none"}', "m1", hr_chunks)


class TestGenerateMock:
    def test_cards_cite_verbatim_sentences(self, stage_a, hr_chunks):
        result = generate_mock(stage_a, hr_chunks, "m1", target_count=6)

        assert len(result.cards) == 6
        texts = {c.chunk_id: c.text for c in hr_chunks}
        for card in result.cards:
            assert card.has_evidence
            assert card.evidence[0].excerpt in texts[card.evidence[0].chunk_id]
            assert card.answer == card.evidence[0].excerpt

    def test_round_robin_across_chunks(self, stage_a, hr_chunks):
        result = generate_mock(stage_a, hr_chunks, "m1", target_count=3)
        assert [c.evidence[0].chunk_id for c in result.cards] == ["hr-1", "hr-2", "hr-3"]

    def test_shortfall_warning(self, stage_a, hr_chunks):
        result = generate_mock(stage_a, hr_chunks, "m1", target_count=20)
        assert len(result.cards) == 9
        assert result.warnings


class TestCardGenerator:
    @pytest.mark.asyncio
    async def test_mock_generation(self, registry, stage_a, hr_chunks):
        result = await CardGenerator(None, registry).generate(stage_a, hr_chunks, target_count=4)
        assert len(result.cards) == 4

    @pytest.mark.asyncio
    async def test_empty_chunks(self, registry, stage_a):
        with pytest.raises(InsufficientContent):
            await CardGenerator(None, registry).generate(stage_a, [])

    @pytest.mark.asyncio
    async def test_generation_empty(self, registry, stage_a, hr_chunks):
        llm = ScriptedLLMClient([_reply([{"question": "Bad", "answer": ""}])])
        generator = CardGenerator(llm, registry, FAST_RETRY)

        with pytest.raises(GenerationEmpty):
            await generator.generate(stage_a, hr_chunks, min_cards=1)

    @pytest.mark.asyncio
    async def test_malformed_output_retried_then_succeeds(self, registry, stage_a, hr_chunks):
        good = _reply(
            [
                {
                    "question": "What do bonuses depend on?",
                    "answer": "Individual performance and company results.",
                    "evidence": [{"chunk_id": "hr-3", "excerpt": "Bonuses depend on both individual performance"}],
                }
            ]
        )
        llm = ScriptedLLMClient(["<html>oops</html>", good])
        result = await CardGenerator(llm, registry, FAST_RETRY).generate(stage_a, hr_chunks)

        assert len(result.cards) == 1
        assert len(llm.calls) == 2

    @pytest.mark.asyncio
    async def test_malformed_output_exhausts_separate_cap(self, registry, stage_a, hr_chunks):
        llm = ScriptedLLMClient(default="not json at all")

        with pytest.raises(MalformedOutput):
            await CardGenerator(llm, registry, FAST_RETRY).generate(stage_a, hr_chunks)
        assert len(llm.calls) == 2

    @pytest.mark.asyncio
    async def test_system_prompt_carries_example(self, registry, stage_a, hr_chunks):
        llm = ScriptedLLMClient(default="not json at all")
        with pytest.raises(MalformedOutput):
            await CardGenerator(llm, registry, FAST_RETRY).generate(stage_a, hr_chunks)

        assert "=== EXAMPLE ===" in llm.system_prompts[0]
        example = json.loads(STAGE_B_FEW_SHOT.split("Response:\n", 1)[1])
        assert [c["evidence"][0]["chunk_id"] for c in example["cards"]] == ["c1", "c2", "c3"]
