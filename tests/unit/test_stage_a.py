"""
Unit tests for Stage A summarization.
"""

import json

import pytest

from deckforge.errors import CircuitOpenError, InsufficientContent, MalformedOutput
from deckforge.generation.models import Difficulty
from deckforge.generation.prompts import STAGE_A_FEW_SHOT
from deckforge.generation.stage_a import Summarizer, parse_stage_a_response, summarize_mock
from deckforge.llm.client import ScriptedLLMClient
from deckforge.resilience.registry import ResilienceRegistry
from deckforge.resilience.retry import RetryOptions

FAST_RETRY = RetryOptions(max_retries=2, initial_delay_ms=1, jitter=False, max_malformed_retries=2)

VALID_REPLY = json.dumps(
    {
        "summary": "Covers onboarding.\n\nCovers reviews and pay.",
        "learning_objectives": ["Explain onboarding", "Describe performance reviews"],
        "key_terms": [{"term": "onboarding", "definition": "..."}, "calibration"],
        "content_themes": ["People operations"],
        "estimated_difficulty": "Beginner",
    }
)


@pytest.fixture
def registry(recording_sleep):
    return ResilienceRegistry(failure_threshold=5, sleep=recording_sleep)


class TestSummarizeMock:
    def test_hr_chunks(self, hr_chunks):
        output = summarize_mock(hr_chunks, "m1", "HR Basics")

        assert 2 <= len(output.learning_objectives) <= 10
        assert len(output.key_terms) >= 1
        assert output.chunk_count == 3
        assert output.content_themes == ["Onboarding", "Performance Reviews", "Compensation"]
        assert len(output.summaries) == 3

    def test_deterministic(self, hr_chunks):
        assert summarize_mock(hr_chunks, "m1").to_dict() == summarize_mock(hr_chunks, "m1").to_dict()


class TestParseStageAResponse:
    def test_flattens_terms_and_coerces_difficulty(self):
        parsed = parse_stage_a_response(VALID_REPLY)
        assert parsed.key_terms == ["onboarding", "calibration"]
        assert parsed.estimated_difficulty == Difficulty.BEGINNER

    def test_objectives_truncated_to_ten(self):
        reply = json.dumps(
            {
                "summary": "s",
                "learning_objectives": [f"Objective {i}" for i in range(14)],
                "key_terms": ["term"],
            }
        )
        assert len(parse_stage_a_response(reply).learning_objectives) == 10

    def test_missing_objectives_is_malformed(self):
        with pytest.raises(MalformedOutput):
            parse_stage_a_response(json.dumps({"summary": "s", "learning_objectives": [], "key_terms": ["t"]}))

    def test_single_objective_is_malformed(self):
        reply = json.dumps(
            {"summary": "s", "learning_objectives": ["Explain onboarding"], "key_terms": ["t"]}
        )
        with pytest.raises(MalformedOutput):
            parse_stage_a_response(reply)

    def test_unknown_difficulty_defaults(self):
        reply = json.dumps(
            {"summary": "s", "learning_objectives": ["o1", "o2"], "key_terms": ["t"], "estimated_difficulty": "expert"}
        )
        assert parse_stage_a_response(reply).estimated_difficulty == Difficulty.INTERMEDIATE


class TestSummarizer:
    @pytest.mark.asyncio
    async def test_empty_input_makes_no_llm_calls(self, registry):
        llm = ScriptedLLMClient(default=VALID_REPLY)
        summarizer = Summarizer(llm, registry, FAST_RETRY)

        with pytest.raises(InsufficientContent):
            await summarizer.run([], "m1")
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_mock_mode_when_no_llm(self, registry, hr_chunks):
        summarizer = Summarizer(None, registry)
        assert summarizer.mock

        output = await summarizer.run(hr_chunks, "m1", "HR Basics")
        assert output.chunk_count == 3

    @pytest.mark.asyncio
    async def test_llm_mode(self, registry, hr_chunks):
        llm = ScriptedLLMClient([VALID_REPLY])
        output = await Summarizer(llm, registry, FAST_RETRY).run(hr_chunks, "m1", "HR Basics")

        assert output.summaries == ["Covers onboarding.", "Covers reviews and pay."]
        assert output.learning_objectives == ["Explain onboarding", "Describe performance reviews"]
        assert output.chunk_count == 3
        assert len(llm.calls) == 1
        assert "Module Title: HR Basics" in llm.calls[0]
        assert "hr101/module1.pdf" in llm.calls[0]

    @pytest.mark.asyncio
    async def test_system_prompt_carries_example(self, registry, hr_chunks):
        llm = ScriptedLLMClient([VALID_REPLY])
        await Summarizer(llm, registry, FAST_RETRY).run(hr_chunks, "m1")

        assert "=== EXAMPLE ===" in llm.system_prompts[0]
        assert "Schein" in llm.system_prompts[0]

    def test_example_reply_satisfies_schema(self):
        example = STAGE_A_FEW_SHOT.split("Response:\n", 1)[1]
        output = parse_stage_a_response(example)
        assert len(output.learning_objectives) == 3
        assert output.estimated_difficulty == Difficulty.BEGINNER

    @pytest.mark.asyncio
    async def test_malformed_reply_retried(self, registry, hr_chunks):
        llm = ScriptedLLMClient(["no json here", VALID_REPLY])
        output = await Summarizer(llm, registry, FAST_RETRY).run(hr_chunks, "m1")

        assert output.key_terms == ["onboarding", "calibration"]
        assert len(llm.calls) == 2

    @pytest.mark.asyncio
    async def test_malformed_cap_exhausted(self, registry, hr_chunks):
        llm = ScriptedLLMClient(default="still not json")

        with pytest.raises(MalformedOutput):
            await Summarizer(llm, registry, FAST_RETRY).run(hr_chunks, "m1")
        assert len(llm.calls) == 3

    @pytest.mark.asyncio
    async def test_open_circuit_skips_call(self, recording_sleep, hr_chunks):
        registry = ResilienceRegistry(failure_threshold=1, sleep=recording_sleep)
        llm = ScriptedLLMClient([ConnectionError("connection reset"), VALID_REPLY])
        summarizer = Summarizer(llm, registry, RetryOptions(max_retries=0))

        with pytest.raises(ConnectionError):
            await summarizer.run(hr_chunks, "m1")
        with pytest.raises(CircuitOpenError):
            await summarizer.run(hr_chunks, "m1")
        assert len(llm.calls) == 1
