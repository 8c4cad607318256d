"""
Unit tests for the evidence verifier.
"""

import json

import pytest

from deckforge.generation.models import CandidateCard, Evidence
from deckforge.llm.client import ScriptedLLMClient
from deckforge.resilience.registry import ResilienceRegistry
from deckforge.resilience.retry import RetryOptions
from deckforge.verification.evidence_verifier import (
    NO_EVIDENCE_ISSUE,
    NUMERIC_ISSUE_PREFIX,
    EvidenceVerifier,
    HallucinationRisk,
    VerificationMode,
    ungrounded_numbers,
)

ONBOARDING_SENTENCE = (
    "A structured onboarding process lasts at least 90 days and includes a mentor assignment."
)
NO_RETRY = RetryOptions(max_retries=0, max_malformed_retries=0, jitter=False)


def _card(answer, excerpt=ONBOARDING_SENTENCE, card_id="Mm1_C1"):
    evidence = [Evidence(chunk_id="hr-1", excerpt=excerpt)] if excerpt is not None else []
    return CandidateCard(
        card_id=card_id,
        question="How long does onboarding last?",
        answer=answer,
        evidence=evidence,
    )


def _verdict(**overrides):
    data = {
        "is_supported": True,
        "confidence": 0.92,
        "issues": [],
        "evidence_coverage": "full",
        "hallucination_detected": False,
        "explanation": "The answer restates the excerpt.",
    }
    data.update(overrides)
    return json.dumps(data)


@pytest.fixture
def registry(recording_sleep):
    return ResilienceRegistry(sleep=recording_sleep)


class TestHeuristic:
    def test_supported_answer(self):
        result = EvidenceVerifier().verify_heuristic(_card(ONBOARDING_SENTENCE))

        assert result.verified
        assert result.hallucination_risk == HallucinationRisk.LOW
        assert result.evidence_coverage == 1.0
        assert result.mode == VerificationMode.HEURISTIC

    def test_no_evidence_is_never_verified(self):
        result = EvidenceVerifier().verify_heuristic(_card(ONBOARDING_SENTENCE, excerpt=None))

        assert not result.verified
        assert result.hallucination_risk == HallucinationRisk.HIGH
        assert result.issues == [NO_EVIDENCE_ISSUE]

    def test_blank_excerpt_counts_as_no_evidence(self):
        result = EvidenceVerifier().verify_heuristic(_card(ONBOARDING_SENTENCE, excerpt="   "))
        assert result.issues == [NO_EVIDENCE_ISSUE]

    def test_ungrounded_number_fails(self):
        answer = "A structured onboarding process lasts at least 120 days and includes a mentor assignment."
        result = EvidenceVerifier().verify_heuristic(_card(answer))

        assert not result.verified
        assert result.hallucination_risk == HallucinationRisk.HIGH
        assert any(i.startswith(NUMERIC_ISSUE_PREFIX) and "120" in i for i in result.issues)

    def test_unrelated_answer(self):
        result = EvidenceVerifier().verify_heuristic(
            _card("Quantum chromodynamics describes strong interactions between quarks.")
        )
        assert not result.verified
        assert result.hallucination_risk == HallucinationRisk.HIGH


def test_ungrounded_numbers():
    assert ungrounded_numbers("Reviews happen 2 times, 90 days apart", ["within 90 days"]) == ["2"]
    assert ungrounded_numbers("No numbers here", []) == []


class TestLLMMode:
    @pytest.mark.asyncio
    async def test_supported_verdict(self, registry):
        llm = ScriptedLLMClient([_verdict()])
        verifier = EvidenceVerifier(llm, registry, NO_RETRY)

        result = await verifier.verify_card_evidence(_card(ONBOARDING_SENTENCE), VerificationMode.LLM)

        assert result.verified
        assert result.mode == VerificationMode.LLM
        assert result.hallucination_risk == HallucinationRisk.LOW
        assert result.evidence_coverage == 1.0
        assert result.card_id == "Mm1_C1"
        assert "lasts at least 90 days" in llm.calls[0]

    @pytest.mark.asyncio
    async def test_hallucination_detected(self, registry):
        llm = ScriptedLLMClient([_verdict(is_supported=True, hallucination_detected=True)])
        result = await EvidenceVerifier(llm, registry, NO_RETRY).verify_llm(_card(ONBOARDING_SENTENCE))

        assert not result.verified
        assert result.hallucination_risk == HallucinationRisk.HIGH

    @pytest.mark.asyncio
    async def test_numeric_guard_overrides_supported_verdict(self, registry):
        llm = ScriptedLLMClient([_verdict()])
        answer = "Onboarding lasts at least 120 days."
        result = await EvidenceVerifier(llm, registry, NO_RETRY).verify_llm(_card(answer))

        assert not result.verified
        assert any(i.startswith(NUMERIC_ISSUE_PREFIX) for i in result.issues)

    @pytest.mark.asyncio
    async def test_no_evidence_skips_llm(self, registry):
        llm = ScriptedLLMClient([_verdict()])
        result = await EvidenceVerifier(llm, registry, NO_RETRY).verify_llm(_card("Anything", excerpt=None))

        assert not result.verified
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_malformed_verdict_falls_back_to_heuristic(self, registry):
        llm = ScriptedLLMClient(default="I think it is fine.")
        result = await EvidenceVerifier(llm, registry, NO_RETRY).verify_llm(_card(ONBOARDING_SENTENCE))

        assert result.mode == VerificationMode.HEURISTIC
        assert result.verified
        assert any("MalformedOutput" in i for i in result.issues)

    @pytest.mark.asyncio
    async def test_unavailable_llm_uses_heuristic(self):
        result = await EvidenceVerifier().verify_llm(_card(ONBOARDING_SENTENCE))

        assert result.mode == VerificationMode.HEURISTIC
        assert any("unavailable" in i for i in result.issues)


class TestBatch:
    @pytest.mark.asyncio
    async def test_empty_batch(self):
        batch = await EvidenceVerifier().verify_cards_batch([])

        assert batch.results == []
        assert batch.total_verified == 0
        assert batch.verification_rate == 0.0

    @pytest.mark.asyncio
    async def test_mixed_batch(self):
        cards = [
            _card(ONBOARDING_SENTENCE, card_id="Mm1_C1"),
            _card("Quantum chromodynamics describes strong interactions.", card_id="Mm1_C2"),
        ]
        batch = await EvidenceVerifier().verify_cards_batch(cards, VerificationMode.HEURISTIC)

        assert batch.total_verified == 1
        assert batch.total_failed == 1
        assert batch.verification_rate == 0.5
        assert batch.for_card("Mm1_C2").verified is False
        assert batch.for_card("missing") is None
