"""
Unit tests for deck and job persistence.

Both the in-memory stores and the SQLAlchemy stores (on in-memory SQLite)
run through the same cases.
"""

import asyncio

import pytest

from deckforge.db.database import create_db_engine, get_session_factory, init_db
from deckforge.errors import DeckVersionConflict
from deckforge.generation.models import CandidateCard, Deck, Evidence, ReviewStatus, new_deck_id
from deckforge.orchestrator.models import (
    Job,
    JobMode,
    JobSettings,
    JobStatus,
    JobTarget,
    ModuleResult,
    ModuleStatus,
)
from deckforge.persistence.sql_store import SqlDeckStore, SqlJobStore
from deckforge.persistence.store import InMemoryDeckStore, InMemoryJobStore


def _deck(course_id="hr101", module_id="m1", job_id="job_1"):
    return Deck(
        deck_id=new_deck_id(),
        module_id=module_id,
        course_id=course_id,
        module_title="HR Basics",
        cards=[
            CandidateCard(
                card_id="Mm1_C1",
                question="How long does onboarding last?",
                answer="At least 90 days.",
                evidence=[Evidence(chunk_id="hr-1", excerpt="lasts at least 90 days", loc="1")],
                review_status=ReviewStatus.PUBLISHED,
                verification={"verified": True, "hallucination_risk": "low"},
            ),
            CandidateCard(
                card_id="Mm1_C2",
                question="What is calibration for?",
                answer="Keeping ratings consistent.",
                review_status=ReviewStatus.PENDING_REVIEW,
            ),
        ],
        job_id=job_id,
        warnings=["1 excerpt corrected"],
        stage_a={"module_id": module_id, "key_terms": ["onboarding"]},
    )


def _job(job_id, status=JobStatus.QUEUED):
    return Job(
        job_id=job_id,
        mode=JobMode.COURSE,
        target=JobTarget(course_id="hr101"),
        settings=JobSettings(target_card_count=5),
        status=status,
    )


@pytest.fixture(params=["memory", "sql"])
def stores(request):
    if request.param == "memory":
        yield InMemoryDeckStore(), InMemoryJobStore()
        return
    engine = create_db_engine("sqlite:///:memory:")
    init_db(engine)
    factory = get_session_factory(engine)
    yield SqlDeckStore(factory), SqlJobStore(factory)
    engine.dispose()


class TestDeckStore:
    @pytest.mark.asyncio
    async def test_versions_are_monotonic(self, stores):
        deck_store, _ = stores
        first = await deck_store.save_deck(_deck())
        second = await deck_store.save_deck(_deck())

        assert (first.version, second.version) == (1, 2)
        latest = await deck_store.get_latest_deck("hr101", "m1")
        assert latest.deck_id == second.deck_id
        assert [d.version for d in await deck_store.list_versions("hr101", "m1")] == [2, 1]

    @pytest.mark.asyncio
    async def test_round_trip_preserves_cards(self, stores):
        deck_store, _ = stores
        await deck_store.save_deck(_deck())
        latest = await deck_store.get_latest_deck("hr101", "m1")

        assert [c.card_id for c in latest.visible_cards()] == ["Mm1_C1"]
        assert [c.card_id for c in latest.pending_cards()] == ["Mm1_C2"]
        assert latest.cards[0].evidence[0].excerpt == "lasts at least 90 days"
        assert latest.cards[0].verification["hallucination_risk"] == "low"
        assert latest.warnings == ["1 excerpt corrected"]
        assert latest.stage_a["key_terms"] == ["onboarding"]
        assert latest.job_id == "job_1"

    @pytest.mark.asyncio
    async def test_versions_are_per_module(self, stores):
        deck_store, _ = stores
        await deck_store.save_deck(_deck(module_id="m1"))
        other = await deck_store.save_deck(_deck(module_id="m2"))

        assert other.version == 1
        assert await deck_store.count_decks() == 2
        assert (await deck_store.get_latest_for_module("m2")).module_id == "m2"

    @pytest.mark.asyncio
    async def test_missing_deck(self, stores):
        deck_store, _ = stores
        assert await deck_store.get_latest_deck("hr101", "nope") is None
        assert await deck_store.get_latest_for_module("nope") is None
        assert await deck_store.list_versions("hr101", "nope") == []

    @pytest.mark.asyncio
    async def test_conditional_save(self, stores):
        deck_store, _ = stores
        first = await deck_store.save_deck(_deck(), expected_version=0)
        second = await deck_store.save_deck(_deck(), expected_version=1)

        assert (first.version, second.version) == (1, 2)
        with pytest.raises(DeckVersionConflict) as exc_info:
            await deck_store.save_deck(_deck(), expected_version=1)
        assert exc_info.value.details["latest_version"] == 2
        assert (await deck_store.get_latest_deck("hr101", "m1")).version == 2

    @pytest.mark.asyncio
    async def test_concurrent_saves_get_distinct_versions(self):
        deck_store = InMemoryDeckStore()
        saved = await asyncio.gather(*(deck_store.save_deck(_deck()) for _ in range(5)))
        assert sorted(d.version for d in saved) == [1, 2, 3, 4, 5]


class TestJobStore:
    @pytest.mark.asyncio
    async def test_save_and_get(self, stores):
        _, job_store = stores
        job = _job("job_a")
        job.module_results.append(
            ModuleResult(
                module_id="m1",
                course_id="hr101",
                module_title="HR Basics",
                success=False,
                status=ModuleStatus.FAILED,
                error="InsufficientContent",
            )
        )
        await job_store.save(job)

        loaded = await job_store.get("job_a")
        assert loaded.settings.target_card_count == 5
        assert loaded.module_results[0].error == "InsufficientContent"
        assert await job_store.get("job_missing") is None

    @pytest.mark.asyncio
    async def test_save_overwrites(self, stores):
        _, job_store = stores
        job = _job("job_a")
        await job_store.save(job)
        job.status = JobStatus.COMPLETED
        await job_store.save(job)

        assert (await job_store.get("job_a")).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, stores):
        _, job_store = stores
        await job_store.save(_job("job_a", JobStatus.COMPLETED))
        await job_store.save(_job("job_b", JobStatus.QUEUED))
        await job_store.save(_job("job_c", JobStatus.COMPLETED))

        completed = await job_store.list(status=JobStatus.COMPLETED)
        assert {j.job_id for j in completed} == {"job_a", "job_c"}
        assert len(await job_store.list(limit=2)) == 2
