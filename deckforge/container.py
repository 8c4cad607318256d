"""
Application wiring.

Builds one set of collaborators (resilience registry, LLM client, content
source, stores, review queue, orchestrator) from Settings. The API keeps one
Container per app instance; tests build their own with fakes swapped in.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from loguru import logger
from sqlalchemy import Engine

from config import Settings
from deckforge.content.fetcher import ContentFetcher, JsonDirectoryContentSource, ModuleCatalog
from deckforge.generation.stage_a import Summarizer
from deckforge.generation.stage_b import CardGenerator
from deckforge.llm.client import LLMClient, get_llm_client
from deckforge.orchestrator.pipeline import ModulePipeline, PipelineConfig
from deckforge.orchestrator.service import FlashcardOrchestrator
from deckforge.persistence.store import DeckStore, InMemoryDeckStore, InMemoryJobStore, JobStore
from deckforge.resilience.registry import ResilienceRegistry
from deckforge.resilience.retry import (
    DOCUMENT_FETCH_RETRY,
    GENERATION_RETRY,
    VERIFICATION_RETRY,
)
from deckforge.review.queue import ReviewQueue
from deckforge.verification.evidence_verifier import EvidenceVerifier, VerificationMode


@dataclass
class Container:
    settings: Settings
    registry: ResilienceRegistry
    llm: Optional[LLMClient]
    content_source: Any
    deck_store: DeckStore
    job_store: JobStore
    review_queue: ReviewQueue
    verifier: EvidenceVerifier
    orchestrator: FlashcardOrchestrator
    engine: Optional[Engine] = None

    async def aclose(self) -> None:
        await self.orchestrator.stop()
        if self.llm is not None:
            await self.llm.aclose()


def _build_stores(settings: Settings) -> tuple[DeckStore, JobStore, Optional[Engine]]:
    if settings.persistence_backend == "memory":
        return InMemoryDeckStore(), InMemoryJobStore(), None

    from deckforge.db.database import create_db_engine, get_session_factory, init_db
    from deckforge.persistence.sql_store import SqlDeckStore, SqlJobStore

    engine = create_db_engine(settings.database_url, echo=settings.log_level == "DEBUG")
    init_db(engine)
    factory = get_session_factory(engine)
    return SqlDeckStore(factory), SqlJobStore(factory), engine


def build_container(
    settings: Settings,
    *,
    registry: Optional[ResilienceRegistry] = None,
    llm: Optional[LLMClient] = None,
    content_source: Optional[Any] = None,
    deck_store: Optional[DeckStore] = None,
    job_store: Optional[JobStore] = None,
) -> Container:
    """
    Wire the application from settings.

    Args:
        settings: Application settings
        registry: Resilience state to share; a fresh one by default
        llm: LLM client override; built from settings when omitted
        content_source: Object implementing both ContentFetcher and ModuleCatalog
        deck_store: Deck store override
        job_store: Job store override

    Returns:
        Fully wired Container (orchestrator not yet started)
    """
    registry = registry or ResilienceRegistry.from_settings(settings)
    if llm is None:
        llm = get_llm_client(settings)
    mock = llm is None

    if content_source is None:
        content_source = JsonDirectoryContentSource(settings.content_dir)
    if not (isinstance(content_source, ContentFetcher) and isinstance(content_source, ModuleCatalog)):
        raise TypeError("content_source must implement ContentFetcher and ModuleCatalog")

    engine = None
    if deck_store is None or job_store is None:
        default_decks, default_jobs, engine = _build_stores(settings)
        deck_store = deck_store or default_decks
        job_store = job_store or default_jobs

    retry = settings.get_retry_config()
    generation_retry = GENERATION_RETRY.replace(
        max_retries=retry["generation_max_retries"],
        initial_delay_ms=retry["initial_delay_ms"],
        max_delay_ms=retry["max_delay_ms"],
        timeout_ms=retry["timeout_ms"],
        max_malformed_retries=retry["malformed_output_max_retries"],
    )
    verification_retry = VERIFICATION_RETRY.replace(
        max_retries=retry["verification_max_retries"],
        initial_delay_ms=retry["initial_delay_ms"],
        max_delay_ms=retry["max_delay_ms"],
        timeout_ms=retry["timeout_ms"],
        max_malformed_retries=retry["malformed_output_max_retries"],
    )
    fetch_retry = DOCUMENT_FETCH_RETRY.replace(max_retries=retry["fetch_max_retries"])

    review_queue = ReviewQueue(deck_store)
    verifier = EvidenceVerifier(
        llm=llm,
        registry=registry,
        retry_options=verification_retry,
        coverage_threshold=settings.coverage_threshold,
        default_mode=VerificationMode(settings.verification_mode),
    )
    pipeline = ModulePipeline(
        content_fetcher=content_source,
        summarizer=Summarizer(llm, registry, generation_retry, mock=mock),
        generator=CardGenerator(llm, registry, generation_retry, mock=mock),
        verifier=verifier,
        deck_store=deck_store,
        review_queue=review_queue,
        registry=registry,
        fetch_retry=fetch_retry,
    )
    orchestrator = FlashcardOrchestrator(
        pipeline,
        content_source,
        job_store,
        deck_store,
        registry,
        defaults=PipelineConfig.from_settings(settings),
        max_running_jobs=settings.max_running_jobs,
        module_concurrency=settings.module_concurrency,
    )

    logger.info(
        f"Container built: llm={'mock' if mock else settings.llm_provider}, "
        f"persistence={type(deck_store).__name__}, content={type(content_source).__name__}"
    )
    return Container(
        settings=settings,
        registry=registry,
        llm=llm,
        content_source=content_source,
        deck_store=deck_store,
        job_store=job_store,
        review_queue=review_queue,
        verifier=verifier,
        orchestrator=orchestrator,
        engine=engine,
    )
