"""
Flashcard generation orchestrator.

Jobs are admitted through a priority queue and run by a fixed pool of
workers (`max_running_jobs`). Inside a job, modules run under a semaphore of
`module_concurrency`; the job's cancellation token is checked before each
module is admitted, so a cancelled job stops taking new modules while the ones
already in flight either finish (policy "finish") or are dropped at their next
yield point (policy "abandon").

The orchestrator keeps live jobs in memory and writes every state change
through to the JobStore so status survives restarts when a SQL store is used.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Optional
from uuid import uuid4

from loguru import logger

from deckforge.content.fetcher import ModuleCatalog, ModuleRef
from deckforge.errors import (
    DeckNotFound,
    InvalidJobState,
    InvalidRequest,
    JobNotFound,
    PersistenceError,
    truncate_error,
)
from deckforge.generation.models import Deck, utcnow
from deckforge.orchestrator.models import (
    Job,
    JobMode,
    JobOutcome,
    JobPriority,
    JobRequest,
    JobSettings,
    JobStatus,
    JobTarget,
    ModuleStatus,
    OrchestratorMetrics,
    TriggerSource,
)
from deckforge.orchestrator.pipeline import ModulePipeline, PipelineConfig
from deckforge.persistence.store import DeckStore, JobStore
from deckforge.resilience.cancellation import CancellationToken
from deckforge.resilience.registry import ResilienceRegistry


class FlashcardOrchestrator:
    """Queues, runs, cancels and reports on generation jobs."""

    def __init__(
        self,
        pipeline: ModulePipeline,
        catalog: ModuleCatalog,
        job_store: JobStore,
        deck_store: DeckStore,
        registry: Optional[ResilienceRegistry] = None,
        *,
        defaults: Optional[PipelineConfig] = None,
        max_running_jobs: int = 2,
        module_concurrency: int = 2,
    ):
        self.pipeline = pipeline
        self.catalog = catalog
        self.job_store = job_store
        self.deck_store = deck_store
        self.registry = registry or pipeline.registry
        self.defaults = defaults or PipelineConfig()
        self.max_running_jobs = max(1, max_running_jobs)
        self.module_concurrency = max(1, module_concurrency)

        self._jobs: dict[str, Job] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._done: dict[str, asyncio.Event] = {}
        self._queue: Optional[asyncio.PriorityQueue] = None
        self._sequence = itertools.count()
        self._workers: list[asyncio.Task] = []

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    def _ensure_queue(self) -> asyncio.PriorityQueue:
        if self._queue is None:
            self._queue = asyncio.PriorityQueue()
        return self._queue

    async def start(self) -> None:
        """Start the job workers and pick up jobs left over from a previous run."""
        if self._workers:
            return
        queue = self._ensure_queue()
        await self._recover_jobs()
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"orchestrator-worker-{n}")
            for n in range(self.max_running_jobs)
        ]
        logger.info(
            f"Orchestrator started: {self.max_running_jobs} job workers, "
            f"module concurrency {self.module_concurrency}, {queue.qsize()} jobs queued"
        )

    async def stop(self) -> None:
        """Stop the workers. Jobs still running are marked cancelled."""
        if not self._workers:
            return
        for job_id, job in self._jobs.items():
            if job.status == JobStatus.RUNNING:
                self._tokens[job_id].cancel("Orchestrator shutting down")
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        for job in self._jobs.values():
            if job.status == JobStatus.RUNNING:
                job.status = JobStatus.CANCELLED
                job.outcome = None
                job.error = "Orchestrator shut down while the job was running"
                job.completed_at = utcnow()
                await self._persist(job, raise_errors=False)
                self._done[job.job_id].set()
        logger.info("Orchestrator stopped")

    async def _recover_jobs(self) -> None:
        try:
            queued = await self.job_store.list(JobStatus.QUEUED, limit=1000)
            running = await self.job_store.list(JobStatus.RUNNING, limit=1000)
        except PersistenceError as e:
            logger.warning(f"Could not recover jobs from store: {e}")
            return

        for job in running:
            if job.job_id in self._jobs:
                continue
            job.status = JobStatus.FAILED
            job.outcome = JobOutcome.FAILED
            job.error = "Interrupted by restart"
            job.completed_at = utcnow()
            await self._persist(job, raise_errors=False)
            logger.warning(f"Job {job.job_id} was running at shutdown; marked failed")

        for job in sorted(queued, key=lambda j: j.created_at):
            if job.job_id in self._jobs:
                continue
            self._track(job)
            self._ensure_queue().put_nowait((int(job.priority), next(self._sequence), job.job_id))
            logger.info(f"Re-queued job {job.job_id} from store")

    async def _worker(self, n: int) -> None:
        queue = self._ensure_queue()
        while True:
            _, _, job_id = await queue.get()
            try:
                job = self._jobs.get(job_id)
                if job is None or job.status != JobStatus.QUEUED:
                    continue
                await self.run_job(job_id)
            except asyncio.CancelledError:
                raise
            except Exception:  # Intentionally broad - a worker must outlive any single job
                logger.exception(f"Worker {n} crashed while running job {job_id}")
            finally:
                queue.task_done()

    # =========================================================================
    # Job admission
    # =========================================================================

    def _track(self, job: Job) -> None:
        self._jobs[job.job_id] = job
        self._tokens[job.job_id] = CancellationToken()
        self._done[job.job_id] = asyncio.Event()

    @staticmethod
    def _validate(request: JobRequest) -> None:
        target = request.target
        if request.mode == JobMode.SINGLE_MODULE and not (target.course_id and target.module_id):
            raise InvalidRequest(
                "single_module jobs require target.course_id and target.module_id",
                details={"mode": request.mode.value},
            )
        if request.mode == JobMode.COURSE and not target.course_id:
            raise InvalidRequest(
                "course jobs require target.course_id",
                details={"mode": request.mode.value},
            )

    async def enqueue(self, request: JobRequest) -> Job:
        """
        Validate and queue a job. Returns the queued job.

        Raises:
            InvalidRequest: If the target does not fit the mode, or the job id is taken
            PersistenceError: If the job could not be recorded
        """
        self._validate(request)
        job_id = request.job_id or f"job_{uuid4().hex[:12]}"
        if job_id in self._jobs or await self.job_store.get(job_id) is not None:
            raise InvalidRequest(f"Job {job_id} already exists", details={"job_id": job_id})

        job = Job(
            job_id=job_id,
            mode=request.mode,
            target=request.target,
            settings=request.settings,
            triggered_by=request.triggered_by,
            priority=request.priority,
            requested_by=request.requested_by,
            modules_total=1 if request.mode == JobMode.SINGLE_MODULE else 0,
        )
        await self.job_store.save(job)
        self._track(job)
        self._ensure_queue().put_nowait((int(job.priority), next(self._sequence), job_id))

        logger.info(
            f"Queued job {job_id} ({job.mode.value}, priority {job.priority.name.lower()}, "
            f"trigger {job.triggered_by.value})"
        )
        return job

    async def trigger_content_update(
        self, course_id: str, module_id: str, file_changed: Optional[str] = None
    ) -> Job:
        """Regenerate one module after its source material changed."""
        logger.info(
            f"Content update for {course_id}/{module_id}"
            + (f" ({file_changed})" if file_changed else "")
        )
        return await self.enqueue(
            JobRequest(
                mode=JobMode.SINGLE_MODULE,
                target=JobTarget(course_id=course_id, module_id=module_id),
                triggered_by=TriggerSource.CONTENT_UPDATE,
                priority=JobPriority.NORMAL,
                requested_by=file_changed,
            )
        )

    async def trigger_scheduled(self) -> Job:
        """Nightly-style full regeneration at low priority."""
        return await self.enqueue(
            JobRequest(
                mode=JobMode.ALL_COURSES,
                triggered_by=TriggerSource.SCHEDULED,
                priority=JobPriority.LOW,
            )
        )

    async def trigger_manual(
        self,
        course_id: str,
        module_id: Optional[str] = None,
        requested_by: Optional[str] = None,
        settings: Optional[JobSettings] = None,
    ) -> Job:
        """Operator-requested regeneration of a module, or a whole course if no module is given."""
        return await self.enqueue(
            JobRequest(
                mode=JobMode.SINGLE_MODULE if module_id else JobMode.COURSE,
                target=JobTarget(course_id=course_id, module_id=module_id),
                settings=settings or JobSettings(),
                triggered_by=TriggerSource.MANUAL,
                priority=JobPriority.HIGH,
                requested_by=requested_by,
            )
        )

    # =========================================================================
    # Execution
    # =========================================================================

    async def _expand_target(self, job: Job) -> list[ModuleRef]:
        target = job.target
        if job.mode == JobMode.SINGLE_MODULE:
            module = await self.catalog.get_module(target.course_id, target.module_id)
            return [module or ModuleRef(course_id=target.course_id, module_id=target.module_id)]
        if job.mode == JobMode.COURSE:
            return await self.catalog.list_modules(target.course_id)
        return await self.catalog.list_modules(None)

    async def run_job(self, job_id: str) -> Job:
        """
        Run a queued job to a terminal state.

        Workers call this; tests may call it directly without starting workers.
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.status != JobStatus.QUEUED:
            return job
        token = self._tokens[job_id]
        log = logger.bind(job_id=job_id)

        job.status = JobStatus.RUNNING
        job.started_at = utcnow()
        try:
            await self._persist(job)
            modules = await self._expand_target(job)
            job.modules_total = len(modules)
            await self._persist(job)
            log.info(f"Job {job_id} running: {len(modules)} modules")

            await self._run_modules(job, modules, token)
            self._finalize(job, token)
        except asyncio.CancelledError:
            raise
        except PersistenceError as e:
            job.status = JobStatus.FAILED
            job.outcome = JobOutcome.FAILED
            job.error = truncate_error(f"PersistenceError: {e}")
            log.error(f"Job {job_id} failed: storage unavailable: {e}")
        except Exception as e:  # Intentionally broad - any orchestration failure fails the job
            job.status = JobStatus.FAILED
            job.outcome = JobOutcome.FAILED
            job.error = truncate_error(f"{type(e).__name__}: {e}")
            log.exception(f"Job {job_id} failed")

        job.completed_at = utcnow()
        await self._persist(job, raise_errors=False)
        self._done[job_id].set()

        log.info(
            f"Job {job_id} {job.status.value}"
            + (f" ({job.outcome.value})" if job.outcome else "")
            + f": {job.modules_succeeded}/{job.modules_total} modules succeeded"
        )
        return job

    async def _run_modules(self, job: Job, modules: list[ModuleRef], token: CancellationToken) -> None:
        config = self.defaults.merged(job.settings)
        concurrency = job.settings.module_concurrency or self.module_concurrency
        pending = iter(modules)
        # Under "finish" the job token only gates admission; admitted modules run to completion
        module_token = token if config.cancel_policy == "abandon" else None

        async def module_worker() -> None:
            while True:
                if token.cancelled:
                    return
                module = next(pending, None)
                if module is None:
                    return
                result = await self.pipeline.run(job.job_id, module, config, module_token)
                if token.cancelled and config.cancel_policy == "abandon":
                    logger.bind(job_id=job.job_id).debug(
                        f"Discarding late result for module {module.module_id}"
                    )
                    continue
                job.module_results.append(result)
                await self._persist(job)

        workers = [
            asyncio.create_task(module_worker())
            for _ in range(min(concurrency, len(modules)))
        ]
        outcomes = await asyncio.gather(*workers, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

    @staticmethod
    def _finalize(job: Job, token: CancellationToken) -> None:
        succeeded = job.modules_succeeded
        if token.cancelled:
            job.status = JobStatus.CANCELLED
            job.outcome = None
        elif succeeded == 0:
            job.status = JobStatus.FAILED
            job.outcome = JobOutcome.FAILED
            if job.modules_total == 0:
                job.error = "No modules found for target"
            else:
                job.error = f"All {job.modules_total} modules failed"
        else:
            job.status = JobStatus.COMPLETED
            job.outcome = (
                JobOutcome.SUCCEEDED if succeeded == job.modules_total else JobOutcome.PARTIAL
            )

    async def _persist(self, job: Job, raise_errors: bool = True) -> None:
        try:
            await self.job_store.save(job)
        except PersistenceError as e:
            if raise_errors:
                raise
            logger.error(f"Could not save job {job.job_id}: {e}")

    # =========================================================================
    # Control and queries
    # =========================================================================

    async def cancel_job(self, job_id: str, reason: str = "Cancelled by request") -> Job:
        """
        Cancel a job.

        A queued job is cancelled immediately. A running job stops admitting
        modules and reaches `cancelled` once in-flight modules resolve.

        Raises:
            JobNotFound: If the job does not exist
            InvalidJobState: If the job already finished
        """
        job = await self.get_job_status(job_id)
        if job.status.is_terminal:
            raise InvalidJobState(
                f"Job {job_id} is already {job.status.value}",
                details={"job_id": job_id, "status": job.status.value},
            )

        job.cancel_requested = True
        token = self._tokens.get(job_id)
        if token is not None:
            token.cancel(reason)

        if job.status == JobStatus.QUEUED or token is None:
            job.status = JobStatus.CANCELLED
            job.outcome = None
            job.completed_at = utcnow()
            if job_id in self._done:
                self._done[job_id].set()

        await self._persist(job)
        logger.info(f"Cancellation requested for job {job_id}: {reason}")
        return job

    async def get_job_status(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            job = await self.job_store.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 50) -> list[Job]:
        """Jobs newest first. Live jobs take precedence over their stored copies."""
        stored = await self.job_store.list(status, limit=limit)
        jobs: dict[str, Job] = {job.job_id: job for job in stored}
        for job_id, job in self._jobs.items():
            if status is None or job.status == status:
                jobs[job_id] = job
            else:
                jobs.pop(job_id, None)
        ordered = sorted(jobs.values(), key=lambda j: j.created_at, reverse=True)
        return ordered[:limit]

    async def wait_for_job(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """
        Wait until a job reaches a terminal state.

        Raises:
            JobNotFound: If the job is unknown
            asyncio.TimeoutError: If it does not finish within `timeout` seconds
        """
        job = await self.get_job_status(job_id)
        event = self._done.get(job_id)
        if event is not None and not job.status.is_terminal:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        return await self.get_job_status(job_id)

    async def get_metrics(self) -> OrchestratorMetrics:
        jobs = await self.list_jobs(limit=1000)
        metrics = OrchestratorMetrics(jobs_by_status={s.value: 0 for s in JobStatus})
        durations: list[int] = []
        rates: list[float] = []

        for job in jobs:
            metrics.total_jobs += 1
            metrics.jobs_by_status[job.status.value] += 1
            if job.completed_at is not None:
                if job.status == JobStatus.COMPLETED:
                    if metrics.last_successful_run is None or job.completed_at > metrics.last_successful_run:
                        metrics.last_successful_run = job.completed_at
                elif job.status == JobStatus.FAILED:
                    if metrics.last_failed_run is None or job.completed_at > metrics.last_failed_run:
                        metrics.last_failed_run = job.completed_at

            for result in job.module_results:
                metrics.modules_processed += 1
                if result.status == ModuleStatus.SUCCEEDED:
                    metrics.modules_succeeded += 1
                    durations.append(result.duration_ms)
                    rates.append(result.verification_rate)
                elif result.status == ModuleStatus.SKIPPED:
                    metrics.modules_skipped += 1
                elif result.status == ModuleStatus.FAILED:
                    metrics.modules_failed += 1
                metrics.cards_generated += result.generated_count
                metrics.cards_verified += result.verified_count
                metrics.cards_flagged += result.review_count

        metrics.decks_generated = await self.deck_store.count_decks()
        metrics.running_jobs = metrics.jobs_by_status[JobStatus.RUNNING.value]
        metrics.queued_jobs = metrics.jobs_by_status[JobStatus.QUEUED.value]
        if durations:
            metrics.average_generation_time_ms = sum(durations) / len(durations)
        if rates:
            metrics.average_verification_rate = sum(rates) / len(rates)
        return metrics

    async def get_module_deck(self, course_id: str, module_id: str) -> Deck:
        """
        Latest deck version for a module.

        Raises:
            DeckNotFound: If the module has never been generated
        """
        deck = await self.deck_store.get_latest_deck(str(course_id), str(module_id))
        if deck is None:
            raise DeckNotFound(
                f"No flashcards generated for module {module_id}",
                details={"course_id": str(course_id), "module_id": str(module_id)},
            )
        return deck

    def health(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "workers": len(self._workers),
            "queued": self._queue.qsize() if self._queue is not None else 0,
            "active_jobs": sum(1 for j in self._jobs.values() if j.status == JobStatus.RUNNING),
            **self.registry.snapshot(),
        }
