"""
Orchestrator router.

Endpoints for queueing generation jobs, polling their status, cancelling them
and inspecting orchestrator health and metrics.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from loguru import logger
from pydantic import BaseModel, Field

from deckforge.api.dependencies import get_caller_id, get_container, get_orchestrator, rate_limit
from deckforge.container import Container
from deckforge.orchestrator.models import (
    JobMode,
    JobRequest,
    JobSettings,
    JobStatus,
    JobTarget,
    TriggerSource,
)
from deckforge.orchestrator.service import FlashcardOrchestrator

router = APIRouter()


# ========================================
# Request Models
# ========================================


class GenerateBatchRequest(BaseModel):
    """Body of POST /generate-batch."""

    job_id: Optional[str] = Field(default=None, max_length=64)
    mode: JobMode
    target: JobTarget = Field(default_factory=JobTarget)
    settings: JobSettings = Field(default_factory=JobSettings)


class ContentUpdateRequest(BaseModel):
    course_id: str
    module_id: str
    file_changed: Optional[str] = None


class ManualTriggerRequest(BaseModel):
    course_id: str
    module_id: Optional[str] = None
    settings: JobSettings = Field(default_factory=JobSettings)


def _accepted(job: Any) -> dict[str, Any]:
    return {
        "success": True,
        "data": {
            "job_id": job.job_id,
            "status": job.status.value,
            "mode": job.mode.value,
            "priority": job.priority.name.lower(),
            "modules_to_process": job.modules_total or None,
        },
    }


# ========================================
# Job Endpoints
# ========================================


@router.post("/generate-batch", status_code=202, summary="Queue a generation job")
async def generate_batch(
    body: GenerateBatchRequest,
    caller_id: str = Depends(rate_limit("generate")),
    orchestrator: FlashcardOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """
    Queue flashcard generation for one module, one course, or every course.

    Returns 202 immediately; poll `/jobs/{job_id}` for progress.
    """
    job = await orchestrator.enqueue(
        JobRequest(
            job_id=body.job_id,
            mode=body.mode,
            target=body.target,
            settings=body.settings,
            triggered_by=TriggerSource.API,
            requested_by=caller_id,
        )
    )
    return _accepted(job)


@router.get("/jobs", summary="List jobs")
async def list_jobs(
    status: Optional[JobStatus] = None,
    limit: int = Query(default=50, ge=1, le=200),
    _caller: str = Depends(rate_limit("status")),
    orchestrator: FlashcardOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    jobs = await orchestrator.list_jobs(status=status, limit=limit)
    return {
        "success": True,
        "data": {
            "jobs": [job.to_dict(include_results=False) for job in jobs],
            "count": len(jobs),
        },
    }


@router.get("/jobs/{job_id}", summary="Get job status")
async def get_job(
    job_id: str,
    _caller: str = Depends(rate_limit("status")),
    orchestrator: FlashcardOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    job = await orchestrator.get_job_status(job_id)
    return {"success": True, "data": job.to_dict()}


@router.post("/jobs/{job_id}/cancel", summary="Cancel a job")
async def cancel_job(
    job_id: str,
    caller_id: str = Depends(get_caller_id),
    orchestrator: FlashcardOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """
    Cancel a queued or running job.

    Running jobs stop admitting modules; the response shows the status at the
    time of the request, which may still be `running`.
    """
    job = await orchestrator.cancel_job(job_id, reason=f"Cancelled by {caller_id}")
    return {"success": True, "data": job.to_dict(include_results=False)}


# ========================================
# Triggers
# ========================================


@router.post("/trigger/content-update", status_code=202, summary="Regenerate after a content change")
async def trigger_content_update(
    body: ContentUpdateRequest,
    _caller: str = Depends(rate_limit("generate")),
    orchestrator: FlashcardOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    job = await orchestrator.trigger_content_update(body.course_id, body.module_id, body.file_changed)
    return _accepted(job)


@router.post("/trigger/scheduled", status_code=202, summary="Regenerate every course")
async def trigger_scheduled(
    _caller: str = Depends(rate_limit("generate")),
    orchestrator: FlashcardOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    job = await orchestrator.trigger_scheduled()
    return _accepted(job)


@router.post("/trigger/manual", status_code=202, summary="Operator-requested regeneration")
async def trigger_manual(
    body: ManualTriggerRequest,
    caller_id: str = Depends(rate_limit("generate")),
    orchestrator: FlashcardOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    job = await orchestrator.trigger_manual(
        body.course_id, body.module_id, requested_by=caller_id, settings=body.settings
    )
    logger.info(f"Manual trigger by {caller_id}: job {job.job_id}")
    return _accepted(job)


# ========================================
# Observability
# ========================================


@router.get("/metrics", summary="Orchestrator metrics")
async def get_metrics(
    orchestrator: FlashcardOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    metrics = await orchestrator.get_metrics()
    return {"success": True, "data": metrics.to_dict()}


@router.get("/health", summary="Orchestrator health")
async def get_health(container: Container = Depends(get_container)) -> dict[str, Any]:
    settings = container.settings
    return {
        "success": True,
        "data": {
            **container.orchestrator.health(),
            "llm": {
                "provider": settings.llm_provider,
                "configured": settings.has_llm_configured(),
                "mock": container.llm is None,
            },
            "config": settings.get_orchestrator_config(),
        },
    }


@router.get("/decks/{course_id}/{module_id}", summary="Latest deck for a module")
async def get_deck(
    course_id: str,
    module_id: str,
    _caller: str = Depends(rate_limit("status")),
    orchestrator: FlashcardOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    deck = await orchestrator.get_module_deck(course_id, module_id)
    return {"success": True, "data": deck.to_dict()}
