"""
Job model for the generation orchestrator.

A Job moves queued -> running -> {completed, failed, cancelled}. Terminal
states are final. `status` answers "did anything usable come out" and
`outcome` gives the detail: succeeded (every module), partial, or failed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from deckforge.generation.models import parse_datetime, utcnow


class JobMode(str, Enum):
    SINGLE_MODULE = "single_module"
    COURSE = "course"
    ALL_COURSES = "all_courses"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"


class ModuleStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class JobPriority(IntEnum):
    """Lower value runs first."""

    HIGH = 0
    NORMAL = 1
    LOW = 2


class TriggerSource(str, Enum):
    API = "api"
    MANUAL = "manual"
    CONTENT_UPDATE = "content_update"
    SCHEDULED = "scheduled"
    CLI = "cli"


# =============================================================================
# Request models
# =============================================================================


class JobTarget(BaseModel):
    course_id: Optional[str] = None
    module_id: Optional[str] = None

    @field_validator("course_id", "module_id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        if v is None or v == "":
            return None
        return str(v)


class JobSettings(BaseModel):
    """Per-job overrides of the orchestrator defaults."""

    target_card_count: Optional[int] = Field(default=None, ge=1, le=50)
    min_cards: Optional[int] = Field(default=None, ge=0)
    verification_mode: Optional[Literal["heuristic", "llm"]] = None
    module_concurrency: Optional[int] = Field(default=None, ge=1, le=16)
    cancel_policy: Optional[Literal["finish", "abandon"]] = None
    dedupe_threshold: Optional[float] = Field(default=None, gt=0.0, le=1.0)


class JobRequest(BaseModel):
    job_id: Optional[str] = None
    mode: JobMode
    target: JobTarget = Field(default_factory=JobTarget)
    settings: JobSettings = Field(default_factory=JobSettings)
    triggered_by: TriggerSource = TriggerSource.API
    priority: JobPriority = JobPriority.NORMAL
    requested_by: Optional[str] = None


# =============================================================================
# Runtime records
# =============================================================================


@dataclass
class ModuleResult:
    module_id: str
    course_id: str
    module_title: str
    success: bool
    status: ModuleStatus
    error: Optional[str] = None
    error_message: Optional[str] = None
    deck_id: Optional[str] = None
    deck_version: Optional[int] = None
    generated_count: int = 0
    verified_count: int = 0
    review_count: int = 0
    verification_rate: float = 0.0
    warnings: list[str] = field(default_factory=list)
    duration_ms: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "module_id": self.module_id,
            "course_id": self.course_id,
            "module_title": self.module_title,
            "success": self.success,
            "status": self.status.value,
            "error": self.error,
            "error_message": self.error_message,
            "deck_id": self.deck_id,
            "deck_version": self.deck_version,
            "generated_count": self.generated_count,
            "verified_count": self.verified_count,
            "review_count": self.review_count,
            "verification_rate": round(self.verification_rate, 3),
            "warnings": list(self.warnings),
            "duration_ms": self.duration_ms,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModuleResult:
        return cls(
            module_id=str(data["module_id"]),
            course_id=str(data["course_id"]),
            module_title=data.get("module_title", ""),
            success=data["success"],
            status=ModuleStatus(data["status"]),
            error=data.get("error"),
            error_message=data.get("error_message"),
            deck_id=data.get("deck_id"),
            deck_version=data.get("deck_version"),
            generated_count=data.get("generated_count", 0),
            verified_count=data.get("verified_count", 0),
            review_count=data.get("review_count", 0),
            verification_rate=data.get("verification_rate", 0.0),
            warnings=list(data.get("warnings", [])),
            duration_ms=data.get("duration_ms", 0),
            started_at=parse_datetime(data.get("started_at")),
            completed_at=parse_datetime(data.get("completed_at")),
        )


@dataclass
class Job:
    job_id: str
    mode: JobMode
    target: JobTarget
    settings: JobSettings
    status: JobStatus = JobStatus.QUEUED
    outcome: Optional[JobOutcome] = None
    triggered_by: TriggerSource = TriggerSource.API
    priority: JobPriority = JobPriority.NORMAL
    requested_by: Optional[str] = None
    modules_total: int = 0
    module_results: list[ModuleResult] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancel_requested: bool = False
    error: Optional[str] = None

    @property
    def modules_succeeded(self) -> int:
        return sum(1 for r in self.module_results if r.success)

    @property
    def modules_failed(self) -> int:
        return sum(1 for r in self.module_results if r.status == ModuleStatus.FAILED)

    @property
    def progress(self) -> float:
        if not self.modules_total:
            return 1.0 if self.status.is_terminal else 0.0
        return len(self.module_results) / self.modules_total

    def to_dict(self, include_results: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "job_id": self.job_id,
            "mode": self.mode.value,
            "target": self.target.model_dump(),
            "settings": self.settings.model_dump(exclude_none=True),
            "status": self.status.value,
            "outcome": self.outcome.value if self.outcome else None,
            "triggered_by": self.triggered_by.value,
            "priority": self.priority.name.lower(),
            "requested_by": self.requested_by,
            "modules_total": self.modules_total,
            "modules_completed": len(self.module_results),
            "modules_succeeded": self.modules_succeeded,
            "modules_failed": self.modules_failed,
            "progress": round(self.progress, 3),
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancel_requested": self.cancel_requested,
            "error": self.error,
        }
        if include_results:
            data["module_results"] = [r.to_dict() for r in self.module_results]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        priority = data.get("priority", "normal")
        return cls(
            job_id=data["job_id"],
            mode=JobMode(data["mode"]),
            target=JobTarget.model_validate(data.get("target") or {}),
            settings=JobSettings.model_validate(data.get("settings") or {}),
            status=JobStatus(data["status"]),
            outcome=JobOutcome(data["outcome"]) if data.get("outcome") else None,
            triggered_by=TriggerSource(data.get("triggered_by", "api")),
            priority=JobPriority[priority.upper()] if isinstance(priority, str) else JobPriority(priority),
            requested_by=data.get("requested_by"),
            modules_total=data.get("modules_total", 0),
            module_results=[ModuleResult.from_dict(r) for r in data.get("module_results", [])],
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            started_at=parse_datetime(data.get("started_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            cancel_requested=data.get("cancel_requested", False),
            error=data.get("error"),
        )


@dataclass
class OrchestratorMetrics:
    jobs_by_status: dict[str, int]
    total_jobs: int = 0
    running_jobs: int = 0
    queued_jobs: int = 0
    modules_processed: int = 0
    modules_succeeded: int = 0
    modules_failed: int = 0
    modules_skipped: int = 0
    decks_generated: int = 0
    cards_generated: int = 0
    cards_verified: int = 0
    cards_flagged: int = 0
    average_generation_time_ms: float = 0.0
    average_verification_rate: float = 0.0
    last_successful_run: Optional[datetime] = None
    last_failed_run: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobs_by_status": dict(self.jobs_by_status),
            "total_jobs": self.total_jobs,
            "running_jobs": self.running_jobs,
            "queued_jobs": self.queued_jobs,
            "modules_processed": self.modules_processed,
            "modules_succeeded": self.modules_succeeded,
            "modules_failed": self.modules_failed,
            "modules_skipped": self.modules_skipped,
            "decks_generated": self.decks_generated,
            "cards_generated": self.cards_generated,
            "cards_verified": self.cards_verified,
            "cards_flagged": self.cards_flagged,
            "average_generation_time_ms": round(self.average_generation_time_ms, 1),
            "average_verification_rate": round(self.average_verification_rate, 3),
            "last_successful_run": (
                self.last_successful_run.isoformat() if self.last_successful_run else None
            ),
            "last_failed_run": self.last_failed_run.isoformat() if self.last_failed_run else None,
        }
