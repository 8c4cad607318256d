"""Job orchestration: queueing, per-module pipeline, status and metrics."""

from deckforge.orchestrator.models import (
    Job,
    JobMode,
    JobOutcome,
    JobPriority,
    JobRequest,
    JobSettings,
    JobStatus,
    JobTarget,
    ModuleResult,
    ModuleStatus,
    OrchestratorMetrics,
    TriggerSource,
)
from deckforge.orchestrator.pipeline import ModulePipeline, PipelineConfig, dedupe_cards
from deckforge.orchestrator.service import FlashcardOrchestrator

__all__ = [
    "FlashcardOrchestrator",
    "Job",
    "JobMode",
    "JobOutcome",
    "JobPriority",
    "JobRequest",
    "JobSettings",
    "JobStatus",
    "JobTarget",
    "ModulePipeline",
    "ModuleResult",
    "ModuleStatus",
    "OrchestratorMetrics",
    "PipelineConfig",
    "TriggerSource",
    "dedupe_cards",
]
