"""Six-phase resumable indexing pipeline."""

from __future__ import annotations

from .base import BatchContext, BatchResult, PhaseJob
from .deduplication import DeduplicationJob
from .extraction import ExtractionJob
from .indexing import IndexingJob
from .linking import LinkingJob, best_context, primary_entities
from .materialization import MaterializationJob
from .orchestrator import PipelineOrchestrator, PipelineStatusReport
from .preparation import PreparationJob
from .state import PipelineStateRepository
from .worker import JobHandler, Worker

__all__ = [
    "BatchContext",
    "BatchResult",
    "DeduplicationJob",
    "ExtractionJob",
    "IndexingJob",
    "JobHandler",
    "LinkingJob",
    "MaterializationJob",
    "PhaseJob",
    "PipelineOrchestrator",
    "PipelineStateRepository",
    "PipelineStatusReport",
    "PreparationJob",
    "Worker",
    "best_context",
    "primary_entities",
]
