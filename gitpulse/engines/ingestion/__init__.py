"""Ingestion engine: batch / job state machine over the GitHub timeline."""

from gitpulse.engines.ingestion.models import (
    JobOutcome,
    OrchestratorConfig,
    PageStats,
    TimelineClient,
)
from gitpulse.engines.ingestion.orchestrator import IngestionJobOrchestrator

__all__ = [
    "IngestionJobOrchestrator",
    "JobOutcome",
    "OrchestratorConfig",
    "PageStats",
    "TimelineClient",
]
