"""SQLAlchemy ORM models, one file per table."""

from gitpulse.models.actor import Actor
from gitpulse.models.embedding_task import EmbeddingTask
from gitpulse.models.event import Event
from gitpulse.models.ingestion_job import IngestionJob
from gitpulse.models.installation import Installation
from gitpulse.models.repository import Repository
from gitpulse.models.sync_batch import SyncBatch

__all__ = [
    "Installation",
    "SyncBatch",
    "IngestionJob",
    "Actor",
    "Repository",
    "Event",
    "EmbeddingTask",
]
