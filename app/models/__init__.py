"""SQLAlchemy ORM models."""

from app.models.backlog import Epic, Project, Story, Subtask
from app.models.document import Card, Document
from app.models.job import Job
from app.models.run import JobKind, Run, RunPhase, RunStatus
from app.models.run_item import ItemStatus, RunItem

__all__ = [
    "Project",
    "Document",
    "Card",
    "Epic",
    "Story",
    "Subtask",
    "Run",
    "RunItem",
    "Job",
    "JobKind",
    "RunStatus",
    "RunPhase",
    "ItemStatus",
]
