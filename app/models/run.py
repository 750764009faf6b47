"""Run model."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from app.database import Base, JSONType, utcnow


class JobKind:
    """Which item type a Run processes."""

    ANALYZE_DOCUMENTS = "ANALYZE_DOCUMENTS"  # upload -> cards
    GENERATE_STORIES = "GENERATE_STORIES"  # epic -> stories
    GENERATE_SUBTASKS = "GENERATE_SUBTASKS"  # story -> subtasks

    ALL = (ANALYZE_DOCUMENTS, GENERATE_STORIES, GENERATE_SUBTASKS)


class RunStatus:
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    PARTIAL = "PARTIAL"
    CANCELLED = "CANCELLED"

    ACTIVE = (QUEUED, RUNNING)
    TERMINAL = (SUCCEEDED, FAILED, PARTIAL, CANCELLED)


class RunPhase:
    INITIALIZING = "INITIALIZING"
    GENERATING = "GENERATING"
    FINALIZING = "FINALIZING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Run(Base):
    """Run represents one generation job spanning many items."""

    __tablename__ = "runs"

    run_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False)
    job_kind = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default=RunStatus.QUEUED)
    phase = Column(Text, nullable=False, default=RunPhase.INITIALIZING)
    phase_detail = Column(Text)

    # Counters
    total_items = Column(Integer, nullable=False, default=0)
    completed_items = Column(Integer, nullable=False, default=0)
    failed_items = Column(Integer, nullable=False, default=0)
    skipped_items = Column(Integer, nullable=False, default=0)
    total_artifacts = Column(Integer, nullable=False, default=0)
    current_item_id = Column(Uuid)
    current_item_index = Column(Integer)

    # Liveness
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime)
    heartbeat_at = Column(DateTime)
    completed_at = Column(DateTime)
    duration_ms = Column(Integer)

    # Ownership lease
    lease_owner = Column(Text)
    lease_expires_at = Column(DateTime)

    input_config = Column(JSONType, nullable=False)  # RunConfig, stored verbatim
    output_data = Column(JSONType)  # Written once, at finalization
    error_msg = Column(Text)
    logs = Column(Text, nullable=False, default="")
    retry_of_run_id = Column(Uuid, ForeignKey("runs.run_id", ondelete="SET NULL"))

    items = relationship(
        "RunItem",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="RunItem.order_key",
    )

    __table_args__ = (
        Index("idx_runs_status", "status"),
        Index("idx_runs_project_kind", "project_id", "job_kind"),
        {"schema": None},
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in RunStatus.TERMINAL
