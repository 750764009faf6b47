"""Job model for the continuation queue."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, Uuid

from app.database import Base, JSONType, utcnow

ADVANCE_RUN = "advance_run"


class Job(Base):
    """Job represents one queued "advance this Run" message for the worker."""

    __tablename__ = "jobs"

    job_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    run_id = Column(Uuid, ForeignKey("runs.run_id", ondelete="CASCADE"), nullable=False)
    kind = Column(Text, nullable=False, default=ADVANCE_RUN)
    status = Column(Text, nullable=False)  # 'queued', 'running', 'done', 'failed'
    payload = Column(JSONType)
    retries = Column(Integer, default=0)
    last_error = Column(Text)
    available_at = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_jobs_status", "status"),
        Index("idx_jobs_run_id", "run_id"),
        {"schema": None},
    )
