"""Durable continuation queue: "advance this Run" messages stored in ``jobs``."""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.database import utcnow
from app.models.job import ADVANCE_RUN, Job

logger = logging.getLogger(__name__)


class ContinuationQueue:
    """Submits and dequeues advance messages.

    At most one queued message exists per Run; submitting while one is
    already queued returns the existing message instead of adding another.
    """

    def __init__(self, db: Session):
        self.db = db

    def submit(self, run_id, reason: str, delay_seconds: float = 0) -> Job:
        existing = (
            self.db.query(Job)
            .filter(Job.run_id == run_id, Job.kind == ADVANCE_RUN, Job.status == "queued")
            .first()
        )
        if existing:
            logger.info(f"Continuation for run {run_id} already queued ({existing.job_id})")
            return existing

        now = utcnow()
        job = Job(
            run_id=run_id,
            kind=ADVANCE_RUN,
            status="queued",
            payload={"run_id": str(run_id), "reason": reason},
            available_at=now + timedelta(seconds=max(delay_seconds, 0)),
        )
        self.db.add(job)
        self.db.commit()

        logger.info(f"Queued continuation {job.job_id} for run {run_id} ({reason})")
        return job

    def dequeue(self) -> Optional[Job]:
        """Get the next due queued message."""
        return (
            self.db.query(Job)
            .filter(Job.status == "queued", Job.available_at <= utcnow())
            .order_by(Job.available_at, Job.created_at)
            .with_for_update(skip_locked=True)
            .first()
        )

    def queued_count(self, run_id) -> int:
        return (
            self.db.query(Job)
            .filter(Job.run_id == run_id, Job.status == "queued")
            .count()
        )
