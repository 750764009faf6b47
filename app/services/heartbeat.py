"""Liveness for Runs: lease, heartbeat, stale detection and recovery.

An invocation claims a Run by writing an expiring owner token. Renewing the
lease is the heartbeat. The lease TTL matches the stale threshold, so a Run
whose heartbeat is stale also has an expired lease and can be taken over.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.database import utcnow
from app.models.run import Run, RunPhase, RunStatus
from app.models.run_item import ItemStatus, RunItem
from app.services.continuation import ContinuationQueue
from app.services.errors import LeaseLostError, LedgerError
from app.services.finalizer import finalize
from app.services.ledger import ItemLedger
from app.services.run_logger import RunLogger

logger = logging.getLogger(__name__)

STALE_ERROR = "Run became stale (worker disconnected)"


@dataclass
class RecoveryResult:
    success: bool
    action: str  # 'continued', 'finalized', 'failed', 'none'
    message: str


@dataclass
class RecoveryDetail:
    run_id: str
    success: bool
    action: str
    message: str


@dataclass
class BatchRecoveryResult:
    total_found: int = 0
    recovered: int = 0
    failed: int = 0
    details: List[RecoveryDetail] = field(default_factory=list)


@dataclass
class HealthStatus:
    healthy: bool
    stale_run_count: int
    oldest_stale_run_id: Optional[str] = None
    oldest_stale_duration_ms: Optional[int] = None


def _write(db: Session, stmt, action: str):
    try:
        result = db.execute(stmt.execution_options(synchronize_session=False))
        db.commit()
        return result
    except SQLAlchemyError as e:
        db.rollback()
        raise LedgerError(f"Lease {action} failed: {e}") from e


def claim_lease(db: Session, run_id, owner: str, now: Optional[datetime] = None) -> bool:
    """Take ownership of an active Run unless another live owner holds it."""
    now = now or utcnow()
    stmt = (
        update(Run)
        .where(
            Run.run_id == run_id,
            Run.status.in_(RunStatus.ACTIVE),
            or_(
                Run.lease_owner.is_(None),
                Run.lease_owner == owner,
                Run.lease_expires_at.is_(None),
                Run.lease_expires_at < now,
            ),
        )
        .values(
            lease_owner=owner,
            lease_expires_at=now + timedelta(seconds=settings.LEASE_TTL_SECONDS),
            heartbeat_at=now,
        )
    )
    return _write(db, stmt, "claim").rowcount == 1


def renew_lease(db: Session, run_id, owner: str, now: Optional[datetime] = None) -> None:
    """Heartbeat: extend the lease. Raises LeaseLostError if it was taken over."""
    now = now or utcnow()
    stmt = (
        update(Run)
        .where(Run.run_id == run_id, Run.lease_owner == owner)
        .values(heartbeat_at=now, lease_expires_at=now + timedelta(seconds=settings.LEASE_TTL_SECONDS))
    )
    if _write(db, stmt, "renew").rowcount != 1:
        raise LeaseLostError(f"Lease on run {run_id} is no longer held by {owner}")


def release_lease(db: Session, run_id, owner: str) -> None:
    stmt = (
        update(Run)
        .where(Run.run_id == run_id, Run.lease_owner == owner)
        .values(lease_owner=None, lease_expires_at=None)
    )
    _write(db, stmt, "release")


def last_activity(run: Run) -> Optional[datetime]:
    return run.heartbeat_at or run.started_at or run.created_at


def stale_duration_ms(run: Run, now: Optional[datetime] = None) -> int:
    activity = last_activity(run)
    if activity is None:
        return 0
    return int(((now or utcnow()) - activity).total_seconds() * 1000)


def is_stale(run: Run, now: Optional[datetime] = None) -> bool:
    if run.status != RunStatus.RUNNING:
        return False
    return stale_duration_ms(run, now) > settings.STALE_THRESHOLD_SECONDS * 1000


def find_stale_runs(db: Session, now: Optional[datetime] = None) -> List[Run]:
    """RUNNING Runs whose last activity is older than the stale threshold."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=settings.STALE_THRESHOLD_SECONDS)
    candidates = (
        db.query(Run)
        .filter(
            Run.status == RunStatus.RUNNING,
            or_(Run.heartbeat_at.is_(None), Run.heartbeat_at < cutoff),
        )
        .order_by(Run.created_at)
        .all()
    )
    return [run for run in candidates if is_stale(run, now)]


def _too_old(run: Run, now: datetime) -> bool:
    started = run.started_at or run.created_at
    return started is not None and (now - started).total_seconds() > settings.MAX_RECOVERY_AGE_SECONDS


def _fail_stale_run(db: Session, run: Run, now: datetime) -> None:
    """Mark the Run FAILED; its unfinished items are failed with the same message."""
    unfinished = (ItemStatus.PENDING,) + ItemStatus.WORKING
    try:
        failed_now = db.execute(
            update(RunItem)
            .where(RunItem.run_id == run.run_id, RunItem.status.in_(unfinished))
            .values(status=ItemStatus.FAILED, error_msg=STALE_ERROR, completed_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        started = run.started_at or run.created_at
        db.execute(
            update(Run)
            .where(Run.run_id == run.run_id, Run.status.notin_(RunStatus.TERMINAL))
            .values(
                status=RunStatus.FAILED,
                phase=RunPhase.FAILED,
                phase_detail=None,
                error_msg=STALE_ERROR,
                completed_at=now,
                duration_ms=int((now - started).total_seconds() * 1000) if started else None,
                failed_items=Run.failed_items + failed_now,
                current_item_id=None,
                current_item_index=None,
                lease_owner=None,
                lease_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise LedgerError(f"Could not fail stale run {run.run_id}: {e}") from e


def recover_stale_run(
    db: Session,
    run_id,
    queue: Optional[ContinuationQueue] = None,
    now: Optional[datetime] = None,
) -> RecoveryResult:
    """Resume, finalize or fail a Run whose owner stopped heartbeating."""
    now = now or utcnow()
    queue = queue or ContinuationQueue(db)
    ledger = ItemLedger(db)
    run_logger = RunLogger(run_id)

    run = db.get(Run, run_id, populate_existing=True)
    if run is None:
        return RecoveryResult(False, "none", "Run not found")
    if run.status not in RunStatus.ACTIVE:
        return RecoveryResult(True, "none", f"Run is already {run.status}")
    if run.lease_owner and run.lease_expires_at and run.lease_expires_at > now:
        return RecoveryResult(True, "none", "Run lease is still held")

    stale_ms = stale_duration_ms(run, now)
    run_logger.warning("stale_run.detected", stale_duration_ms=stale_ms, status=run.status)

    if _too_old(run, now):
        _fail_stale_run(db, run, now)
        ledger.append_log(run_id, f"{STALE_ERROR}; too old to recover")
        run_logger.error("stale_run.failed", error=STALE_ERROR, stale_duration_ms=stale_ms)
        return RecoveryResult(True, "failed", STALE_ERROR)

    reset = ledger.reset_working(run_id)
    if reset:
        ledger.append_log(run_id, f"Recovery: reset {reset} interrupted item(s) to PENDING")
        run_logger.info("stale_run.items_reset", count=reset)

    counts = ledger.counts(run_id)
    if counts.pending > 0:
        try:
            job = queue.submit(run_id, reason="stale_recovery")
        except SQLAlchemyError as e:
            db.rollback()
            run_logger.error("stale_run.recovery_failed", error=e)
            return RecoveryResult(False, "none", f"Could not queue continuation: {e}")
        ledger.append_log(run_id, f"Recovery: resuming with {counts.pending} pending item(s)")
        run_logger.info("stale_run.continued", pending=counts.pending, job_id=str(job.job_id))
        return RecoveryResult(True, "continued", f"Resumed with {counts.pending} pending items")

    finalize(db, run_id, run_logger=run_logger, now=now)
    run_logger.info("stale_run.finalized")
    return RecoveryResult(True, "finalized", "All items were finished; run finalized")


def recover_all_stale_runs(
    db: Session,
    queue: Optional[ContinuationQueue] = None,
    now: Optional[datetime] = None,
) -> BatchRecoveryResult:
    """Sweep: recover every stale Run, one failure never stopping the rest."""
    now = now or utcnow()
    queue = queue or ContinuationQueue(db)
    stale = find_stale_runs(db, now)
    batch = BatchRecoveryResult(total_found=len(stale))

    for run in stale:
        run_id = run.run_id
        try:
            result = recover_stale_run(db, run_id, queue=queue, now=now)
        except LedgerError as e:
            logger.error(f"Stale recovery of run {run_id} failed: {e}")
            result = RecoveryResult(False, "none", str(e))

        batch.details.append(RecoveryDetail(str(run_id), result.success, result.action, result.message))
        if result.success and result.action != "none":
            batch.recovered += 1
        elif not result.success:
            batch.failed += 1

    if stale:
        logger.info(f"Stale sweep: found={batch.total_found} recovered={batch.recovered} failed={batch.failed}")
    return batch


def get_run_health(db: Session, now: Optional[datetime] = None) -> HealthStatus:
    now = now or utcnow()
    stale = find_stale_runs(db, now)
    if not stale:
        return HealthStatus(healthy=True, stale_run_count=0)

    oldest = max(stale, key=lambda run: stale_duration_ms(run, now))
    return HealthStatus(
        healthy=False,
        stale_run_count=len(stale),
        oldest_stale_run_id=str(oldest.run_id),
        oldest_stale_duration_ms=stale_duration_ms(oldest, now),
    )
