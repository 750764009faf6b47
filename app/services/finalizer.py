"""Run finalization: derives the terminal status from item outcomes."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.database import utcnow
from app.models.run import Run, RunPhase, RunStatus
from app.models.run_item import ItemStatus, RunItem
from app.services.adapters import get_adapter
from app.services.errors import LedgerError, RunNotFoundError
from app.services.ledger import ItemLedger
from app.services.run_logger import RunLogger

logger = logging.getLogger(__name__)


def compute_final_status(completed: int, failed: int, skipped: int) -> str:
    """Terminal status for a set of item outcomes. Rules apply in order."""
    if failed == 0 and skipped == 0:
        return RunStatus.SUCCEEDED
    if completed == 0 and failed > 0:
        return RunStatus.FAILED
    if failed > 0 or (skipped > 0 and completed > 0):
        return RunStatus.PARTIAL
    return RunStatus.SUCCEEDED


def _first_failure(db: Session, run_id) -> Optional[str]:
    item = (
        db.query(RunItem)
        .filter(RunItem.run_id == run_id, RunItem.status == ItemStatus.FAILED)
        .order_by(RunItem.order_key)
        .first()
    )
    return item.error_msg if item else None


def finalize(db: Session, run_id, run_logger: Optional[RunLogger] = None, now: Optional[datetime] = None) -> Run:
    """Write the Run's terminal state. A no-op when the Run is already terminal."""
    run_logger = run_logger or RunLogger(run_id)
    ledger = ItemLedger(db)
    now = now or utcnow()

    try:
        run = db.get(Run, run_id, populate_existing=True)
    except SQLAlchemyError as e:
        db.rollback()
        raise LedgerError(f"Could not load run {run_id}: {e}") from e
    if run is None:
        raise RunNotFoundError(f"Run {run_id} not found")
    if run.status in RunStatus.TERMINAL:
        run_logger.info("run.finalize_skipped", status=run.status)
        return run

    counts = ledger.counts(run_id)
    if counts.pending or counts.working:
        run_logger.warning("run.finalize_deferred", pending=counts.pending, working=counts.working)
        return run

    not_terminal = (Run.run_id == run_id, Run.status.notin_(RunStatus.TERMINAL))
    try:
        db.execute(
            update(Run)
            .where(*not_terminal)
            .values(phase=RunPhase.FINALIZING, phase_detail="Finalizing")
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise LedgerError(f"Could not finalize run {run_id}: {e}") from e

    totals = ledger.artifact_totals(run_id)
    status = compute_final_status(counts.completed, counts.failed, counts.skipped)

    started = run.started_at or run.created_at
    duration_ms = int((now - started).total_seconds() * 1000) if started else None

    error_msg = run.error_msg
    if status == RunStatus.FAILED and not error_msg:
        error_msg = _first_failure(db, run_id)

    output_data = {
        "total_artifacts_created": totals["created"],
        "artifacts_replaced": totals["replaced"],
        "tokens_used": totals["tokens_used"],
        "total_items": counts.total,
        "completed_items": counts.completed,
        "failed_items": counts.failed,
        "skipped_items": counts.skipped,
    }

    try:
        result = db.execute(
            update(Run)
            .where(*not_terminal)
            .values(
                status=status,
                phase=RunPhase.COMPLETED,
                phase_detail=None,
                completed_at=now,
                duration_ms=duration_ms,
                completed_items=counts.completed,
                failed_items=counts.failed,
                skipped_items=counts.skipped,
                total_artifacts=totals["created"],
                current_item_id=None,
                current_item_index=None,
                lease_owner=None,
                lease_expires_at=None,
                error_msg=error_msg,
                output_data=output_data,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise LedgerError(f"Could not finalize run {run_id}: {e}") from e

    if result.rowcount == 1:
        label = get_adapter(run.job_kind).artifact_label
        summary = f"Run {status}: {totals['created']} {label} from {counts.total} items"
        if counts.failed:
            summary += f" ({counts.failed} failed)"
        if counts.skipped:
            summary += f" ({counts.skipped} skipped)"
        ledger.append_log(run_id, summary)
        run_logger.info("run.finalized", status=status, duration_ms=duration_ms, **output_data)
    else:
        run_logger.info("run.finalize_skipped", reason="finalized concurrently")

    db.refresh(run)
    return run
