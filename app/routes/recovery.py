"""Stale run sweep and health routes."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.database import get_db
from app.schemas.run import BatchRecoveryResponse, HealthResponse, RecoveryDetail
from app.security import require_cron_secret
from app.services.heartbeat import get_run_health, recover_all_stale_runs

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/recovery", tags=["recovery"])


@router.get("/stale-runs", response_model=BatchRecoveryResponse, dependencies=[Depends(require_cron_secret)])
def sweep_stale_runs(db: Session = Depends(get_db)):
    """Recover every stale run (called periodically by a scheduler)."""
    before = get_run_health(db)
    batch = recover_all_stale_runs(db)
    after = get_run_health(db)

    logger.info(f"Stale sweep via API: found={batch.total_found} recovered={batch.recovered} failed={batch.failed}")

    return BatchRecoveryResponse(
        total_found=batch.total_found,
        recovered=batch.recovered,
        failed=batch.failed,
        healthy_before=before.healthy,
        healthy_after=after.healthy,
        details=[
            RecoveryDetail(run_id=d.run_id, success=d.success, action=d.action, message=d.message)
            for d in batch.details
        ],
    )


@router.get("/health", response_model=HealthResponse)
def run_health(db: Session = Depends(get_db)):
    health = get_run_health(db)
    return HealthResponse(
        healthy=health.healthy,
        stale_run_count=health.stale_run_count,
        oldest_stale_run_id=health.oldest_stale_run_id,
        oldest_stale_duration_ms=health.oldest_stale_duration_ms,
    )
