"""Run lifecycle operations used by the HTTP routes."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.config import settings
from app.database import utcnow
from app.models.backlog import Project
from app.models.run import Run, RunPhase, RunStatus
from app.models.run_item import ItemStatus, RunItem
from app.schemas.run import ItemProgress, RunConfig, RunCreate, RunProgress
from app.services.adapters import get_adapter
from app.services.continuation import ContinuationQueue
from app.services.errors import InvalidRunStateError, NoWorkItemsError, RunConflictError, RunNotFoundError
from app.services.heartbeat import last_activity, recover_stale_run, stale_duration_ms
from app.services.ledger import ItemLedger

logger = logging.getLogger(__name__)


@dataclass
class ActiveRun:
    run_id: Optional[str] = None
    recovered_from_stale: bool = False
    recovery_action: Optional[str] = None
    previous_run_id: Optional[str] = None


def get_run(db: Session, run_id) -> Run:
    run = db.get(Run, run_id, populate_existing=True)
    if run is None:
        raise RunNotFoundError(f"Run {run_id} not found")
    return run


def _is_stale_active(run: Run, now: datetime) -> bool:
    return last_activity(run) is not None and stale_duration_ms(run, now) > settings.STALE_THRESHOLD_SECONDS * 1000


def get_active_run(
    db: Session,
    project_id,
    job_kind: str,
    queue: Optional[ContinuationQueue] = None,
    now: Optional[datetime] = None,
) -> ActiveRun:
    """Active Run of a kind for a project; a stale one is recovered first."""
    now = now or utcnow()
    run = (
        db.query(Run)
        .filter(Run.project_id == project_id, Run.job_kind == job_kind, Run.status.in_(RunStatus.ACTIVE))
        .order_by(Run.created_at.desc())
        .first()
    )
    if run is None:
        return ActiveRun()
    if not _is_stale_active(run, now):
        return ActiveRun(run_id=str(run.run_id))

    run_id = run.run_id
    logger.warning(f"Active run {run_id} looks stale, recovering")
    result = recover_stale_run(db, run_id, queue=queue, now=now)
    if result.action in ("continued", "none") and get_run(db, run_id).status in RunStatus.ACTIVE:
        return ActiveRun(run_id=str(run_id), recovered_from_stale=result.action == "continued",
                         recovery_action=result.action)
    return ActiveRun(recovered_from_stale=True, recovery_action=result.action, previous_run_id=str(run_id))


def _create_run(
    db: Session,
    project_id,
    job_kind: str,
    config: RunConfig,
    queue: ContinuationQueue,
    retry_of: Optional[Run] = None,
    retry_counts: Optional[dict] = None,
) -> Run:
    adapter = get_adapter(job_kind)
    ids = list(config.item_ids) if config.item_ids is not None else None
    entities = adapter.list_entities(db, project_id, ids)
    if not entities:
        raise NoWorkItemsError(f"No {adapter.entity_type} items to process")

    run = Run(
        project_id=project_id,
        job_kind=job_kind,
        status=RunStatus.QUEUED,
        phase=RunPhase.INITIALIZING,
        total_items=len(entities),
        input_config=config.model_dump(mode="json"),
        logs="",
        retry_of_run_id=retry_of.run_id if retry_of else None,
    )
    db.add(run)
    db.flush()

    for order, entity in enumerate(entities):
        entity_id = adapter.entity_id(entity)
        db.add(
            RunItem(
                run_id=run.run_id,
                entity_type=adapter.entity_type,
                entity_id=entity_id,
                status=ItemStatus.PENDING,
                order_key=order,
                retry_count=(retry_counts or {}).get(entity_id, 0),
            )
        )
    db.commit()

    ledger = ItemLedger(db)
    if retry_of:
        ledger.append_log(run.run_id, f"Retry of run {retry_of.run_id}: {len(entities)} failed items")
    ledger.append_log(run.run_id, f"Run created with {len(entities)} items")
    queue.submit(run.run_id, reason="start")

    logger.info(f"Created {job_kind} run {run.run_id} with {len(entities)} items")
    return run


def start_run(db: Session, data: RunCreate, queue: Optional[ContinuationQueue] = None) -> Run:
    queue = queue or ContinuationQueue(db)
    if db.get(Project, data.project_id) is None:
        raise RunNotFoundError(f"Project {data.project_id} not found")

    active = get_active_run(db, data.project_id, data.job_kind, queue=queue)
    if active.run_id:
        raise RunConflictError(f"A {data.job_kind} run is already active for this project", run_id=active.run_id)

    return _create_run(db, data.project_id, data.job_kind, data.config, queue)


def cancel_run(db: Session, run_id, now: Optional[datetime] = None) -> Run:
    """Cancel a QUEUED or RUNNING Run; pending items are left untouched."""
    run = get_run(db, run_id)
    if run.status not in RunStatus.ACTIVE:
        raise InvalidRunStateError(f"Run is {run.status} and cannot be cancelled")

    now = now or utcnow()
    started = run.started_at or run.created_at
    result = db.execute(
        update(Run)
        .where(Run.run_id == run_id, Run.status.in_(RunStatus.ACTIVE))
        .values(
            status=RunStatus.CANCELLED,
            completed_at=now,
            duration_ms=int((now - started).total_seconds() * 1000) if started else None,
            current_item_id=None,
            current_item_index=None,
            phase_detail=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        db.refresh(run)
        raise InvalidRunStateError(f"Run is {run.status} and cannot be cancelled")

    ItemLedger(db).append_log(run_id, "Run cancelled by user")
    logger.info(f"Run {run_id} cancelled")
    return run


def retry_failed_items(db: Session, run_id, queue: Optional[ContinuationQueue] = None) -> Run:
    """New Run over exactly the FAILED items of a terminal Run."""
    queue = queue or ContinuationQueue(db)
    run = get_run(db, run_id)
    if run.status not in RunStatus.TERMINAL:
        raise InvalidRunStateError("Only finished runs can be retried")

    failed = (
        db.query(RunItem)
        .filter(RunItem.run_id == run_id, RunItem.status == ItemStatus.FAILED)
        .order_by(RunItem.order_key)
        .all()
    )
    if not failed:
        raise NoWorkItemsError("Run has no failed items to retry")

    active = get_active_run(db, run.project_id, run.job_kind, queue=queue)
    if active.run_id:
        raise RunConflictError(f"A {run.job_kind} run is already active for this project", run_id=active.run_id)

    original = RunConfig.model_validate(run.input_config)
    config = original.model_copy(update={"item_ids": [item.entity_id for item in failed]})
    retry_counts = {item.entity_id: item.retry_count for item in failed}
    return _create_run(db, run.project_id, run.job_kind, config, queue, retry_of=run, retry_counts=retry_counts)


def delete_run(db: Session, run_id) -> None:
    run = get_run(db, run_id)
    if run.status in RunStatus.ACTIVE:
        raise InvalidRunStateError("Cancel the run before deleting it")
    db.delete(run)
    db.commit()


def list_runs(db: Session, project_id=None, job_kind: Optional[str] = None, limit: int = 50) -> List[Run]:
    query = db.query(Run)
    if project_id is not None:
        query = query.filter(Run.project_id == project_id)
    if job_kind:
        query = query.filter(Run.job_kind == job_kind)
    return query.order_by(Run.created_at.desc()).limit(limit).all()


def get_progress(db: Session, run_id, now: Optional[datetime] = None) -> RunProgress:
    run = get_run(db, run_id)
    items = ItemLedger(db).items(run_id)
    now = now or utcnow()

    elapsed_ms = None
    if run.started_at:
        end = run.completed_at or now
        elapsed_ms = int((end - run.started_at).total_seconds() * 1000)

    finished = run.completed_items + run.failed_items + run.skipped_items
    estimated_remaining_ms = None
    if elapsed_ms and finished and run.status in RunStatus.ACTIVE:
        estimated_remaining_ms = int(elapsed_ms / finished * (run.total_items - finished))

    return RunProgress(
        run_id=run.run_id,
        project_id=run.project_id,
        job_kind=run.job_kind,
        status=run.status,
        phase=run.phase,
        phase_detail=run.phase_detail,
        total_items=run.total_items,
        completed_items=run.completed_items,
        failed_items=run.failed_items,
        skipped_items=run.skipped_items,
        total_artifacts=run.total_artifacts,
        current_item_id=run.current_item_id,
        current_item_index=run.current_item_index,
        started_at=run.started_at,
        completed_at=run.completed_at,
        heartbeat_at=run.heartbeat_at,
        elapsed_ms=elapsed_ms,
        estimated_remaining_ms=estimated_remaining_ms,
        output_data=run.output_data,
        error=run.error_msg,
        logs=run.logs or "",
        items=[
            ItemProgress(
                item_id=item.item_id,
                entity_id=item.entity_id,
                order_key=item.order_key,
                status=item.status,
                artifacts_created=item.artifacts_created,
                artifacts_replaced=item.artifacts_replaced,
                tokens_used=item.tokens_used,
                retry_count=item.retry_count,
                duration_ms=item.duration_ms,
                error=item.error_msg or item.skip_reason,
            )
            for item in items
        ],
    )
