"""Run routes."""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.run import JobKind, Run
from app.schemas.run import ProcessNextResponse, RunCreate, RunProgress, RunResponse
from app.security import require_batch_secret
from app.services import run_service
from app.services.engine import ContinuationEngine
from app.services.errors import (
    InvalidRunStateError,
    LedgerError,
    NoWorkItemsError,
    RunConflictError,
    RunNotFoundError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["runs"])


def get_engine(
    db: Session = Depends(get_db),
    x_trace_id: Optional[str] = Header(None),
) -> ContinuationEngine:
    return ContinuationEngine(db, trace_id=x_trace_id)


def _run_response(run: Run) -> RunResponse:
    return RunResponse(
        run_id=run.run_id,
        job_kind=run.job_kind,
        status=run.status,
        total_items=run.total_items,
    )


@router.post("", response_model=RunResponse)
def create_run(
    data: RunCreate,
    db: Session = Depends(get_db),
):
    """Create a run over every entity of the job kind (or the configured subset)."""
    try:
        run = run_service.start_run(db, data)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RunConflictError as e:
        raise HTTPException(status_code=409, detail={"message": str(e), "run_id": str(e.run_id)})
    except NoWorkItemsError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return _run_response(run)


@router.get("/list")
def list_runs(
    project_id: Optional[uuid.UUID] = None,
    job_kind: Optional[str] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    """List runs with basic info."""
    runs = run_service.list_runs(db, project_id=project_id, job_kind=job_kind, limit=limit)
    return [
        {
            "run_id": str(r.run_id),
            "project_id": str(r.project_id),
            "job_kind": r.job_kind,
            "status": r.status,
            "total_items": r.total_items,
            "completed_items": r.completed_items,
            "failed_items": r.failed_items,
            "skipped_items": r.skipped_items,
            "created_at": r.created_at.isoformat() if r.created_at else None,
        }
        for r in runs
    ]


@router.get("/{run_id}", response_model=RunProgress)
def get_run_progress(
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    """Get run status, counters, per-item progress and log."""
    try:
        return run_service.get_progress(db, run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")


@router.post("/{run_id}/cancel")
def cancel_run(
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    try:
        run = run_service.cancel_run(db, run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    except InvalidRunStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"run_id": str(run.run_id), "status": run.status}


@router.post("/{run_id}/retry", response_model=RunResponse)
def retry_run(
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    """Start a new run over the failed items of a finished run."""
    try:
        run = run_service.retry_failed_items(db, run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    except (InvalidRunStateError, NoWorkItemsError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RunConflictError as e:
        raise HTTPException(status_code=409, detail={"message": str(e), "run_id": str(e.run_id)})
    return _run_response(run)


@router.delete("/{run_id}")
def delete_run(
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    try:
        run_service.delete_run(db, run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    except InvalidRunStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"run_id": str(run_id), "deleted": True}


def _process_next(run_id: uuid.UUID, job_kind: str, db: Session, engine: ContinuationEngine) -> ProcessNextResponse:
    run = db.get(Run, run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    if run.job_kind != job_kind:
        raise HTTPException(status_code=400, detail=f"Run is a {run.job_kind} run, not {job_kind}")

    try:
        result = engine.advance(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    except LedgerError as e:
        logger.error(f"Run {run_id} invocation failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    if not result.success:
        raise HTTPException(status_code=500, detail=result.message)

    return ProcessNextResponse(
        success=result.success,
        message=result.message,
        processed=result.processed,
        items_processed=result.items_processed,
        timed_out=result.timed_out,
    )


@router.post("/{run_id}/process-next", response_model=ProcessNextResponse, dependencies=[Depends(require_batch_secret)])
def process_next_stories(
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
    engine: ContinuationEngine = Depends(get_engine),
):
    """Advance a story generation run by one bounded batch."""
    return _process_next(run_id, JobKind.GENERATE_STORIES, db, engine)


@router.post("/{run_id}/process-next-upload", response_model=ProcessNextResponse, dependencies=[Depends(require_batch_secret)])
def process_next_upload(
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
    engine: ContinuationEngine = Depends(get_engine),
):
    """Advance a document analysis run by one document."""
    return _process_next(run_id, JobKind.ANALYZE_DOCUMENTS, db, engine)


@router.post("/{run_id}/process-next-subtasks", response_model=ProcessNextResponse, dependencies=[Depends(require_batch_secret)])
def process_next_subtasks(
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
    engine: ContinuationEngine = Depends(get_engine),
):
    """Advance a subtask generation run by one bounded batch."""
    return _process_next(run_id, JobKind.GENERATE_SUBTASKS, db, engine)
