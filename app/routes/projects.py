"""Project-scoped run lookups."""

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.run import JobKind
from app.schemas.run import ActiveRunResponse
from app.services import run_service

router = APIRouter(prefix="/projects", tags=["projects"])


@router.get("/{project_id}/active-run", response_model=ActiveRunResponse)
def get_active_run(
    project_id: uuid.UUID,
    kind: str = JobKind.GENERATE_STORIES,
    db: Session = Depends(get_db),
):
    """Active run of a kind, recovering it first when it has gone stale."""
    if kind not in JobKind.ALL:
        raise HTTPException(status_code=400, detail=f"Unknown job kind: {kind}")

    active = run_service.get_active_run(db, project_id, kind)
    return ActiveRunResponse(
        run_id=active.run_id,
        recovered_from_stale=active.recovered_from_stale,
        recovery_action=active.recovery_action,
        previous_run_id=active.previous_run_id,
    )
