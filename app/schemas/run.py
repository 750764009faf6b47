"""Run-related Pydantic schemas."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.run import JobKind


class RunConfig(BaseModel):
    """Per-Run configuration, validated once at creation and stored verbatim."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    mode: Literal["compact", "standard", "detailed"] = "standard"
    persona_set: Literal["lightweight", "core", "full"] = "core"
    pacing: Literal["fast", "safe"] = "safe"
    existing_output: Literal["skip", "replace"] = "skip"
    max_artifacts_per_item: int = Field(default=20, ge=1, le=100)
    item_ids: Optional[List[UUID]] = None  # Subset of entities (used by retries)


class RunCreate(BaseModel):
    """Schema for creating a new run."""

    project_id: UUID
    job_kind: str
    config: RunConfig = Field(default_factory=RunConfig)

    @field_validator("job_kind")
    @classmethod
    def _known_kind(cls, value: str) -> str:
        if value not in JobKind.ALL:
            raise ValueError(f"Unknown job kind: {value}")
        return value


class RunResponse(BaseModel):
    """Response after creating a run."""

    run_id: UUID
    job_kind: str
    status: str
    total_items: int


class ItemProgress(BaseModel):
    """Progress of one ledger item."""

    item_id: UUID
    entity_id: UUID
    order_key: int
    status: str
    artifacts_created: int
    artifacts_replaced: int
    tokens_used: int
    retry_count: int
    duration_ms: Optional[int] = None
    error: Optional[str] = None


class RunProgress(BaseModel):
    """Run status and progress response."""

    run_id: UUID
    project_id: UUID
    job_kind: str
    status: str
    phase: str
    phase_detail: Optional[str] = None
    total_items: int
    completed_items: int
    failed_items: int
    skipped_items: int
    total_artifacts: int
    current_item_id: Optional[UUID] = None
    current_item_index: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    elapsed_ms: Optional[int] = None
    estimated_remaining_ms: Optional[int] = None
    output_data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    logs: str = ""
    items: List[ItemProgress] = Field(default_factory=list)


class ProcessNextResponse(BaseModel):
    """Response of one trigger-endpoint invocation."""

    success: bool
    message: str
    processed: bool = False
    items_processed: int = 0
    timed_out: bool = False


class ActiveRunResponse(BaseModel):
    """Active run lookup, with stale recovery information."""

    run_id: Optional[UUID] = None
    recovered_from_stale: bool = False
    recovery_action: Optional[str] = None
    previous_run_id: Optional[UUID] = None


class RecoveryDetail(BaseModel):
    run_id: UUID
    success: bool
    action: str
    message: str


class BatchRecoveryResponse(BaseModel):
    """Result of one stale-run sweep."""

    total_found: int
    recovered: int
    failed: int
    healthy_before: bool
    healthy_after: bool
    details: List[RecoveryDetail] = Field(default_factory=list)


class HealthResponse(BaseModel):
    healthy: bool
    stale_run_count: int
    oldest_stale_run_id: Optional[UUID] = None
    oldest_stale_duration_ms: Optional[int] = None
