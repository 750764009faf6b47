"""Run item (ledger entry) model."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from app.database import Base, utcnow


class ItemStatus:
    PENDING = "PENDING"
    LOADING = "LOADING"
    GENERATING = "GENERATING"
    SAVING = "SAVING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    WORKING = (LOADING, GENERATING, SAVING)
    TERMINAL = (COMPLETED, FAILED, SKIPPED)


class RunItem(Base):
    """One unit of work inside a Run (document, epic or story)."""

    __tablename__ = "run_items"

    item_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    run_id = Column(Uuid, ForeignKey("runs.run_id", ondelete="CASCADE"), nullable=False)
    entity_type = Column(Text, nullable=False)  # 'upload', 'epic', 'story'
    entity_id = Column(Uuid, nullable=False)
    status = Column(Text, nullable=False, default=ItemStatus.PENDING)
    order_key = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    duration_ms = Column(Integer)

    retry_count = Column(Integer, nullable=False, default=0)
    error_msg = Column(Text)
    skip_reason = Column(Text)

    # Outcome counters
    artifacts_created = Column(Integer, nullable=False, default=0)
    artifacts_replaced = Column(Integer, nullable=False, default=0)
    tokens_used = Column(Integer, nullable=False, default=0)

    run = relationship("Run", back_populates="items")

    __table_args__ = (
        Index("idx_run_items_run_status", "run_id", "status"),
        Index("idx_run_items_run_order", "run_id", "order_key"),
        {"schema": None},
    )
