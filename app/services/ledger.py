"""Item ledger: the persisted work list of a Run.

All writes are targeted single-entity updates. The terminal transition of an
item and the matching Run counter increment are committed together, so a
crash between them cannot leave the counters out of sync with the items.
Any database failure surfaces as ``LedgerError``, which the engine treats as
fatal for the invocation.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.database import utcnow
from app.models.run import Run
from app.models.run_item import ItemStatus, RunItem
from app.services.errors import LeaseLostError, LedgerError
from app.services.outcomes import Completed, Failed, Outcome, Skipped

logger = logging.getLogger(__name__)

_RUN_COUNTERS = {
    ItemStatus.COMPLETED: Run.completed_items,
    ItemStatus.FAILED: Run.failed_items,
    ItemStatus.SKIPPED: Run.skipped_items,
}


@dataclass(frozen=True)
class LedgerCounts:
    total: int
    completed: int
    failed: int
    skipped: int
    pending: int
    working: int

    @property
    def finished(self) -> int:
        return self.completed + self.failed + self.skipped


class ItemLedger:
    """Reads and writes the RunItem rows of Runs."""

    def __init__(self, db: Session):
        self.db = db

    def _fail(self, action: str, exc: Exception) -> LedgerError:
        self.db.rollback()
        logger.error(f"Ledger {action} failed: {exc}")
        return LedgerError(f"Ledger {action} failed: {exc}")

    def next_pending(self, run_id) -> Optional[RunItem]:
        """Lowest-order PENDING item, or None."""
        try:
            return (
                self.db.query(RunItem)
                .filter(RunItem.run_id == run_id, RunItem.status == ItemStatus.PENDING)
                .order_by(RunItem.order_key, RunItem.created_at)
                .first()
            )
        except SQLAlchemyError as e:
            raise self._fail("read", e) from e

    def counts(self, run_id) -> LedgerCounts:
        try:
            rows = (
                self.db.query(RunItem.status, func.count(RunItem.item_id))
                .filter(RunItem.run_id == run_id)
                .group_by(RunItem.status)
                .all()
            )
        except SQLAlchemyError as e:
            raise self._fail("count", e) from e

        by_status: Dict[str, int] = {status: count for status, count in rows}
        return LedgerCounts(
            total=sum(by_status.values()),
            completed=by_status.get(ItemStatus.COMPLETED, 0),
            failed=by_status.get(ItemStatus.FAILED, 0),
            skipped=by_status.get(ItemStatus.SKIPPED, 0),
            pending=by_status.get(ItemStatus.PENDING, 0),
            working=sum(by_status.get(s, 0) for s in ItemStatus.WORKING),
        )

    def items(self, run_id) -> List[RunItem]:
        try:
            return (
                self.db.query(RunItem)
                .filter(RunItem.run_id == run_id)
                .order_by(RunItem.order_key)
                .all()
            )
        except SQLAlchemyError as e:
            raise self._fail("read", e) from e

    def artifact_totals(self, run_id) -> Dict[str, int]:
        """Summed outcome counters across the Run's items."""
        try:
            created, replaced, tokens = (
                self.db.query(
                    func.coalesce(func.sum(RunItem.artifacts_created), 0),
                    func.coalesce(func.sum(RunItem.artifacts_replaced), 0),
                    func.coalesce(func.sum(RunItem.tokens_used), 0),
                )
                .filter(RunItem.run_id == run_id)
                .one()
            )
        except SQLAlchemyError as e:
            raise self._fail("aggregate", e) from e
        return {"created": int(created), "replaced": int(replaced), "tokens_used": int(tokens)}

    def mark_working(self, item: RunItem, phase: str) -> None:
        if phase not in ItemStatus.WORKING:
            raise ValueError(f"Not a working phase: {phase}")
        try:
            item.status = phase
            if item.started_at is None:
                item.started_at = utcnow()
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._fail("update", e) from e

    def mark_terminal(
        self,
        item: RunItem,
        outcome: Outcome,
        owner: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> None:
        """Write the item's terminal state and bump the Run counter in one commit.

        When ``owner`` is given the Run update only applies while that
        invocation still holds the lease; otherwise everything is rolled
        back and ``LeaseLostError`` is raised.
        """
        try:
            item.status = outcome.status
            item.completed_at = utcnow()
            item.duration_ms = duration_ms
            run_values = {_RUN_COUNTERS[outcome.status]: _RUN_COUNTERS[outcome.status] + 1}

            if isinstance(outcome, Completed):
                item.artifacts_created = outcome.created
                item.artifacts_replaced = outcome.replaced
                item.tokens_used = outcome.tokens_used
                item.error_msg = None
                run_values[Run.total_artifacts] = Run.total_artifacts + outcome.created
            elif isinstance(outcome, Failed):
                item.error_msg = outcome.message
                item.retry_count = (item.retry_count or 0) + 1
            elif isinstance(outcome, Skipped):
                item.skip_reason = outcome.reason

            stmt = update(Run).where(Run.run_id == item.run_id)
            if owner is not None:
                stmt = stmt.where(Run.lease_owner == owner)
            result = self.db.execute(
                stmt.values(run_values).execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                raise LeaseLostError(f"Lease on run {item.run_id} lost before item {item.item_id} was recorded")

            self.db.commit()
        except SQLAlchemyError as e:
            raise self._fail("terminal write", e) from e

    def reset_working(self, run_id) -> int:
        """Return items stuck in a working state to PENDING (retry count untouched)."""
        try:
            result = self.db.execute(
                update(RunItem)
                .where(RunItem.run_id == run_id, RunItem.status.in_(ItemStatus.WORKING))
                .values(status=ItemStatus.PENDING, started_at=None)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._fail("reset", e) from e
        return result.rowcount

    def set_current_item(self, run_id, item: RunItem, index: int, detail: str) -> None:
        try:
            self.db.execute(
                update(Run)
                .where(Run.run_id == run_id)
                .values(current_item_id=item.item_id, current_item_index=index, phase_detail=detail)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._fail("update", e) from e

    def append_log(self, run_id, message: str) -> None:
        """Append one timestamped line to the Run's log in a single statement."""
        line = f"[{utcnow().isoformat()}Z] {message}\n"
        try:
            self.db.execute(
                update(Run)
                .where(Run.run_id == run_id)
                .values(logs=func.coalesce(Run.logs, "") + line)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._fail("log append", e) from e
