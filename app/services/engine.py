"""Continuation engine: advances a Run by one step or one bounded batch.

Each call of ``advance`` is one invocation. It claims the Run lease, works
through PENDING items until the ledger is exhausted, the Run is cancelled,
or the processing budget runs out, and hands any remaining work to a
follow-up message on the continuation queue.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.database import utcnow
from app.models.run import JobKind, Run, RunPhase, RunStatus
from app.schemas.run import RunConfig
from app.services.adapters import get_adapter
from app.services.continuation import ContinuationQueue
from app.services.errors import LeaseLostError, LedgerError, RunNotFoundError
from app.services.finalizer import finalize
from app.services.generator import Generator, get_generator
from app.services.heartbeat import claim_lease, release_lease, renew_lease
from app.services.ledger import ItemLedger
from app.services.outcomes import Failed, Skipped
from app.services.pacing import PacingConfig, get_pacing
from app.services.processor import ItemProcessor
from app.services.run_logger import RunLogger

logger = logging.getLogger(__name__)

SINGLE_STEP = "single_step"
BOUNDED_LOOP = "bounded_loop"

INVOCATION_MODES = {
    JobKind.ANALYZE_DOCUMENTS: SINGLE_STEP,
    JobKind.GENERATE_STORIES: BOUNDED_LOOP,
    JobKind.GENERATE_SUBTASKS: BOUNDED_LOOP,
}


@dataclass
class InvocationResult:
    success: bool
    message: str
    processed: bool = False
    items_processed: int = 0
    timed_out: bool = False
    finalized: bool = False


class ContinuationEngine:
    """Runs one invocation of a Run."""

    def __init__(
        self,
        db: Session,
        generator: Optional[Generator] = None,
        queue: Optional[ContinuationQueue] = None,
        budget_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = utcnow,
        trace_id: Optional[str] = None,
    ):
        self.db = db
        self.generator = generator or get_generator()
        self.queue = queue or ContinuationQueue(db)
        self.budget_seconds = settings.processing_budget_seconds if budget_seconds is None else budget_seconds
        self.clock = clock
        self.sleep = sleep
        self.now = now
        self.trace_id = trace_id
        self.ledger = ItemLedger(db)

    def advance(self, run_id) -> InvocationResult:
        try:
            run = self.db.get(Run, run_id, populate_existing=True)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise LedgerError(f"Could not load run {run_id}: {e}") from e
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")

        if run.status == RunStatus.CANCELLED:
            return InvocationResult(True, "Run was cancelled")
        if run.status in RunStatus.TERMINAL:
            return InvocationResult(True, f"Run already {run.status}")

        run_logger = RunLogger(run_id, trace_id=self.trace_id)
        owner = run_logger.invocation_id

        try:
            if not claim_lease(self.db, run_id, owner, self.now()):
                run_logger.info("invocation.skipped", reason="lease held by another invocation")
                return InvocationResult(True, "Run is being processed by another invocation")
            return self._invoke(run, owner, run_logger)
        except LeaseLostError as e:
            self.db.rollback()
            run_logger.warning("invocation.lease_lost", error=str(e))
            return InvocationResult(True, "Lease lost to another invocation; stopping")
        except Exception as e:
            self._fail_run(run_id, owner, e, run_logger)
            return InvocationResult(False, f"Run failed: {e}")

    def _invoke(self, run: Run, owner: str, run_logger: RunLogger) -> InvocationResult:
        run_id = run.run_id
        config = RunConfig.model_validate(run.input_config)
        pacing = get_pacing(config.pacing)
        mode = INVOCATION_MODES[run.job_kind]

        if run.status == RunStatus.QUEUED:
            self._start(run, config, pacing)

        run_logger.info("invocation.started", mode=mode, job_kind=run.job_kind, total_items=run.total_items)

        # Holding the lease means any item still in a working state was
        # orphaned by a previous owner.
        reset = self.ledger.reset_working(run_id)
        if reset:
            self.ledger.append_log(run_id, f"Reset {reset} interrupted item(s) to PENDING")
            run_logger.warning("invocation.items_reset", count=reset)

        processor = ItemProcessor(
            self.db,
            self.ledger,
            self.generator,
            run_logger,
            heartbeat=lambda: renew_lease(self.db, run_id, owner, self.now()),
            owner=owner,
            sleep=self.sleep,
            clock=self.clock,
        )

        if mode == SINGLE_STEP:
            return self._single_step(run, owner, config, pacing, processor, run_logger)
        return self._bounded_loop(run, owner, config, pacing, processor, run_logger)

    def _start(self, run: Run, config: RunConfig, pacing: PacingConfig) -> None:
        now = self.now()
        try:
            self.db.execute(
                update(Run)
                .where(Run.run_id == run.run_id, Run.status == RunStatus.QUEUED)
                .values(status=RunStatus.RUNNING, phase=RunPhase.GENERATING, started_at=now, heartbeat_at=now)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise LedgerError(f"Could not start run {run.run_id}: {e}") from e
        self.ledger.append_log(
            run.run_id,
            f"Starting {run.job_kind} ({config.mode} mode, {config.pacing} pacing: {pacing.description})",
        )

    def _heartbeat(self, run_id, owner: str, run_logger: RunLogger) -> None:
        renew_lease(self.db, run_id, owner, self.now())
        run_logger.info("heartbeat.updated")

    def _is_cancelled(self, run_id) -> bool:
        try:
            status = self.db.query(Run.status).filter(Run.run_id == run_id).scalar()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise LedgerError(f"Could not read run {run_id}: {e}") from e
        return status == RunStatus.CANCELLED

    def _stop_cancelled(self, run_id, owner: str, processed: int, run_logger: RunLogger) -> InvocationResult:
        release_lease(self.db, run_id, owner)
        run_logger.info("run.cancelled", items_processed=processed)
        return InvocationResult(
            True,
            f"Run cancelled after {processed} items in this invocation",
            processed=processed > 0,
            items_processed=processed,
        )

    def _finalize(self, run_id, owner: str, processed: int, run_logger: RunLogger) -> InvocationResult:
        run = finalize(self.db, run_id, run_logger=run_logger, now=self.now())
        if run.status not in RunStatus.TERMINAL:
            release_lease(self.db, run_id, owner)
            return InvocationResult(
                True,
                "Run still has unfinished items; not finalized",
                processed=processed > 0,
                items_processed=processed,
            )
        run_logger.info("invocation.completed", items_processed=processed, status=run.status)
        return InvocationResult(
            True,
            f"Run finished with status {run.status}",
            processed=processed > 0,
            items_processed=processed,
            finalized=True,
        )

    def _process(self, run: Run, item, index: int, config: RunConfig, pacing: PacingConfig,
                 processor: ItemProcessor, run_logger: RunLogger):
        adapter = get_adapter(run.job_kind)
        total = run.total_items
        self.ledger.set_current_item(
            run.run_id, item, index, f"Processing {adapter.entity_type} {index} of {total}"
        )
        run_logger.set_current_item(item.item_id, index)
        try:
            return processor.process(run, item, config, pacing)
        finally:
            run_logger.clear_current_item()

    def _submit_followup(self, run_id, reason: str, run_logger: RunLogger, delay_seconds: float = 0) -> bool:
        """Queue the next invocation. Failures are logged; stale recovery covers them."""
        try:
            job = self.queue.submit(run_id, reason=reason, delay_seconds=delay_seconds)
        except SQLAlchemyError as e:
            self.db.rollback()
            run_logger.error("continuation.submit_failed", error=e)
            logger.exception(f"Could not queue continuation for run {run_id}")
            return False
        run_logger.info("continuation.submitted", reason=reason, job_id=str(job.job_id))
        return True

    def _single_step(self, run: Run, owner: str, config: RunConfig, pacing: PacingConfig,
                     processor: ItemProcessor, run_logger: RunLogger) -> InvocationResult:
        run_id = run.run_id
        self._heartbeat(run_id, owner, run_logger)
        if self._is_cancelled(run_id):
            return self._stop_cancelled(run_id, owner, 0, run_logger)

        item = self.ledger.next_pending(run_id)
        if item is None:
            return self._finalize(run_id, owner, 0, run_logger)

        index = self.ledger.counts(run_id).finished + 1
        outcome = self._process(run, item, index, config, pacing, processor, run_logger)

        # Pacing applies to the follow-up's start time instead of sleeping here.
        delay_ms = pacing.delay_after_error_ms if isinstance(outcome, Failed) else pacing.delay_between_items_ms
        if isinstance(outcome, Skipped):
            delay_ms = 0
        release_lease(self.db, run_id, owner)
        self._submit_followup(run_id, "next_item", run_logger, delay_seconds=delay_ms / 1000)

        run_logger.info("invocation.completed", items_processed=1)
        return InvocationResult(True, "Processed 1 item; continuation queued", processed=True, items_processed=1)

    def _bounded_loop(self, run: Run, owner: str, config: RunConfig, pacing: PacingConfig,
                      processor: ItemProcessor, run_logger: RunLogger) -> InvocationResult:
        run_id = run.run_id
        started = self.clock()
        processed = 0
        delay_ms = 0

        while True:
            self._heartbeat(run_id, owner, run_logger)
            if self._is_cancelled(run_id):
                return self._stop_cancelled(run_id, owner, processed, run_logger)

            item = self.ledger.next_pending(run_id)
            if item is None:
                return self._finalize(run_id, owner, processed, run_logger)

            elapsed = self.clock() - started
            if elapsed > self.budget_seconds:
                run_logger.warning("invocation.timeout", elapsed_seconds=round(elapsed, 1), items_processed=processed)
                self.ledger.append_log(
                    run_id, f"Processing paused after {processed} items (time budget reached, continuing)"
                )
                release_lease(self.db, run_id, owner)
                self._submit_followup(run_id, "timeout", run_logger)
                return InvocationResult(
                    True,
                    f"Processed {processed} items; continuing in a new invocation",
                    processed=processed > 0,
                    items_processed=processed,
                    timed_out=True,
                )

            # Pacing delay only once another item is due; re-check state after it.
            if delay_ms:
                self.sleep(delay_ms / 1000)
                delay_ms = 0
                continue

            index = self.ledger.counts(run_id).finished + 1
            outcome = self._process(run, item, index, config, pacing, processor, run_logger)
            processed += 1

            if isinstance(outcome, Failed):
                delay_ms = pacing.delay_after_error_ms
            elif isinstance(outcome, Skipped):
                delay_ms = 0
            else:
                delay_ms = pacing.delay_between_items_ms

    def _fail_run(self, run_id, owner: str, error: Exception, run_logger: RunLogger) -> None:
        """Record a fatal invocation error on the Run."""
        self.db.rollback()
        message = str(error) or type(error).__name__
        run_logger.error("run.failed", error=error)
        logger.exception(f"Run {run_id} failed")

        now = self.now()
        run = self.db.get(Run, run_id, populate_existing=True)
        started = (run.started_at or run.created_at) if run else None
        self.db.execute(
            update(Run)
            .where(
                Run.run_id == run_id,
                Run.status.notin_(RunStatus.TERMINAL),
                (Run.lease_owner == owner) | Run.lease_owner.is_(None),
            )
            .values(
                status=RunStatus.FAILED,
                phase=RunPhase.FAILED,
                phase_detail=None,
                error_msg=message,
                completed_at=now,
                duration_ms=int((now - started).total_seconds() * 1000) if started else None,
                current_item_id=None,
                current_item_index=None,
                lease_owner=None,
                lease_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.ledger.append_log(run_id, f"FATAL ERROR: {message}")
