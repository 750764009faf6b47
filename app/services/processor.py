"""Item processor: turns one PENDING item into exactly one terminal outcome."""

import logging
import time
from typing import Callable, Optional

from sqlalchemy.orm import Session
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from app.config import settings
from app.models.run import Run
from app.models.run_item import ItemStatus, RunItem
from app.schemas.run import RunConfig
from app.services.adapters import EntityAdapter, get_adapter
from app.services.errors import GenerationError, LeaseLostError, LedgerError
from app.services.generator import GenerationResult, Generator
from app.services.ledger import ItemLedger
from app.services.outcomes import Completed, Failed, Outcome, Skipped
from app.services.pacing import PacingConfig
from app.services.run_logger import RunLogger

logger = logging.getLogger(__name__)


class ItemProcessor:
    """Processes single items for one invocation.

    Generator and item-level errors become ``Failed`` outcomes. Ledger
    failures and lost leases propagate to the engine.
    """

    def __init__(
        self,
        db: Session,
        ledger: ItemLedger,
        generator: Generator,
        run_logger: RunLogger,
        heartbeat: Callable[[], None],
        owner: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.ledger = ledger
        self.generator = generator
        self.run_logger = run_logger
        self.heartbeat = heartbeat
        self.owner = owner
        self.sleep = sleep
        self.clock = clock

    def process(self, run: Run, item: RunItem, config: RunConfig, pacing: PacingConfig) -> Outcome:
        adapter = get_adapter(run.job_kind)
        run_id = run.run_id
        entity_id = item.entity_id
        label = str(entity_id)
        started = self.clock()

        self.run_logger.info("item.started", entity_type=item.entity_type, entity_id=str(entity_id))

        try:
            outcome, label = self._execute(run, item, adapter, config, pacing)
        except (LedgerError, LeaseLostError):
            raise
        except Exception as e:
            self.db.rollback()
            message = str(e) or type(e).__name__
            logger.error(f"Item {item.item_id} of run {run_id} failed: {message}", exc_info=True)
            adapter.on_failed(self.db, entity_id, run)
            outcome = Failed(message)

        duration_ms = int((self.clock() - started) * 1000)
        self.ledger.mark_terminal(item, outcome, owner=self.owner, duration_ms=duration_ms)
        self._record(run_id, adapter, label, outcome, duration_ms)
        return outcome

    def _execute(self, run: Run, item: RunItem, adapter: EntityAdapter, config: RunConfig, pacing: PacingConfig):
        self.ledger.mark_working(item, ItemStatus.LOADING)

        entity = adapter.load(self.db, item.entity_id)
        if entity is None:
            raise LookupError(f"{adapter.entity_type} {item.entity_id} not found")
        label = adapter.describe(entity)

        existing = adapter.existing_count(self.db, entity)
        if existing and config.existing_output == "skip":
            return Skipped(f"{existing} existing {adapter.artifact_label}"), label

        self.ledger.mark_working(item, ItemStatus.GENERATING)
        payload = adapter.build_payload(self.db, entity, settings.MAX_PAYLOAD_CHARS)

        result = self._generate(run.job_kind, payload, config, pacing)

        self.ledger.mark_working(item, ItemStatus.SAVING)
        replaced = 0
        if existing and config.existing_output == "replace":
            replaced = adapter.delete_existing(self.db, entity)

        artifacts = result.data[: config.max_artifacts_per_item]
        created = adapter.persist(self.db, run, entity, artifacts)
        adapter.on_completed(self.db, entity, run)
        self.db.flush()

        return Completed(created=created, replaced=replaced, tokens_used=result.tokens_used), label

    def _generate(self, job_kind: str, payload, config: RunConfig, pacing: PacingConfig) -> GenerationResult:
        """Call the generator, retrying failed attempts up to the pacing ceiling.

        The lease is renewed around every attempt.
        """
        retrying = Retrying(
            stop=stop_after_attempt(pacing.max_retries + 1),
            wait=wait_fixed(pacing.delay_after_error_ms / 1000),
            retry=retry_if_exception_type(GenerationError),
            sleep=self.sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                self.run_logger.info("generator.request", attempt=attempt.retry_state.attempt_number)
                self.heartbeat()
                try:
                    result = self.generator.generate(job_kind, payload, config)
                finally:
                    self.heartbeat()
                self.run_logger.info(
                    "generator.response",
                    success=result.success,
                    tokens_used=result.tokens_used,
                    count=len(result.data or []),
                )
                if not result.success or not result.data:
                    raise GenerationError(result.error or "Generator returned no data")
        return result

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self.run_logger.warning("generator.retry", attempt=retry_state.attempt_number, error=str(exc))

    def _record(self, run_id, adapter: EntityAdapter, label: str, outcome: Outcome, duration_ms: int) -> None:
        if isinstance(outcome, Completed):
            self.run_logger.info(
                "item.completed",
                artifacts_created=outcome.created,
                artifacts_replaced=outcome.replaced,
                tokens_used=outcome.tokens_used,
                duration_ms=duration_ms,
            )
            message = f"Completed {label}: {outcome.created} {adapter.artifact_label}"
            if outcome.replaced:
                message += f" (replaced {outcome.replaced})"
        elif isinstance(outcome, Skipped):
            self.run_logger.info("item.skipped", reason=outcome.reason)
            message = f"Skipped {label}: {outcome.reason}"
        else:
            self.run_logger.error("item.failed", error=outcome.message, duration_ms=duration_ms)
            message = f"Failed {label}: {outcome.message}"
        self.ledger.append_log(run_id, message)
