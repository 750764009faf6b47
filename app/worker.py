"""Background worker draining the continuation queue."""

import logging
import time
from typing import Optional

from sqlalchemy import inspect
from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal, engine
from app.logging_config import setup_logging
from app.models.job import ADVANCE_RUN, Job
from app.services.continuation import ContinuationQueue
from app.services.engine import ContinuationEngine
from app.services.errors import RunNotFoundError
from app.services.generator import Generator, get_generator
from app.services.heartbeat import recover_all_stale_runs

logger = logging.getLogger(__name__)


class Worker:
    """Polls for due continuation messages and advances their Runs."""

    def __init__(self, generator: Optional[Generator] = None):
        self.generator = generator or get_generator()
        self.poll_interval = settings.WORKER_POLL_INTERVAL
        self.max_retries = settings.MAX_JOB_RETRIES
        self.sweep_interval = settings.RECOVERY_SWEEP_INTERVAL_SECONDS
        self._last_sweep = 0.0

    def wait_for_database(self, max_wait: int = 60) -> bool:
        """Wait until migrations have created the jobs table."""
        waited = 0
        while waited < max_wait:
            try:
                if inspect(engine).has_table("jobs"):
                    logger.info("Database is ready, starting worker loop")
                    return True
                logger.info(f"Waiting for migrations to complete... ({waited}s)")
            except Exception as e:
                logger.error(f"Database error: {e}")
            time.sleep(2)
            waited += 2
        logger.error(f"Database not ready after {max_wait} seconds, starting anyway...")
        return False

    def run(self, stop_event=None):
        """Main worker loop.

        Args:
            stop_event: Optional threading.Event to signal worker to stop
        """
        logger.info("Worker started - waiting for database to be ready...")
        self.wait_for_database()

        while True:
            if stop_event and stop_event.is_set():
                logger.info("Worker stop signal received")
                break

            try:
                self.maybe_sweep()
                if not self.run_once():
                    time.sleep(self.poll_interval)
            except KeyboardInterrupt:
                logger.info("Worker shutting down")
                break
            except Exception as e:
                logger.error(f"Worker error: {e}", exc_info=True)
                time.sleep(self.poll_interval)

    def run_once(self) -> bool:
        """Process one due message. Returns False when the queue was empty."""
        db = SessionLocal()
        try:
            job = ContinuationQueue(db).dequeue()
            if job is None:
                return False
            self.process_job(job, db)
            return True
        finally:
            db.close()

    def maybe_sweep(self) -> None:
        """Run the stale-run sweep every RECOVERY_SWEEP_INTERVAL_SECONDS."""
        now = time.monotonic()
        if self._last_sweep and now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now

        db = SessionLocal()
        try:
            batch = recover_all_stale_runs(db)
            if batch.total_found:
                logger.info(f"Recovery sweep recovered {batch.recovered}/{batch.total_found} stale runs")
        except Exception:
            logger.exception("Recovery sweep failed")
        finally:
            db.close()

    def process_job(self, job: Job, db: Session):
        """Advance the Run named by one message."""
        logger.info(f"Processing job {job.job_id} ({job.kind}) for run {job.run_id}")

        job.status = "running"
        db.commit()

        try:
            if job.kind != ADVANCE_RUN:
                raise ValueError(f"Unknown job kind: {job.kind}")

            result = ContinuationEngine(db, generator=self.generator).advance(job.run_id)

            job.status = "done"
            db.commit()
            logger.info(f"Job {job.job_id} done: {result.message}")

        except RunNotFoundError as e:
            db.rollback()
            job.status = "failed"
            job.last_error = str(e)
            db.commit()
            logger.warning(f"Job {job.job_id} dropped: {e}")

        except Exception as e:
            db.rollback()
            logger.error(f"Job {job.job_id} failed: {e}", exc_info=True)

            job.retries += 1
            job.last_error = str(e)

            if job.retries >= self.max_retries:
                job.status = "failed"
                logger.error(f"Job {job.job_id} failed after {job.retries} retries")
            else:
                job.status = "queued"
                logger.warning(f"Job {job.job_id} retry {job.retries}/{self.max_retries}")

            db.commit()


def worker_loop(stop_event=None):
    """Run worker loop (for use as background thread)."""
    worker = Worker()
    worker.run(stop_event=stop_event)


def main():
    """Entry point for standalone worker."""
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    worker = Worker()
    worker.run()


if __name__ == "__main__":
    main()
