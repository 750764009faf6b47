"""Tests for run lifecycle operations."""

from datetime import timedelta

import pytest

from app.database import utcnow
from app.models.job import Job
from app.models.run import JobKind, Run, RunStatus
from app.models.run_item import ItemStatus, RunItem
from app.schemas.run import RunConfig, RunCreate
from app.services import run_service
from app.services.errors import InvalidRunStateError, NoWorkItemsError, RunConflictError


def test_start_run_materializes_ledger(test_db, make_epics, start):
    epics = make_epics(3)

    run = start(JobKind.GENERATE_STORIES, clear_queue=False, mode="compact")

    items = test_db.query(RunItem).filter(RunItem.run_id == run.run_id).order_by(RunItem.order_key).all()
    assert run.status == RunStatus.QUEUED
    assert run.total_items == 3
    assert [i.entity_id for i in items] == [e.epic_id for e in epics]
    assert all(i.status == ItemStatus.PENDING for i in items)
    assert run.input_config["mode"] == "compact"
    assert "Run created with 3 items" in run.logs
    assert test_db.query(Job).filter(Job.run_id == run.run_id, Job.status == "queued").count() == 1


def test_start_run_rejects_second_active_run(test_db, make_epics, start):
    make_epics(2)
    first = start(JobKind.GENERATE_STORIES)

    with pytest.raises(RunConflictError) as exc:
        start(JobKind.GENERATE_STORIES)

    assert exc.value.run_id == str(first.run_id)


def test_start_run_allows_other_kinds(test_db, make_epics, make_documents, start):
    make_epics(1)
    make_documents(1)
    start(JobKind.GENERATE_STORIES)

    run = start(JobKind.ANALYZE_DOCUMENTS)

    assert run.total_items == 1


def test_start_run_without_entities(test_db, project):
    with pytest.raises(NoWorkItemsError):
        run_service.start_run(
            test_db,
            RunCreate(project_id=project.project_id, job_kind=JobKind.GENERATE_SUBTASKS, config=RunConfig()),
        )


def test_retry_covers_exactly_failed_items(test_db, make_epics, start, make_engine, generator):
    epics = make_epics(10)
    failing = {epics[1].title, epics[4].title, epics[8].title}
    generator.fail_titles = failing
    run = start(JobKind.GENERATE_STORIES, pacing="fast")
    make_engine().advance(run.run_id)
    assert test_db.get(Run, run.run_id, populate_existing=True).status == RunStatus.PARTIAL

    retry = run_service.retry_failed_items(test_db, run.run_id)

    items = test_db.query(RunItem).filter(RunItem.run_id == retry.run_id).order_by(RunItem.order_key).all()
    assert retry.total_items == 3
    assert retry.retry_of_run_id == run.run_id
    assert [i.entity_id for i in items] == [epics[1].epic_id, epics[4].epic_id, epics[8].epic_id]
    assert all(i.retry_count == 1 for i in items)
    assert retry.input_config["pacing"] == "fast"


def test_retry_requires_failed_items(test_db, make_epics, start, make_engine):
    make_epics(2)
    run = start(JobKind.GENERATE_STORIES)
    make_engine().advance(run.run_id)

    with pytest.raises(NoWorkItemsError):
        run_service.retry_failed_items(test_db, run.run_id)


def test_retry_requires_finished_run(test_db, make_epics, start):
    make_epics(1)
    run = start(JobKind.GENERATE_STORIES)

    with pytest.raises(InvalidRunStateError):
        run_service.retry_failed_items(test_db, run.run_id)


def test_cancel_only_active_runs(test_db, make_epics, start):
    make_epics(1)
    run = start(JobKind.GENERATE_STORIES)

    cancelled = run_service.cancel_run(test_db, run.run_id)

    assert cancelled.status == RunStatus.CANCELLED
    assert cancelled.completed_at is not None
    assert "Run cancelled by user" in cancelled.logs
    with pytest.raises(InvalidRunStateError):
        run_service.cancel_run(test_db, run.run_id)


def test_progress_reports_items(test_db, make_epics, start, make_engine):
    make_epics(3)
    run = start(JobKind.GENERATE_STORIES)
    make_engine(budget_seconds=1).advance(run.run_id)

    progress = run_service.get_progress(test_db, run.run_id)

    assert progress.status == RunStatus.RUNNING
    assert progress.completed_items == 1
    assert [i.status for i in progress.items] == [ItemStatus.COMPLETED, ItemStatus.PENDING, ItemStatus.PENDING]
    assert progress.items[0].artifacts_created == 3


def test_active_run_lookup_recovers_stale_run(test_db, make_epics, start):
    make_epics(2)
    run = start(JobKind.GENERATE_STORIES)
    stored = test_db.get(Run, run.run_id)
    stored.status = RunStatus.RUNNING
    stored.started_at = stored.heartbeat_at = utcnow() - timedelta(minutes=10)
    test_db.commit()

    active = run_service.get_active_run(test_db, run.project_id, JobKind.GENERATE_STORIES)

    assert active.run_id == str(run.run_id)
    assert active.recovered_from_stale
    assert active.recovery_action == "continued"


def test_active_run_lookup_without_runs(test_db, project):
    active = run_service.get_active_run(test_db, project.project_id, JobKind.GENERATE_STORIES)
    assert active.run_id is None
    assert not active.recovered_from_stale


def test_cancel_does_not_overwrite_concurrent_terminal_status(test_db, make_epics, start, monkeypatch):
    make_epics(1)
    run = start(JobKind.GENERATE_STORIES)
    read_run = run_service.get_run

    def read_then_finish(db, run_id):
        loaded = read_run(db, run_id)
        # a finalizer writes a terminal status between the read and the cancel
        db.query(Run).filter(Run.run_id == run_id).update(
            {"status": RunStatus.SUCCEEDED}, synchronize_session=False
        )
        return loaded

    monkeypatch.setattr(run_service, "get_run", read_then_finish)
    with pytest.raises(InvalidRunStateError):
        run_service.cancel_run(test_db, run.run_id)

    stored = test_db.get(Run, run.run_id, populate_existing=True)
    assert stored.status == RunStatus.SUCCEEDED
    assert stored.completed_at is None
