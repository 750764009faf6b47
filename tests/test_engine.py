"""Tests for the continuation engine."""

from datetime import timedelta

from app.database import utcnow
from app.models.backlog import Story
from app.models.job import Job
from app.models.run import JobKind, Run, RunPhase, RunStatus
from app.models.run_item import ItemStatus, RunItem
from app.services import run_service
from app.services.errors import LedgerError
from app.services.ledger import ItemLedger


def _reload(db, run_id) -> Run:
    return db.get(Run, run_id, populate_existing=True)


def _queued(db, run_id) -> int:
    return db.query(Job).filter(Job.run_id == run_id, Job.status == "queued").count()


def _item_statuses(db, run_id):
    items = db.query(RunItem).filter(RunItem.run_id == run_id).order_by(RunItem.order_key).all()
    return [item.status for item in items]


def test_bounded_loop_processes_all_items_and_finalizes(test_db, make_epics, start, make_engine, generator):
    epics = make_epics(4)
    run = start(JobKind.GENERATE_STORIES)

    result = make_engine().advance(run.run_id)

    run = _reload(test_db, run.run_id)
    assert result.success and result.finalized
    assert result.items_processed == 4
    assert run.status == RunStatus.SUCCEEDED
    assert run.phase == RunPhase.COMPLETED
    assert run.started_at is not None
    assert run.completed_items == 4
    assert run.total_artifacts == 12
    assert generator.calls == [epic.title for epic in epics]
    assert test_db.query(Story).count() == 12


def test_timeout_hands_off_to_exactly_one_followup(test_db, make_epics, start, make_engine, sleeper):
    make_epics(10)
    run = start(JobKind.GENERATE_STORIES)
    engine = make_engine(budget_seconds=5)

    result = engine.advance(run.run_id)

    run = _reload(test_db, run.run_id)
    assert result.timed_out
    assert result.items_processed == 3
    assert sleeper.calls == [2.0, 2.0, 2.0]
    assert run.status == RunStatus.RUNNING
    assert run.lease_owner is None
    assert run.completed_items == 3
    assert _item_statuses(test_db, run.run_id).count(ItemStatus.PENDING) == 7
    assert _queued(test_db, run.run_id) == 1


def test_followups_complete_the_run(test_db, make_epics, start, make_engine):
    make_epics(7)
    run = start(JobKind.GENERATE_STORIES)

    results = []
    for _ in range(5):
        results.append(make_engine(budget_seconds=3).advance(run.run_id))
        stored = _reload(test_db, run.run_id)
        assert stored.completed_items + stored.failed_items + stored.skipped_items <= stored.total_items
        if results[-1].finalized:
            break

    assert [r.items_processed for r in results] == [2, 2, 2, 1]
    assert _reload(test_db, run.run_id).status == RunStatus.SUCCEEDED


def test_cancellation_leaves_remaining_items_pending(test_db, make_epics, start, make_engine, generator):
    make_epics(10)
    run = start(JobKind.GENERATE_STORIES)
    run_id = run.run_id

    def cancel_on_third(call_count):
        if call_count == 3:
            run_service.cancel_run(test_db, run_id)

    generator.on_call = cancel_on_third
    result = make_engine().advance(run_id)

    statuses = _item_statuses(test_db, run_id)
    stored = _reload(test_db, run_id)
    assert result.success
    assert result.items_processed == 3
    assert stored.status == RunStatus.CANCELLED
    assert statuses.count(ItemStatus.COMPLETED) == 3
    assert statuses.count(ItemStatus.PENDING) == 7
    assert ItemStatus.FAILED not in statuses
    assert stored.lease_owner is None


def test_cancelled_run_is_not_processed(test_db, make_epics, start, make_engine, generator):
    make_epics(2)
    run = start(JobKind.GENERATE_STORIES)
    run_service.cancel_run(test_db, run.run_id)

    result = make_engine().advance(run.run_id)

    assert result.success
    assert not result.processed
    assert generator.calls == []


def test_single_step_processes_one_document_per_invocation(test_db, make_documents, start, make_engine):
    make_documents(3)
    run = start(JobKind.ANALYZE_DOCUMENTS)

    result = make_engine().advance(run.run_id)

    stored = _reload(test_db, run.run_id)
    assert result.processed and result.items_processed == 1
    assert not result.finalized
    assert stored.status == RunStatus.RUNNING
    assert stored.completed_items == 1
    job = test_db.query(Job).filter(Job.run_id == run.run_id, Job.status == "queued").one()
    assert job.available_at > utcnow() + timedelta(seconds=1)

    for _ in range(3):
        result = make_engine().advance(run.run_id)

    assert result.finalized
    assert _reload(test_db, run.run_id).status == RunStatus.SUCCEEDED


def test_failed_item_does_not_stop_the_run(test_db, make_epics, start, make_engine, generator, sleeper):
    make_epics(3)
    generator.fail_titles = {"Epic 2"}
    run = start(JobKind.GENERATE_STORIES)

    make_engine().advance(run.run_id)

    stored = _reload(test_db, run.run_id)
    items = test_db.query(RunItem).filter(RunItem.run_id == run.run_id).order_by(RunItem.order_key).all()
    assert [i.status for i in items] == [ItemStatus.COMPLETED, ItemStatus.FAILED, ItemStatus.COMPLETED]
    assert items[1].retry_count == 1
    assert "generator rejected Epic 2" in items[1].error_msg
    assert stored.status == RunStatus.PARTIAL
    # safe pacing: 3 attempts for the failing item; no delay after the last item
    assert generator.calls.count("Epic 2") == 3
    assert sleeper.calls == [2.0, 5.0, 5.0, 5.0]


def test_terminal_run_is_left_alone(test_db, make_epics, start, make_engine, generator):
    make_epics(1)
    run = start(JobKind.GENERATE_STORIES)
    make_engine().advance(run.run_id)
    completed_at = _reload(test_db, run.run_id).completed_at

    result = make_engine().advance(run.run_id)

    assert result.success and not result.processed
    assert _reload(test_db, run.run_id).completed_at == completed_at
    assert len(generator.calls) == 1


def test_live_lease_blocks_second_invocation(test_db, make_epics, start, make_engine, generator):
    make_epics(2)
    run = start(JobKind.GENERATE_STORIES)
    stored = _reload(test_db, run.run_id)
    stored.lease_owner = "other-invocation"
    stored.lease_expires_at = utcnow() + timedelta(minutes=5)
    test_db.commit()

    result = make_engine().advance(run.run_id)

    assert result.success and not result.processed
    assert generator.calls == []
    assert _reload(test_db, run.run_id).lease_owner == "other-invocation"


def test_ledger_failure_fails_the_run(test_db, make_epics, start, make_engine, monkeypatch):
    make_epics(2)
    run = start(JobKind.GENERATE_STORIES)

    def broken(self, run_id):
        raise LedgerError("database unavailable")

    monkeypatch.setattr(ItemLedger, "next_pending", broken)
    result = make_engine().advance(run.run_id)

    stored = _reload(test_db, run.run_id)
    assert not result.success
    assert stored.status == RunStatus.FAILED
    assert stored.phase == RunPhase.FAILED
    assert stored.error_msg == "database unavailable"
    assert stored.lease_owner is None
    assert stored.current_item_id is None
    assert "FATAL ERROR: database unavailable" in stored.logs


def test_takeover_resets_orphaned_item_before_continuing(test_db, make_epics, start, make_engine, generator):
    epics = make_epics(3)
    run = start(JobKind.GENERATE_STORIES)
    stored = _reload(test_db, run.run_id)
    stored.status = RunStatus.RUNNING
    stored.started_at = stored.heartbeat_at = utcnow() - timedelta(minutes=5)
    stored.lease_owner = "dead-invocation"
    stored.lease_expires_at = utcnow() - timedelta(minutes=1)
    first = test_db.query(RunItem).filter(RunItem.run_id == run.run_id, RunItem.order_key == 0).one()
    first.status = ItemStatus.GENERATING
    test_db.commit()

    result = make_engine().advance(run.run_id)

    stored = _reload(test_db, run.run_id)
    assert result.finalized
    assert generator.calls == [epic.title for epic in epics]
    assert _item_statuses(test_db, run.run_id) == [ItemStatus.COMPLETED] * 3
    assert stored.status == RunStatus.SUCCEEDED
    assert stored.completed_items + stored.failed_items + stored.skipped_items == stored.total_items
    assert "Reset 1 interrupted item(s) to PENDING" in stored.logs


def test_no_pacing_delay_after_skipped_items(test_db, make_epics, add_stories, start, make_engine, generator, sleeper):
    epics = make_epics(3)
    add_stories(epics[0], 2)
    add_stories(epics[1], 2)
    run = start(JobKind.GENERATE_STORIES, existing_output="skip")

    make_engine().advance(run.run_id)

    assert generator.calls == ["Epic 3"]
    assert sleeper.calls == []
    assert _reload(test_db, run.run_id).status == RunStatus.PARTIAL


def test_budget_exceeded_during_delay_hands_off_without_processing(test_db, make_epics, start, make_engine, sleeper):
    make_epics(2)
    run = start(JobKind.GENERATE_STORIES)

    result = make_engine(budget_seconds=1).advance(run.run_id)

    assert result.timed_out
    assert result.items_processed == 1
    assert sleeper.calls == [2.0]
    assert _queued(test_db, run.run_id) == 1
