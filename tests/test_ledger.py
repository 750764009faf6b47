"""Tests for the item ledger."""

import pytest

from app.models.run import JobKind, Run
from app.models.run_item import ItemStatus, RunItem
from app.services.errors import LeaseLostError
from app.services.ledger import ItemLedger
from app.services.outcomes import Completed, Failed


def test_next_pending_follows_order_key(test_db, make_epics, start):
    epics = make_epics(3)
    run = start(JobKind.GENERATE_STORIES)
    ledger = ItemLedger(test_db)

    seen = []
    while True:
        item = ledger.next_pending(run.run_id)
        if item is None:
            break
        seen.append(item.entity_id)
        ledger.mark_terminal(item, Completed(1))

    assert seen == [epic.epic_id for epic in epics]


def test_terminal_write_updates_run_counters(test_db, make_epics, start):
    make_epics(3)
    run = start(JobKind.GENERATE_STORIES)
    ledger = ItemLedger(test_db)

    ledger.mark_terminal(ledger.next_pending(run.run_id), Completed(5))
    ledger.mark_terminal(ledger.next_pending(run.run_id), Failed("boom"))

    run = test_db.get(Run, run.run_id, populate_existing=True)
    counts = ledger.counts(run.run_id)
    assert (run.completed_items, run.failed_items, run.skipped_items) == (1, 1, 0)
    assert run.total_artifacts == 5
    assert (counts.completed, counts.failed, counts.pending) == (1, 1, 1)
    assert counts.finished <= counts.total


def test_failed_outcome_increments_retry_count(test_db, make_epics, start):
    make_epics(1)
    run = start(JobKind.GENERATE_STORIES)
    ledger = ItemLedger(test_db)
    item = ledger.next_pending(run.run_id)

    ledger.mark_terminal(item, Failed("boom"))

    assert item.status == ItemStatus.FAILED
    assert item.retry_count == 1
    assert item.error_msg == "boom"


def test_terminal_write_without_lease_is_rolled_back(test_db, make_epics, start):
    make_epics(1)
    run = start(JobKind.GENERATE_STORIES)
    test_db.get(Run, run.run_id).lease_owner = "someone-else"
    test_db.commit()

    ledger = ItemLedger(test_db)
    item = ledger.next_pending(run.run_id)
    with pytest.raises(LeaseLostError):
        ledger.mark_terminal(item, Completed(2), owner="me")

    stored = test_db.get(RunItem, item.item_id, populate_existing=True)
    assert stored.status == ItemStatus.PENDING
    assert test_db.get(Run, run.run_id, populate_existing=True).completed_items == 0


def test_reset_working_keeps_retry_count(test_db, make_epics, start):
    make_epics(2)
    run = start(JobKind.GENERATE_STORIES)
    ledger = ItemLedger(test_db)
    item = ledger.next_pending(run.run_id)
    item.retry_count = 2
    ledger.mark_working(item, ItemStatus.GENERATING)

    assert ledger.counts(run.run_id).working == 1
    assert ledger.reset_working(run.run_id) == 1

    stored = test_db.get(RunItem, item.item_id, populate_existing=True)
    assert stored.status == ItemStatus.PENDING
    assert stored.retry_count == 2


def test_mark_working_rejects_terminal_status(test_db, make_epics, start):
    make_epics(1)
    run = start(JobKind.GENERATE_STORIES)
    ledger = ItemLedger(test_db)
    with pytest.raises(ValueError):
        ledger.mark_working(ledger.next_pending(run.run_id), ItemStatus.COMPLETED)


def test_append_log_accumulates_lines(test_db, make_epics, start):
    make_epics(1)
    run = start(JobKind.GENERATE_STORIES)
    ledger = ItemLedger(test_db)

    ledger.append_log(run.run_id, "first")
    ledger.append_log(run.run_id, "second")

    logs = test_db.get(Run, run.run_id, populate_existing=True).logs
    lines = logs.strip().splitlines()
    assert lines[0].endswith("Run created with 1 items")
    assert lines[-2].endswith("] first")
    assert lines[-1].endswith("] second")
    assert all(line.startswith("[") for line in lines)
