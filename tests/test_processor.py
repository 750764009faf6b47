"""Tests for per-item processing policies."""

from app.models.backlog import Story
from app.models.document import Card, Document
from app.models.job import Job
from app.models.run import JobKind, Run, RunStatus
from app.models.run_item import ItemStatus, RunItem
from app.services import engine as engine_module


def _items(db, run_id):
    return db.query(RunItem).filter(RunItem.run_id == run_id).order_by(RunItem.order_key).all()


def test_existing_output_is_skipped(test_db, make_epics, add_stories, start, make_engine, generator):
    epics = make_epics(2)
    add_stories(epics[0], 4)
    run = start(JobKind.GENERATE_STORIES, existing_output="skip")

    make_engine().advance(run.run_id)

    items = _items(test_db, run.run_id)
    stored = test_db.get(Run, run.run_id, populate_existing=True)
    assert items[0].status == ItemStatus.SKIPPED
    assert items[0].skip_reason == "4 existing stories"
    assert items[1].status == ItemStatus.COMPLETED
    assert generator.calls == ["Epic 2"]
    assert stored.status == RunStatus.PARTIAL
    assert test_db.query(Story).filter(Story.epic_id == epics[0].epic_id).count() == 4


def test_replace_swaps_output_without_duplication(test_db, make_epics, add_stories, start, make_engine, generator):
    epics = make_epics(1)
    add_stories(epics[0], 10)
    generator.count = 6
    run = start(JobKind.GENERATE_STORIES, existing_output="replace")

    make_engine().advance(run.run_id)

    item = _items(test_db, run.run_id)[0]
    stories = test_db.query(Story).filter(Story.epic_id == epics[0].epic_id).all()
    assert len(stories) == 6
    assert all(story.run_id == run.run_id for story in stories)
    assert (item.artifacts_created, item.artifacts_replaced) == (6, 10)


def test_artifacts_capped_per_item(test_db, make_epics, start, make_engine, generator):
    make_epics(1)
    generator.count = 9
    run = start(JobKind.GENERATE_STORIES, max_artifacts_per_item=5)

    make_engine().advance(run.run_id)

    assert test_db.query(Story).count() == 5


def test_generator_retry_recovers_item(test_db, make_epics, start, make_engine, generator, sleeper):
    make_epics(1)
    generator.flaky_titles = {"Epic 1"}
    run = start(JobKind.GENERATE_STORIES, pacing="fast")

    make_engine().advance(run.run_id)

    item = _items(test_db, run.run_id)[0]
    assert item.status == ItemStatus.COMPLETED
    assert item.retry_count == 0
    assert generator.calls == ["Epic 1", "Epic 1"]
    assert sleeper.calls == [2.0]


def test_missing_entity_fails_item(test_db, make_epics, start, make_engine):
    epics = make_epics(2)
    run = start(JobKind.GENERATE_STORIES)
    test_db.delete(epics[0])
    test_db.commit()

    make_engine().advance(run.run_id)

    items = _items(test_db, run.run_id)
    assert items[0].status == ItemStatus.FAILED
    assert "not found" in items[0].error_msg
    assert items[1].status == ItemStatus.COMPLETED


def test_document_analysis_marks_document(test_db, make_documents, start, make_engine):
    docs = make_documents(1)
    run = start(JobKind.ANALYZE_DOCUMENTS)

    make_engine().advance(run.run_id)

    doc = test_db.get(Document, docs[0].doc_id, populate_existing=True)
    assert doc.analysis_status == "COMPLETED"
    assert doc.last_analyzed_run_id == run.run_id
    assert test_db.query(Card).filter(Card.doc_id == doc.doc_id).count() == 3
    assert test_db.query(Job).filter(Job.run_id == run.run_id, Job.status == "queued").count() == 1


def test_lease_renewed_around_every_generator_attempt(test_db, make_epics, start, make_engine, generator, monkeypatch):
    make_epics(1)
    generator.fail_titles = {"Epic 1"}
    run = start(JobKind.GENERATE_STORIES, pacing="safe")

    renewals = []
    original = engine_module.renew_lease

    def recording_renew(db, run_id, owner, now=None):
        renewals.append(len(generator.calls))
        return original(db, run_id, owner, now)

    monkeypatch.setattr(engine_module, "renew_lease", recording_renew)
    make_engine().advance(run.run_id)

    assert len(generator.calls) == 3
    # loop heartbeat, then before/after each of the three attempts, then the next loop heartbeat
    assert renewals == [0, 0, 1, 1, 2, 2, 3, 3]
