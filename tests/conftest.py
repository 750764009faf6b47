"""Pytest configuration and fixtures."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("OPENROUTER_API_KEY", "")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.database import Base
from app.models.backlog import Epic, Project, Story
from app.models.document import Document
from app.models.job import Job
from app.schemas.run import RunConfig, RunCreate
from app.services import run_service
from app.services.engine import ContinuationEngine
from app.services.generator import GenerationResult, Generator


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Records requested delays and advances the clock instead of sleeping."""

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self.calls = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)


class FakeGenerator(Generator):
    """Returns ``count`` artifacts per call; fails for titles in ``fail_titles``."""

    def __init__(self, count: int = 3):
        self.count = count
        self.fail_titles = set()
        self.flaky_titles = set()  # fail once, then succeed
        self.on_call = None
        self.calls = []

    def generate(self, job_kind, payload, config):
        title = payload.get("title")
        self.calls.append(title)
        if self.on_call:
            self.on_call(len(self.calls))
        if title in self.fail_titles:
            return GenerationResult(success=False, error=f"generator rejected {title}")
        if title in self.flaky_titles:
            self.flaky_titles.discard(title)
            return GenerationResult(success=False, error="rate limited")
        return GenerationResult(
            success=True,
            data=[{"title": f"{title} #{i + 1}"} for i in range(self.count)],
            tokens_used=10,
        )


@pytest.fixture(scope="function")
def test_db():
    """Create a test database for each test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    yield db

    db.close()
    engine.dispose()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def sleeper(clock):
    return RecordingSleep(clock)


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def project(test_db):
    project = Project(name="Billing portal")
    test_db.add(project)
    test_db.commit()
    return project


@pytest.fixture
def make_epics(test_db, project):
    def _make(n: int):
        epics = [
            Epic(project_id=project.project_id, code=f"E{i + 1:02d}", title=f"Epic {i + 1}", priority=i)
            for i in range(n)
        ]
        test_db.add_all(epics)
        test_db.commit()
        return epics

    return _make


@pytest.fixture
def make_documents(test_db, project):
    def _make(n: int):
        docs = [
            Document(project_id=project.project_id, filename=f"doc-{i + 1}.md", raw_content=f"Requirements {i + 1}")
            for i in range(n)
        ]
        test_db.add_all(docs)
        test_db.commit()
        return docs

    return _make


@pytest.fixture
def add_stories(test_db):
    def _add(epic: Epic, n: int):
        stories = [
            Story(epic_id=epic.epic_id, code=f"{epic.code}-S{i + 1:02d}", title=f"Existing {i + 1}")
            for i in range(n)
        ]
        test_db.add_all(stories)
        test_db.commit()
        return stories

    return _add


@pytest.fixture
def start(test_db, project):
    """Start a run and clear its initial queue message."""

    def _start(job_kind: str, clear_queue: bool = True, **config):
        run = run_service.start_run(
            test_db,
            RunCreate(project_id=project.project_id, job_kind=job_kind, config=RunConfig(**config)),
        )
        if clear_queue:
            test_db.query(Job).update({"status": "done"})
            test_db.commit()
        return run

    return _start


@pytest.fixture
def make_engine(test_db, generator, clock, sleeper):
    def _make(budget_seconds: float = 1000):
        return ContinuationEngine(
            test_db,
            generator=generator,
            budget_seconds=budget_seconds,
            clock=clock,
            sleep=sleeper,
        )

    return _make
