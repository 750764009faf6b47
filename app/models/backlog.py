"""Project, Epic, Story and Subtask models."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, Uuid

from app.database import Base, JSONType, utcnow


class Project(Base):
    """Project owning documents, epics and runs."""

    __tablename__ = "projects"

    project_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    description = Column(Text)
    created_at = Column(DateTime, default=utcnow)


class Epic(Base):
    """Epic; stories are generated from it."""

    __tablename__ = "epics"

    epic_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False)
    code = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    theme = Column(Text)
    description = Column(Text)
    business_value = Column(Text)
    acceptance_criteria = Column(JSONType)
    priority = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_epics_project_id", "project_id"), {"schema": None})


class Story(Base):
    """User story generated for an epic; subtasks are generated from it."""

    __tablename__ = "stories"

    story_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    epic_id = Column(Uuid, ForeignKey("epics.epic_id", ondelete="CASCADE"), nullable=False)
    run_id = Column(Uuid)
    code = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    user_story = Column(Text)
    persona = Column(Text)
    acceptance_criteria = Column(JSONType)
    technical_notes = Column(Text)
    priority = Column(Text)
    effort = Column(Text)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_stories_epic_id", "epic_id"), {"schema": None})


class Subtask(Base):
    """Implementation subtask generated for a story."""

    __tablename__ = "subtasks"

    subtask_pk = Column(Integer, primary_key=True, autoincrement=True)
    story_id = Column(Uuid, ForeignKey("stories.story_id", ondelete="CASCADE"), nullable=False)
    run_id = Column(Uuid)
    title = Column(Text, nullable=False)
    description = Column(Text)
    estimate = Column(Text)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_subtasks_story_id", "story_id"), {"schema": None})
