"""Entity adapters: how each job kind loads its entity and stores artifacts."""

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.database import utcnow
from app.models.backlog import Epic, Project, Story, Subtask
from app.models.document import Card, Document
from app.models.run import JobKind, Run


def _truncate(text: Optional[str], limit: int) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit]


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return "\n".join(str(v) for v in value)
    return str(value)


class EntityAdapter:
    """Base adapter; one subclass per job kind."""

    entity_type = ""
    artifact_label = "artifacts"

    def list_entities(self, db: Session, project_id, ids: Optional[List] = None) -> List[Any]:
        raise NotImplementedError

    def entity_id(self, entity) -> Any:
        raise NotImplementedError

    def load(self, db: Session, entity_id):
        raise NotImplementedError

    def describe(self, entity) -> str:
        raise NotImplementedError

    def existing_count(self, db: Session, entity) -> int:
        raise NotImplementedError

    def delete_existing(self, db: Session, entity) -> int:
        raise NotImplementedError

    def build_payload(self, db: Session, entity, max_chars: int) -> Dict[str, Any]:
        raise NotImplementedError

    def persist(self, db: Session, run: Run, entity, artifacts: List[Dict[str, Any]]) -> int:
        raise NotImplementedError

    def on_completed(self, db: Session, entity, run: Run) -> None:
        pass

    def on_failed(self, db: Session, entity_id, run: Run) -> None:
        pass


class DocumentAdapter(EntityAdapter):
    entity_type = "upload"
    artifact_label = "cards"

    def list_entities(self, db, project_id, ids=None):
        query = db.query(Document).filter(Document.project_id == project_id)
        if ids is not None:
            query = query.filter(Document.doc_id.in_(ids))
        return query.order_by(Document.created_at, Document.filename).all()

    def entity_id(self, entity):
        return entity.doc_id

    def load(self, db, entity_id):
        return db.get(Document, entity_id)

    def describe(self, entity):
        return entity.filename or str(entity.doc_id)

    def existing_count(self, db, entity):
        return db.query(Card).filter(Card.doc_id == entity.doc_id).count()

    def delete_existing(self, db, entity):
        return db.query(Card).filter(Card.doc_id == entity.doc_id).delete(synchronize_session=False)

    def build_payload(self, db, entity, max_chars):
        project = db.get(Project, entity.project_id)
        return {
            "title": entity.filename,
            "filename": entity.filename,
            "file_type": entity.file_type,
            "project": project.name if project else None,
            "content": _truncate(entity.raw_content, max_chars),
        }

    def persist(self, db, run, entity, artifacts):
        for data in artifacts:
            db.add(
                Card(
                    project_id=entity.project_id,
                    doc_id=entity.doc_id,
                    run_id=run.run_id,
                    title=str(data["title"]),
                    problem=_text(data.get("problem")),
                    target_users=_text(data.get("target_users")),
                    desired_outcomes=_text(data.get("desired_outcomes")),
                    priority=_text(data.get("priority")),
                    details=data,
                )
            )
        return len(artifacts)

    def on_completed(self, db, entity, run):
        entity.analysis_status = "COMPLETED"
        entity.last_analyzed_run_id = run.run_id
        entity.last_analyzed_at = utcnow()

    def on_failed(self, db, entity_id, run):
        document = db.get(Document, entity_id)
        if document is not None:
            document.analysis_status = "FAILED"
            document.last_analyzed_run_id = run.run_id


class EpicAdapter(EntityAdapter):
    entity_type = "epic"
    artifact_label = "stories"

    def list_entities(self, db, project_id, ids=None):
        query = db.query(Epic).filter(Epic.project_id == project_id)
        if ids is not None:
            query = query.filter(Epic.epic_id.in_(ids))
        return query.order_by(Epic.priority, Epic.code).all()

    def entity_id(self, entity):
        return entity.epic_id

    def load(self, db, entity_id):
        return db.get(Epic, entity_id)

    def describe(self, entity):
        return f"{entity.code} {entity.title}"

    def existing_count(self, db, entity):
        return db.query(Story).filter(Story.epic_id == entity.epic_id).count()

    def delete_existing(self, db, entity):
        return db.query(Story).filter(Story.epic_id == entity.epic_id).delete(synchronize_session=False)

    def build_payload(self, db, entity, max_chars):
        return {
            "code": entity.code,
            "title": entity.title,
            "theme": entity.theme,
            "description": _truncate(entity.description, max_chars),
            "business_value": entity.business_value,
            "acceptance_criteria": entity.acceptance_criteria or [],
        }

    def persist(self, db, run, entity, artifacts):
        for n, data in enumerate(artifacts, start=1):
            criteria = data.get("acceptance_criteria")
            db.add(
                Story(
                    epic_id=entity.epic_id,
                    run_id=run.run_id,
                    code=f"{entity.code}-S{n:02d}",
                    title=str(data["title"]),
                    user_story=_text(data.get("user_story")),
                    persona=_text(data.get("persona")),
                    acceptance_criteria=criteria if isinstance(criteria, list) else None,
                    technical_notes=_text(data.get("technical_notes")),
                    priority=_text(data.get("priority")),
                    effort=_text(data.get("effort")),
                )
            )
        return len(artifacts)


class StoryAdapter(EntityAdapter):
    entity_type = "story"
    artifact_label = "subtasks"

    def list_entities(self, db, project_id, ids=None):
        query = db.query(Story).join(Epic, Story.epic_id == Epic.epic_id).filter(Epic.project_id == project_id)
        if ids is not None:
            query = query.filter(Story.story_id.in_(ids))
        return query.order_by(Epic.priority, Epic.code, Story.code).all()

    def entity_id(self, entity):
        return entity.story_id

    def load(self, db, entity_id):
        return db.get(Story, entity_id)

    def describe(self, entity):
        return f"{entity.code} {entity.title}"

    def existing_count(self, db, entity):
        return db.query(Subtask).filter(Subtask.story_id == entity.story_id).count()

    def delete_existing(self, db, entity):
        return db.query(Subtask).filter(Subtask.story_id == entity.story_id).delete(synchronize_session=False)

    def build_payload(self, db, entity, max_chars):
        epic = db.get(Epic, entity.epic_id)
        return {
            "epic": {"code": epic.code, "title": epic.title} if epic else None,
            "code": entity.code,
            "title": entity.title,
            "user_story": _truncate(entity.user_story, max_chars),
            "persona": entity.persona,
            "acceptance_criteria": entity.acceptance_criteria or [],
            "technical_notes": entity.technical_notes,
        }

    def persist(self, db, run, entity, artifacts):
        for data in artifacts:
            db.add(
                Subtask(
                    story_id=entity.story_id,
                    run_id=run.run_id,
                    title=str(data["title"]),
                    description=_text(data.get("description")),
                    estimate=_text(data.get("estimate")),
                )
            )
        return len(artifacts)


ADAPTERS: Dict[str, EntityAdapter] = {
    JobKind.ANALYZE_DOCUMENTS: DocumentAdapter(),
    JobKind.GENERATE_STORIES: EpicAdapter(),
    JobKind.GENERATE_SUBTASKS: StoryAdapter(),
}


def get_adapter(job_kind: str) -> EntityAdapter:
    try:
        return ADAPTERS[job_kind]
    except KeyError:
        raise ValueError(f"Unknown job kind: {job_kind}") from None
