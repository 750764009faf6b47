"""Document and Card models."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from app.database import Base, JSONType, utcnow


class Document(Base):
    """Uploaded document with its already-extracted text."""

    __tablename__ = "documents"

    doc_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False)
    filename = Column(Text)
    file_type = Column(Text)
    raw_content = Column(Text, nullable=False, default="")
    word_count = Column(Integer)
    analysis_status = Column(Text, nullable=False, default="PENDING")  # 'PENDING', 'COMPLETED', 'FAILED'
    last_analyzed_run_id = Column(Uuid)
    last_analyzed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    cards = relationship("Card", back_populates="document", cascade="all, delete-orphan")

    __table_args__ = (Index("idx_documents_project_id", "project_id"), {"schema": None})


class Card(Base):
    """Requirement card extracted from a document."""

    __tablename__ = "cards"

    card_pk = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Uuid, ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False)
    doc_id = Column(Uuid, ForeignKey("documents.doc_id", ondelete="CASCADE"), nullable=False)
    run_id = Column(Uuid)
    title = Column(Text, nullable=False)
    problem = Column(Text)
    target_users = Column(Text)
    desired_outcomes = Column(Text)
    priority = Column(Text)
    details = Column(JSONType)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    document = relationship("Document", back_populates="cards")

    __table_args__ = (Index("idx_cards_doc_id", "doc_id"), {"schema": None})
