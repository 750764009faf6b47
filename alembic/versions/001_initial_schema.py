"""Initial run engine schema

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    if "runs" in inspector.get_table_names():
        return

    op.create_table(
        "projects",
        sa.Column("project_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )

    op.create_table(
        "documents",
        sa.Column("doc_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("project_id", UUID(as_uuid=True), sa.ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False),
        sa.Column("filename", sa.Text),
        sa.Column("file_type", sa.Text),
        sa.Column("raw_content", sa.Text, nullable=False, server_default=""),
        sa.Column("word_count", sa.Integer),
        sa.Column("analysis_status", sa.Text, nullable=False, server_default="PENDING"),
        sa.Column("last_analyzed_run_id", UUID(as_uuid=True)),
        sa.Column("last_analyzed_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_documents_project_id", "documents", ["project_id"])

    op.create_table(
        "cards",
        sa.Column("card_pk", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("project_id", UUID(as_uuid=True), sa.ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False),
        sa.Column("doc_id", UUID(as_uuid=True), sa.ForeignKey("documents.doc_id", ondelete="CASCADE"), nullable=False),
        sa.Column("run_id", UUID(as_uuid=True)),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("problem", sa.Text),
        sa.Column("target_users", sa.Text),
        sa.Column("desired_outcomes", sa.Text),
        sa.Column("priority", sa.Text),
        sa.Column("details", JSONB),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_cards_doc_id", "cards", ["doc_id"])

    op.create_table(
        "epics",
        sa.Column("epic_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("project_id", UUID(as_uuid=True), sa.ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False),
        sa.Column("code", sa.Text, nullable=False),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("theme", sa.Text),
        sa.Column("description", sa.Text),
        sa.Column("business_value", sa.Text),
        sa.Column("acceptance_criteria", JSONB),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_epics_project_id", "epics", ["project_id"])

    op.create_table(
        "stories",
        sa.Column("story_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("epic_id", UUID(as_uuid=True), sa.ForeignKey("epics.epic_id", ondelete="CASCADE"), nullable=False),
        sa.Column("run_id", UUID(as_uuid=True)),
        sa.Column("code", sa.Text, nullable=False),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("user_story", sa.Text),
        sa.Column("persona", sa.Text),
        sa.Column("acceptance_criteria", JSONB),
        sa.Column("technical_notes", sa.Text),
        sa.Column("priority", sa.Text),
        sa.Column("effort", sa.Text),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_stories_epic_id", "stories", ["epic_id"])

    op.create_table(
        "subtasks",
        sa.Column("subtask_pk", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("story_id", UUID(as_uuid=True), sa.ForeignKey("stories.story_id", ondelete="CASCADE"), nullable=False),
        sa.Column("run_id", UUID(as_uuid=True)),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("estimate", sa.Text),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_subtasks_story_id", "subtasks", ["story_id"])

    op.create_table(
        "runs",
        sa.Column("run_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("project_id", UUID(as_uuid=True), sa.ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False),
        sa.Column("job_kind", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("phase", sa.Text, nullable=False),
        sa.Column("phase_detail", sa.Text),
        sa.Column("total_items", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completed_items", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_items", sa.Integer, nullable=False, server_default="0"),
        sa.Column("skipped_items", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_artifacts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("current_item_id", UUID(as_uuid=True)),
        sa.Column("current_item_index", sa.Integer),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime),
        sa.Column("heartbeat_at", sa.DateTime),
        sa.Column("completed_at", sa.DateTime),
        sa.Column("duration_ms", sa.Integer),
        sa.Column("lease_owner", sa.Text),
        sa.Column("lease_expires_at", sa.DateTime),
        sa.Column("input_config", JSONB, nullable=False),
        sa.Column("output_data", JSONB),
        sa.Column("error_msg", sa.Text),
        sa.Column("logs", sa.Text, nullable=False, server_default=""),
        sa.Column("retry_of_run_id", UUID(as_uuid=True), sa.ForeignKey("runs.run_id", ondelete="SET NULL")),
    )
    op.create_index("idx_runs_status", "runs", ["status"])
    op.create_index("idx_runs_project_kind", "runs", ["project_id", "job_kind"])

    op.create_table(
        "run_items",
        sa.Column("item_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("run_id", UUID(as_uuid=True), sa.ForeignKey("runs.run_id", ondelete="CASCADE"), nullable=False),
        sa.Column("entity_type", sa.Text, nullable=False),
        sa.Column("entity_id", UUID(as_uuid=True), nullable=False),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("order_key", sa.Integer, nullable=False),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime),
        sa.Column("completed_at", sa.DateTime),
        sa.Column("duration_ms", sa.Integer),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_msg", sa.Text),
        sa.Column("skip_reason", sa.Text),
        sa.Column("artifacts_created", sa.Integer, nullable=False, server_default="0"),
        sa.Column("artifacts_replaced", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tokens_used", sa.Integer, nullable=False, server_default="0"),
    )
    op.create_index("idx_run_items_run_status", "run_items", ["run_id", "status"])
    op.create_index("idx_run_items_run_order", "run_items", ["run_id", "order_key"])

    op.create_table(
        "jobs",
        sa.Column("job_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("run_id", UUID(as_uuid=True), sa.ForeignKey("runs.run_id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("payload", JSONB),
        sa.Column("retries", sa.Integer, server_default="0"),
        sa.Column("last_error", sa.Text),
        sa.Column("available_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_jobs_status", "jobs", ["status"])
    op.create_index("idx_jobs_run_id", "jobs", ["run_id"])


def downgrade() -> None:
    op.drop_table("jobs")
    op.drop_table("run_items")
    op.drop_table("runs")
    op.drop_table("subtasks")
    op.drop_table("stories")
    op.drop_table("epics")
    op.drop_table("cards")
    op.drop_table("documents")
    op.drop_table("projects")
