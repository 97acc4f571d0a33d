"""Initial task, prompt version and worker heartbeat tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), primary_key=True),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("subtype", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("extracted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_category", sa.String(), nullable=True),
        sa.Column("depends_on_id", sa.String(), nullable=True),
        sa.Column("sequence_index", sa.Integer(), nullable=True),
        sa.Column("messages", sa.Text(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column(
            "cancel_requested",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("progress", sa.Text(), nullable=True),
        sa.Column("log_file", sa.String(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("tools_used", sa.Integer(), nullable=True),
        sa.Column("prompt_version_id", sa.String(), nullable=True),
        sa.Column("project_path", sa.String(), nullable=True),
        sa.Column("deploy_url", sa.String(), nullable=True),
        sa.Column("deploy_url_label", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_tasks_task_type", "tasks", ["task_type"])
    op.create_index("ix_tasks_status", "tasks", ["status"])
    op.create_index("ix_tasks_error_category", "tasks", ["error_category"])
    op.create_index("ix_tasks_depends_on_id", "tasks", ["depends_on_id"])
    op.create_index("ix_tasks_prompt_version_id", "tasks", ["prompt_version_id"])
    op.create_index("idx_tasks_status_extracted", "tasks", ["status", "extracted_at"])

    op.create_table(
        "prompt_versions",
        sa.Column("version", sa.String(), primary_key=True),
        sa.Column("content_hash", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("total_runs", sa.Integer(), nullable=True),
        sa.Column("avg_rating", sa.Float(), nullable=True),
        sa.Column("success_rate", sa.Float(), nullable=True),
    )
    op.create_index("ix_prompt_versions_content_hash", "prompt_versions", ["content_hash"])

    op.create_table(
        "worker_heartbeats",
        sa.Column("name", sa.String(), primary_key=True),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("worker_heartbeats")
    op.drop_index("ix_prompt_versions_content_hash", table_name="prompt_versions")
    op.drop_table("prompt_versions")
    op.drop_index("idx_tasks_status_extracted", table_name="tasks")
    op.drop_index("ix_tasks_prompt_version_id", table_name="tasks")
    op.drop_index("ix_tasks_depends_on_id", table_name="tasks")
    op.drop_index("ix_tasks_error_category", table_name="tasks")
    op.drop_index("ix_tasks_status", table_name="tasks")
    op.drop_index("ix_tasks_task_type", table_name="tasks")
    op.drop_table("tasks")
