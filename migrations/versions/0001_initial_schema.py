"""Initial schema: titles, chapters, subscriptions, jobs, pipeline_events

Revision ID: 0001
Revises: None
Create Date: 2026-10-01 00:00:00
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | None = None
depends_on: str | None = None


def _table_exists(name: str) -> bool:
    """Check whether a table already exists in the database."""
    conn = op.get_bind()
    result = conn.execute(
        sa.text("SELECT 1 FROM sqlite_master WHERE type='table' AND name=:n"),
        {"n": name},
    )
    return result.fetchone() is not None


def upgrade() -> None:
    # Guarded so the migration also applies to a DB created by init_db().

    if not _table_exists("titles"):
        op.create_table(
            "titles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("source", sa.String(), nullable=False),
            sa.Column("source_key", sa.String(), nullable=False),
            sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("enabled", sa.Boolean(), nullable=False, server_default="1"),
            sa.Column("last_checked_at", sa.DateTime(), nullable=True),
            sa.Column("watermark", sa.Float(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("source", "source_key", name="uq_titles_source_key"),
        )
        op.create_index("ix_titles_source", "titles", ["source"])

    if not _table_exists("chapters"):
        op.create_table(
            "chapters",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("title_id", sa.Integer(), sa.ForeignKey("titles.id"), nullable=False),
            sa.Column("number", sa.Float(), nullable=False),
            sa.Column("name", sa.String(), nullable=False, server_default=""),
            sa.Column("published_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("title_id", "number", name="uq_chapters_title_number"),
        )
        op.create_index("ix_chapters_title_id", "chapters", ["title_id"])

    if not _table_exists("subscriptions"):
        op.create_table(
            "subscriptions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.String(), nullable=False),
            sa.Column("title_id", sa.Integer(), sa.ForeignKey("titles.id"), nullable=False),
            sa.Column("notify_email", sa.Boolean(), nullable=False, server_default="0"),
            sa.Column("notify_push", sa.Boolean(), nullable=False, server_default="0"),
            sa.Column("notify_discord", sa.Boolean(), nullable=False, server_default="0"),
            sa.Column("email_address", sa.String(), nullable=True),
            sa.Column("push_token", sa.String(), nullable=True),
            sa.Column("discord_webhook_url", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("user_id", "title_id", name="uq_subscriptions_user_title"),
        )
        op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
        op.create_index("ix_subscriptions_title_id", "subscriptions", ["title_id"])

    if not _table_exists("jobs"):
        # job_type/status hold enum member names (CHECK, PENDING, ...).
        op.create_table(
            "jobs",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("job_type", sa.String(), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column("status", sa.String(), nullable=False),
            sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("next_eligible_at", sa.DateTime(), nullable=False),
            sa.Column("locked_by", sa.String(), nullable=True),
            sa.Column("locked_at", sa.DateTime(), nullable=True),
            sa.Column("last_error", sa.String(), nullable=True),
            sa.Column("dedupe_key", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.Column("finished_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_jobs_job_type", "jobs", ["job_type"])
        op.create_index("ix_jobs_status", "jobs", ["status"])
        op.create_index("ix_jobs_next_eligible_at", "jobs", ["next_eligible_at"])
        op.create_index("ix_jobs_dedupe_key", "jobs", ["dedupe_key"])

    if not _table_exists("pipeline_events"):
        op.create_table(
            "pipeline_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("kind", sa.String(), nullable=False),
            sa.Column("job_id", sa.String(), nullable=True),
            sa.Column("title_id", sa.Integer(), nullable=True),
            sa.Column("user_id", sa.String(), nullable=True),
            sa.Column("channel", sa.String(), nullable=True),
            sa.Column("detail", sa.String(), nullable=False, server_default=""),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_pipeline_events_kind", "pipeline_events", ["kind"])
        op.create_index("ix_pipeline_events_job_id", "pipeline_events", ["job_id"])


def downgrade() -> None:
    # Reverse FK order.
    op.drop_table("pipeline_events")
    op.drop_table("jobs")
    op.drop_table("subscriptions")
    op.drop_table("chapters")
    op.drop_table("titles")
