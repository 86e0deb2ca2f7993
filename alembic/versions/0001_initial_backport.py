"""initial backport schema

Revision ID: 0001_initial_backport
Revises:
Create Date: 2026-10-18

Job records with their append-only logs, plus the workflow run and step
checkpoint tables the engine replays from.
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial_backport"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # --- backport_jobs ---
    op.create_table(
        "backport_jobs",
        sa.Column("id", sa.String(64), primary_key=True, nullable=False),
        sa.Column("repository", sa.String, nullable=False, index=True),
        sa.Column("installation_id", sa.BigInteger, nullable=False),
        sa.Column("source_pr", sa.Integer, nullable=False),
        sa.Column("target_branch", sa.String, nullable=False),
        sa.Column("requested_by", sa.String, nullable=False),
        sa.Column("comment_id", sa.BigInteger, nullable=False),
        sa.Column(
            "status",
            sa.String,
            nullable=False,
            server_default="pending",
            index=True,
        ),
        sa.Column("result_pr", sa.Integer, nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'in_progress', 'completed', 'failed')",
            name="ck_backport_job_status",
        ),
        sa.CheckConstraint(
            "(status = 'completed' AND result_pr IS NOT NULL AND error IS NULL)"
            " OR (status = 'failed' AND error IS NOT NULL AND result_pr IS NULL)"
            " OR (status IN ('pending', 'in_progress'))",
            name="ck_backport_job_outcome",
        ),
    )

    # --- backport_job_logs ---
    op.create_table(
        "backport_job_logs",
        sa.Column("seq", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "job_id",
            sa.String(64),
            sa.ForeignKey("backport_jobs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("logged_at", sa.DateTime(timezone=True), nullable=False),
    )

    # --- workflow_runs ---
    op.create_table(
        "workflow_runs",
        sa.Column("run_id", sa.String(64), primary_key=True, nullable=False),
        sa.Column("workflow_name", sa.String, nullable=False),
        sa.Column(
            "status",
            sa.String,
            nullable=False,
            server_default="not_started",
            index=True,
        ),
        sa.Column("next_step_index", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("failed_step", sa.String, nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
    )

    # --- workflow_steps ---
    op.create_table(
        "workflow_steps",
        sa.Column("run_id", sa.String(64), primary_key=True, nullable=False),
        sa.Column("step_name", sa.String, primary_key=True, nullable=False),
        sa.Column("step_index", sa.Integer, nullable=True),
        sa.Column("status", sa.String, nullable=False, server_default="running"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("result", sa.JSON, nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("error_kind", sa.String, nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
    )


def downgrade() -> None:
    op.drop_table("workflow_steps")
    op.drop_table("workflow_runs")
    op.drop_table("backport_job_logs")
    op.drop_table("backport_jobs")
