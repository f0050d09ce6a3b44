"""consulting_core_tables

Creates the engagement lifecycle tables:
  - clients             — organisations commissioning engagements
  - consulting_projects — one row per engagement
  - work_modules        — units of work, created atomically with their project
  - project_progress    — append-only progress ledger
  - project_reports     — versioned compiled reports

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via
db.create_all() in a development environment.

Revision ID: 7c1e4a9b2d30
Revises:
Create Date: 2026-10-19 09:12:44.318204
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '7c1e4a9b2d30'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Clients ───────────────────────────────────────────────────────────
    if "clients" not in existing:
        op.create_table(
            "clients",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("organization", sa.String(length=255), nullable=True),
            sa.Column("tier", sa.String(length=30), nullable=False, server_default="standard"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )

    # ── Projects ──────────────────────────────────────────────────────────
    if "consulting_projects" not in existing:
        op.create_table(
            "consulting_projects",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("client_id", sa.String(length=36), nullable=False),
            sa.Column("title", sa.String(length=500), nullable=False),
            sa.Column("query", sa.Text(), nullable=False),
            sa.Column("context", sa.Text(), nullable=True),
            sa.Column("timeframe", sa.String(length=100), nullable=True),
            sa.Column("budget", sa.String(length=100), nullable=True),
            sa.Column("urgency", sa.String(length=20), nullable=False, server_default="normal",
                      comment="low | normal | high | critical"),
            sa.Column("expected_deliverables", sa.JSON(), nullable=True),
            sa.Column("requirements", sa.JSON(), nullable=True),
            sa.Column("feasibility_analysis", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="initiated",
                      comment="initiated | in_progress | completed | cancelled"),
            sa.Column("quality_score", sa.Float(), nullable=True),
            sa.Column("estimated_completion", sa.DateTime(timezone=True), nullable=True),
            sa.Column("execution_start", sa.DateTime(timezone=True), nullable=True),
            sa.Column("actual_completion", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cancellation_reason", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint(
                "status IN ('initiated','in_progress','completed','cancelled')",
                name="ck_consulting_project_status",
            ),
            sa.CheckConstraint(
                "urgency IN ('low','normal','high','critical')",
                name="ck_consulting_project_urgency",
            ),
            sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_consulting_projects_client_id", "consulting_projects", ["client_id"])
        op.create_index("ix_consulting_projects_status", "consulting_projects", ["status"])
        op.create_index("ix_consulting_projects_created_at", "consulting_projects", ["created_at"])

    # ── Work modules ──────────────────────────────────────────────────────
    if "work_modules" not in existing:
        op.create_table(
            "work_modules",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("project_id", sa.String(length=36), nullable=False),
            sa.Column("module_key", sa.String(length=100), nullable=True),
            sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("module_type", sa.String(length=50), nullable=False, server_default="analysis"),
            sa.Column("title", sa.String(length=500), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("specialist_type", sa.String(length=100), nullable=False,
                      server_default="general"),
            sa.Column("estimated_hours", sa.Integer(), nullable=False, server_default="2"),
            sa.Column("actual_hours", sa.Float(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending",
                      comment="pending | in_progress | completed | failed | skipped"),
            sa.Column("quality_score", sa.Float(), nullable=True),
            sa.Column("deliverables", sa.JSON(), nullable=True),
            sa.Column("execution_plan", sa.JSON(), nullable=True),
            sa.Column("dependencies", sa.JSON(), nullable=True,
                      comment="Array of work_modules.id in the same project"),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("estimated_hours >= 1", name="ck_work_module_hours"),
            sa.ForeignKeyConstraint(["project_id"], ["consulting_projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_work_modules_project_id", "work_modules", ["project_id"])

    # ── Progress ledger ───────────────────────────────────────────────────
    if "project_progress" not in existing:
        op.create_table(
            "project_progress",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.String(length=36), nullable=False),
            sa.Column("phase", sa.String(length=100), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("progress_percentage", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("agent_name", sa.String(length=100), nullable=True),
            sa.Column("agent_role", sa.String(length=100), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint(
                "progress_percentage >= 0 AND progress_percentage <= 100",
                name="ck_project_progress_range",
            ),
            sa.ForeignKeyConstraint(["project_id"], ["consulting_projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_project_progress_project_id", "project_progress", ["project_id"])
        op.create_index("ix_project_progress_created_at", "project_progress", ["created_at"])

    # ── Reports ───────────────────────────────────────────────────────────
    if "project_reports" not in existing:
        op.create_table(
            "project_reports",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("project_id", sa.String(length=36), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("executive_summary", sa.Text(), nullable=True),
            sa.Column("key_findings", sa.JSON(), nullable=True),
            sa.Column("recommendations", sa.JSON(), nullable=True),
            sa.Column("implementation_roadmap", sa.JSON(), nullable=True),
            sa.Column("risk_mitigation", sa.JSON(), nullable=True),
            sa.Column("success_metrics", sa.JSON(), nullable=True),
            sa.Column("quality_score", sa.Float(), nullable=True),
            sa.Column("deliverables", sa.JSON(), nullable=True),
            sa.Column("approved", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("validation", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["project_id"], ["consulting_projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "version", name="uq_project_report_version"),
        )
        op.create_index("ix_project_reports_project_id", "project_reports", ["project_id"])


def downgrade():
    op.drop_table("project_reports")
    op.drop_table("project_progress")
    op.drop_table("work_modules")
    op.drop_table("consulting_projects")
    op.drop_table("clients")
