"""versioned certificate of analysis reports

Revision ID: 0003_report_versions
Revises: 0002_audit_entries
Create Date: 2026-10-01 10:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from labledger.persistence.guards import POSTGRES_REPORT_WRITE_ONCE_SQL


revision = "0003_report_versions"
down_revision = "0002_audit_entries"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "report_versions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("sample_id", sa.String(), sa.ForeignKey("samples.id"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="DRAFT"),
        sa.Column("data_snapshot", postgresql.JSONB(), nullable=False),
        sa.Column("rendered_snapshot", sa.Text(), nullable=True),
        sa.Column("document_key", sa.String(), nullable=True),
        sa.Column("reported_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("created_by_id", sa.String(), nullable=False),
        sa.Column("updated_by_id", sa.String(), nullable=False),
        sa.Column("reported_by_id", sa.String(), nullable=True),
        sa.Column("approved_by_id", sa.String(), nullable=True),
        sa.UniqueConstraint("sample_id", "version", name="uq_report_versions_sample_version"),
    )
    op.create_index("ix_report_versions_sample_id", "report_versions", ["sample_id"])
    # Single current version per sample, enforced by the database.
    op.create_index(
        "uq_report_versions_sample_final",
        "report_versions",
        ["sample_id"],
        unique=True,
        postgresql_where=sa.text("status = 'FINAL'"),
    )

    for statement in POSTGRES_REPORT_WRITE_ONCE_SQL:
        op.execute(statement)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_report_versions_write_once ON report_versions")
    op.execute("DROP FUNCTION IF EXISTS enforce_report_version_write_once()")
    op.drop_index("uq_report_versions_sample_final", table_name="report_versions")
    op.drop_index("ix_report_versions_sample_id", table_name="report_versions")
    op.drop_table("report_versions")
