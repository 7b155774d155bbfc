"""core laboratory domain

Revision ID: 0001_core_domain
Revises:
Create Date: 2026-10-01 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

from labledger.domain.models import SPEC_COMPARATOR_CHECK


# revision identifiers, used by Alembic.
revision = "0001_core_domain"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False, unique=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "clients",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("contact_name", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_clients_name", "clients", ["name"])

    op.create_table(
        "jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("job_number", sa.String(), nullable=False, unique=True),
        sa.Column("client_id", sa.String(), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("need_by_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("mcd_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="DRAFT"),
        *_timestamps(),
        sa.Column("created_by_id", sa.String(), nullable=False),
        sa.Column("updated_by_id", sa.String(), nullable=False),
    )
    op.create_index("ix_jobs_client_id", "jobs", ["client_id"])

    op.create_table(
        "samples",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("job_id", sa.String(), sa.ForeignKey("jobs.id"), nullable=False),
        sa.Column("client_id", sa.String(), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("sample_code", sa.String(), nullable=False, unique=True),
        sa.Column("date_received", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("date_due", sa.DateTime(timezone=True), nullable=True),
        sa.Column("release_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rm_supplier", sa.String(), nullable=True),
        sa.Column("sample_description", sa.Text(), nullable=True),
        sa.Column("uin_code", sa.String(), nullable=True),
        sa.Column("sample_batch", sa.String(), nullable=True),
        sa.Column("temperature_on_receipt_c", sa.Numeric(5, 2), nullable=True),
        sa.Column("storage_conditions", sa.String(), nullable=True),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("expired_raw_material", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("post_irradiated_raw_material", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("stability_study", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("urgent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("all_micro_tests_assigned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("all_chemistry_tests_assigned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("released", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("retest", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.Column("created_by_id", sa.String(), nullable=False),
        sa.Column("updated_by_id", sa.String(), nullable=False),
    )
    op.create_index("ix_samples_job_id", "samples", ["job_id"])
    op.create_index("ix_samples_client_id", "samples", ["client_id"])

    op.create_table(
        "sections",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
    )
    op.create_table(
        "methods",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("code", sa.String(), nullable=False, unique=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("unit", sa.String(), nullable=True),
    )
    op.create_table(
        "specifications",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("code", sa.String(), nullable=False, unique=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("target", sa.String(), nullable=True),
        sa.Column("min_value", sa.Numeric(14, 4), nullable=True),
        sa.Column("max_value", sa.Numeric(14, 4), nullable=True),
        sa.Column("unit", sa.String(), nullable=True),
        sa.Column("comparator", sa.String(), nullable=True),
        sa.CheckConstraint(SPEC_COMPARATOR_CHECK, name="ck_specifications_comparator"),
    )
    op.create_table(
        "test_definitions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("section_id", sa.String(), sa.ForeignKey("sections.id"), nullable=False),
        sa.Column("method_id", sa.String(), sa.ForeignKey("methods.id"), nullable=False),
        sa.Column("specification_id", sa.String(), sa.ForeignKey("specifications.id"), nullable=True),
        sa.Column("default_due_days", sa.Integer(), nullable=True),
    )
    op.create_table(
        "test_packs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
    )
    op.create_table(
        "test_pack_items",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("test_pack_id", sa.String(), sa.ForeignKey("test_packs.id"), nullable=False),
        sa.Column("test_definition_id", sa.String(), sa.ForeignKey("test_definitions.id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_test_pack_items_test_pack_id", "test_pack_items", ["test_pack_id"])

    op.create_table(
        "test_assignments",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("sample_id", sa.String(), sa.ForeignKey("samples.id"), nullable=False),
        sa.Column("section_id", sa.String(), sa.ForeignKey("sections.id"), nullable=False),
        sa.Column("method_id", sa.String(), sa.ForeignKey("methods.id"), nullable=False),
        sa.Column("specification_id", sa.String(), sa.ForeignKey("specifications.id"), nullable=True),
        sa.Column("test_definition_id", sa.String(), sa.ForeignKey("test_definitions.id"), nullable=True),
        sa.Column("custom_test_name", sa.String(), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="DRAFT"),
        sa.Column("test_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result", sa.String(), nullable=True),
        sa.Column("result_unit", sa.String(), nullable=True),
        sa.Column("oos", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("invoice_note", sa.String(), nullable=True),
        sa.Column("precision", sa.String(), nullable=True),
        sa.Column("linearity", sa.String(), nullable=True),
        sa.Column("analyst_id", sa.String(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("checker_id", sa.String(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("chk_date", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column("created_by_id", sa.String(), nullable=False),
        sa.Column("updated_by_id", sa.String(), nullable=False),
    )
    op.create_index("ix_test_assignments_sample_id", "test_assignments", ["sample_id"])


def downgrade() -> None:
    op.drop_index("ix_test_assignments_sample_id", table_name="test_assignments")
    op.drop_table("test_assignments")
    op.drop_index("ix_test_pack_items_test_pack_id", table_name="test_pack_items")
    op.drop_table("test_pack_items")
    op.drop_table("test_packs")
    op.drop_table("test_definitions")
    op.drop_table("specifications")
    op.drop_table("methods")
    op.drop_table("sections")
    op.drop_index("ix_samples_client_id", table_name="samples")
    op.drop_index("ix_samples_job_id", table_name="samples")
    op.drop_table("samples")
    op.drop_index("ix_jobs_client_id", table_name="jobs")
    op.drop_table("jobs")
    op.drop_index("ix_clients_name", table_name="clients")
    op.drop_table("clients")
    op.drop_table("users")
