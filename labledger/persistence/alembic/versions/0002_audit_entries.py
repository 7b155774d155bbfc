"""append-only audit ledger

Revision ID: 0002_audit_entries
Revises: 0001_core_domain
Create Date: 2026-10-01 09:30:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from labledger.persistence.guards import POSTGRES_AUDIT_IMMUTABILITY_SQL


revision = "0002_audit_entries"
down_revision = "0001_core_domain"
branch_labels = None
depends_on = None


# Tables whose writes are captured by the database when no application context is set.
MONITORED_TABLES = {
    "jobs": "Job",
    "samples": "Sample",
    "test_assignments": "TestAssignment",
}

# Application transactions set app.actor_id and write their own entries; the trigger
# only records writes that bypass the service layer, attributed to the system actor.
_CAPTURE_FUNCTION_SQL = """
CREATE OR REPLACE FUNCTION capture_audit_entry()
RETURNS TRIGGER AS $$
DECLARE
  diff jsonb;
  op_name text;
  row_id text;
BEGIN
  IF coalesce(current_setting('app.actor_id', true), '') <> '' THEN
    RETURN COALESCE(NEW, OLD);
  END IF;

  IF TG_OP = 'INSERT' THEN
    op_name := 'CREATE';
    row_id := NEW.id;
    SELECT coalesce(jsonb_object_agg(n.key, jsonb_build_object('old', NULL, 'new', n.value)), '{}'::jsonb)
      INTO diff
      FROM jsonb_each(to_jsonb(NEW)) AS n
     WHERE n.key NOT IN ('id', 'created_at', 'updated_at');
  ELSIF TG_OP = 'UPDATE' THEN
    op_name := 'UPDATE';
    row_id := NEW.id;
    SELECT coalesce(jsonb_object_agg(n.key, jsonb_build_object('old', o.value, 'new', n.value)), '{}'::jsonb)
      INTO diff
      FROM jsonb_each(to_jsonb(NEW)) AS n
      JOIN jsonb_each(to_jsonb(OLD)) AS o USING (key)
     WHERE n.value IS DISTINCT FROM o.value
       AND n.key <> 'updated_at';
    IF diff = '{}'::jsonb THEN
      RETURN NEW;
    END IF;
  ELSE
    op_name := 'DELETE';
    row_id := OLD.id;
    SELECT coalesce(jsonb_object_agg(o.key, jsonb_build_object('old', o.value, 'new', NULL)), '{}'::jsonb)
      INTO diff
      FROM jsonb_each(to_jsonb(OLD)) AS o
     WHERE o.key NOT IN ('id', 'created_at', 'updated_at');
  END IF;

  INSERT INTO audit_entries (actor_id, actor_email, ip, user_agent, action, subject_type, subject_id, changes, at)
  VALUES (
    '00000000-0000-0000-0000-000000000000',
    'system@lims.local',
    '127.0.0.1',
    'database-trigger',
    op_name,
    TG_ARGV[0],
    row_id,
    diff,
    now()
  );
  RETURN COALESCE(NEW, OLD);
END;
$$ LANGUAGE plpgsql
"""


def upgrade() -> None:
    op.create_table(
        "audit_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("actor_email", sa.String(), nullable=False),
        sa.Column("ip", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("subject_type", sa.String(), nullable=False),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("changes", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("transaction_tag", sa.String(), nullable=True),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_entries_actor_id", "audit_entries", ["actor_id"])
    op.create_index("ix_audit_entries_transaction_tag", "audit_entries", ["transaction_tag"])
    op.create_index("ix_audit_entries_at", "audit_entries", ["at"])
    op.create_index("ix_audit_entries_subject", "audit_entries", ["subject_type", "subject_id"])
    op.create_index("ix_audit_entries_at_id", "audit_entries", ["at", "id"])

    for statement in POSTGRES_AUDIT_IMMUTABILITY_SQL:
        op.execute(statement)

    op.execute(_CAPTURE_FUNCTION_SQL)
    for table, subject_type in MONITORED_TABLES.items():
        op.execute(
            f"CREATE TRIGGER trg_{table}_audit_capture "
            f"AFTER INSERT OR UPDATE OR DELETE ON {table} "
            f"FOR EACH ROW EXECUTE FUNCTION capture_audit_entry('{subject_type}')"
        )


def downgrade() -> None:
    for table in MONITORED_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS trg_{table}_audit_capture ON {table}")
    op.execute("DROP FUNCTION IF EXISTS capture_audit_entry()")
    op.execute("DROP TRIGGER IF EXISTS trg_audit_entries_immutable ON audit_entries")
    op.execute("DROP FUNCTION IF EXISTS prevent_audit_entry_modification()")
    op.drop_index("ix_audit_entries_at_id", table_name="audit_entries")
    op.drop_index("ix_audit_entries_subject", table_name="audit_entries")
    op.drop_index("ix_audit_entries_at", table_name="audit_entries")
    op.drop_index("ix_audit_entries_transaction_tag", table_name="audit_entries")
    op.drop_index("ix_audit_entries_actor_id", table_name="audit_entries")
    op.drop_table("audit_entries")
