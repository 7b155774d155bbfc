from __future__ import annotations

from sqlalchemy import DDL, event, inspect

from labledger.core.errors import ImmutableRecordError
from labledger.domain.models import AuditEntry, ReportVersion


# Columns of a report version that may never change once the row exists.
WRITE_ONCE_COLUMNS = ("data_snapshot", "rendered_snapshot")


@event.listens_for(AuditEntry, "before_update")
def _reject_audit_update(mapper, connection, target: AuditEntry) -> None:
    raise ImmutableRecordError(
        "Audit entries are append-only", details={"audit_entry_id": target.id}
    )


@event.listens_for(AuditEntry, "before_delete")
def _reject_audit_delete(mapper, connection, target: AuditEntry) -> None:
    raise ImmutableRecordError(
        "Audit entries are append-only", details={"audit_entry_id": target.id}
    )


@event.listens_for(ReportVersion, "before_update")
def _enforce_write_once(mapper, connection, target: ReportVersion) -> None:
    state = inspect(target)
    for column in WRITE_ONCE_COLUMNS:
        if state.attrs[column].history.has_changes():
            raise ImmutableRecordError(
                f"{column} is write-once",
                details={"report_version_id": target.id, "column": column},
            )
    key_history = state.attrs.document_key.history
    if key_history.has_changes() and any(value is not None for value in key_history.deleted):
        raise ImmutableRecordError(
            "document_key is write-once",
            details={"report_version_id": target.id, "column": "document_key"},
        )


@event.listens_for(ReportVersion, "before_delete")
def _reject_report_delete(mapper, connection, target: ReportVersion) -> None:
    raise ImmutableRecordError(
        "Report versions are never deleted", details={"report_version_id": target.id}
    )


# Database-level backstop for writes that bypass the ORM unit of work (bulk or raw SQL).
_SQLITE_TRIGGERS = {
    AuditEntry.__table__: [
        "CREATE TRIGGER trg_audit_entries_no_update BEFORE UPDATE ON audit_entries "
        "BEGIN SELECT RAISE(ABORT, 'audit entries are immutable'); END",
        "CREATE TRIGGER trg_audit_entries_no_delete BEFORE DELETE ON audit_entries "
        "BEGIN SELECT RAISE(ABORT, 'audit entries are immutable'); END",
    ],
    ReportVersion.__table__: [
        "CREATE TRIGGER trg_report_versions_write_once BEFORE UPDATE ON report_versions "
        "WHEN NEW.data_snapshot IS NOT OLD.data_snapshot "
        "OR NEW.rendered_snapshot IS NOT OLD.rendered_snapshot "
        "OR (OLD.document_key IS NOT NULL AND NEW.document_key IS NOT OLD.document_key) "
        "BEGIN SELECT RAISE(ABORT, 'report version snapshots are write-once'); END",
        "CREATE TRIGGER trg_report_versions_no_delete BEFORE DELETE ON report_versions "
        "BEGIN SELECT RAISE(ABORT, 'report versions are never deleted'); END",
    ],
}

POSTGRES_AUDIT_IMMUTABILITY_SQL = [
    """
    CREATE OR REPLACE FUNCTION prevent_audit_entry_modification()
    RETURNS TRIGGER AS $$
    BEGIN
      RAISE EXCEPTION 'audit entries are immutable';
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS trg_audit_entries_immutable ON audit_entries",
    """
    CREATE TRIGGER trg_audit_entries_immutable
      BEFORE UPDATE OR DELETE ON audit_entries
      FOR EACH ROW EXECUTE FUNCTION prevent_audit_entry_modification()
    """,
]

POSTGRES_REPORT_WRITE_ONCE_SQL = [
    """
    CREATE OR REPLACE FUNCTION enforce_report_version_write_once()
    RETURNS TRIGGER AS $$
    BEGIN
      IF TG_OP = 'DELETE' THEN
        RAISE EXCEPTION 'report versions are never deleted';
      END IF;
      IF NEW.data_snapshot::text IS DISTINCT FROM OLD.data_snapshot::text
         OR NEW.rendered_snapshot IS DISTINCT FROM OLD.rendered_snapshot
         OR (OLD.document_key IS NOT NULL AND NEW.document_key IS DISTINCT FROM OLD.document_key) THEN
        RAISE EXCEPTION 'report version snapshots are write-once';
      END IF;
      RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS trg_report_versions_write_once ON report_versions",
    """
    CREATE TRIGGER trg_report_versions_write_once
      BEFORE UPDATE OR DELETE ON report_versions
      FOR EACH ROW EXECUTE FUNCTION enforce_report_version_write_once()
    """,
]


def _install_triggers() -> None:
    for table, statements in _SQLITE_TRIGGERS.items():
        for statement in statements:
            event.listen(table, "after_create", DDL(statement).execute_if(dialect="sqlite"))
    for table, statements in (
        (AuditEntry.__table__, POSTGRES_AUDIT_IMMUTABILITY_SQL),
        (ReportVersion.__table__, POSTGRES_REPORT_WRITE_ONCE_SQL),
    ):
        for statement in statements:
            event.listen(table, "after_create", DDL(statement).execute_if(dialect="postgresql"))


_install_triggers()
