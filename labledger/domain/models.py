from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# JSONB on Postgres keeps audit diffs and snapshots queryable; plain JSON elsewhere.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ReportStatus(str, Enum):
    DRAFT = "DRAFT"
    FINAL = "FINAL"
    SUPERSEDED = "SUPERSEDED"


class AssignmentStatus(str, Enum):
    DRAFT = "DRAFT"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    REVIEWED = "REVIEWED"
    RELEASED = "RELEASED"


class SpecComparator(str, Enum):
    GTE = "GTE"
    LTE = "LTE"
    EQUALS = "EQUALS"
    RANGE = "RANGE"


SPEC_COMPARATOR_CHECK = "comparator IS NULL OR comparator IN ('GTE', 'LTE', 'EQUALS', 'RANGE')"


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Persist the role as a plain string; the permission matrix owns the vocabulary.
    role: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String, index=True)
    contact_name: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow
    )


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    job_number: Mapped[str] = mapped_column(String, unique=True)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("clients.id"), index=True)
    need_by_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    mcd_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String, default="DRAFT", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow
    )
    created_by_id: Mapped[str] = mapped_column(String)
    updated_by_id: Mapped[str] = mapped_column(String)

    client: Mapped[Client] = relationship()


class Sample(Base):
    __tablename__ = "samples"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    job_id: Mapped[str] = mapped_column(String, ForeignKey("jobs.id"), index=True)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("clients.id"), index=True)
    sample_code: Mapped[str] = mapped_column(String, unique=True)
    date_received: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    date_due: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    release_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rm_supplier: Mapped[str | None] = mapped_column(String, nullable=True)
    sample_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    uin_code: Mapped[str | None] = mapped_column(String, nullable=True)
    sample_batch: Mapped[str | None] = mapped_column(String, nullable=True)
    temperature_on_receipt_c: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    storage_conditions: Mapped[str | None] = mapped_column(String, nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    expired_raw_material: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    post_irradiated_raw_material: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    stability_study: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    urgent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    all_micro_tests_assigned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    all_chemistry_tests_assigned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    released: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    retest: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow
    )
    created_by_id: Mapped[str] = mapped_column(String)
    updated_by_id: Mapped[str] = mapped_column(String)

    job: Mapped[Job] = relationship()
    client: Mapped[Client] = relationship()
    tests: Mapped[list[TestAssignment]] = relationship(
        back_populates="sample", order_by="TestAssignment.created_at"
    )


class Section(Base):
    __tablename__ = "sections"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String, unique=True)


class Method(Base):
    __tablename__ = "methods"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    code: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[str] = mapped_column(String)
    unit: Mapped[str | None] = mapped_column(String, nullable=True)


class Specification(Base):
    __tablename__ = "specifications"
    __table_args__ = (CheckConstraint(SPEC_COMPARATOR_CHECK, name="ck_specifications_comparator"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    code: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[str] = mapped_column(String)
    target: Mapped[str | None] = mapped_column(String, nullable=True)
    min_value: Mapped[Decimal | None] = mapped_column(Numeric(14, 4), nullable=True)
    max_value: Mapped[Decimal | None] = mapped_column(Numeric(14, 4), nullable=True)
    unit: Mapped[str | None] = mapped_column(String, nullable=True)
    # Explicit comparator (GTE/LTE/EQUALS/RANGE); inferred from bounds when null.
    comparator: Mapped[str | None] = mapped_column(String, nullable=True)


class TestDefinition(Base):
    __test__ = False
    __tablename__ = "test_definitions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    section_id: Mapped[str] = mapped_column(String, ForeignKey("sections.id"))
    method_id: Mapped[str] = mapped_column(String, ForeignKey("methods.id"))
    specification_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("specifications.id"), nullable=True
    )
    default_due_days: Mapped[int | None] = mapped_column(Integer, nullable=True)


class TestPack(Base):
    __test__ = False
    __tablename__ = "test_packs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String, unique=True)

    items: Mapped[list[TestPackItem]] = relationship(order_by="TestPackItem.position")


class TestPackItem(Base):
    __test__ = False
    __tablename__ = "test_pack_items"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    test_pack_id: Mapped[str] = mapped_column(String, ForeignKey("test_packs.id"), index=True)
    test_definition_id: Mapped[str] = mapped_column(String, ForeignKey("test_definitions.id"))
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    test_definition: Mapped[TestDefinition] = relationship()


class TestAssignment(Base):
    __test__ = False
    __tablename__ = "test_assignments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    sample_id: Mapped[str] = mapped_column(String, ForeignKey("samples.id"), index=True)
    section_id: Mapped[str] = mapped_column(String, ForeignKey("sections.id"))
    method_id: Mapped[str] = mapped_column(String, ForeignKey("methods.id"))
    specification_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("specifications.id"), nullable=True
    )
    test_definition_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("test_definitions.id"), nullable=True
    )
    custom_test_name: Mapped[str | None] = mapped_column(String, nullable=True)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String, default=AssignmentStatus.DRAFT.value, nullable=False)
    test_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    result: Mapped[str | None] = mapped_column(String, nullable=True)
    result_unit: Mapped[str | None] = mapped_column(String, nullable=True)
    oos: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    invoice_note: Mapped[str | None] = mapped_column(String, nullable=True)
    precision: Mapped[str | None] = mapped_column(String, nullable=True)
    linearity: Mapped[str | None] = mapped_column(String, nullable=True)
    analyst_id: Mapped[str | None] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    checker_id: Mapped[str | None] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    chk_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow
    )
    created_by_id: Mapped[str] = mapped_column(String)
    updated_by_id: Mapped[str] = mapped_column(String)

    sample: Mapped[Sample] = relationship(back_populates="tests")
    section: Mapped[Section] = relationship()
    method: Mapped[Method] = relationship()
    specification: Mapped[Specification | None] = relationship()
    test_definition: Mapped[TestDefinition | None] = relationship()
    analyst: Mapped[User | None] = relationship(foreign_keys=[analyst_id])
    checker: Mapped[User | None] = relationship(foreign_keys=[checker_id])


class ReportVersion(Base):
    __tablename__ = "report_versions"
    __table_args__ = (
        # Losing concurrent exporters fail here and retry with a fresh version number.
        UniqueConstraint("sample_id", "version", name="uq_report_versions_sample_version"),
        # At most one current version per sample, enforced by the database.
        Index(
            "uq_report_versions_sample_final",
            "sample_id",
            unique=True,
            postgresql_where=text("status = 'FINAL'"),
            sqlite_where=text("status = 'FINAL'"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    sample_id: Mapped[str] = mapped_column(String, ForeignKey("samples.id"), index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String, default=ReportStatus.DRAFT.value, nullable=False)
    # Write-once: the exact data used to render, never recomputed.
    data_snapshot: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    # Write-once: markup rendered from data_snapshot at creation.
    rendered_snapshot: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Set once, never reassigned.
    document_key: Mapped[str | None] = mapped_column(String, nullable=True)
    reported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow
    )
    created_by_id: Mapped[str] = mapped_column(String)
    updated_by_id: Mapped[str] = mapped_column(String)
    reported_by_id: Mapped[str | None] = mapped_column(String, nullable=True)
    approved_by_id: Mapped[str | None] = mapped_column(String, nullable=True)


class AuditEntry(Base):
    __tablename__ = "audit_entries"
    __table_args__ = (
        Index("ix_audit_entries_subject", "subject_type", "subject_id"),
        Index("ix_audit_entries_at_id", "at", "id"),
    )

    # Monotonic numeric id gives a stable tie-break for entries sharing a timestamp.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    actor_email: Mapped[str] = mapped_column(String, nullable=False)
    ip: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    action: Mapped[str] = mapped_column(String, nullable=False)
    subject_type: Mapped[str] = mapped_column(String, nullable=False)
    subject_id: Mapped[str] = mapped_column(String, nullable=False)
    changes: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    transaction_tag: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
