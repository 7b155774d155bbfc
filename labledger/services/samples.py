from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from labledger.core.errors import DomainValidationError, NotFoundError
from labledger.domain.models import AssignmentStatus, TestAssignment
from labledger.persistence.repos import samples as samples_repo
from labledger.services import audit as audit_service
from labledger.services.audit_context import AuditContext
from labledger.services.diff import diff_for_update, model_fields, serialize_value
from labledger.services.oos import evaluate_oos


logger = logging.getLogger(__name__)


# Fields callers may edit through update_sample; identity and audit columns are excluded.
UPDATABLE_SAMPLE_FIELDS = frozenset(
    {
        "date_due",
        "release_date",
        "rm_supplier",
        "sample_description",
        "uin_code",
        "sample_batch",
        "temperature_on_receipt_c",
        "storage_conditions",
        "comments",
        "expired_raw_material",
        "post_irradiated_raw_material",
        "stability_study",
        "urgent",
        "all_micro_tests_assigned",
        "all_chemistry_tests_assigned",
        "released",
        "retest",
    }
)

_OPEN_STATUSES = {AssignmentStatus.DRAFT.value, AssignmentStatus.IN_PROGRESS.value}


def _coerce_decimal(field: str, value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise DomainValidationError(f"{field} must be numeric", details={"field": field}) from exc


def _serialize_test(test: TestAssignment) -> dict[str, Any]:
    return {key: serialize_value(value) for key, value in model_fields(test).items()}


async def update_sample(
    session: AsyncSession,
    sample_id: str,
    changes: Mapping[str, Any],
    context: AuditContext,
    reason: str | None = None,
) -> dict[str, Any]:
    context.require()
    unknown = sorted(set(changes) - UPDATABLE_SAMPLE_FIELDS)
    if unknown:
        raise DomainValidationError("Fields cannot be updated", details={"fields": unknown})
    try:
        sample = await samples_repo.get_sample(session, sample_id)
        if sample is None:
            raise NotFoundError("Sample not found", details={"sample_id": sample_id})
        old_fields = model_fields(sample)
        for field, value in changes.items():
            if field == "temperature_on_receipt_c":
                value = _coerce_decimal(field, value)
            setattr(sample, field, value)
        new_fields = model_fields(sample)
        # No-op edits leave the row, its timestamps and the audit trail untouched.
        if not diff_for_update(old_fields, new_fields):
            await session.rollback()
            return {key: serialize_value(value) for key, value in old_fields.items()}
        sample.updated_by_id = context.actor_id
        await session.flush()
        new_fields = model_fields(sample)
        await audit_service.log_update(session, context, "Sample", sample.id, old_fields, new_fields, reason)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info("sample_updated sample_id=%s fields=%s", sample_id, ",".join(sorted(changes)))
    return {key: serialize_value(value) for key, value in new_fields.items()}


async def apply_test_pack(
    session: AsyncSession,
    sample_id: str,
    pack_id: str,
    context: AuditContext,
) -> dict[str, Any]:
    """Instantiate every test of a pack on a sample under one transaction tag."""
    context.require()
    tag = audit_service.generate_transaction_tag()
    tagged = context.with_transaction_tag(tag)
    try:
        sample = await samples_repo.get_sample(session, sample_id)
        if sample is None:
            raise NotFoundError("Sample not found", details={"sample_id": sample_id})
        pack = await samples_repo.get_test_pack(session, pack_id)
        if pack is None:
            raise NotFoundError("Test pack not found", details={"test_pack_id": pack_id})
        if not pack.items:
            raise DomainValidationError("Test pack has no tests", details={"test_pack_id": pack_id})

        now = datetime.now(timezone.utc)
        created: list[TestAssignment] = []
        for item in pack.items:
            definition = item.test_definition
            due_date = now + timedelta(days=definition.default_due_days) if definition.default_due_days else None
            test = TestAssignment(
                sample_id=sample.id,
                section_id=definition.section_id,
                method_id=definition.method_id,
                specification_id=definition.specification_id,
                test_definition_id=definition.id,
                due_date=due_date,
                status=AssignmentStatus.DRAFT.value,
                created_by_id=context.actor_id,
                updated_by_id=context.actor_id,
            )
            session.add(test)
            created.append(test)
        await session.flush()
        for test in created:
            await audit_service.log_create(session, tagged, "TestAssignment", test.id, model_fields(test))
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info("test_pack_applied sample_id=%s pack_id=%s tests=%s tag=%s", sample_id, pack_id, len(created), tag)
    return {
        "transaction_tag": tag,
        "tests": [_serialize_test(test) for test in created],
    }


async def enter_result(
    session: AsyncSession,
    test_id: str,
    context: AuditContext,
    *,
    result: str | None,
    result_unit: str | None = None,
    test_date: datetime | None = None,
    reason: str | None = None,
) -> dict[str, Any]:
    context.require()
    try:
        test = await samples_repo.get_test(session, test_id)
        if test is None:
            raise NotFoundError("Test not found", details={"test_id": test_id})
        old_fields = model_fields(test)
        test.result = result
        if result_unit is not None:
            test.result_unit = result_unit
        test.test_date = test_date or test.test_date or datetime.now(timezone.utc)
        test.oos = evaluate_oos(result, test.specification)
        if result is not None and test.status in _OPEN_STATUSES:
            test.status = AssignmentStatus.COMPLETED.value
        test.updated_by_id = context.actor_id
        await session.flush()
        await audit_service.log_update(
            session, context, "TestAssignment", test.id, old_fields, model_fields(test), reason
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info("test_result_entered test_id=%s oos=%s", test_id, test.oos)
    return _serialize_test(test)


async def remove_test(
    session: AsyncSession,
    test_id: str,
    context: AuditContext,
    reason: str | None = None,
) -> None:
    context.require()
    try:
        test = await samples_repo.get_test(session, test_id)
        if test is None:
            raise NotFoundError("Test not found", details={"test_id": test_id})
        old_fields = model_fields(test)
        await session.delete(test)
        await session.flush()
        await audit_service.log_delete(session, context, "TestAssignment", test_id, old_fields, reason)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info("test_removed test_id=%s", test_id)
