"""Versioned certificate (COA) manager.

Each export freezes the sample into a snapshot, renders and converts it,
stores the document under a fresh key, then demotes the previous FINAL and
inserts the new FINAL row in one transaction. The unique (sample, version)
constraint and the partial unique index on FINAL make a losing concurrent
exporter fail with IntegrityError; it retries with a recomputed version.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from labledger.core.config import Settings, get_settings
from labledger.core.errors import ConflictError, DomainValidationError, NotFoundError
from labledger.domain.models import ReportStatus, ReportVersion, Sample, TestAssignment
from labledger.domain.snapshots import (
    ClientSnapshot,
    MethodSnapshot,
    PersonSnapshot,
    ReportMetadata,
    ReportSnapshot,
    SampleSnapshot,
    SpecificationSnapshot,
    StatusFlags,
    TemplateSettings,
    TestLineSnapshot,
)
from labledger.persistence.repos import reports as reports_repo
from labledger.persistence.repos import samples as samples_repo
from labledger.providers.convert.base import DocumentConverter
from labledger.providers.convert.factory import get_document_converter
from labledger.providers.render.base import ReportRenderer
from labledger.providers.render.html import CoaHtmlRenderer
from labledger.providers.storage.base import ObjectStore
from labledger.providers.storage.factory import get_object_store
from labledger.services import audit as audit_service
from labledger.services.audit_context import AuditContext
from labledger.services.diff import model_fields
from labledger.services.resilience import (
    convert_policy,
    render_policy,
    store_policy,
    upstream_call,
)


logger = logging.getLogger(__name__)


SUBJECT_TYPE = "ReportVersion"
# Markup is derivable from the snapshot; keep it out of audit diffs.
_AUDIT_EXCLUDED = frozenset({"rendered_snapshot"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _decimal_to_float(value) -> float | None:
    return float(value) if value is not None else None


def _audit_fields(version: ReportVersion) -> dict[str, Any]:
    return {key: value for key, value in model_fields(version).items() if key not in _AUDIT_EXCLUDED}


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _test_line(test: TestAssignment) -> TestLineSnapshot:
    spec = test.specification
    return TestLineSnapshot(
        test_id=test.id,
        test_name=test.custom_test_name
        or (test.test_definition.name if test.test_definition else None)
        or "Unnamed Test",
        section=test.section.name,
        method=MethodSnapshot(code=test.method.code, name=test.method.name, unit=test.method.unit),
        specification=(
            SpecificationSnapshot(
                code=spec.code,
                name=spec.name,
                comparator=spec.comparator,
                target=spec.target,
                min_value=_decimal_to_float(spec.min_value),
                max_value=_decimal_to_float(spec.max_value),
                unit=spec.unit,
            )
            if spec is not None
            else None
        ),
        status=test.status,
        due_date=test.due_date,
        test_date=test.test_date,
        result=test.result,
        result_unit=test.result_unit,
        analyst=PersonSnapshot(name=test.analyst.name, email=test.analyst.email) if test.analyst else None,
        checker=PersonSnapshot(name=test.checker.name, email=test.checker.email) if test.checker else None,
        chk_date=test.chk_date,
        oos=test.oos,
        comments=test.comments,
        invoice_note=test.invoice_note,
        precision=test.precision,
        linearity=test.linearity,
    )


def build_snapshot(
    sample: Sample,
    *,
    version: int,
    generated_by: str,
    settings: Settings,
    generated_at: datetime | None = None,
) -> ReportSnapshot:
    # Copy values, never references: later edits to the sample must not leak in.
    client = sample.client
    job = sample.job
    return ReportSnapshot(
        sample=SampleSnapshot(
            sample_id=sample.id,
            job_number=job.job_number,
            sample_code=sample.sample_code,
            client=ClientSnapshot(
                name=client.name,
                contact_name=client.contact_name,
                email=client.email,
                phone=client.phone,
                address=client.address,
            ),
            date_received=sample.date_received,
            date_due=sample.date_due,
            release_date=sample.release_date,
            need_by_date=job.need_by_date,
            mcd_date=job.mcd_date,
            rm_supplier=sample.rm_supplier,
            sample_description=sample.sample_description,
            uin_code=sample.uin_code,
            sample_batch=sample.sample_batch,
            temperature_on_receipt_c=_decimal_to_float(sample.temperature_on_receipt_c),
            storage_conditions=sample.storage_conditions,
            comments=sample.comments,
            status_flags=StatusFlags(
                expired_raw_material=sample.expired_raw_material,
                post_irradiated_raw_material=sample.post_irradiated_raw_material,
                stability_study=sample.stability_study,
                urgent=sample.urgent,
                all_micro_tests_assigned=sample.all_micro_tests_assigned,
                all_chemistry_tests_assigned=sample.all_chemistry_tests_assigned,
                released=sample.released,
                retest=sample.retest,
            ),
        ),
        tests=[_test_line(test) for test in sample.tests],
        metadata=ReportMetadata(
            version=version,
            generated_at=generated_at or _utcnow(),
            generated_by=generated_by,
            lab_name=settings.lab_name,
            lab_logo_url=settings.lab_logo_url,
            disclaimer_text=settings.lab_disclaimer_text,
            template_settings=TemplateSettings.model_validate(settings.coa_template_settings()),
        ),
    )


class ReportVersionManager:
    def __init__(
        self,
        *,
        renderer: ReportRenderer | None = None,
        converter: DocumentConverter | None = None,
        store: ObjectStore | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._renderer = renderer or CoaHtmlRenderer()
        self._converter = converter or get_document_converter()
        self._store = store or get_object_store()

    def download_url(self, version_id: str) -> str:
        return f"{self._settings.report_download_base_path}/{version_id}/download"

    def serialize(self, version: ReportVersion, *, include_snapshot: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": version.id,
            "sample_id": version.sample_id,
            "version": version.version,
            "status": version.status,
            "document_key": version.document_key,
            "download_url": self.download_url(version.id) if version.document_key else None,
            "reported_at": _iso(version.reported_at),
            "notes": version.notes,
            "created_at": _iso(version.created_at),
            "updated_at": _iso(version.updated_at),
            "created_by_id": version.created_by_id,
            "updated_by_id": version.updated_by_id,
            "reported_by_id": version.reported_by_id,
            "approved_by_id": version.approved_by_id,
        }
        if include_snapshot:
            payload["data_snapshot"] = version.data_snapshot
            payload["rendered_snapshot"] = version.rendered_snapshot
        return payload

    def _document_key(self, sample_code: str, version: int) -> str:
        # Random suffix keeps keys unique even when an attempt is retried.
        prefix = self._settings.report_storage_prefix.strip("/")
        return f"{prefix}/{sample_code}-v{version}-{uuid4().hex[:12]}.{self._converter.extension}"

    async def _load_sample(self, session: AsyncSession, sample_id: str, *, for_update: bool) -> Sample:
        sample = await samples_repo.get_sample_for_report(session, sample_id, for_update=for_update)
        if sample is None:
            raise NotFoundError("Sample not found", details={"sample_id": sample_id})
        return sample

    async def _render(self, snapshot: ReportSnapshot) -> str:
        async def _call() -> str:
            return await asyncio.to_thread(self._renderer.render, snapshot.to_document())

        return await upstream_call("render", _call, policy=render_policy())

    async def _convert_and_store(self, markup: str, *, sample_code: str, version: int) -> str:
        # Exactly one conversion per attempt; only the store call retries.
        async def _convert() -> bytes:
            return await self._converter.convert(markup, page_format=self._settings.report_page_format)

        document = await upstream_call("convert", _convert, policy=convert_policy())
        key = self._document_key(sample_code, version)

        attempts = 0

        async def _put() -> str:
            nonlocal attempts
            attempts += 1
            # A failed attempt may still have written the object before losing its ack.
            if attempts > 1 and await self._store.exists(key):
                if await self._store.get(key) == document:
                    return key
            return await self._store.put(key, document, self._converter.content_type)

        await upstream_call("store", _put, policy=store_policy())
        logger.info("report_document_stored key=%s bytes=%s", key, len(document))
        return key

    async def _with_version_retry(self, session: AsyncSession, sample_id: str, attempt_fn) -> Any:
        max_attempts = max(int(self._settings.report_export_max_attempts), 1)
        for attempt in range(1, max_attempts + 1):
            try:
                return await attempt_fn()
            except IntegrityError as exc:
                await session.rollback()
                logger.warning(
                    "report_version_conflict sample_id=%s attempt=%s", sample_id, attempt, exc_info=exc
                )
            except Exception:
                # Nothing from a failed attempt may remain visible.
                await session.rollback()
                raise
        raise ConflictError(
            "Lost the race for the next report version",
            details={"sample_id": sample_id, "attempts": max_attempts},
        )

    async def export_version(
        self,
        session: AsyncSession,
        sample_id: str,
        context: AuditContext,
    ) -> dict[str, Any]:
        context.require()

        async def _attempt() -> dict[str, Any]:
            sample = await self._load_sample(session, sample_id, for_update=True)
            next_version = await reports_repo.max_version(session, sample_id) + 1
            snapshot = build_snapshot(
                sample,
                version=next_version,
                generated_by=context.actor_email or "",
                settings=self._settings,
            )
            markup = await self._render(snapshot)
            key = await self._convert_and_store(markup, sample_code=sample.sample_code, version=next_version)

            now = _utcnow()
            await reports_repo.supersede_finals(session, sample_id=sample_id, actor_id=context.actor_id)
            version = ReportVersion(
                sample_id=sample_id,
                version=next_version,
                status=ReportStatus.FINAL.value,
                data_snapshot=snapshot.to_document(),
                rendered_snapshot=markup,
                document_key=key,
                reported_at=now,
                created_by_id=context.actor_id,
                updated_by_id=context.actor_id,
                reported_by_id=context.actor_id,
            )
            await reports_repo.add_version(session, version)
            await audit_service.log_create(session, context, SUBJECT_TYPE, version.id, _audit_fields(version))
            await session.commit()
            logger.info(
                "report_exported sample_id=%s version=%s report_id=%s", sample_id, next_version, version.id
            )
            return {
                "id": version.id,
                "version": version.version,
                "status": version.status,
                "document_key": version.document_key,
                "download_url": self.download_url(version.id),
            }

        return await self._with_version_retry(session, sample_id, _attempt)

    async def build_draft(
        self,
        session: AsyncSession,
        sample_id: str,
        context: AuditContext,
        notes: str | None = None,
    ) -> dict[str, Any]:
        context.require()

        async def _attempt() -> dict[str, Any]:
            sample = await self._load_sample(session, sample_id, for_update=True)
            next_version = await reports_repo.max_version(session, sample_id) + 1
            snapshot = build_snapshot(
                sample,
                version=next_version,
                generated_by=context.actor_email or "",
                settings=self._settings,
            )
            markup = await self._render(snapshot)
            version = ReportVersion(
                sample_id=sample_id,
                version=next_version,
                status=ReportStatus.DRAFT.value,
                data_snapshot=snapshot.to_document(),
                rendered_snapshot=markup,
                notes=notes,
                created_by_id=context.actor_id,
                updated_by_id=context.actor_id,
            )
            await reports_repo.add_version(session, version)
            await audit_service.log_create(session, context, SUBJECT_TYPE, version.id, _audit_fields(version))
            await session.commit()
            logger.info("report_draft_built sample_id=%s version=%s", sample_id, next_version)
            return self.serialize(version)

        return await self._with_version_retry(session, sample_id, _attempt)

    async def finalize_draft(
        self,
        session: AsyncSession,
        version_id: str,
        context: AuditContext,
    ) -> dict[str, Any]:
        context.require()
        try:
            version = await reports_repo.get_version(session, version_id, for_update=True)
            if version is None:
                raise NotFoundError("Report version not found", details={"report_id": version_id})
            if version.status != ReportStatus.DRAFT.value:
                raise DomainValidationError(
                    "Only DRAFT report versions can be finalized",
                    details={"report_id": version_id, "status": version.status},
                )
            if await reports_repo.has_final_above(session, sample_id=version.sample_id, version=version.version):
                raise DomainValidationError(
                    "A newer version is already final; build a new draft instead",
                    details={"report_id": version_id, "version": version.version},
                )
            old_fields = _audit_fields(version)

            if version.document_key is None:
                markup = version.rendered_snapshot or await self._render(
                    ReportSnapshot.from_document(version.data_snapshot)
                )
                sample_code = version.data_snapshot["sample"]["sample_code"]
                version.document_key = await self._convert_and_store(
                    markup, sample_code=sample_code, version=version.version
                )

            await reports_repo.supersede_finals(
                session,
                sample_id=version.sample_id,
                actor_id=context.actor_id,
                below_version=version.version,
            )
            version.status = ReportStatus.FINAL.value
            version.reported_at = _utcnow()
            version.reported_by_id = context.actor_id
            version.updated_by_id = context.actor_id
            await session.flush()
            await audit_service.log_update(
                session, context, SUBJECT_TYPE, version.id, old_fields, _audit_fields(version)
            )
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            raise ConflictError(
                "Report version changed concurrently", details={"report_id": version_id}
            ) from exc
        except Exception:
            await session.rollback()
            raise
        logger.info("report_finalized report_id=%s version=%s", version.id, version.version)
        return self.serialize(version)

    async def approve_version(
        self,
        session: AsyncSession,
        version_id: str,
        context: AuditContext,
    ) -> dict[str, Any]:
        context.require()
        try:
            version = await reports_repo.get_version(session, version_id, for_update=True)
            if version is None:
                raise NotFoundError("Report version not found", details={"report_id": version_id})
            if version.status != ReportStatus.FINAL.value:
                raise DomainValidationError(
                    "Only FINAL report versions can be approved",
                    details={"report_id": version_id, "status": version.status},
                )
            old_fields = _audit_fields(version)
            version.approved_by_id = context.actor_id
            version.updated_by_id = context.actor_id
            await session.flush()
            await audit_service.log_update(
                session, context, SUBJECT_TYPE, version.id, old_fields, _audit_fields(version)
            )
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        return self.serialize(version)

    async def list_versions(self, session: AsyncSession, sample_id: str) -> list[dict[str, Any]]:
        if await samples_repo.get_sample(session, sample_id) is None:
            raise NotFoundError("Sample not found", details={"sample_id": sample_id})
        versions = await reports_repo.list_versions(session, sample_id)
        return [self.serialize(version) for version in versions]

    async def get_version(self, session: AsyncSession, version_id: str) -> dict[str, Any]:
        version = await reports_repo.get_version(session, version_id)
        if version is None:
            raise NotFoundError("Report version not found", details={"report_id": version_id})
        return self.serialize(version, include_snapshot=True)

    async def get_latest(self, session: AsyncSession, sample_id: str) -> dict[str, Any]:
        version = await reports_repo.get_latest(session, sample_id)
        if version is None:
            raise NotFoundError("No report versions for sample", details={"sample_id": sample_id})
        return self.serialize(version)

    async def download_document(self, session: AsyncSession, version_id: str) -> dict[str, Any]:
        version = await reports_repo.get_version(session, version_id)
        if version is None:
            raise NotFoundError("Report version not found", details={"report_id": version_id})
        if not version.document_key:
            raise NotFoundError(
                "Report version has no stored document", details={"report_id": version_id}
            )
        key = version.document_key

        async def _get() -> bytes:
            return await self._store.get(key)

        content = await upstream_call("fetch", _get, policy=store_policy())
        sample_code = version.data_snapshot.get("sample", {}).get("sample_code", version.sample_id)
        # Type follows the stored object, not whichever converter is configured now.
        extension = PurePosixPath(key).suffix.lstrip(".") or "bin"
        content_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
        return {
            "content": content,
            "filename": f"COA-{sample_code}-v{version.version}.{extension}",
            "content_type": content_type,
        }

    async def preview_snapshot(
        self,
        session: AsyncSession,
        sample_id: str,
        context: AuditContext,
    ) -> dict[str, Any]:
        # Steps 1-4 of an export: no version allocation, storage write or audit entry.
        sample = await self._load_sample(session, sample_id, for_update=False)
        next_version = await reports_repo.max_version(session, sample_id) + 1
        snapshot = build_snapshot(
            sample,
            version=next_version,
            generated_by=context.actor_email or "",
            settings=self._settings,
        )
        markup = await self._render(snapshot)
        return {
            "sample_id": sample_id,
            "version": next_version,
            "data_snapshot": snapshot.to_document(),
            "rendered_snapshot": markup,
        }


_manager: ReportVersionManager | None = None


def get_report_manager() -> ReportVersionManager:
    global _manager
    if _manager is None:
        _manager = ReportVersionManager()
    return _manager


def reset_report_manager() -> None:
    # Allow tests to rebuild providers after tweaking settings.
    global _manager
    _manager = None
