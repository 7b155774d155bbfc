from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from labledger.core.errors import (
    ContextMissingError,
    DomainValidationError,
    ImmutableRecordError,
    NotFoundError,
    UpstreamFailureError,
)
from labledger.domain.models import AuditEntry, ReportStatus, ReportVersion, Sample
from labledger.persistence.db import SessionLocal
from labledger.persistence.repos import reports as reports_repo
from labledger.providers.convert.fake import FakeConverter
from labledger.providers.storage.memory import MemoryObjectStore
from labledger.services.audit_context import AuditContext
from labledger.services.reports import ReportVersionManager
from labledger.tests.utils.factories import actor_context, seed_sample


pytestmark = pytest.mark.usefixtures("fresh_schema")


class _BrokenConverter(FakeConverter):
    async def convert(self, markup: str, *, page_format: str | None = None) -> bytes:
        self.calls += 1
        raise RuntimeError("pdf engine crashed")


class _HtmlConverter(FakeConverter):
    content_type = "text/html"
    extension = "html"


class _LostAckStore(MemoryObjectStore):
    # Writes the object, then reports a dropped connection on the first put.
    def __init__(self) -> None:
        super().__init__()
        self.puts = 0

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        self.puts += 1
        await super().put(key, data, content_type)
        if self.puts == 1:
            raise ConnectionError("connection reset after upload")
        return key


class _UnreachableStore(MemoryObjectStore):
    async def put(self, key: str, data: bytes, content_type: str) -> str:
        raise ConnectionError("object store unreachable")


def _manager(converter=None, store=None) -> ReportVersionManager:
    return ReportVersionManager(converter=converter or FakeConverter(), store=store or MemoryObjectStore())


async def _versions(sample_id: str) -> list[ReportVersion]:
    async with SessionLocal() as session:
        return await reports_repo.list_versions(session, sample_id)


async def _report_entries() -> list[AuditEntry]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(AuditEntry).where(AuditEntry.subject_type == "ReportVersion").order_by(AuditEntry.id)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_exports_allocate_consecutive_versions_with_one_final() -> None:
    seeded = await seed_sample()
    store = MemoryObjectStore()
    manager = _manager(store=store)

    async with SessionLocal() as session:
        first = await manager.export_version(session, seeded.sample_id, actor_context())
    async with SessionLocal() as session:
        second = await manager.export_version(session, seeded.sample_id, actor_context())

    assert (first["version"], second["version"]) == (1, 2)
    assert first["document_key"] != second["document_key"]
    assert second["download_url"] == f"/v1/reports/{second['id']}/download"

    versions = await _versions(seeded.sample_id)
    assert [(version.version, version.status) for version in versions] == [
        (2, ReportStatus.FINAL.value),
        (1, ReportStatus.SUPERSEDED.value),
    ]
    async with SessionLocal() as session:
        assert await reports_repo.count_finals(session, seeded.sample_id) == 1

    entries = await _report_entries()
    assert [entry.action for entry in entries] == ["CREATE", "CREATE"]
    assert "rendered_snapshot" not in entries[0].changes
    assert entries[0].changes["status"] == {"old": None, "new": "FINAL"}


@pytest.mark.asyncio
async def test_superseded_document_bytes_never_change() -> None:
    seeded = await seed_sample()
    manager = _manager()

    async with SessionLocal() as session:
        first = await manager.export_version(session, seeded.sample_id, actor_context())
    async with SessionLocal() as session:
        original = await manager.download_document(session, first["id"])

    async with SessionLocal() as session:
        sample = await session.get(Sample, seeded.sample_id)
        sample.temperature_on_receipt_c = Decimal("8")
        await session.commit()
    async with SessionLocal() as session:
        await manager.export_version(session, seeded.sample_id, actor_context())

    async with SessionLocal() as session:
        again = await manager.download_document(session, first["id"])
        stored = await manager.get_version(session, first["id"])

    assert again["content"] == original["content"]
    assert again["filename"] == f"COA-{seeded.sample_code}-v1.pdf"
    assert stored["status"] == ReportStatus.SUPERSEDED.value
    # The snapshot is a frozen copy of the sample at export time.
    assert stored["data_snapshot"]["sample"]["temperature_on_receipt_c"] == 5.0
    assert "Version 1" in stored["rendered_snapshot"]


@pytest.mark.asyncio
async def test_concurrent_exports_get_distinct_versions() -> None:
    seeded = await seed_sample()
    manager = _manager()

    async def _export(actor_id: str) -> dict:
        async with SessionLocal() as session:
            return await manager.export_version(
                session, seeded.sample_id, actor_context(actor_id=actor_id, actor_email=f"{actor_id}@lims.local")
            )

    results = await asyncio.gather(_export("u-a"), _export("u-b"))

    assert sorted(result["version"] for result in results) == [1, 2]
    versions = await _versions(seeded.sample_id)
    assert len(versions) == 2
    assert [version.status for version in versions].count(ReportStatus.FINAL.value) == 1
    assert versions[0].version == 2 and versions[0].status == ReportStatus.FINAL.value


@pytest.mark.asyncio
async def test_upstream_failure_leaves_no_trace() -> None:
    seeded = await seed_sample()
    store = MemoryObjectStore()
    converter = _BrokenConverter()
    manager = _manager(converter=converter, store=store)

    async with SessionLocal() as session:
        with pytest.raises(UpstreamFailureError):
            await manager.export_version(session, seeded.sample_id, actor_context())

    assert converter.calls == 1
    assert await _versions(seeded.sample_id) == []
    assert await _report_entries() == []
    assert store.keys() == []


@pytest.mark.asyncio
async def test_store_retry_after_lost_ack_reuses_written_object() -> None:
    seeded = await seed_sample()
    store = _LostAckStore()
    converter = FakeConverter()
    manager = _manager(converter=converter, store=store)

    async with SessionLocal() as session:
        exported = await manager.export_version(session, seeded.sample_id, actor_context())
    async with SessionLocal() as session:
        downloaded = await manager.download_document(session, exported["id"])

    assert exported["version"] == 1
    assert converter.calls == 1
    assert store.puts == 1
    assert store.keys() == [exported["document_key"]]
    assert downloaded["content"].startswith(b"%PDF-1.4")


@pytest.mark.asyncio
async def test_unreachable_store_is_an_upstream_failure() -> None:
    seeded = await seed_sample()
    manager = _manager(store=_UnreachableStore())

    async with SessionLocal() as session:
        with pytest.raises(UpstreamFailureError) as excinfo:
            await manager.export_version(session, seeded.sample_id, actor_context())

    assert excinfo.value.details == {"step": "store"}
    assert await _versions(seeded.sample_id) == []
    assert await _report_entries() == []


@pytest.mark.asyncio
async def test_download_type_follows_the_stored_document() -> None:
    seeded = await seed_sample()
    store = MemoryObjectStore()

    async with SessionLocal() as session:
        exported = await _manager(store=store).export_version(session, seeded.sample_id, actor_context())
    # Reconfiguring the converter must not relabel documents already stored.
    async with SessionLocal() as session:
        downloaded = await _manager(converter=_HtmlConverter(), store=store).download_document(
            session, exported["id"]
        )

    assert exported["document_key"].endswith(".pdf")
    assert downloaded["content_type"] == "application/pdf"
    assert downloaded["filename"] == f"COA-{seeded.sample_code}-v1.pdf"


@pytest.mark.asyncio
async def test_export_requires_attributable_context() -> None:
    seeded = await seed_sample()
    async with SessionLocal() as session:
        with pytest.raises(ContextMissingError):
            await _manager().export_version(session, seeded.sample_id, AuditContext(actor_id=None, actor_email=None))
    assert await _versions(seeded.sample_id) == []


@pytest.mark.asyncio
async def test_export_unknown_sample_is_not_found() -> None:
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await _manager().export_version(session, "missing", actor_context())


@pytest.mark.asyncio
async def test_draft_then_finalize() -> None:
    seeded = await seed_sample()
    store = MemoryObjectStore()
    manager = _manager(store=store)

    async with SessionLocal() as session:
        draft = await manager.build_draft(session, seeded.sample_id, actor_context(), notes="first pass")
    assert draft["status"] == ReportStatus.DRAFT.value
    assert draft["document_key"] is None
    assert draft["download_url"] is None
    assert store.keys() == []

    async with SessionLocal() as session:
        final = await manager.finalize_draft(session, draft["id"], actor_context())
    assert final["status"] == ReportStatus.FINAL.value
    assert final["document_key"] in store.keys()
    assert final["reported_by_id"] == "user-1"

    entries = await _report_entries()
    assert [entry.action for entry in entries] == ["CREATE", "UPDATE"]
    assert entries[1].changes["status"] == {"old": "DRAFT", "new": "FINAL"}

    async with SessionLocal() as session:
        with pytest.raises(DomainValidationError):
            await manager.finalize_draft(session, draft["id"], actor_context())


@pytest.mark.asyncio
async def test_stale_draft_cannot_overtake_newer_final() -> None:
    seeded = await seed_sample()
    manager = _manager()

    async with SessionLocal() as session:
        draft = await manager.build_draft(session, seeded.sample_id, actor_context())
    async with SessionLocal() as session:
        await manager.export_version(session, seeded.sample_id, actor_context())
    async with SessionLocal() as session:
        with pytest.raises(DomainValidationError):
            await manager.finalize_draft(session, draft["id"], actor_context())

    async with SessionLocal() as session:
        assert await reports_repo.count_finals(session, seeded.sample_id) == 1


@pytest.mark.asyncio
async def test_approve_only_final_versions() -> None:
    seeded = await seed_sample()
    manager = _manager()

    async with SessionLocal() as session:
        draft = await manager.build_draft(session, seeded.sample_id, actor_context())
    async with SessionLocal() as session:
        with pytest.raises(DomainValidationError):
            await manager.approve_version(session, draft["id"], actor_context())

    async with SessionLocal() as session:
        exported = await manager.export_version(session, seeded.sample_id, actor_context())
    approver = actor_context(actor_id="mgr-1", actor_email="mgr@lims.local")
    async with SessionLocal() as session:
        approved = await manager.approve_version(session, exported["id"], approver)
    assert approved["approved_by_id"] == "mgr-1"


@pytest.mark.asyncio
async def test_snapshots_are_write_once() -> None:
    seeded = await seed_sample()
    async with SessionLocal() as session:
        exported = await _manager().export_version(session, seeded.sample_id, actor_context())

    async with SessionLocal() as session:
        version = await session.get(ReportVersion, exported["id"])
        version.rendered_snapshot = "<html>tampered</html>"
        with pytest.raises(ImmutableRecordError):
            await session.flush()
        await session.rollback()

    async with SessionLocal() as session:
        version = await session.get(ReportVersion, exported["id"])
        await session.delete(version)
        with pytest.raises(ImmutableRecordError):
            await session.flush()
        await session.rollback()


@pytest.mark.asyncio
async def test_preview_has_no_side_effects() -> None:
    seeded = await seed_sample()
    store = MemoryObjectStore()
    manager = _manager(store=store)

    async with SessionLocal() as session:
        preview = await manager.preview_snapshot(session, seeded.sample_id, actor_context())

    assert preview["version"] == 1
    assert preview["data_snapshot"]["sample"]["sample_code"] == seeded.sample_code
    assert "Certificate of Analysis" in preview["rendered_snapshot"]
    assert await _versions(seeded.sample_id) == []
    assert await _report_entries() == []
    assert store.keys() == []


@pytest.mark.asyncio
async def test_latest_and_listing() -> None:
    seeded = await seed_sample()
    manager = _manager()
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await manager.get_latest(session, seeded.sample_id)
    async with SessionLocal() as session:
        await manager.export_version(session, seeded.sample_id, actor_context())
    async with SessionLocal() as session:
        await manager.build_draft(session, seeded.sample_id, actor_context())

    async with SessionLocal() as session:
        latest = await manager.get_latest(session, seeded.sample_id)
        listing = await manager.list_versions(session, seeded.sample_id)
        with pytest.raises(NotFoundError):
            await manager.list_versions(session, "missing")

    assert latest["version"] == 2
    assert [item["version"] for item in listing] == [2, 1]
    assert "data_snapshot" not in listing[0]
