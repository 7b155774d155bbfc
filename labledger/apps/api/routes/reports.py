from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from labledger.apps.api.deps import Principal, get_audit_context, get_db, get_reports, require_permission
from labledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from labledger.apps.api.response import SuccessEnvelope, success_response
from labledger.services.audit_context import AuditContext
from labledger.services.authz.permissions import Action, ResourceKind
from labledger.services.reports import ReportVersionManager


logger = logging.getLogger(__name__)
router = APIRouter(tags=["reports"], responses=DEFAULT_ERROR_RESPONSES)


class ReportVersionResponse(BaseModel):
    id: str
    sample_id: str
    version: int
    status: str
    document_key: str | None
    download_url: str | None
    reported_at: str | None
    notes: str | None
    created_at: str | None
    updated_at: str | None
    created_by_id: str
    updated_by_id: str
    reported_by_id: str | None
    approved_by_id: str | None
    data_snapshot: dict[str, Any] | None = None
    rendered_snapshot: str | None = None


class ExportResponse(BaseModel):
    id: str
    version: int
    status: str
    document_key: str
    download_url: str


class PreviewResponse(BaseModel):
    sample_id: str
    version: int
    data_snapshot: dict[str, Any]
    rendered_snapshot: str


class DraftRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


@router.post("/samples/{sample_id}/coa/preview", response_model=SuccessEnvelope[PreviewResponse])
async def preview_coa(
    request: Request,
    sample_id: str,
    principal: Principal = Depends(require_permission(Action.READ, ResourceKind.REPORT)),
    context: AuditContext = Depends(get_audit_context),
    db: AsyncSession = Depends(get_db),
    reports: ReportVersionManager = Depends(get_reports),
) -> dict:
    payload = await reports.preview_snapshot(db, sample_id, context)
    return success_response(request=request, data=payload)


@router.post(
    "/samples/{sample_id}/coa/export",
    status_code=201,
    response_model=SuccessEnvelope[ExportResponse],
)
async def export_coa(
    request: Request,
    sample_id: str,
    principal: Principal = Depends(require_permission(Action.FINALIZE, ResourceKind.REPORT)),
    context: AuditContext = Depends(get_audit_context),
    db: AsyncSession = Depends(get_db),
    reports: ReportVersionManager = Depends(get_reports),
) -> dict:
    payload = await reports.export_version(db, sample_id, context)
    return success_response(request=request, data=payload)


@router.post(
    "/samples/{sample_id}/coa/drafts",
    status_code=201,
    response_model=SuccessEnvelope[ReportVersionResponse],
)
async def build_coa_draft(
    request: Request,
    sample_id: str,
    body: DraftRequest | None = None,
    principal: Principal = Depends(require_permission(Action.GENERATE_DRAFT, ResourceKind.REPORT)),
    context: AuditContext = Depends(get_audit_context),
    db: AsyncSession = Depends(get_db),
    reports: ReportVersionManager = Depends(get_reports),
) -> dict:
    notes = body.notes if body else None
    payload = await reports.build_draft(db, sample_id, context, notes=notes)
    return success_response(request=request, data=payload)


@router.get("/samples/{sample_id}/coa", response_model=SuccessEnvelope[list[ReportVersionResponse]])
async def list_coa_versions(
    request: Request,
    sample_id: str,
    principal: Principal = Depends(require_permission(Action.VIEW_VERSIONS, ResourceKind.REPORT)),
    db: AsyncSession = Depends(get_db),
    reports: ReportVersionManager = Depends(get_reports),
) -> dict:
    payload = await reports.list_versions(db, sample_id)
    return success_response(request=request, data=payload)


@router.get("/samples/{sample_id}/coa/latest", response_model=SuccessEnvelope[ReportVersionResponse])
async def get_latest_coa(
    request: Request,
    sample_id: str,
    principal: Principal = Depends(require_permission(Action.READ, ResourceKind.REPORT)),
    db: AsyncSession = Depends(get_db),
    reports: ReportVersionManager = Depends(get_reports),
) -> dict:
    payload = await reports.get_latest(db, sample_id)
    return success_response(request=request, data=payload)


@router.get("/reports/{report_id}", response_model=SuccessEnvelope[ReportVersionResponse])
async def get_report_version(
    request: Request,
    report_id: str,
    principal: Principal = Depends(require_permission(Action.READ, ResourceKind.REPORT)),
    db: AsyncSession = Depends(get_db),
    reports: ReportVersionManager = Depends(get_reports),
) -> dict:
    payload = await reports.get_version(db, report_id)
    return success_response(request=request, data=payload)


@router.post("/reports/{report_id}/finalize", response_model=SuccessEnvelope[ReportVersionResponse])
async def finalize_report(
    request: Request,
    report_id: str,
    principal: Principal = Depends(require_permission(Action.FINALIZE, ResourceKind.REPORT)),
    context: AuditContext = Depends(get_audit_context),
    db: AsyncSession = Depends(get_db),
    reports: ReportVersionManager = Depends(get_reports),
) -> dict:
    payload = await reports.finalize_draft(db, report_id, context)
    return success_response(request=request, data=payload)


@router.post("/reports/{report_id}/approve", response_model=SuccessEnvelope[ReportVersionResponse])
async def approve_report(
    request: Request,
    report_id: str,
    principal: Principal = Depends(require_permission(Action.APPROVE, ResourceKind.REPORT)),
    context: AuditContext = Depends(get_audit_context),
    db: AsyncSession = Depends(get_db),
    reports: ReportVersionManager = Depends(get_reports),
) -> dict:
    payload = await reports.approve_version(db, report_id, context)
    return success_response(request=request, data=payload)


@router.get(
    "/reports/{report_id}/download",
    response_class=Response,
    responses={200: {"content": {"application/pdf": {}}, "description": "Stored certificate document"}},
)
async def download_report(
    report_id: str,
    principal: Principal = Depends(require_permission(Action.READ, ResourceKind.REPORT)),
    db: AsyncSession = Depends(get_db),
    reports: ReportVersionManager = Depends(get_reports),
) -> Response:
    # Stored bytes are returned as-is; nothing is re-rendered on download.
    document = await reports.download_document(db, report_id)
    logger.info("report_downloaded report_id=%s bytes=%s", report_id, len(document["content"]))
    return Response(
        content=document["content"],
        media_type=document["content_type"],
        headers={"Content-Disposition": f'attachment; filename="{document["filename"]}"'},
    )
