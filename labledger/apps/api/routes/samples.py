from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from labledger.apps.api.deps import Principal, get_audit_context, get_db, require_permission
from labledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from labledger.apps.api.response import SuccessEnvelope, success_response
from labledger.services import samples as samples_service
from labledger.services.audit_context import AuditContext
from labledger.services.authz.permissions import Action, ResourceKind


router = APIRouter(tags=["samples"], responses=DEFAULT_ERROR_RESPONSES)


class SampleUpdateRequest(BaseModel):
    # Only fields present in the request body are applied.
    date_due: datetime | None = None
    release_date: datetime | None = None
    rm_supplier: str | None = None
    sample_description: str | None = None
    uin_code: str | None = None
    sample_batch: str | None = None
    temperature_on_receipt_c: float | None = None
    storage_conditions: str | None = None
    comments: str | None = None
    expired_raw_material: bool | None = None
    post_irradiated_raw_material: bool | None = None
    stability_study: bool | None = None
    urgent: bool | None = None
    all_micro_tests_assigned: bool | None = None
    all_chemistry_tests_assigned: bool | None = None
    released: bool | None = None
    retest: bool | None = None
    reason: str | None = Field(default=None, max_length=500)


class ResultRequest(BaseModel):
    result: str | None
    result_unit: str | None = None
    test_date: datetime | None = None
    reason: str | None = Field(default=None, max_length=500)


class TestPackResponse(BaseModel):
    transaction_tag: str
    tests: list[dict[str, Any]]


@router.patch("/samples/{sample_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def update_sample(
    request: Request,
    sample_id: str,
    body: SampleUpdateRequest,
    principal: Principal = Depends(require_permission(Action.UPDATE, ResourceKind.SAMPLE)),
    context: AuditContext = Depends(get_audit_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    changes = body.model_dump(exclude_unset=True, exclude={"reason"})
    payload = await samples_service.update_sample(db, sample_id, changes, context, reason=body.reason)
    return success_response(request=request, data=payload)


@router.post(
    "/samples/{sample_id}/test-packs/{pack_id}",
    status_code=201,
    response_model=SuccessEnvelope[TestPackResponse],
)
async def apply_test_pack(
    request: Request,
    sample_id: str,
    pack_id: str,
    principal: Principal = Depends(require_permission(Action.ASSIGN, ResourceKind.TEST)),
    context: AuditContext = Depends(get_audit_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    payload = await samples_service.apply_test_pack(db, sample_id, pack_id, context)
    return success_response(request=request, data=payload)


@router.post("/tests/{test_id}/result", response_model=SuccessEnvelope[dict[str, Any]])
async def enter_result(
    request: Request,
    test_id: str,
    body: ResultRequest,
    principal: Principal = Depends(require_permission(Action.EDIT_RESULTS, ResourceKind.TEST)),
    context: AuditContext = Depends(get_audit_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    payload = await samples_service.enter_result(
        db,
        test_id,
        context,
        result=body.result,
        result_unit=body.result_unit,
        test_date=body.test_date,
        reason=body.reason,
    )
    return success_response(request=request, data=payload)


@router.delete("/tests/{test_id}", status_code=204)
async def remove_test(
    test_id: str,
    reason: str | None = None,
    principal: Principal = Depends(require_permission(Action.DELETE, ResourceKind.TEST)),
    context: AuditContext = Depends(get_audit_context),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await samples_service.remove_test(db, test_id, context, reason=reason)
    return Response(status_code=204)
