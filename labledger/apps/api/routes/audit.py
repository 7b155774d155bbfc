from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from labledger.apps.api.deps import Principal, get_db, require_permission
from labledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from labledger.apps.api.response import SuccessEnvelope, success_response
from labledger.domain.models import AuditAction
from labledger.persistence.repos.audit import AuditFilters
from labledger.services import audit as audit_service
from labledger.services.authz.permissions import Action, ResourceKind


# Only GET routes are registered; PUT/PATCH/DELETE on these paths answer 405.
router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEntryResponse(BaseModel):
    id: int
    actor_id: str
    actor_email: str
    ip: str | None
    user_agent: str | None
    action: str
    subject_type: str
    subject_id: str
    changes: dict[str, Any]
    reason: str | None
    transaction_tag: str | None
    at: str


class AuditPageResponse(BaseModel):
    # Items are entries, or transaction groups when grouped=true.
    items: list[dict[str, Any]]
    total: int
    page: int
    per_page: int
    total_pages: int
    grouped: bool


@router.get("", response_model=SuccessEnvelope[AuditPageResponse])
async def list_audit_entries(
    request: Request,
    subject_type: str | None = None,
    subject_id: str | None = None,
    actor_id: str | None = None,
    action: AuditAction | None = None,
    date_from: datetime | None = Query(default=None, alias="from"),
    date_to: datetime | None = Query(default=None, alias="to"),
    transaction_tag: str | None = None,
    grouped: bool = False,
    page: int = Query(default=1, ge=1),
    per_page: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(require_permission(Action.READ, ResourceKind.AUDIT_LOG)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    filters = AuditFilters(
        subject_type=subject_type,
        subject_id=subject_id,
        actor_id=actor_id,
        action=action.value if action else None,
        date_from=date_from,
        date_to=date_to,
        transaction_tag=transaction_tag,
    )
    run_query = audit_service.query_grouped if grouped else audit_service.query
    result = await run_query(db, filters, page=page, per_page=per_page)
    return success_response(request=request, data=result.as_dict())


@router.get("/{entry_id}", response_model=SuccessEnvelope[AuditEntryResponse])
async def get_audit_entry(
    request: Request,
    entry_id: int,
    principal: Principal = Depends(require_permission(Action.READ, ResourceKind.AUDIT_LOG)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    entry = await audit_service.get_entry(db, entry_id)
    return success_response(request=request, data=entry)
