from __future__ import annotations

import logging
from typing import AsyncGenerator

import jwt
from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from labledger.core.config import get_settings
from labledger.persistence.capture import attach_capture_context
from labledger.persistence.db import get_session
from labledger.services.audit_context import AuditContext, build_audit_context
from labledger.services.authz.permissions import (
    Action,
    PermissionUser,
    ResourceKind,
    Role,
    authorize,
    normalize_role,
)
from labledger.services.reports import ReportVersionManager, get_report_manager


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Authenticated identity; tokens are verified here, never issued.
    subject_id: str
    email: str
    role: Role
    auth_method: str = "jwt"

    def as_permission_user(self) -> PermissionUser:
        return PermissionUser(id=self.subject_id, role=self.role, email=self.email)


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> Principal | None:
    # Local development only: identity straight from request headers.
    actor_id = request.headers.get("X-Actor-Id")
    actor_email = request.headers.get("X-Actor-Email")
    if not actor_id or not actor_email:
        return None
    try:
        role = normalize_role(request.headers.get("X-Role", Role.ADMIN.value))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    return Principal(subject_id=actor_id, email=actor_email, role=role, auth_method="dev_bypass")


def _principal_from_token(token: str) -> Principal:
    settings = get_settings()
    try:
        claims = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            options={"require": ["sub"]},
        )
    except jwt.PyJWTError as exc:
        logger.info("auth_token_rejected error=%s", exc.__class__.__name__)
        raise _auth_error("Invalid or expired token") from exc
    email = claims.get("email")
    if not email:
        raise _auth_error("Token is missing the email claim")
    try:
        role = normalize_role(str(claims.get("role", "")))
    except ValueError as exc:
        raise _forbidden_error(str(exc)) from exc
    return Principal(subject_id=str(claims["sub"]), email=str(email), role=role)


async def get_current_principal(request: Request) -> Principal:
    settings = get_settings()
    token = _parse_bearer_token(request.headers.get(settings.auth_header))
    if token is not None:
        principal = _principal_from_token(token)
    elif settings.auth_dev_bypass:
        principal = _principal_from_dev_headers(request)
        if principal is None:
            raise _auth_error("X-Actor-Id and X-Actor-Email headers are required in dev bypass mode")
    else:
        raise _auth_error("Missing or invalid bearer token")
    request.state.principal = principal
    return principal


def require_permission(action: Action, resource_kind: ResourceKind):
    # Dependency factory enforcing the permission matrix at the route level.
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        decision = authorize(principal.as_permission_user(), action, resource_kind)
        if not decision.allowed:
            logger.info(
                "authz_denied subject_id=%s role=%s action=%s resource=%s",
                principal.subject_id,
                principal.role.value,
                action.value,
                resource_kind.value,
            )
            raise _forbidden_error(decision.reason or "Insufficient role for this operation")
        return principal

    return _dependency


async def get_audit_context(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> AsyncGenerator[AuditContext, None]:
    # Built only for authenticated requests, so audit writes are never anonymous.
    context = build_audit_context(request, actor_id=principal.subject_id, actor_email=principal.email)
    handle = attach_capture_context(db, context)
    try:
        yield context
    finally:
        handle.detach()


def get_reports() -> ReportVersionManager:
    return get_report_manager()
