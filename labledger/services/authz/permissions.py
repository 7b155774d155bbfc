"""Role/permission matrix consumed by the API layer.

The audit and versioning services never authorize; routes check
``authorize`` before calling them. The matrix is keyed by ``ResourceKind``
and verified exhaustive at import, so adding a kind without rules fails
at startup instead of silently denying or allowing.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping


class Role(str, Enum):
    ADMIN = "ADMIN"
    LAB_MANAGER = "LAB_MANAGER"
    ANALYST = "ANALYST"
    SALES_ACCOUNTING = "SALES_ACCOUNTING"
    CLIENT = "CLIENT"


class Action(str, Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    APPROVE = "APPROVE"
    RELEASE = "RELEASE"
    ASSIGN = "ASSIGN"
    EDIT_RESULTS = "EDIT_RESULTS"
    GENERATE_DRAFT = "GENERATE_DRAFT"
    FINALIZE = "FINALIZE"
    VIEW_VERSIONS = "VIEW_VERSIONS"
    MANAGE = "MANAGE"


class ResourceKind(str, Enum):
    SAMPLE = "SAMPLE"
    TEST = "TEST"
    TEST_PACK = "TEST_PACK"
    REPORT = "REPORT"
    AUDIT_LOG = "AUDIT_LOG"
    SETTINGS = "SETTINGS"


@dataclass(frozen=True)
class PermissionUser:
    id: str
    role: Role
    email: str | None = None


@dataclass(frozen=True)
class AuthzDecision:
    allowed: bool
    reason: str | None = None


_A = Action
_CRUD = frozenset({_A.CREATE, _A.READ, _A.UPDATE, _A.DELETE})

PERMISSION_MATRIX: dict[ResourceKind, dict[Role, frozenset[Action]]] = {
    ResourceKind.SAMPLE: {
        Role.ADMIN: _CRUD,
        Role.LAB_MANAGER: frozenset({_A.CREATE, _A.READ, _A.UPDATE}),
        Role.ANALYST: frozenset({_A.CREATE, _A.READ, _A.UPDATE}),
        Role.SALES_ACCOUNTING: frozenset({_A.READ}),
        Role.CLIENT: frozenset({_A.READ}),
    },
    ResourceKind.TEST: {
        Role.ADMIN: _CRUD | {_A.ASSIGN, _A.EDIT_RESULTS, _A.APPROVE, _A.RELEASE},
        Role.LAB_MANAGER: frozenset(
            {_A.READ, _A.UPDATE, _A.DELETE, _A.ASSIGN, _A.EDIT_RESULTS, _A.APPROVE, _A.RELEASE}
        ),
        Role.ANALYST: frozenset({_A.READ, _A.UPDATE, _A.EDIT_RESULTS}),
        Role.SALES_ACCOUNTING: frozenset({_A.READ}),
        Role.CLIENT: frozenset({_A.READ}),
    },
    ResourceKind.TEST_PACK: {
        Role.ADMIN: _CRUD | {_A.MANAGE},
        Role.LAB_MANAGER: _CRUD | {_A.MANAGE},
        Role.ANALYST: frozenset({_A.READ}),
        Role.SALES_ACCOUNTING: frozenset(),
        Role.CLIENT: frozenset(),
    },
    ResourceKind.REPORT: {
        Role.ADMIN: frozenset(
            {_A.READ, _A.GENERATE_DRAFT, _A.FINALIZE, _A.APPROVE, _A.RELEASE, _A.VIEW_VERSIONS}
        ),
        Role.LAB_MANAGER: frozenset(
            {_A.READ, _A.GENERATE_DRAFT, _A.FINALIZE, _A.APPROVE, _A.RELEASE, _A.VIEW_VERSIONS}
        ),
        Role.ANALYST: frozenset({_A.READ, _A.GENERATE_DRAFT, _A.VIEW_VERSIONS}),
        Role.SALES_ACCOUNTING: frozenset({_A.READ, _A.VIEW_VERSIONS}),
        Role.CLIENT: frozenset({_A.READ}),
    },
    ResourceKind.AUDIT_LOG: {
        Role.ADMIN: frozenset({_A.READ}),
        Role.LAB_MANAGER: frozenset({_A.READ}),
        Role.ANALYST: frozenset(),
        Role.SALES_ACCOUNTING: frozenset(),
        Role.CLIENT: frozenset(),
    },
    ResourceKind.SETTINGS: {
        Role.ADMIN: frozenset({_A.READ, _A.UPDATE, _A.MANAGE}),
        Role.LAB_MANAGER: frozenset({_A.READ, _A.UPDATE, _A.MANAGE}),
        Role.ANALYST: frozenset(),
        Role.SALES_ACCOUNTING: frozenset(),
        Role.CLIENT: frozenset(),
    },
}


def _owned_records(user: PermissionUser, context: Mapping[str, Any]) -> str | None:
    # Analysts work on assigned records only; clients see their own records only.
    if user.role is Role.ANALYST:
        assigned = context.get("assigned_user_id")
        if assigned and assigned != user.id:
            return "Analyst can only access assigned samples/tests"
    if user.role is Role.CLIENT:
        client_id = context.get("client_id")
        if client_id and client_id != user.id:
            return "Client can only access their own samples"
    return None


def _released_reports(user: PermissionUser, context: Mapping[str, Any]) -> str | None:
    if user.role is not Role.CLIENT:
        return None
    if context.get("status") not in {"FINAL", "RELEASED"}:
        return "Client can only view released reports"
    client_id = context.get("client_id")
    if client_id and client_id != user.id:
        return "Client can only view their own reports"
    return None


def _no_record_rules(user: PermissionUser, context: Mapping[str, Any]) -> str | None:
    return None


RecordRule = Callable[[PermissionUser, Mapping[str, Any]], "str | None"]

RECORD_RULES: dict[ResourceKind, RecordRule] = {
    ResourceKind.SAMPLE: _owned_records,
    ResourceKind.TEST: _owned_records,
    ResourceKind.TEST_PACK: _no_record_rules,
    ResourceKind.REPORT: _released_reports,
    ResourceKind.AUDIT_LOG: _no_record_rules,
    ResourceKind.SETTINGS: _no_record_rules,
}


def _verify_exhaustive() -> None:
    for kind in ResourceKind:
        if kind not in RECORD_RULES:
            raise RuntimeError(f"No record rule registered for resource kind {kind.value}")
        missing = set(Role) - set(PERMISSION_MATRIX.get(kind, {}))
        if missing:
            names = ", ".join(sorted(role.value for role in missing))
            raise RuntimeError(f"Permission matrix for {kind.value} is missing roles: {names}")


_verify_exhaustive()


def authorize(
    user: PermissionUser,
    action: Action,
    resource_kind: ResourceKind,
    context: Mapping[str, Any] | None = None,
) -> AuthzDecision:
    allowed_actions = PERMISSION_MATRIX[resource_kind][user.role]
    if action not in allowed_actions:
        return AuthzDecision(
            allowed=False,
            reason=f"Role {user.role.value} does not have permission to {action.value} {resource_kind.value}",
        )
    if context:
        reason = RECORD_RULES[resource_kind](user, context)
        if reason:
            return AuthzDecision(allowed=False, reason=reason)
    return AuthzDecision(allowed=True)


def allowed_actions(
    user: PermissionUser,
    resource_kind: ResourceKind,
    context: Mapping[str, Any] | None = None,
) -> list[Action]:
    return [
        action
        for action in Action
        if authorize(user, action, resource_kind, context).allowed
    ]


def normalize_role(value: str) -> Role:
    try:
        return Role(value.strip().upper())
    except ValueError as exc:
        raise ValueError(f"Unknown role: {value}") from exc
