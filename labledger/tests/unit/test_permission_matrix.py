from __future__ import annotations

import pytest

from labledger.services.authz.permissions import (
    Action,
    PERMISSION_MATRIX,
    PermissionUser,
    ResourceKind,
    Role,
    allowed_actions,
    authorize,
    normalize_role,
)


def _user(role: Role, user_id: str = "u1") -> PermissionUser:
    return PermissionUser(id=user_id, role=role)


def test_matrix_covers_every_kind_and_role() -> None:
    for kind in ResourceKind:
        assert set(PERMISSION_MATRIX[kind]) == set(Role)


@pytest.mark.parametrize("role", [Role.ADMIN, Role.LAB_MANAGER])
def test_managers_can_finalize_and_read_audit(role: Role) -> None:
    assert authorize(_user(role), Action.FINALIZE, ResourceKind.REPORT).allowed
    assert authorize(_user(role), Action.READ, ResourceKind.AUDIT_LOG).allowed


@pytest.mark.parametrize("role", [Role.ANALYST, Role.SALES_ACCOUNTING, Role.CLIENT])
def test_audit_log_is_restricted(role: Role) -> None:
    decision = authorize(_user(role), Action.READ, ResourceKind.AUDIT_LOG)
    assert not decision.allowed
    assert role.value in (decision.reason or "")


def test_analyst_drafts_but_cannot_finalize() -> None:
    analyst = _user(Role.ANALYST)
    assert authorize(analyst, Action.GENERATE_DRAFT, ResourceKind.REPORT).allowed
    assert not authorize(analyst, Action.FINALIZE, ResourceKind.REPORT).allowed


def test_record_rules_scope_analysts_and_clients() -> None:
    analyst = _user(Role.ANALYST, "a1")
    assert authorize(analyst, Action.UPDATE, ResourceKind.TEST, {"assigned_user_id": "a1"}).allowed
    assert not authorize(analyst, Action.UPDATE, ResourceKind.TEST, {"assigned_user_id": "a2"}).allowed

    client = _user(Role.CLIENT, "c1")
    assert authorize(client, Action.READ, ResourceKind.REPORT, {"status": "FINAL", "client_id": "c1"}).allowed
    assert not authorize(client, Action.READ, ResourceKind.REPORT, {"status": "DRAFT", "client_id": "c1"}).allowed
    assert not authorize(client, Action.READ, ResourceKind.REPORT, {"status": "FINAL", "client_id": "c2"}).allowed


def test_allowed_actions_lists_grants() -> None:
    assert allowed_actions(_user(Role.CLIENT), ResourceKind.REPORT) == [Action.READ]


def test_normalize_role() -> None:
    assert normalize_role(" lab_manager ") is Role.LAB_MANAGER
    with pytest.raises(ValueError):
        normalize_role("superuser")
