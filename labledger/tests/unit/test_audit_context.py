from __future__ import annotations

import pytest
from starlette.requests import Request

from labledger.core.errors import ContextMissingError
from labledger.services.audit_context import (
    UNKNOWN_IP,
    UNKNOWN_USER_AGENT,
    AuditContext,
    build_audit_context,
)


def _request(headers: dict[str, str] | None = None, client: tuple[str, int] | None = None) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(key.lower().encode(), value.encode()) for key, value in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def test_context_prefers_forwarded_first_hop() -> None:
    request = _request(
        {"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "User-Agent": "curl/8"},
        client=("10.0.0.1", 5000),
    )
    context = build_audit_context(request, actor_id="u1", actor_email="u1@lims.local")
    assert context.ip == "203.0.113.7"
    assert context.user_agent == "curl/8"


def test_context_falls_back_to_sentinels() -> None:
    context = build_audit_context(_request(), actor_id="u1", actor_email="u1@lims.local")
    assert context.ip == UNKNOWN_IP
    assert context.user_agent == UNKNOWN_USER_AGENT


def test_context_uses_transport_peer() -> None:
    context = build_audit_context(_request(client=("192.0.2.10", 443)), actor_id="u1", actor_email="e")
    assert context.ip == "192.0.2.10"


@pytest.mark.parametrize(("actor_id", "actor_email"), [(None, "a@b"), ("u1", None), ("", "")])
def test_require_rejects_unattributable_context(actor_id, actor_email) -> None:
    with pytest.raises(ContextMissingError):
        AuditContext(actor_id=actor_id, actor_email=actor_email).require()


def test_with_transaction_tag_returns_copy() -> None:
    context = AuditContext(actor_id="u1", actor_email="u1@lims.local")
    tagged = context.with_transaction_tag("tx-1")
    assert tagged.transaction_tag == "tx-1"
    assert context.transaction_tag is None
