from __future__ import annotations

from dataclasses import dataclass, replace

from fastapi import Request

from labledger.core.errors import ContextMissingError


# Provenance placeholders recorded when the request carries no usable value.
UNKNOWN_IP = "127.0.0.1"
UNKNOWN_USER_AGENT = "unknown"


@dataclass(frozen=True)
class AuditContext:
    # Identity and provenance carried explicitly into every audited mutation.
    actor_id: str | None
    actor_email: str | None
    ip: str = UNKNOWN_IP
    user_agent: str = UNKNOWN_USER_AGENT
    transaction_tag: str | None = None
    request_id: str | None = None

    @property
    def is_attributable(self) -> bool:
        return bool(self.actor_id) and bool(self.actor_email)

    def require(self) -> AuditContext:
        # Audit writes without an actor must fail instead of recording an anonymous change.
        if not self.is_attributable:
            raise ContextMissingError(
                "Audit context requires actor id and email",
                details={"actor_id": self.actor_id, "actor_email": self.actor_email},
            )
        return self

    def with_transaction_tag(self, tag: str | None) -> AuditContext:
        # A blank tag groups nothing; store it as untagged.
        return replace(self, transaction_tag=(tag or "").strip() or None)


def client_ip(request: Request) -> str:
    # Prefer the first forwarded hop, then the transport peer.
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_IP


def build_audit_context(
    request: Request,
    *,
    actor_id: str | None,
    actor_email: str | None,
) -> AuditContext:
    user_agent = (request.headers.get("user-agent") or "").strip() or UNKNOWN_USER_AGENT
    return AuditContext(
        actor_id=actor_id,
        actor_email=actor_email,
        ip=client_ip(request),
        user_agent=user_agent,
        request_id=getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id"),
    )
