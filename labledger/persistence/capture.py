"""Propagates the request's audit context to database-side change capture.

The migrations install a PostgreSQL trigger on monitored tables that reads
``current_setting('app.*')`` to attribute writes it observes. This module is
the only place that writes those settings; everything else passes the
context explicitly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from labledger.services.audit_context import AuditContext


logger = logging.getLogger(__name__)


_SET_CONFIG = text(
    "SELECT set_config('app.actor_id', :actor_id, true), "
    "set_config('app.actor_email', :actor_email, true), "
    "set_config('app.ip', :ip, true), "
    "set_config('app.user_agent', :user_agent, true)"
)


@dataclass
class CaptureHandle:
    context: AuditContext
    applied: int = 0
    errors: list[str] = field(default_factory=list)
    _session: Any = None
    _listener: Any = None

    @property
    def healthy(self) -> bool:
        return not self.errors

    def detach(self) -> None:
        if self._session is None or self._listener is None:
            return
        if event.contains(self._session, "after_begin", self._listener):
            event.remove(self._session, "after_begin", self._listener)
        self._listener = None


def attach_capture_context(session: AsyncSession, context: AuditContext) -> CaptureHandle:
    # Apply the context to every transaction the session begins, not only the first.
    handle = CaptureHandle(context=context)
    sync_session = session.sync_session

    def _after_begin(_session, _transaction, connection) -> None:
        if connection.dialect.name != "postgresql":
            return
        params = {
            "actor_id": context.actor_id or "",
            "actor_email": context.actor_email or "",
            "ip": context.ip,
            "user_agent": context.user_agent,
        }
        try:
            # A savepoint keeps the outer transaction usable if set_config fails.
            with connection.begin_nested():
                connection.execute(_SET_CONFIG, params)
            handle.applied += 1
        except SQLAlchemyError as exc:
            handle.errors.append(str(exc))
            logger.error(
                "audit_capture_context_failed actor_id=%s request_id=%s",
                context.actor_id,
                context.request_id,
                exc_info=exc,
            )

    event.listen(sync_session, "after_begin", _after_begin)
    handle._session = sync_session
    handle._listener = _after_begin
    return handle
