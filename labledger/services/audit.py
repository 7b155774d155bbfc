"""Append-only audit trail.

Writers add exactly one entry per create/update/delete (none for a no-op
update) inside the caller's transaction; the caller commits. Readers get
plain dictionaries so routes and tests never touch ORM state.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from labledger.core.config import get_settings
from labledger.core.errors import DatabaseError, NotFoundError
from labledger.domain.models import AuditAction, AuditEntry
from labledger.persistence.repos import audit as audit_repo
from labledger.persistence.repos.audit import AuditFilters
from labledger.services.audit_context import AuditContext
from labledger.services.diff import Changes, diff_for_create, diff_for_delete, diff_for_update


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditPage:
    items: list[dict[str, Any]]
    total: int
    page: int
    per_page: int
    grouped: bool = False

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.per_page) if self.per_page else 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "items": self.items,
            "total": self.total,
            "page": self.page,
            "per_page": self.per_page,
            "total_pages": self.total_pages,
            "grouped": self.grouped,
        }


@dataclass
class AuditGroup:
    key: str
    transaction_tag: str | None
    at: datetime
    actor_id: str
    actor_email: str
    ip: str | None
    user_agent: str | None
    entries: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "transaction_tag": self.transaction_tag,
            "at": _iso(self.at),
            "actor_id": self.actor_id,
            "actor_email": self.actor_email,
            "ip": self.ip,
            "user_agent": self.user_agent,
            "entries": self.entries,
        }


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def serialize_entry(entry: AuditEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "actor_id": entry.actor_id,
        "actor_email": entry.actor_email,
        "ip": entry.ip,
        "user_agent": entry.user_agent,
        "action": entry.action,
        "subject_type": entry.subject_type,
        "subject_id": entry.subject_id,
        "changes": entry.changes,
        "reason": entry.reason,
        "transaction_tag": entry.transaction_tag,
        "at": _iso(entry.at),
    }


def generate_transaction_tag() -> str:
    # uuid4 keeps tags collision-free across concurrent requests and processes.
    return f"tx-{uuid4().hex}"


async def _append(
    session: AsyncSession,
    context: AuditContext,
    *,
    action: AuditAction,
    subject_type: str,
    subject_id: str,
    changes: Changes,
    reason: str | None,
) -> AuditEntry:
    context.require()
    entry = AuditEntry(
        actor_id=context.actor_id,
        actor_email=context.actor_email,
        ip=context.ip,
        user_agent=context.user_agent,
        action=action.value,
        subject_type=subject_type,
        subject_id=str(subject_id),
        changes=changes,
        reason=reason,
        transaction_tag=(context.transaction_tag or "").strip() or None,
        at=datetime.now(timezone.utc),
    )
    try:
        return await audit_repo.add_entry(session, entry)
    except SQLAlchemyError as exc:
        # An unrecorded mutation is a correctness bug; abort the caller's transaction.
        logger.error(
            "audit_append_failed action=%s subject_type=%s subject_id=%s",
            action.value,
            subject_type,
            subject_id,
            exc_info=exc,
        )
        raise DatabaseError(
            "Failed to append audit entry",
            details={"subject_type": subject_type, "subject_id": str(subject_id)},
        ) from exc


async def log_create(
    session: AsyncSession,
    context: AuditContext,
    subject_type: str,
    subject_id: str,
    new_fields: Mapping[str, Any],
    reason: str | None = None,
) -> AuditEntry:
    return await _append(
        session,
        context,
        action=AuditAction.CREATE,
        subject_type=subject_type,
        subject_id=subject_id,
        changes=diff_for_create(new_fields),
        reason=reason,
    )


async def log_update(
    session: AsyncSession,
    context: AuditContext,
    subject_type: str,
    subject_id: str,
    old_fields: Mapping[str, Any],
    new_fields: Mapping[str, Any],
    reason: str | None = None,
) -> AuditEntry | None:
    # Check attribution first so a no-op from an anonymous caller still fails loudly.
    context.require()
    changes = diff_for_update(old_fields, new_fields)
    if not changes:
        logger.debug("audit_update_noop subject_type=%s subject_id=%s", subject_type, subject_id)
        return None
    return await _append(
        session,
        context,
        action=AuditAction.UPDATE,
        subject_type=subject_type,
        subject_id=subject_id,
        changes=changes,
        reason=reason,
    )


async def log_delete(
    session: AsyncSession,
    context: AuditContext,
    subject_type: str,
    subject_id: str,
    old_fields: Mapping[str, Any],
    reason: str | None = None,
) -> AuditEntry:
    return await _append(
        session,
        context,
        action=AuditAction.DELETE,
        subject_type=subject_type,
        subject_id=subject_id,
        changes=diff_for_delete(old_fields),
        reason=reason,
    )


def _page_bounds(page: int | None, per_page: int | None) -> tuple[int, int]:
    settings = get_settings()
    page = max(int(page or 1), 1)
    per_page = int(per_page or settings.audit_default_page_size)
    per_page = max(1, min(per_page, settings.audit_max_page_size))
    return page, per_page


async def query(
    session: AsyncSession,
    filters: AuditFilters | None = None,
    *,
    page: int | None = None,
    per_page: int | None = None,
) -> AuditPage:
    filters = filters or AuditFilters()
    page, per_page = _page_bounds(page, per_page)
    total = await audit_repo.count_entries(session, filters)
    entries = await audit_repo.list_entries(
        session, filters, offset=(page - 1) * per_page, limit=per_page
    )
    return AuditPage(
        items=[serialize_entry(entry) for entry in entries],
        total=total,
        page=page,
        per_page=per_page,
    )


async def query_grouped(
    session: AsyncSession,
    filters: AuditFilters | None = None,
    *,
    page: int | None = None,
    per_page: int | None = None,
) -> AuditPage:
    """Return transaction groups, newest first; pagination counts groups.

    Entries come back newest first, so the first entry of each group supplies
    the group's timestamp and provenance.
    """
    filters = filters or AuditFilters()
    page, per_page = _page_bounds(page, per_page)
    total = await audit_repo.count_groups(session, filters)
    keys = await audit_repo.list_group_keys(
        session, filters, offset=(page - 1) * per_page, limit=per_page
    )
    entries = await audit_repo.list_entries_in_groups(session, filters, keys)

    groups: dict[str, AuditGroup] = {}
    for entry in entries:
        key = entry.transaction_tag or f"entry-{entry.id}"
        group = groups.get(key)
        if group is None:
            group = AuditGroup(
                key=key,
                transaction_tag=entry.transaction_tag or None,
                at=entry.at,
                actor_id=entry.actor_id,
                actor_email=entry.actor_email,
                ip=entry.ip,
                user_agent=entry.user_agent,
            )
            groups[key] = group
        group.entries.append(serialize_entry(entry))

    ordered = [groups[key].as_dict() for key in keys if key in groups]
    return AuditPage(items=ordered, total=total, page=page, per_page=per_page, grouped=True)


async def get_entry(session: AsyncSession, entry_id: int) -> dict[str, Any]:
    entry = await audit_repo.get_entry_by_id(session, entry_id)
    if entry is None:
        raise NotFoundError("Audit entry not found", details={"audit_entry_id": entry_id})
    return serialize_entry(entry)
