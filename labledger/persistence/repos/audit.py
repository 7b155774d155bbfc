from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import String, Select, cast, func, literal_column, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from labledger.domain.models import AuditEntry


@dataclass(frozen=True)
class AuditFilters:
    # Every filter is optional; set filters combine with AND.
    subject_type: str | None = None
    subject_id: str | None = None
    actor_id: str | None = None
    action: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    transaction_tag: str | None = None


def _apply_filters(stmt: Select, filters: AuditFilters) -> Select:
    if filters.subject_type:
        stmt = stmt.where(AuditEntry.subject_type == filters.subject_type)
    if filters.subject_id:
        stmt = stmt.where(AuditEntry.subject_id == filters.subject_id)
    if filters.actor_id:
        stmt = stmt.where(AuditEntry.actor_id == filters.actor_id)
    if filters.action:
        stmt = stmt.where(AuditEntry.action == filters.action)
    # Date bounds are inclusive at both ends.
    if filters.date_from:
        stmt = stmt.where(AuditEntry.at >= filters.date_from)
    if filters.date_to:
        stmt = stmt.where(AuditEntry.at <= filters.date_to)
    if filters.transaction_tag:
        stmt = stmt.where(AuditEntry.transaction_tag == filters.transaction_tag)
    return stmt


def group_key_expression():
    # Untagged and empty-tag entries form singleton groups keyed by their own id. The prefix is
    # rendered inline so GROUP BY matches the selected expression.
    return func.coalesce(
        func.nullif(AuditEntry.transaction_tag, ""),
        literal_column("'entry-'", String).concat(cast(AuditEntry.id, String)),
    )


async def add_entry(session: AsyncSession, entry: AuditEntry) -> AuditEntry:
    # Flush without committing so the entry shares the caller's transaction.
    session.add(entry)
    await session.flush()
    return entry


async def list_entries(
    session: AsyncSession,
    filters: AuditFilters,
    *,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEntry]:
    stmt = _apply_filters(select(AuditEntry), filters)
    stmt = stmt.order_by(AuditEntry.at.desc(), AuditEntry.id.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_entries(session: AsyncSession, filters: AuditFilters) -> int:
    stmt = _apply_filters(select(func.count(AuditEntry.id)), filters)
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def list_group_keys(
    session: AsyncSession,
    filters: AuditFilters,
    *,
    offset: int = 0,
    limit: int = 50,
) -> list[str]:
    group_key = group_key_expression().label("group_key")
    stmt = _apply_filters(
        select(group_key, func.max(AuditEntry.at).label("group_at"), func.max(AuditEntry.id).label("group_id")),
        filters,
    )
    stmt = (
        stmt.group_by(group_key)
        .order_by(func.max(AuditEntry.at).desc(), func.max(AuditEntry.id).desc())
        .offset(offset)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return [row.group_key for row in result]


async def count_groups(session: AsyncSession, filters: AuditFilters) -> int:
    keys = _apply_filters(select(group_key_expression().label("group_key")), filters).distinct().subquery()
    result = await session.execute(select(func.count()).select_from(keys))
    return int(result.scalar_one())


async def list_entries_in_groups(
    session: AsyncSession,
    filters: AuditFilters,
    group_keys: list[str],
) -> list[AuditEntry]:
    if not group_keys:
        return []
    tags = [key for key in group_keys if not key.startswith("entry-")]
    ids = [int(key.removeprefix("entry-")) for key in group_keys if key.startswith("entry-")]
    conditions = []
    if tags:
        conditions.append(AuditEntry.transaction_tag.in_(tags))
    if ids:
        conditions.append(AuditEntry.id.in_(ids))
    stmt = _apply_filters(select(AuditEntry), filters).where(or_(*conditions))
    stmt = stmt.order_by(AuditEntry.at.desc(), AuditEntry.id.desc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_entry_by_id(session: AsyncSession, entry_id: int) -> AuditEntry | None:
    result = await session.execute(select(AuditEntry).where(AuditEntry.id == entry_id))
    return result.scalar_one_or_none()
