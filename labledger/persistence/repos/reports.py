from __future__ import annotations

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from labledger.domain.models import ReportStatus, ReportVersion


async def max_version(session: AsyncSession, sample_id: str) -> int:
    result = await session.execute(
        select(func.max(ReportVersion.version)).where(ReportVersion.sample_id == sample_id)
    )
    return int(result.scalar_one_or_none() or 0)


async def add_version(session: AsyncSession, version: ReportVersion) -> ReportVersion:
    # Flush so uniqueness violations surface here, inside the caller's transaction.
    session.add(version)
    await session.flush()
    return version


async def supersede_finals(
    session: AsyncSession,
    *,
    sample_id: str,
    actor_id: str,
    below_version: int | None = None,
) -> int:
    # Status-only update; write-once columns are untouched.
    stmt = (
        update(ReportVersion)
        .where(
            ReportVersion.sample_id == sample_id,
            ReportVersion.status == ReportStatus.FINAL.value,
        )
        .values(status=ReportStatus.SUPERSEDED.value, updated_by_id=actor_id)
        .execution_options(synchronize_session="fetch")
    )
    if below_version is not None:
        stmt = stmt.where(ReportVersion.version < below_version)
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


async def has_final_above(session: AsyncSession, *, sample_id: str, version: int) -> bool:
    result = await session.execute(
        select(ReportVersion.id)
        .where(
            ReportVersion.sample_id == sample_id,
            ReportVersion.status == ReportStatus.FINAL.value,
            ReportVersion.version > version,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def get_version(
    session: AsyncSession,
    version_id: str,
    *,
    for_update: bool = False,
) -> ReportVersion | None:
    stmt = select(ReportVersion).where(ReportVersion.id == version_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_versions(session: AsyncSession, sample_id: str) -> list[ReportVersion]:
    result = await session.execute(
        select(ReportVersion)
        .where(ReportVersion.sample_id == sample_id)
        .order_by(ReportVersion.version.desc())
    )
    return list(result.scalars().all())


async def get_latest(session: AsyncSession, sample_id: str) -> ReportVersion | None:
    result = await session.execute(
        select(ReportVersion)
        .where(ReportVersion.sample_id == sample_id)
        .order_by(ReportVersion.version.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def count_finals(session: AsyncSession, sample_id: str) -> int:
    result = await session.execute(
        select(func.count(ReportVersion.id)).where(
            ReportVersion.sample_id == sample_id,
            ReportVersion.status == ReportStatus.FINAL.value,
        )
    )
    return int(result.scalar_one())
