from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from labledger.domain.models import Sample, TestAssignment, TestPack, TestPackItem


async def get_sample(session: AsyncSession, sample_id: str) -> Sample | None:
    result = await session.execute(select(Sample).where(Sample.id == sample_id))
    return result.scalar_one_or_none()


async def get_sample_for_report(
    session: AsyncSession,
    sample_id: str,
    *,
    for_update: bool = False,
) -> Sample | None:
    # Eager-load everything the snapshot reads; lazy loads are not allowed under asyncio.
    stmt = (
        select(Sample)
        .where(Sample.id == sample_id)
        .options(
            selectinload(Sample.job),
            selectinload(Sample.client),
            selectinload(Sample.tests).selectinload(TestAssignment.section),
            selectinload(Sample.tests).selectinload(TestAssignment.method),
            selectinload(Sample.tests).selectinload(TestAssignment.specification),
            selectinload(Sample.tests).selectinload(TestAssignment.test_definition),
            selectinload(Sample.tests).selectinload(TestAssignment.analyst),
            selectinload(Sample.tests).selectinload(TestAssignment.checker),
        )
        .execution_options(populate_existing=True)
    )
    if for_update:
        # Serializes exports of the same sample on PostgreSQL; a no-op on SQLite.
        stmt = stmt.with_for_update(of=Sample)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_test(session: AsyncSession, test_id: str) -> TestAssignment | None:
    result = await session.execute(
        select(TestAssignment)
        .where(TestAssignment.id == test_id)
        .options(selectinload(TestAssignment.specification))
    )
    return result.scalar_one_or_none()


async def get_test_pack(session: AsyncSession, pack_id: str) -> TestPack | None:
    result = await session.execute(
        select(TestPack)
        .where(TestPack.id == pack_id)
        .options(selectinload(TestPack.items).selectinload(TestPackItem.test_definition))
    )
    return result.scalar_one_or_none()
