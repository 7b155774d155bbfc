from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from uuid import uuid4

from labledger.domain.models import (
    Client,
    Job,
    Method,
    Sample,
    Section,
    Specification,
    TestAssignment,
    TestDefinition,
    TestPack,
    TestPackItem,
    User,
)
from labledger.persistence.db import SessionLocal
from labledger.services.audit_context import AuditContext


SEED_ACTOR_ID = "seed-user"


def actor_context(
    actor_id: str = "user-1",
    actor_email: str = "analyst@lims.local",
    **overrides,
) -> AuditContext:
    return AuditContext(
        actor_id=actor_id,
        actor_email=actor_email,
        ip=overrides.pop("ip", "10.0.0.5"),
        user_agent=overrides.pop("user_agent", "pytest"),
        **overrides,
    )


def dev_headers(
    actor_id: str = "user-1",
    actor_email: str = "manager@lims.local",
    role: str = "LAB_MANAGER",
) -> dict[str, str]:
    # Identity headers accepted when AUTH_DEV_BYPASS is on.
    return {"X-Actor-Id": actor_id, "X-Actor-Email": actor_email, "X-Role": role}


@dataclass
class SeededSample:
    sample_id: str
    sample_code: str
    client_id: str
    job_id: str
    test_ids: list[str] = field(default_factory=list)
    pack_id: str | None = None


async def seed_sample(
    *,
    temperature: str | None = "5",
    with_tests: bool = True,
    with_pack: bool = False,
) -> SeededSample:
    # Seed directly through the ORM; seeding is not an audited mutation.
    suffix = uuid4().hex[:8]
    async with SessionLocal() as session:
        analyst = User(email=f"analyst-{suffix}@lims.local", name="Ada Analyst", role="ANALYST")
        client = Client(
            name="Acme Foods",
            contact_name="Jane Doe",
            email="qa@acme.example",
            address="1 Test Street",
        )
        session.add_all([analyst, client])
        await session.flush()

        job = Job(
            job_number=f"JOB-{suffix}",
            client_id=client.id,
            created_by_id=SEED_ACTOR_ID,
            updated_by_id=SEED_ACTOR_ID,
        )
        session.add(job)
        await session.flush()

        sample = Sample(
            job_id=job.id,
            client_id=client.id,
            sample_code=f"S-{suffix}",
            sample_description="Raw material lot",
            temperature_on_receipt_c=Decimal(temperature) if temperature is not None else None,
            created_by_id=SEED_ACTOR_ID,
            updated_by_id=SEED_ACTOR_ID,
        )
        micro = Section(name=f"Microbiology-{suffix}")
        method = Method(code=f"M-{suffix}", name="Total Plate Count", unit="CFU/g")
        spec = Specification(code=f"SP-{suffix}", name="TPC limit", max_value=Decimal("1000"), unit="CFU/g")
        session.add_all([sample, micro, method, spec])
        await session.flush()

        seeded = SeededSample(
            sample_id=sample.id,
            sample_code=sample.sample_code,
            client_id=client.id,
            job_id=job.id,
        )

        if with_tests:
            test = TestAssignment(
                sample_id=sample.id,
                section_id=micro.id,
                method_id=method.id,
                specification_id=spec.id,
                custom_test_name="Total Plate Count",
                result="120",
                result_unit="CFU/g",
                analyst_id=analyst.id,
                created_by_id=SEED_ACTOR_ID,
                updated_by_id=SEED_ACTOR_ID,
            )
            session.add(test)
            await session.flush()
            seeded.test_ids.append(test.id)

        if with_pack:
            definitions = [
                TestDefinition(
                    name=name,
                    section_id=micro.id,
                    method_id=method.id,
                    specification_id=spec.id,
                    default_due_days=5,
                )
                for name in ("Yeast and Mould", "E. coli", "Salmonella")
            ]
            session.add_all(definitions)
            await session.flush()
            pack = TestPack(name=f"Micro pack {suffix}")
            session.add(pack)
            await session.flush()
            session.add_all(
                [
                    TestPackItem(test_pack_id=pack.id, test_definition_id=definition.id, position=index)
                    for index, definition in enumerate(definitions)
                ]
            )
            seeded.pack_id = pack.id

        await session.commit()
    return seeded
