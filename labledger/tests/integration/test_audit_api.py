from __future__ import annotations

import jwt
import pytest
from httpx import ASGITransport, AsyncClient

from labledger.apps.api.main import create_app
from labledger.core.config import get_settings
from labledger.persistence.db import SessionLocal
from labledger.services import audit as audit_service
from labledger.tests.utils.factories import actor_context, dev_headers, seed_sample


pytestmark = pytest.mark.usefixtures("fresh_schema")


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


async def _seed_entry() -> int:
    async with SessionLocal() as session:
        entry = await audit_service.log_create(session, actor_context(), "Sample", "s1", {"sample_code": "S-1"})
        await session.commit()
        return entry.id


@pytest.mark.asyncio
async def test_get_entry_by_id() -> None:
    entry_id = await _seed_entry()
    async with _client() as client:
        found = await client.get(f"/v1/audit/{entry_id}", headers=dev_headers())
        missing = await client.get("/v1/audit/999999", headers=dev_headers())
    assert found.status_code == 200
    assert found.json()["data"]["subject_id"] == "s1"
    assert missing.status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize("method", ["PUT", "PATCH", "DELETE"])
async def test_audit_entries_have_no_write_path(method: str) -> None:
    entry_id = await _seed_entry()
    async with _client() as client:
        response = await client.request(method, f"/v1/audit/{entry_id}", headers=dev_headers(), json={})
    assert response.status_code == 405
    assert response.json()["error"]["code"] == "METHOD_NOT_ALLOWED"

    async with SessionLocal() as session:
        entry = await audit_service.get_entry(session, entry_id)
    assert entry["changes"] == {"sample_code": {"old": None, "new": "S-1"}}


@pytest.mark.asyncio
async def test_audit_log_requires_manager_role() -> None:
    async with _client() as client:
        response = await client.get("/v1/audit", headers=dev_headers(role="ANALYST"))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_grouped_listing_over_http() -> None:
    seeded = await seed_sample(with_tests=False, with_pack=True)
    headers = dev_headers()
    async with _client() as client:
        applied = await client.post(
            f"/v1/samples/{seeded.sample_id}/test-packs/{seeded.pack_id}", headers=headers
        )
        assert applied.status_code == 201
        tag = applied.json()["data"]["transaction_tag"]

        grouped = await client.get("/v1/audit", params={"grouped": "true"}, headers=headers)
    body = grouped.json()["data"]
    assert body["grouped"] is True
    assert body["total"] == 1
    assert body["items"][0]["transaction_tag"] == tag
    assert len(body["items"][0]["entries"]) == 3


@pytest.mark.asyncio
async def test_bearer_token_identity() -> None:
    settings = get_settings()
    token = jwt.encode(
        {"sub": "jwt-user", "email": "jwt@lims.local", "role": "ADMIN"},
        settings.auth_jwt_secret,
        algorithm=settings.auth_jwt_algorithm,
    )
    async with _client() as client:
        ok = await client.get("/v1/audit", headers={"Authorization": f"Bearer {token}"})
        bad = await client.get("/v1/audit", headers={"Authorization": "Bearer not-a-token"})
    assert ok.status_code == 200
    assert bad.status_code == 401


@pytest.mark.asyncio
async def test_invalid_filters_use_error_envelope() -> None:
    async with _client() as client:
        response = await client.get("/v1/audit", params={"page": 0}, headers=dev_headers())
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_health_reports_pool_stats() -> None:
    async with _client() as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["status"] == "ok"
    assert "checked_out" in body["data"]["db_pool"]
    assert body["meta"]["request_id"] == "req-123"
    assert response.headers["X-Request-Id"] == "req-123"
