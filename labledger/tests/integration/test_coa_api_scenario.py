from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from labledger.apps.api.main import create_app
from labledger.tests.utils.factories import dev_headers, seed_sample


pytestmark = pytest.mark.usefixtures("fresh_schema")


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_export_edit_export_keeps_history() -> None:
    seeded = await seed_sample(temperature="5")
    headers = dev_headers()

    async with _client() as client:
        first = await client.post(f"/v1/samples/{seeded.sample_id}/coa/export", headers=headers)
        assert first.status_code == 201
        v1 = first.json()["data"]
        assert v1["version"] == 1
        assert v1["status"] == "FINAL"

        download_v1 = await client.get(v1["download_url"], headers=headers)
        assert download_v1.status_code == 200
        assert download_v1.headers["content-type"] == "application/pdf"
        assert f'filename="COA-{seeded.sample_code}-v1.pdf"' in download_v1.headers["content-disposition"]

        patched = await client.patch(
            f"/v1/samples/{seeded.sample_id}",
            json={"temperature_on_receipt_c": 8, "reason": "thermometer recalibrated"},
            headers=headers,
        )
        assert patched.status_code == 200

        second = await client.post(f"/v1/samples/{seeded.sample_id}/coa/export", headers=headers)
        assert second.status_code == 201
        assert second.json()["data"]["version"] == 2

        listing = await client.get(f"/v1/samples/{seeded.sample_id}/coa", headers=headers)
        statuses = {item["version"]: item["status"] for item in listing.json()["data"]}
        assert statuses == {2: "FINAL", 1: "SUPERSEDED"}

        again_v1 = await client.get(v1["download_url"], headers=headers)
        assert again_v1.content == download_v1.content
        assert len(again_v1.content) == len(download_v1.content)

        detail = await client.get(f"/v1/reports/{v1['id']}", headers=headers)
        assert detail.json()["data"]["data_snapshot"]["sample"]["temperature_on_receipt_c"] == 5.0

        latest = await client.get(f"/v1/samples/{seeded.sample_id}/coa/latest", headers=headers)
        assert latest.json()["data"]["version"] == 2


@pytest.mark.asyncio
async def test_patch_is_audited_with_actor() -> None:
    seeded = await seed_sample(temperature="5")
    headers = dev_headers(actor_id="mgr-9", actor_email="mgr9@lims.local")

    async with _client() as client:
        response = await client.patch(
            f"/v1/samples/{seeded.sample_id}",
            json={"temperature_on_receipt_c": 8},
            headers={**headers, "User-Agent": "lims-ui/2.1", "X-Forwarded-For": "198.51.100.4"},
        )
        assert response.status_code == 200

        audit = await client.get(
            "/v1/audit",
            params={"subject_type": "Sample", "subject_id": seeded.sample_id},
            headers=headers,
        )
    assert audit.status_code == 200
    (entry,) = audit.json()["data"]["items"]
    assert entry["action"] == "UPDATE"
    assert entry["actor_id"] == "mgr-9"
    assert entry["actor_email"] == "mgr9@lims.local"
    assert entry["ip"] == "198.51.100.4"
    assert entry["user_agent"] == "lims-ui/2.1"
    assert entry["changes"]["temperature_on_receipt_c"] == {"old": 5, "new": 8}


@pytest.mark.asyncio
async def test_draft_finalize_and_approve_over_http() -> None:
    seeded = await seed_sample()
    analyst = dev_headers(actor_id="an-1", actor_email="an1@lims.local", role="ANALYST")
    manager = dev_headers()

    async with _client() as client:
        draft = await client.post(
            f"/v1/samples/{seeded.sample_id}/coa/drafts", json={"notes": "check units"}, headers=analyst
        )
        assert draft.status_code == 201
        draft_id = draft.json()["data"]["id"]

        forbidden = await client.post(f"/v1/reports/{draft_id}/finalize", headers=analyst)
        assert forbidden.status_code == 403
        assert forbidden.json()["error"]["code"] == "AUTH_FORBIDDEN"

        final = await client.post(f"/v1/reports/{draft_id}/finalize", headers=manager)
        assert final.status_code == 200
        assert final.json()["data"]["status"] == "FINAL"

        approved = await client.post(f"/v1/reports/{draft_id}/approve", headers=manager)
        assert approved.json()["data"]["approved_by_id"] == "user-1"

        refinalize = await client.post(f"/v1/reports/{draft_id}/finalize", headers=manager)
        assert refinalize.status_code == 422
        assert refinalize.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_preview_and_missing_sample() -> None:
    seeded = await seed_sample()
    headers = dev_headers()
    async with _client() as client:
        preview = await client.post(f"/v1/samples/{seeded.sample_id}/coa/preview", headers=headers)
        missing = await client.post("/v1/samples/missing/coa/export", headers=headers)
        listing = await client.get(f"/v1/samples/{seeded.sample_id}/coa", headers=headers)

    assert preview.status_code == 200
    assert preview.json()["data"]["version"] == 1
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"
    assert missing.json()["meta"]["api_version"] == "v1"
    assert listing.json()["data"] == []


@pytest.mark.asyncio
async def test_requests_without_identity_are_rejected() -> None:
    seeded = await seed_sample()
    async with _client() as client:
        response = await client.post(f"/v1/samples/{seeded.sample_id}/coa/export")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert response.headers["X-Request-Id"]
