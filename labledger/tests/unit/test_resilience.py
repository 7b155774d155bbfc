from __future__ import annotations

import asyncio

import pytest

from labledger.core.errors import NotFoundError, UpstreamFailureError
from labledger.services.resilience import RetryPolicy, retry_async, upstream_call


@pytest.mark.asyncio
async def test_retry_async_recovers_from_transient_failure() -> None:
    calls = {"count": 0}

    async def _flaky() -> str:
        calls["count"] += 1
        if calls["count"] == 1:
            raise ConnectionError("reset")
        return "ok"

    result = await retry_async(_flaky, policy=RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=1))
    assert result == "ok"
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_domain_errors() -> None:
    calls = {"count": 0}

    async def _missing() -> None:
        calls["count"] += 1
        raise NotFoundError("gone")

    with pytest.raises(NotFoundError):
        await retry_async(_missing, policy=RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_upstream_call_wraps_provider_errors() -> None:
    async def _boom() -> None:
        raise RuntimeError("converter crashed")

    with pytest.raises(UpstreamFailureError) as excinfo:
        await upstream_call("convert", _boom, policy=RetryPolicy(timeout_ms=1000, max_attempts=1, backoff_ms=0))
    assert excinfo.value.details == {"step": "convert"}


@pytest.mark.asyncio
async def test_upstream_call_reports_timeouts() -> None:
    async def _slow() -> None:
        await asyncio.sleep(1)

    with pytest.raises(UpstreamFailureError, match="render timed out"):
        await upstream_call("render", _slow, policy=RetryPolicy(timeout_ms=10, max_attempts=1, backoff_ms=0))


@pytest.mark.asyncio
async def test_upstream_call_passes_domain_errors_through() -> None:
    async def _missing() -> None:
        raise NotFoundError("Stored object not found")

    with pytest.raises(NotFoundError):
        await upstream_call("fetch", _missing, policy=RetryPolicy(timeout_ms=1000, max_attempts=2, backoff_ms=1))
