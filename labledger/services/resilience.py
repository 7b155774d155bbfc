from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from labledger.core.config import get_settings
from labledger.core.errors import LabLedgerError, UpstreamFailureError


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, asyncio.TimeoutError, OSError, ConnectionError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, LabLedgerError):
        return False
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize external retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def render_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(timeout_ms=settings.report_render_timeout_ms, max_attempts=1, backoff_ms=0)


def convert_policy() -> RetryPolicy:
    # Conversion may be slow or remote and runs at most once per export attempt.
    settings = get_settings()
    return RetryPolicy(timeout_ms=settings.report_convert_timeout_ms, max_attempts=1, backoff_ms=0)


def store_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.report_store_timeout_ms,
        max_attempts=settings.report_store_max_attempts,
        backoff_ms=settings.report_store_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            logger.warning("external_call_retry attempt=%s sleep_s=%.3f", attempt, sleep_s, exc_info=exc)
            await asyncio.sleep(sleep_s)
            attempt += 1


async def call_with_timeout(func: Callable[[], Awaitable[Any]], *, timeout_ms: int) -> Any:
    return await asyncio.wait_for(func(), timeout=timeout_ms / 1000.0)


async def upstream_call(
    step: str,
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
) -> Any:
    # Domain errors pass through; anything else from a provider becomes UpstreamFailureError.
    try:
        if policy.max_attempts <= 1:
            return await call_with_timeout(func, timeout_ms=policy.timeout_ms)
        return await retry_async(func, policy=policy)
    except LabLedgerError:
        raise
    except (TimeoutError, asyncio.TimeoutError) as exc:
        logger.error("upstream_timeout step=%s timeout_ms=%s", step, policy.timeout_ms)
        raise UpstreamFailureError(
            f"{step} timed out", details={"step": step, "timeout_ms": policy.timeout_ms}
        ) from exc
    except Exception as exc:  # noqa: BLE001 - provider SDKs raise heterogeneous errors
        logger.error("upstream_failure step=%s error=%s", step, exc.__class__.__name__, exc_info=exc)
        raise UpstreamFailureError(f"{step} failed", details={"step": step}) from exc
