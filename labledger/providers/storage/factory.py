from __future__ import annotations

from labledger.core.config import get_settings
from labledger.core.errors import UpstreamFailureError
from labledger.providers.storage.local import LocalObjectStore
from labledger.providers.storage.memory import MemoryObjectStore
from labledger.providers.storage.s3 import S3ObjectStore


_memory_store: MemoryObjectStore | None = None


def get_memory_store() -> MemoryObjectStore:
    # One process-wide memory store so uploads survive across requests in tests.
    global _memory_store
    if _memory_store is None:
        _memory_store = MemoryObjectStore()
    return _memory_store


def get_object_store():
    settings = get_settings()
    backend = (settings.report_storage_backend or "local").lower()

    if backend == "memory":
        return get_memory_store()
    if backend == "local":
        return LocalObjectStore(settings.report_storage_local_dir)
    if backend == "s3":
        if not settings.report_s3_bucket:
            raise UpstreamFailureError("REPORT_S3_BUCKET is required for the s3 storage backend")
        return S3ObjectStore(
            settings.report_s3_bucket,
            region=settings.report_s3_region,
            endpoint_url=settings.report_s3_endpoint_url,
            access_key=settings.report_s3_access_key,
            secret_key=settings.report_s3_secret_key,
        )

    raise UpstreamFailureError(f"Unsupported storage backend: {backend}")
