from __future__ import annotations

import asyncio
from typing import Any

from botocore.exceptions import ClientError

from labledger.core.errors import ConflictError, NotFoundError


_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3ObjectStore:
    def __init__(
        self,
        bucket: str,
        *,
        region: str | None = None,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        client: Any | None = None,
    ) -> None:
        self._bucket = bucket
        self._region = region
        self._endpoint_url = endpoint_url
        self._access_key = access_key
        self._secret_key = secret_key
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        import boto3

        # endpoint_url lets the same code target MinIO in local stacks.
        self._client = boto3.client(
            "s3",
            region_name=self._region,
            endpoint_url=self._endpoint_url,
            aws_access_key_id=self._access_key,
            aws_secret_access_key=self._secret_key,
        )
        return self._client

    def _head(self, key: str) -> bool:
        try:
            self._get_client().head_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                return False
            raise
        return True

    def _put(self, key: str, data: bytes, content_type: str) -> None:
        if self._head(key):
            raise ConflictError("Object key already exists", details={"key": key})
        self._get_client().put_object(
            Bucket=self._bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )

    def _get(self, key: str) -> bytes:
        try:
            response = self._get_client().get_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                raise NotFoundError("Stored object not found", details={"key": key}) from exc
            raise
        return response["Body"].read()

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        # boto3 is blocking; run calls in worker threads.
        await asyncio.to_thread(self._put, key, data, content_type)
        return key

    async def get(self, key: str) -> bytes:
        return await asyncio.to_thread(self._get, key)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._head, key)
