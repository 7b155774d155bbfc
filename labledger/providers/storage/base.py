from __future__ import annotations

from typing import Protocol


class ObjectStore(Protocol):
    # Keys are opaque and caller-chosen; an existing key is never overwritten.
    async def put(self, key: str, data: bytes, content_type: str) -> str:
        ...

    async def get(self, key: str) -> bytes:
        ...

    async def exists(self, key: str) -> bool:
        ...
