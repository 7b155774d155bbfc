from __future__ import annotations

import asyncio

from labledger.core.errors import ConflictError, NotFoundError


class MemoryObjectStore:
    def __init__(self) -> None:
        self._objects: dict[str, tuple[bytes, str]] = {}
        self._lock = asyncio.Lock()

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        async with self._lock:
            if key in self._objects:
                raise ConflictError("Object key already exists", details={"key": key})
            self._objects[key] = (bytes(data), content_type)
        return key

    async def get(self, key: str) -> bytes:
        try:
            return self._objects[key][0]
        except KeyError:
            raise NotFoundError("Stored object not found", details={"key": key}) from None

    async def exists(self, key: str) -> bool:
        return key in self._objects

    def keys(self) -> list[str]:
        return sorted(self._objects)

    def clear(self) -> None:
        self._objects.clear()
