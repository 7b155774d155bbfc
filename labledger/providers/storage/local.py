from __future__ import annotations

import asyncio
import os
from pathlib import Path

from labledger.core.errors import ConflictError, NotFoundError


class LocalObjectStore:
    def __init__(self, root_dir: str | Path) -> None:
        self._root = Path(root_dir).resolve()

    def _path_for(self, key: str) -> Path:
        # Keys may contain "/" prefixes but must stay inside the root.
        path = (self._root / key).resolve()
        if self._root not in path.parents:
            raise NotFoundError("Object key outside store root", details={"key": key})
        return path

    def _write_new(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        # O_EXCL makes the existence check and the create one atomic step.
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o640)
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path_for(key)
        try:
            await asyncio.to_thread(self._write_new, path, data)
        except FileExistsError as exc:
            raise ConflictError("Object key already exists", details={"key": key}) from exc
        return key

    async def get(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise NotFoundError("Stored object not found", details={"key": key}) from exc

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._path_for(key).is_file)
