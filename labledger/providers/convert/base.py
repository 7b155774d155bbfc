from __future__ import annotations

from typing import Protocol


class DocumentConverter(Protocol):
    content_type: str
    extension: str

    async def convert(self, markup: str, *, page_format: str | None = None) -> bytes:
        ...
