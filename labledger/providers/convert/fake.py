from __future__ import annotations

import hashlib


class FakeConverter:
    content_type = "application/pdf"
    extension = "pdf"

    def __init__(self) -> None:
        # Count calls so tests can assert one conversion per export attempt.
        self.calls = 0

    async def convert(self, markup: str, *, page_format: str | None = None) -> bytes:
        self.calls += 1
        # Deterministic bytes derived from the markup; no external binaries needed.
        digest = hashlib.sha256(markup.encode("utf-8")).hexdigest()
        return b"%PDF-1.4\n% fake " + digest.encode("ascii") + b"\n" + markup.encode("utf-8") + b"\n%%EOF\n"
