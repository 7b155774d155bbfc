from __future__ import annotations

from typing import Any, Mapping, Protocol


class ReportRenderer(Protocol):
    # Pure and deterministic: identical snapshots render identical markup.
    def render(self, data_snapshot: Mapping[str, Any]) -> str:
        ...
