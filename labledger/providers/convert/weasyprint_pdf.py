from __future__ import annotations

import asyncio

from weasyprint import CSS, HTML


class WeasyPrintConverter:
    content_type = "application/pdf"
    extension = "pdf"

    def __init__(self, page_format: str = "A4") -> None:
        self._page_format = page_format

    def _write_pdf(self, markup: str, page_format: str) -> bytes:
        # The template's own @page rules win; this only sets the sheet size.
        page_css = CSS(string=f"@page {{ size: {page_format}; }}")
        return HTML(string=markup).write_pdf(stylesheets=[page_css])

    async def convert(self, markup: str, *, page_format: str | None = None) -> bytes:
        # WeasyPrint is CPU-bound and synchronous; keep it off the event loop.
        return await asyncio.to_thread(self._write_pdf, markup, page_format or self._page_format)
