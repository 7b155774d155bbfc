from __future__ import annotations

from labledger.core.config import get_settings
from labledger.core.errors import UpstreamFailureError
from labledger.providers.convert.fake import FakeConverter


def get_document_converter():
    settings = get_settings()
    converter = (settings.report_converter or "weasyprint").lower()

    if converter == "fake":
        return FakeConverter()
    if converter == "weasyprint":
        # Imported lazily so environments without native Pango libs can still use the fake.
        from labledger.providers.convert.weasyprint_pdf import WeasyPrintConverter

        return WeasyPrintConverter(page_format=settings.report_page_format)

    raise UpstreamFailureError(f"Unsupported report converter: {converter}")
