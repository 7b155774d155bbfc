from __future__ import annotations

from datetime import datetime, timezone

from labledger.domain.snapshots import (
    ClientSnapshot,
    MethodSnapshot,
    ReportMetadata,
    ReportSnapshot,
    SampleSnapshot,
    SpecificationSnapshot,
    StatusFlags,
    TemplateSettings,
    TestLineSnapshot,
)
from labledger.providers.render.html import CoaHtmlRenderer, format_date


def _snapshot(*, version: int = 1, template: TemplateSettings | None = None, **sample_overrides) -> ReportSnapshot:
    sample = {
        "sample_id": "s1",
        "job_number": "JOB-1",
        "sample_code": "S-001",
        "client": ClientSnapshot(name="Acme <Foods>", email="qa@acme.example"),
        "date_received": datetime(2026, 5, 1, tzinfo=timezone.utc),
        "temperature_on_receipt_c": 5.0,
        "status_flags": StatusFlags(urgent=True, retest=True),
    }
    sample.update(sample_overrides)
    return ReportSnapshot(
        sample=SampleSnapshot(**sample),
        tests=[
            TestLineSnapshot(
                test_id="t1",
                test_name="Total Plate Count",
                section="Microbiology",
                method=MethodSnapshot(code="M-1", name="ISO 4833", unit="CFU/g"),
                specification=SpecificationSnapshot(code="SP-1", name="TPC", max_value=1000, unit="CFU/g"),
                status="COMPLETED",
                result="1200",
                oos=True,
            )
        ],
        metadata=ReportMetadata(
            version=version,
            generated_at=datetime(2026, 5, 2, 9, 30, tzinfo=timezone.utc),
            generated_by="manager@lims.local",
            lab_name="Laboratory LIMS Pro",
            disclaimer_text="Results apply only to the sample tested.",
            template_settings=template or TemplateSettings(),
        ),
    )


def test_render_includes_version_banner_and_title() -> None:
    html = CoaHtmlRenderer().render(_snapshot(version=3))
    assert "<title>Certificate of Analysis - S-001 - Version 3</title>" in html
    assert "Version 3" in html
    assert "Laboratory LIMS Pro" in html
    assert "Results apply only to the sample tested." in html


def test_render_is_deterministic_for_same_snapshot() -> None:
    renderer = CoaHtmlRenderer()
    snapshot = _snapshot()
    assert renderer.render(snapshot) == renderer.render(snapshot.to_document())


def test_render_escapes_markup_in_values() -> None:
    html = CoaHtmlRenderer().render(_snapshot())
    assert "Acme &lt;Foods&gt;" in html
    assert "Acme <Foods>" not in html


def test_render_flags_chips_and_oos_cells() -> None:
    html = CoaHtmlRenderer().render(_snapshot())
    assert "URGENT" in html
    assert "Re-Test" in html
    assert 'class="oos-yes"' in html
    assert "≤ 1000 CFU/g" in html
    assert "5 °C" in html


def test_template_settings_control_columns_and_labels() -> None:
    template = TemplateSettings(
        visible_fields=["test", "result", "sample_code"],
        label_overrides={"result": "Outcome"},
        column_order=["result", "test"],
    )
    html = CoaHtmlRenderer().render(_snapshot(template=template))
    assert html.index("<th>Outcome</th>") < html.index("<th>Test</th>")
    assert "<th>Analyst</th>" not in html
    assert "Job Number" not in html


def test_format_date_uses_fixed_format() -> None:
    assert format_date(datetime(2026, 1, 9, 23, 59)) == "2026-01-09"
    assert format_date(None) == "N/A"
