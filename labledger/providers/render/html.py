from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from labledger.domain.snapshots import ReportSnapshot, TestLineSnapshot


TEMPLATE_DIR = Path(__file__).parent / "templates"
DEFAULT_TEMPLATE = "coa.html.j2"
NOT_AVAILABLE = "N/A"

DEFAULT_COLUMN_ORDER = (
    "section",
    "test",
    "method",
    "specification",
    "result",
    "unit",
    "test_date",
    "analyst",
    "checked_by",
    "checked_date",
    "oos",
    "comments",
)

_DEFAULT_LABELS = {
    "section": "Section",
    "test": "Test",
    "method": "Method",
    "specification": "Specification",
    "result": "Result",
    "unit": "Unit",
    "test_date": "Test Date",
    "analyst": "Analyst",
    "checked_by": "Checked By",
    "checked_date": "Checked Date",
    "oos": "OOS",
    "comments": "Comments",
    "sample_information": "Sample Information",
    "test_results": "Test Results",
    "job_number": "Job Number",
    "sample_code": "Sample Code",
    "sample_description": "Description",
    "uin_code": "UIN Code",
    "sample_batch": "Batch",
    "date_received": "Date Received",
    "date_due": "Date Due",
    "need_by_date": "Need By Date",
    "mcd_date": "MCD Date",
    "release_date": "Release Date",
    "rm_supplier": "RM Supplier",
    "temperature_on_receipt_c": "Temperature on Receipt",
    "storage_conditions": "Storage Conditions",
}

# Chip label per status flag, in display order.
_FLAG_CHIPS = (
    ("urgent", "URGENT"),
    ("expired_raw_material", "Expired Raw Material"),
    ("post_irradiated_raw_material", "Post-Irradiated"),
    ("stability_study", "Stability Study"),
    ("retest", "Re-Test"),
)


def format_date(value: datetime | None) -> str:
    # Fixed format keeps output independent of server locale.
    if value is None:
        return NOT_AVAILABLE
    return value.strftime("%Y-%m-%d")


def _format_number(value: float) -> str:
    return f"{value:g}"


def _person(person) -> str:
    if person is None:
        return NOT_AVAILABLE
    return person.name or person.email


def _specification_lines(test: TestLineSnapshot) -> list[str]:
    spec = test.specification
    if spec is None:
        return [NOT_AVAILABLE]
    unit = f" {spec.unit}" if spec.unit else ""
    lines = [spec.code]
    if spec.target:
        lines.append(f"Target: {spec.target}")
    elif spec.min_value is not None and spec.max_value is not None:
        lines.append(f"{_format_number(spec.min_value)} - {_format_number(spec.max_value)}{unit}")
    elif spec.min_value is not None:
        lines.append(f"≥ {_format_number(spec.min_value)}{unit}")
    elif spec.max_value is not None:
        lines.append(f"≤ {_format_number(spec.max_value)}{unit}")
    return lines


def _make(lines: list[str], *, css: str = "", secondary: bool = False) -> dict[str, Any]:
    return {"lines": lines, "css": css, "secondary": secondary}


def _cell(column: str, test: TestLineSnapshot) -> dict[str, Any]:
    if column == "section":
        return _make([test.section])
    if column == "test":
        return _make([test.test_name])
    if column == "method":
        return _make([test.method.code, test.method.name], secondary=True)
    if column == "specification":
        return _make(_specification_lines(test), secondary=True)
    if column == "result":
        return _make([test.result or NOT_AVAILABLE])
    if column == "unit":
        return _make([test.result_unit or test.method.unit or NOT_AVAILABLE])
    if column == "test_date":
        return _make([format_date(test.test_date)])
    if column == "analyst":
        return _make([_person(test.analyst)])
    if column == "checked_by":
        return _make([_person(test.checker)])
    if column == "checked_date":
        return _make([format_date(test.chk_date)])
    if column == "oos":
        return _make(["YES" if test.oos else "NO"], css="oos-yes" if test.oos else "")
    if column == "comments":
        return _make([test.comments or ""], css="comments-cell")
    raise KeyError(column)


class CoaHtmlRenderer:
    def __init__(self, template_name: str = DEFAULT_TEMPLATE, template_dir: Path | None = None) -> None:
        self._env = Environment(
            loader=FileSystemLoader(str(template_dir or TEMPLATE_DIR)),
            autoescape=select_autoescape(["html", "xml", "j2"]),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._env.filters["format_date"] = format_date
        self._env.filters["number"] = _format_number
        self._template_name = template_name

    def render(self, data_snapshot: Mapping[str, Any] | ReportSnapshot) -> str:
        snapshot = (
            data_snapshot
            if isinstance(data_snapshot, ReportSnapshot)
            else ReportSnapshot.from_document(dict(data_snapshot))
        )
        settings = snapshot.metadata.template_settings
        visible = set(settings.visible_fields)

        def label(field: str) -> str:
            return settings.label_overrides.get(field) or _DEFAULT_LABELS.get(field, field)

        def is_visible(field: str) -> bool:
            # An empty visibility list shows everything.
            return not visible or field in visible

        order = settings.column_order or list(DEFAULT_COLUMN_ORDER)
        columns = [column for column in order if column in DEFAULT_COLUMN_ORDER and is_visible(column)]
        rows = [[_cell(column, test) for column in columns] for test in snapshot.tests]
        flags = snapshot.sample.status_flags
        chips = [chip for attr, chip in _FLAG_CHIPS if getattr(flags, attr)]

        template = self._env.get_template(self._template_name)
        return template.render(
            sample=snapshot.sample,
            metadata=snapshot.metadata,
            headers=[label(column) for column in columns],
            rows=rows,
            chips=chips,
            label=label,
            is_visible=is_visible,
        ).strip()
