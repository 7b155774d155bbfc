from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _Frozen(BaseModel):
    # Snapshots copy values out of the ORM; nothing may mutate them afterwards.
    model_config = ConfigDict(frozen=True)


class TemplateSettings(_Frozen):
    visible_fields: list[str] = Field(default_factory=list)
    label_overrides: dict[str, str] = Field(default_factory=dict)
    column_order: list[str] = Field(default_factory=list)


class ClientSnapshot(_Frozen):
    name: str
    contact_name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None


class StatusFlags(_Frozen):
    expired_raw_material: bool = False
    post_irradiated_raw_material: bool = False
    stability_study: bool = False
    urgent: bool = False
    all_micro_tests_assigned: bool = False
    all_chemistry_tests_assigned: bool = False
    released: bool = False
    retest: bool = False


class SampleSnapshot(_Frozen):
    sample_id: str
    job_number: str
    sample_code: str
    client: ClientSnapshot
    date_received: datetime | None = None
    date_due: datetime | None = None
    release_date: datetime | None = None
    need_by_date: datetime | None = None
    mcd_date: datetime | None = None
    rm_supplier: str | None = None
    sample_description: str | None = None
    uin_code: str | None = None
    sample_batch: str | None = None
    temperature_on_receipt_c: float | None = None
    storage_conditions: str | None = None
    comments: str | None = None
    status_flags: StatusFlags = Field(default_factory=StatusFlags)


class MethodSnapshot(_Frozen):
    code: str
    name: str
    unit: str | None = None


class SpecificationSnapshot(_Frozen):
    code: str
    name: str
    comparator: str | None = None
    target: str | None = None
    min_value: float | None = None
    max_value: float | None = None
    unit: str | None = None


class PersonSnapshot(_Frozen):
    name: str | None = None
    email: str


class TestLineSnapshot(_Frozen):
    __test__ = False

    test_id: str
    test_name: str
    section: str
    method: MethodSnapshot
    specification: SpecificationSnapshot | None = None
    status: str
    due_date: datetime | None = None
    test_date: datetime | None = None
    result: str | None = None
    result_unit: str | None = None
    analyst: PersonSnapshot | None = None
    checker: PersonSnapshot | None = None
    chk_date: datetime | None = None
    oos: bool = False
    comments: str | None = None
    invoice_note: str | None = None
    precision: str | None = None
    linearity: str | None = None


class ReportMetadata(_Frozen):
    version: int
    generated_at: datetime
    generated_by: str
    lab_name: str
    lab_logo_url: str | None = None
    disclaimer_text: str
    template_settings: TemplateSettings = Field(default_factory=TemplateSettings)


class ReportSnapshot(_Frozen):
    """Exact data a certificate version was rendered from.

    Stored as JSON on the version row and never recomputed, so re-rendering
    a stored snapshot reproduces the original markup.
    """

    sample: SampleSnapshot
    tests: list[TestLineSnapshot] = Field(default_factory=list)
    metadata: ReportMetadata

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> ReportSnapshot:
        return cls.model_validate(document)
