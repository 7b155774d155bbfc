from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from labledger.core.errors import DomainValidationError
from labledger.domain.models import SpecComparator


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


def resolve_comparator(spec: Any) -> SpecComparator | None:
    # An explicit comparator wins; otherwise infer it from which bounds are set.
    explicit = getattr(spec, "comparator", None)
    if explicit:
        try:
            return SpecComparator(str(explicit).strip().upper())
        except ValueError as exc:
            raise DomainValidationError(
                "Unknown specification comparator",
                details={
                    "comparator": str(explicit),
                    "allowed": [comparator.value for comparator in SpecComparator],
                },
            ) from exc
    has_min = getattr(spec, "min_value", None) is not None
    has_max = getattr(spec, "max_value", None) is not None
    if has_min and has_max:
        return SpecComparator.RANGE
    if has_min:
        return SpecComparator.GTE
    if has_max:
        return SpecComparator.LTE
    if getattr(spec, "target", None):
        return SpecComparator.EQUALS
    return None


def evaluate_oos(result: str | None, spec: Any) -> bool:
    """Return True when a result falls outside its specification.

    Missing results, missing specifications and specs without usable bounds
    are never out of specification.
    """
    if result is None or not str(result).strip() or spec is None:
        return False
    comparator = resolve_comparator(spec)
    if comparator is None:
        return False

    number = _to_decimal(result)
    if number is None:
        # Qualitative results ("Absent", "Complies") only compare under EQUALS.
        target = getattr(spec, "target", None)
        if comparator is SpecComparator.EQUALS and target:
            return str(result).strip().lower() != str(target).strip().lower()
        return False

    min_value = _to_decimal(getattr(spec, "min_value", None))
    max_value = _to_decimal(getattr(spec, "max_value", None))
    if comparator is SpecComparator.GTE:
        return min_value is not None and number < min_value
    if comparator is SpecComparator.LTE:
        return max_value is not None and number > max_value
    if comparator is SpecComparator.RANGE:
        below = min_value is not None and number < min_value
        above = max_value is not None and number > max_value
        return below or above

    target = getattr(spec, "target", None)
    target_number = _to_decimal(target)
    if target_number is not None:
        return number != target_number
    if target:
        return str(result).strip().lower() != str(target).strip().lower()
    return False
