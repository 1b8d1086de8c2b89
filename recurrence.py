from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Mapping, Optional

from errors import ValidationError
from models import IntervalUnit


# Indefinite recurrences are materialized as one fixed batch and never extended.
INDEFINITE_BATCH_SIZE = 12


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def shift_months(base: date, months: int) -> date:
    """Calendar month addition; the day is clamped to the target month's length."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(base.day, days_in_month(year, month)))


def shift_by_unit(base: date, steps: int, unit: IntervalUnit) -> date:
    if unit == IntervalUnit.day:
        return base + timedelta(days=steps)
    if unit == IntervalUnit.week:
        return base + timedelta(weeks=steps)
    return shift_months(base, steps)


def generate_dates(
    start: date, count: int, interval: int, unit: IntervalUnit
) -> list[date]:
    """Return ``count`` dates, element i being ``start`` shifted by i * interval units.

    Every element is computed from ``start`` rather than from its predecessor, so a
    month series anchored on the 31st returns to the 31st after passing through a
    shorter month.
    """
    if count < 1:
        raise ValidationError("Occurrence count must be at least 1")
    if interval < 1:
        raise ValidationError("Interval must be at least 1")
    return [shift_by_unit(start, i * interval, unit) for i in range(count)]


def installment_first_date(anchor_date: date, anchor_index: int) -> date:
    return shift_months(anchor_date, -(anchor_index - 1))


def installment_date(first_date: date, index: int) -> date:
    return shift_months(first_date, index - 1)


def _strict_int(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Recurrence rule field '{field}' must be an integer")
    return value


@dataclass(frozen=True)
class InstallmentPlan:
    total: int
    start_index: int = 1

    def __post_init__(self) -> None:
        if self.start_index < 1:
            raise ValidationError("Installment start index must be at least 1")
        if self.total < self.start_index:
            raise ValidationError(
                "Installment total cannot be lower than the start index"
            )

    @property
    def indices(self) -> range:
        return range(self.start_index, self.total + 1)


@dataclass(frozen=True)
class RecurrenceRule:
    interval: int
    unit: IntervalUnit
    indefinite: bool = False
    occurrences: Optional[int] = None

    def __post_init__(self) -> None:
        if self.interval < 1:
            raise ValidationError("Interval must be at least 1")
        if not isinstance(self.unit, IntervalUnit):
            raise ValidationError(f"Unsupported interval unit: {self.unit!r}")
        if self.indefinite:
            if self.occurrences is not None:
                raise ValidationError("Indefinite rules cannot set occurrences")
        elif self.occurrences is None or self.occurrences < 1:
            raise ValidationError("Occurrences must be at least 1")

    @classmethod
    def build(
        cls,
        interval: int,
        unit: IntervalUnit,
        *,
        indefinite: bool = False,
        occurrences: Optional[int] = None,
    ) -> "RecurrenceRule":
        """Normalize form input: indefinite drops the count, finite counts clamp to 1."""
        if indefinite:
            return cls(interval=interval, unit=unit, indefinite=True)
        return cls(
            interval=interval,
            unit=unit,
            occurrences=max(1, occurrences if occurrences is not None else 1),
        )

    def occurrence_count(self) -> int:
        if self.indefinite:
            return INDEFINITE_BATCH_SIZE
        return self.occurrences or 1

    def dates_from(self, start: date) -> list[date]:
        return generate_dates(start, self.occurrence_count(), self.interval, self.unit)

    def to_json(self) -> dict[str, Any]:
        return {
            "interval": self.interval,
            "unit": self.unit.value,
            "indefinite": self.indefinite,
            "occurrences": self.occurrences,
        }

    @classmethod
    def from_json(cls, value: Optional[Mapping[str, Any]]) -> "RecurrenceRule":
        if not isinstance(value, Mapping):
            raise ValidationError("Recurrence rule snapshot is missing or malformed")
        interval = _strict_int(value.get("interval"), "interval")
        try:
            unit = IntervalUnit(value.get("unit"))
        except ValueError as exc:
            raise ValidationError(
                f"Unsupported interval unit: {value.get('unit')!r}"
            ) from exc
        indefinite = value.get("indefinite", False)
        if not isinstance(indefinite, bool):
            raise ValidationError("Recurrence rule field 'indefinite' must be a boolean")
        occurrences = value.get("occurrences")
        if occurrences is not None:
            occurrences = _strict_int(occurrences, "occurrences")
        return cls(
            interval=interval,
            unit=unit,
            indefinite=indefinite,
            occurrences=occurrences,
        )
