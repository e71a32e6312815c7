from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

from otms.models import DayType, Profile

HOURS_QUANT = Decimal("0.01")


@dataclass(frozen=True, slots=True)
class RateResult:
    orp: Decimal | None = None
    hrp: Decimal | None = None
    ot_amount: Decimal | None = None


class RateCalculator(Protocol):
    def calculate(
        self,
        *,
        employee: Profile,
        ot_date: date,
        day_type: DayType,
        total_hours: Decimal,
    ) -> RateResult:
        ...


class HoursOnlyRateCalculator:
    """Leaves pay fields empty; payroll fills them in downstream."""

    def calculate(
        self,
        *,
        employee: Profile,
        ot_date: date,
        day_type: DayType,
        total_hours: Decimal,
    ) -> RateResult:
        return RateResult()


def session_hours(start_time: time, end_time: time) -> Decimal:
    anchor = date(2000, 1, 1)
    delta = datetime.combine(anchor, end_time) - datetime.combine(anchor, start_time)
    hours = Decimal(int(delta.total_seconds())) / Decimal(3600)
    return hours.quantize(HOURS_QUANT, rounding=ROUND_HALF_UP)


def day_type_for(ot_date: date) -> DayType:
    weekday = ot_date.weekday()
    if weekday == 5:
        return DayType.SATURDAY
    if weekday == 6:
        return DayType.SUNDAY
    return DayType.WEEKDAY
