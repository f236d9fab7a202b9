"""
Seller payout schedules.

The schedule is informational: it tells a seller when to expect money and
never gates the release of held funds.
"""
import calendar
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Optional

from settlement.core.exceptions import InvalidPayoutSchedule

SCHEDULE_TYPES = ("daily", "weekly", "monthly", "custom")

# Weekday numbering with 0 = Sunday
DEFAULT_WEEKLY_DAY = 1
DEFAULT_MONTHLY_DAY = 1


@dataclass(frozen=True)
class PayoutSchedule:
    """
    A seller's payout schedule.

    Attributes:
        schedule_type: daily, weekly, monthly or custom
        payout_day: 0-6 (Sunday first) for weekly, 1-31 for monthly
        payout_date: Fixed date for custom schedules
    """

    schedule_type: str
    payout_day: Optional[int] = None
    payout_date: Optional[datetime] = None

    def validate(self) -> None:
        """
        Raises:
            InvalidPayoutSchedule: If the combination of fields is malformed
        """
        if self.schedule_type not in SCHEDULE_TYPES:
            raise InvalidPayoutSchedule(
                f"Unknown schedule type {self.schedule_type!r}; "
                f"expected one of {', '.join(SCHEDULE_TYPES)}"
            )
        if self.schedule_type == "weekly" and self.payout_day is not None:
            if not 0 <= self.payout_day <= 6:
                raise InvalidPayoutSchedule("Weekly payout day must be 0 (Sunday) to 6")
        if self.schedule_type == "monthly" and self.payout_day is not None:
            if not 1 <= self.payout_day <= 31:
                raise InvalidPayoutSchedule("Monthly payout day must be 1 to 31")
        if self.schedule_type == "custom" and self.payout_date is None:
            raise InvalidPayoutSchedule("Custom schedules require a payout date")
        if self.payout_date is not None and self.payout_date.tzinfo is None:
            raise InvalidPayoutSchedule("Payout date must be timezone-aware")


def _start_of_day(value: datetime) -> datetime:
    value = value.astimezone(timezone.utc)
    return datetime.combine(value.date(), time.min, tzinfo=timezone.utc)


def _sunday_based_weekday(value: datetime) -> int:
    return (value.weekday() + 1) % 7


def calculate_next_payout_date(
    schedule: Optional[PayoutSchedule], base_date: Optional[datetime] = None
) -> Optional[datetime]:
    """
    Next payout date for a schedule, as midnight UTC.

    - daily: tomorrow
    - weekly: the next payout_day strictly after today (default Monday)
    - monthly: payout_day of this month clamped to the month length, or of
      next month when it has already passed (default the 1st)
    - custom: payout_date, or None once it lies in the past

    Args:
        schedule: Seller schedule, None when the seller has none
        base_date: Reference time (default: now)

    Returns:
        Optional[datetime]: Next payout date, None if there is none
    """
    if schedule is None:
        return None

    today = _start_of_day(base_date or datetime.now(timezone.utc))

    if schedule.schedule_type == "daily":
        return today + timedelta(days=1)

    if schedule.schedule_type == "weekly":
        payout_day = (
            schedule.payout_day if schedule.payout_day is not None else DEFAULT_WEEKLY_DAY
        )
        days_until = payout_day - _sunday_based_weekday(today)
        if days_until <= 0:
            days_until += 7
        return today + timedelta(days=days_until)

    if schedule.schedule_type == "monthly":
        payout_day = (
            schedule.payout_day if schedule.payout_day is not None else DEFAULT_MONTHLY_DAY
        )
        year, month = today.year, today.month
        candidate = today.replace(day=min(payout_day, calendar.monthrange(year, month)[1]))
        if candidate < today:
            year, month = (year + 1, 1) if month == 12 else (year, month + 1)
            candidate = candidate.replace(
                year=year,
                month=month,
                day=min(payout_day, calendar.monthrange(year, month)[1]),
            )
        return candidate

    if schedule.schedule_type == "custom":
        if schedule.payout_date is None:
            return None
        custom = _start_of_day(schedule.payout_date)
        return None if custom < today else custom

    return None
