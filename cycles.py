from __future__ import annotations

import calendar
import datetime as dt
from dataclasses import dataclass
from typing import Mapping, Optional


class InvalidDate(ValueError):
    """Raised when an expiry/reset anchor is not a YYYY-MM-DD date."""


@dataclass(frozen=True)
class CycleWindow:
    last_reset_at: dt.datetime
    next_reset_at: dt.datetime
    elapsed_since_reset: dt.timedelta


def parse_date(text: Optional[str]) -> dt.date:
    s = (text or "").strip()
    try:
        if len(s) != 10:
            raise ValueError(s)
        return dt.datetime.strptime(s, "%Y-%m-%d").date()
    except ValueError:
        raise InvalidDate(f"expected YYYY-MM-DD, got {text!r}") from None


def anchor_date(labels: Mapping[str, str]) -> str:
    """Return the date whose day-of-month anchors the billing cycle.

    A dedicated reset_day label wins over expiry.
    """
    reset_day = (labels.get("reset_day") or "").strip()
    if reset_day:
        return reset_day
    expiry = (labels.get("expiry") or "").strip()
    if not expiry:
        raise InvalidDate("no expiry label on instance")
    return expiry


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def shift_months(day: int, year: int, month: int, n: int) -> dt.date:
    """Move (year, month) by n calendar months and clamp day to the target month."""
    index = year * 12 + (month - 1) + n
    y, m = divmod(index, 12)
    m += 1
    return dt.date(y, m, min(day, last_day_of_month(y, m)))


def _midnight(d: dt.date, tzinfo: Optional[dt.tzinfo]) -> dt.datetime:
    return dt.datetime(d.year, d.month, d.day, tzinfo=tzinfo)


def elapsed(since: dt.datetime, now: dt.datetime) -> dt.timedelta:
    """Real time between two instants, across DST changes in their zone.

    Aware datetimes sharing a tzinfo subtract as wall-clock times, so both
    sides go through UTC first.
    """
    return now.astimezone(dt.timezone.utc) - since.astimezone(dt.timezone.utc)


def compute_cycle_window(anchor: str, now: dt.datetime) -> CycleWindow:
    """Compute the reset boundaries around now for a day-of-month anchor.

    Boundaries are midnights in now's timezone. A boundary equal to now is the
    last reset, not the next one.
    """
    anchor_day = parse_date(anchor).day

    candidate = _midnight(shift_months(anchor_day, now.year, now.month, 0), now.tzinfo)
    if candidate <= now:
        last = candidate
        nxt = _midnight(shift_months(anchor_day, now.year, now.month, 1), now.tzinfo)
    else:
        nxt = candidate
        last = _midnight(shift_months(anchor_day, now.year, now.month, -1), now.tzinfo)

    return CycleWindow(last_reset_at=last, next_reset_at=nxt, elapsed_since_reset=elapsed(last, now))


def start_of_day(now: dt.datetime) -> dt.datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(now: dt.datetime) -> dt.datetime:
    return start_of_day(now).replace(day=1)


def time_left(expiry: str, now: dt.datetime) -> dt.timedelta:
    return elapsed(now, _midnight(parse_date(expiry), now.tzinfo))
