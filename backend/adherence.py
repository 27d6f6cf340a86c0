"""
Adherence and scheduling calculations

This module works out when the next injection is due and how closely the
logged history follows the configured dosing interval. Everything here is a
pure function of its arguments: the caller fetches the medication and its
injection logs, passes in the reference time and the owner's timezone, and
gets plain numbers/dicts back.

Day boundaries are always local calendar days in the given timezone (UTC when
the owner never set one), so "whole days" means the difference between two
local dates, not a count of 24 hour blocks.
"""
import datetime
import math
import numbers
from collections import Counter
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Dict, Any, NamedTuple, Optional

UTC = datetime.timezone.utc

# Fixed so labels don't change with the process locale
MONTH_ABBR = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
              "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

NO_SCHEDULE = "no_schedule"
OVERDUE = "overdue"
DUE_TODAY = "due_today"
DUE_IN = "due_in"


class InvalidScheduleError(ValueError):
    """Raised when a medication's dosing interval is not a positive number of days."""


class ScheduleStatus(NamedTuple):
    state: str
    days: int


# ------------------------------------------------------
# Helpers
# ------------------------------------------------------
def _field(obj, name):
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def frequency_days(medication) -> float:
    value = _field(medication, "frequency_days")
    if isinstance(value, bool) or not isinstance(value, (numbers.Real, Decimal)) or value <= 0:
        raise InvalidScheduleError(f"frequency_days must be a positive number, got {value!r}")
    return float(value)


def _as_utc(ts: datetime.datetime) -> datetime.datetime:
    # Naive timestamps are UTC, that's how they are stored
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def _local_date(ts: datetime.datetime, tz) -> datetime.date:
    return _as_utc(ts).astimezone(tz).date()


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _sort_key(indexed):
    index, event = indexed
    event_id = event.get("id")
    # ids only break ties between identical timestamps; events without one lose to those with one
    id_key = (0, 0) if event_id is None else (1, event_id)
    return (_as_utc(event["timestamp"]), id_key, index)


def sorted_events(events: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Events in ascending timestamp order; ties go to the higher id, then the later position."""
    return [event for _, event in sorted(enumerate(events), key=_sort_key)]


def _in_window(events, window_start, window_end):
    start = _as_utc(window_start) if window_start is not None else None
    end = _as_utc(window_end) if window_end is not None else None
    selected = []
    for event in events:
        ts = _as_utc(event["timestamp"])
        if start is not None and ts < start:
            continue
        if end is not None and ts > end:
            continue
        selected.append(event)
    return selected


# ------------------------------------------------------
# Due date
# ------------------------------------------------------
def next_due_date(medication, events: List[Dict[str, Any]], tz=UTC) -> Optional[datetime.datetime]:
    """
    Projected time of the next dose: latest injection + frequency_days.

    The interval is added on the local wall clock, so a weekly dose taken at
    09:00 is due at 09:00 a week later even across a DST change. Fractional
    intervals drop the remainder: twice weekly (3.5) is due 3 calendar days
    later at the same time of day.

    Returns None when there is no history yet.
    """
    interval = frequency_days(medication)
    if not events:
        return None

    latest = sorted_events(events)[-1]
    local = _as_utc(latest["timestamp"]).astimezone(tz)
    wall_clock = local.replace(tzinfo=None) + datetime.timedelta(days=int(interval))
    return wall_clock.replace(tzinfo=tz)


def days_until_due(medication, events: List[Dict[str, Any]], now: datetime.datetime, tz=UTC) -> Optional[int]:
    """Local calendar days from now to the due date; negative means overdue by that many days."""
    due = next_due_date(medication, events, tz)
    if due is None:
        return None
    return (_local_date(due, tz) - _local_date(now, tz)).days


def classify(days: Optional[int]) -> ScheduleStatus:
    if days is None:
        return ScheduleStatus(NO_SCHEDULE, 0)
    if days < 0:
        return ScheduleStatus(OVERDUE, -days)
    if days == 0:
        return ScheduleStatus(DUE_TODAY, 0)
    return ScheduleStatus(DUE_IN, days)


def schedule_status(medication, events: List[Dict[str, Any]], now: datetime.datetime, tz=UTC) -> ScheduleStatus:
    return classify(days_until_due(medication, events, now, tz))


# ------------------------------------------------------
# Aggregate statistics
# ------------------------------------------------------
def adherence_percent(medication, events: List[Dict[str, Any]], tz=UTC) -> int:
    """
    Logged doses as a percentage of the doses expected over the observed span.

    The span runs from the first to the last logged injection, never up to
    "today", and the result is capped at 100 so extra doses are not rewarded.
    """
    if medication is None or not events:
        return 0
    interval = frequency_days(medication)

    ordered = sorted_events(events)
    days_since_first = (_local_date(ordered[-1]["timestamp"], tz) - _local_date(ordered[0]["timestamp"], tz)).days
    expected = math.floor(days_since_first / interval) + 1
    actual = len(ordered)

    return min(_round_half_up(actual / expected * 100), 100)


def average_interval(events: List[Dict[str, Any]], tz=UTC) -> int:
    if len(events) < 2:
        return 0

    dates = [_local_date(event["timestamp"], tz) for event in sorted_events(events)]
    total_days = sum((later - earlier).days for earlier, later in zip(dates, dates[1:]))
    return _round_half_up(total_days / (len(dates) - 1))


def monthly_histogram(events: List[Dict[str, Any]], tz=UTC, window_start=None, window_end=None) -> List[Dict[str, Any]]:
    """Injection counts per local calendar month, oldest month first."""
    counts = Counter()
    for event in _in_window(events, window_start, window_end):
        day = _local_date(event["timestamp"], tz)
        counts[(day.year, day.month)] += 1

    return [
        {
            "month": f"{year:04d}-{month:02d}",
            "label": f"{MONTH_ABBR[month - 1]} {year}",
            "count": counts[(year, month)],
        }
        for year, month in sorted(counts)
    ]


def site_distribution(events: List[Dict[str, Any]], window_start=None, window_end=None) -> List[Dict[str, Any]]:
    """
    Count and share of injections per site, busiest site first.

    Each percentage is rounded half up to one decimal on its own, so the
    column may add up to 99.9 or 100.1.
    """
    counts = Counter(event["site"] for event in _in_window(events, window_start, window_end))
    total = sum(counts.values())

    distribution = []
    for site, count in sorted(counts.items(), key=lambda item: (-item[1], item[0])):
        percent = (Decimal(count) * 100 / Decimal(total)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
        distribution.append({"site": site, "count": count, "percent": float(percent)})
    return distribution


def summarize(medication, events: List[Dict[str, Any]], now: datetime.datetime, tz=UTC,
              window_start=None, window_end=None) -> Dict[str, Any]:
    """Everything the stats screen shows, computed over the events inside the window."""
    windowed = _in_window(events, window_start, window_end)
    sites = site_distribution(windowed)
    return {
        "adherence": adherence_percent(medication, windowed, tz),
        "total_logs": len(windowed),
        "average_interval_days": average_interval(windowed, tz),
        "sites_used": len(sites),
        "monthly": monthly_histogram(windowed, tz),
        "sites": sites,
        "status": schedule_status(medication, events, now, tz)._asdict() if medication is not None else classify(None)._asdict(),
    }
