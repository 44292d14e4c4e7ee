"""Opening-hours feasibility checks.

Days follow the catalog convention: 0 = Sunday .. 6 = Saturday. Free-text
``weekday_text`` lists are Monday first. Minutes are minutes since midnight.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from models import OpeningHours, OpeningPeriod, TimingPreference

MINUTES_PER_DAY = 24 * 60

DAY_NAMES: Dict[str, int] = {
    "sunday": 0,
    "sun": 0,
    "monday": 1,
    "mon": 1,
    "tuesday": 2,
    "tue": 2,
    "wednesday": 3,
    "wed": 3,
    "thursday": 4,
    "thu": 4,
    "friday": 5,
    "fri": 5,
    "saturday": 6,
    "sat": 6,
    "ראשון": 0,
    "שני": 1,
    "שלישי": 2,
    "רביעי": 3,
    "חמישי": 4,
    "שישי": 5,
    "שבת": 6,
}

CLOSED_MARKERS = ("closed", "סגור")
ALWAYS_OPEN_MARKERS = ("24 hours", "open 24", "24 שעות")

_RANGE_RE = re.compile(
    r"(\d{1,2})(?::(\d{2}))?\s*([ap])?\.?m?\.?\s*[–—-]\s*(\d{1,2})(?::(\d{2}))?\s*([ap])?\.?m?\.?",
    re.I,
)


@dataclass(frozen=True)
class TimeWindow:
    start_minutes: int
    duration_minutes: int


def parse_time_to_minutes(value: Optional[str]) -> Optional[int]:
    """Parse "HHMM" or "HH:MM" into minutes since midnight."""
    if not value:
        return None
    text = value.strip()
    try:
        if ":" in text:
            hour, minute = text.split(":", 1)
            h, m = int(hour), int(minute[:2])
        elif text.isdigit() and len(text) in (3, 4):
            h, m = int(text[:-2]), int(text[-2:])
        else:
            return None
    except ValueError:
        return None
    if not (0 <= h <= 24 and 0 <= m < 60):
        return None
    return min(h * 60 + m, MINUTES_PER_DAY)


def time_window_for(
    timing: TimingPreference,
    specific_time: Optional[int],
    now_minutes: int,
) -> Optional[TimeWindow]:
    """Window to check against opening hours, or None when timing imposes no constraint."""
    if timing is TimingPreference.ANYTIME:
        return None
    if specific_time is not None:
        return TimeWindow(specific_time % MINUTES_PER_DAY, 120)
    if timing is TimingPreference.NOW:
        return TimeWindow(now_minutes % MINUTES_PER_DAY, 60)
    if timing is TimingPreference.TONIGHT:
        return TimeWindow(18 * 60, 5 * 60)
    # tomorrow / weekend
    return TimeWindow(12 * 60, 11 * 60)


# ---------------------------------------------------------------------------
# Structured periods
# ---------------------------------------------------------------------------


def _period_bounds(period: OpeningPeriod) -> Optional[Tuple[int, Optional[int], bool]]:
    """(open_minutes, close_minutes, overnight) or None when unparseable."""
    open_min = parse_time_to_minutes(period.open.time)
    if open_min is None:
        return None
    if period.close is None:
        return open_min, None, False
    close_min = parse_time_to_minutes(period.close.time)
    if close_min is None:
        return None
    overnight = period.close.day != period.open.day or close_min <= open_min
    return open_min, close_min, overnight


def is_open_from_periods(periods: List[OpeningPeriod], day: int, minute: int) -> bool:
    # a lone period without a close time marks a venue that never closes
    if len(periods) == 1 and periods[0].close is None:
        return True

    for period in periods:
        if period.open.day != day:
            continue
        bounds = _period_bounds(period)
        if bounds is None:
            continue
        open_min, close_min, overnight = bounds
        if close_min is None:
            return True
        if overnight:
            if minute >= open_min:
                return True
        elif open_min <= minute < close_min:
            return True

    previous_day = (day + 6) % 7
    for period in periods:
        if period.open.day != previous_day or period.close is None:
            continue
        bounds = _period_bounds(period)
        if bounds is None:
            continue
        _, close_min, overnight = bounds
        if overnight and close_min is not None and minute < close_min:
            return True

    return False


# ---------------------------------------------------------------------------
# Free-text weekday strings
# ---------------------------------------------------------------------------


def _to_24h(hour: int, minute: int, meridiem: Optional[str]) -> int:
    if meridiem:
        meridiem = meridiem.lower()
        if meridiem == "p" and hour != 12:
            hour += 12
        if meridiem == "a" and hour == 12:
            hour = 0
    return (hour % 24) * 60 + minute


def parse_text_ranges(text: str) -> List[Tuple[int, int]]:
    """Extract (open, close) minute pairs from text like "9:00 AM – 10:00 PM"."""
    ranges: list[Tuple[int, int]] = []
    for match in _RANGE_RE.finditer(text):
        open_h, open_m = int(match.group(1)), int(match.group(2) or 0)
        close_h, close_m = int(match.group(4)), int(match.group(5) or 0)
        if open_h > 24 or close_h > 24 or open_m > 59 or close_m > 59:
            continue
        open_mer, close_mer = match.group(3), match.group(6)
        close_min = _to_24h(close_h, close_m, close_mer)
        if open_mer is None and close_mer is not None:
            # "6:00 – 11:00 PM" shares the trailing marker unless that would put open after close
            borrowed = _to_24h(open_h, open_m, close_mer)
            open_min = borrowed if borrowed < close_min else _to_24h(open_h, open_m, None)
        else:
            open_min = _to_24h(open_h, open_m, open_mer)
        ranges.append((open_min, close_min))
    return ranges


def _split_label(entry: str) -> Tuple[Optional[int], str]:
    if ":" not in entry:
        return None, entry
    label, body = entry.split(":", 1)
    label = label.strip().lower()
    if label.startswith("יום "):
        label = label[len("יום ") :].strip()
    day = DAY_NAMES.get(label)
    if day is None:
        return None, entry
    return day, body


def _texts_by_day(weekday_text: List[str]) -> Dict[int, str]:
    by_day: dict[int, str] = {}
    for entry in weekday_text:
        day, body = _split_label(entry)
        if day is not None:
            by_day[day] = body
    if by_day:
        return by_day
    # unlabeled lists are positional, Monday first
    return {(idx + 1) % 7: text for idx, text in enumerate(weekday_text[:7])}


def _is_closed(text: str) -> bool:
    lower = text.lower()
    return any(marker in lower for marker in CLOSED_MARKERS)


def _is_always_open(text: str) -> bool:
    lower = text.lower()
    return any(marker in lower for marker in ALWAYS_OPEN_MARKERS)


def is_open_from_weekday_text(weekday_text: List[str], day: int, minute: int) -> bool:
    by_day = _texts_by_day(weekday_text)

    previous = by_day.get((day + 6) % 7)
    if previous and not _is_closed(previous) and not _is_always_open(previous):
        for open_min, close_min in parse_text_ranges(previous):
            if close_min <= open_min and minute < close_min:
                return True

    text = by_day.get(day)
    if text is None:
        return True
    if _is_always_open(text):
        return True
    if _is_closed(text):
        return False

    ranges = parse_text_ranges(text)
    if not ranges:
        # can't parse, assume open
        return True
    for open_min, close_min in ranges:
        if close_min <= open_min:
            if minute >= open_min:
                return True
        elif open_min <= minute < close_min:
            return True
    return False


def is_open_at(hours: Optional[OpeningHours], day: int, minute: int) -> bool:
    """True when the venue is open at ``minute`` on ``day``.

    Missing hours count as open: an unknown schedule should not hide a venue.
    """
    if hours is None or hours.is_empty():
        return True
    if hours.periods:
        return is_open_from_periods(hours.periods, day, minute)
    return is_open_from_weekday_text(hours.weekday_text, day, minute)
