from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import List, Optional

from services.validation_service import parse_days_of_week


REPEAT_NONE = 'none'
REPEAT_WEEKLY = 'weekly'
REPEAT_EVERY_TWO_WEEKS = 'everyTwoWeeks'

REPEAT_OPTIONS = (
    {'value': REPEAT_NONE, 'label': 'Does not repeat'},
    {'value': REPEAT_WEEKLY, 'label': 'Every week'},
    {'value': REPEAT_EVERY_TWO_WEEKS, 'label': 'Every two weeks'},
)

# Older clients sent the biweekly timetable option under this name.
REPEAT_ALIASES = {
    'every-2-3-4': REPEAT_EVERY_TWO_WEEKS,
    'biweekly': REPEAT_EVERY_TWO_WEEKS,
}

DEFAULT_MAX_COUNT = 40
HORIZON_MONTH = 1
HORIZON_DAY = 15


class RecurrenceError(ValueError):
    """Invalid recurrence rule input."""

    def __init__(self, message, repeat_option=None):
        super().__init__(message)
        self.repeat_option = repeat_option


@dataclass
class RecurrenceRule:
    start_date: date
    repeat_option: Optional[str] = REPEAT_WEEKLY
    max_count: int = DEFAULT_MAX_COUNT
    interval: int = 1
    by_days: List[int] = field(default_factory=list)
    until: Optional[date] = None

    def dates(self):
        return evaluate(
            self.start_date,
            self.repeat_option,
            self.max_count,
            interval=self.interval,
            by_days=self.by_days,
            until=self.until,
        )


def list_repeat_options():
    return [dict(opt) for opt in REPEAT_OPTIONS]


def normalize_repeat_option(raw):
    # A missing option is read as weekly; callers that forget the field still get a series.
    if raw is None or str(raw).strip() == '':
        return REPEAT_WEEKLY
    value = str(raw).strip()
    value = REPEAT_ALIASES.get(value, value)
    if value not in {opt['value'] for opt in REPEAT_OPTIONS}:
        raise RecurrenceError(f"Unrecognized repeat option: {raw}", repeat_option=raw)
    return value


def is_repeating(raw):
    """True when raw names a real series (not 'none'); missing options do not count here."""
    if raw is None or str(raw).strip() == '':
        return False
    return normalize_repeat_option(raw) != REPEAT_NONE


def horizon_for(start_date):
    """Academic-term cutoff: Jan 15 of the start year, or of the next year once that has passed."""
    cutoff = date(start_date.year, HORIZON_MONTH, HORIZON_DAY)
    if start_date >= cutoff:
        cutoff = date(start_date.year + 1, HORIZON_MONTH, HORIZON_DAY)
    return cutoff


def evaluate(start_date, repeat_option=None, max_count=DEFAULT_MAX_COUNT, interval=1, by_days=None, until=None):
    """Ordered occurrence dates for a rule, bounded by the horizon and max_count."""
    option = normalize_repeat_option(repeat_option)
    if not isinstance(max_count, int) or isinstance(max_count, bool) or max_count < 1:
        raise RecurrenceError(f"max_count must be a positive integer, got {max_count!r}", repeat_option=option)
    if not isinstance(interval, int) or isinstance(interval, bool) or interval < 1:
        raise RecurrenceError(f"interval must be a positive integer, got {interval!r}", repeat_option=option)

    if option == REPEAT_NONE:
        return [start_date]

    end = horizon_for(start_date)
    if until is not None and until < end:
        end = until

    week_interval = 2 if option == REPEAT_EVERY_TWO_WEEKS else interval
    days = parse_days_of_week(by_days)
    if days:
        return _evaluate_by_days(start_date, end, max_count, week_interval, days)

    step = timedelta(days=7 * week_interval)
    out = []
    cursor = start_date
    while cursor <= end and len(out) < max_count:
        out.append(cursor)
        cursor += step
    return out


def _evaluate_by_days(start_date, end, max_count, week_interval, days):
    out = []
    cursor = start_date
    while cursor <= end and len(out) < max_count:
        week_index = (cursor - start_date).days // 7
        if cursor.weekday() in days and week_index % week_interval == 0:
            out.append(cursor)
        cursor += timedelta(days=1)
    return out
