from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterator, List, Optional


ISO_FORMAT = "%Y-%m-%d"
RANGE_TOKEN_FORMAT = "%Y%m%d"


def _today(today: Optional[date] = None) -> date:
    return today if today is not None else date.today()


def is_workday(day: date) -> bool:
    # No holiday calendar: only Saturday (5) and Sunday (6) are off.
    return day.weekday() < 5


def format_iso(day: date) -> str:
    return day.strftime(ISO_FORMAT)


def parse_iso(value: str) -> date:
    raw = str(value or "").strip()
    try:
        return datetime.strptime(raw[:10], ISO_FORMAT).date()
    except ValueError as exc:
        raise ValueError(f"Invalid date format {raw!r}. Use YYYY-MM-DD") from exc


@dataclass(frozen=True)
class DateWindow:
    """Inclusive calendar-date range, always stored with start <= end."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            start, end = self.end, self.start
            object.__setattr__(self, "start", start)
            object.__setattr__(self, "end", end)

    @classmethod
    def from_iso(cls, start: str, end: str) -> "DateWindow":
        return cls(parse_iso(start), parse_iso(end))

    def days(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)

    def day_count(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def token(self) -> str:
        return f"{self.start.strftime(RANGE_TOKEN_FORMAT)}-{self.end.strftime(RANGE_TOKEN_FORMAT)}"

    def as_dict(self) -> Dict[str, str]:
        return {"from": format_iso(self.start), "to": format_iso(self.end)}


def last_workdays(count: int, today: Optional[date] = None) -> List[date]:
    """Last `count` workdays before today, newest first."""
    if count <= 0:
        return []
    workdays: List[date] = []
    current = _today(today) - timedelta(days=1)
    while len(workdays) < count:
        if is_workday(current):
            workdays.append(current)
        current -= timedelta(days=1)
    return workdays


def last_workdays_range(count: int, today: Optional[date] = None) -> DateWindow:
    workdays = last_workdays(max(1, count), today=today)
    return DateWindow(start=workdays[-1], end=workdays[0])


def trailing_window(days: int, end: Optional[date] = None) -> DateWindow:
    anchor = _today(end)
    return DateWindow(start=anchor - timedelta(days=max(0, days)), end=anchor)


def count_workdays_back(last_day: date, today: Optional[date] = None) -> int:
    """Walk back from today to last_day, counting workdays (today included, last_day excluded)."""
    current = _today(today)
    count = 0
    while current > last_day:
        if is_workday(current):
            count += 1
        current -= timedelta(days=1)
    return count
