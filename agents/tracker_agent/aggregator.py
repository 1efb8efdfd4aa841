from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from agents.tracker_agent.business_days import DateWindow, count_workdays_back, format_iso
from agents.tracker_agent.models import (
    DailyHours,
    EntityChartSeries,
    EntityWithoutActivity,
    ProjectChartSeries,
)
from agents.tracker_agent.records import RawEntityRow, normalize_name


REPORT_DATE_FORMAT = "%d/%m/%Y"
UNKNOWN_DURATION = "n/a"
_ACCEPTED_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d.%m.%Y")


def parse_report_date(value: Any) -> Optional[date]:
    """Parse ISO or DD/MM/YYYY, ignoring a trailing weekday name ("05/10/2025 Sunday")."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value or "").strip()
    if not raw:
        return None
    token = raw.split()[0].rstrip(",;")
    if "T" in token:
        token = token.split("T", 1)[0]
    for fmt in _ACCEPTED_DATE_FORMATS:
        try:
            return datetime.strptime(token, fmt).date()
        except ValueError:
            continue
    return None


def format_report_date(day: date) -> str:
    return day.strftime(REPORT_DATE_FORMAT)


def minutes_to_hours(minutes: float) -> float:
    return round(float(minutes) / 60.0, 2)


def format_duration(minutes: Optional[float]) -> str:
    hours, mins = divmod(max(0, int(minutes or 0)), 60)
    return f"{hours} h {mins} min"


def _safe_float(value: Any) -> float:
    try:
        if value is None:
            return 0.0
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _entry_pair(entry: Any):
    if isinstance(entry, DailyHours):
        return entry.date, entry.hours
    if isinstance(entry, dict):
        return entry.get("date"), entry.get("hours")
    date_value, hours = entry
    return date_value, hours


def normalize(entries: Iterable[Any], window: DateWindow) -> List[DailyHours]:
    """Gap-fill a ragged per-day breakdown into one ascending entry per calendar day of window.

    Entries may be DailyHours, {"date", "hours"} dicts or (date, hours) pairs.
    Dates outside the window are dropped; repeated dates are summed.
    """
    lookup: Dict[date, float] = {}
    for entry in entries:
        date_value, hours = _entry_pair(entry)
        day = parse_report_date(date_value)
        if day is None or not window.contains(day):
            continue
        lookup[day] = round(lookup.get(day, 0.0) + _safe_float(hours), 2)
    return [DailyHours(date=format_report_date(day), hours=lookup.get(day, 0)) for day in window.days()]


def window_minutes_by_day(row: Optional[RawEntityRow], window: DateWindow) -> Dict[date, int]:
    totals: Dict[date, int] = {}
    if row is None:
        return totals
    for raw_day in row.days:
        day = parse_report_date(raw_day.date_text)
        if day is None or not window.contains(day):
            continue
        totals[day] = totals.get(day, 0) + max(0, int(raw_day.minutes))
    return totals


def series_from_raw(row: Optional[RawEntityRow], window: DateWindow) -> List[DailyHours]:
    per_day = window_minutes_by_day(row, window)
    return normalize(((day, minutes_to_hours(minutes)) for day, minutes in per_day.items()), window)


def last_activity_date(series: Sequence[DailyHours]) -> Optional[date]:
    active = [parse_report_date(item.date) for item in series if item.hours > 0]
    active = [day for day in active if day is not None]
    return max(active) if active else None


def business_days_since(last_day: Optional[date], today: date) -> Optional[int]:
    if last_day is None:
        return None
    return count_workdays_back(last_day, today)


def hours_in_absence_window(series: Sequence[DailyHours], window: DateWindow) -> float:
    """Filter figure: hours inside exactly the absence window."""
    total = 0.0
    for item in series:
        day = parse_report_date(item.date)
        if day is not None and window.contains(day):
            total += item.hours
    return round(total, 2)


def trailing_total_minutes(row: Optional[RawEntityRow], window: DateWindow) -> int:
    """Context figure: minutes over the trailing window, shown alongside the verdict."""
    if row is None:
        return 0
    per_day = window_minutes_by_day(row, window)
    if per_day or row.days:
        return sum(per_day.values())
    return max(0, int(row.total_minutes or 0))


def merge_rows(rows: Iterable[RawEntityRow]) -> List[RawEntityRow]:
    merged: Dict[str, RawEntityRow] = {}
    for row in rows:
        key = row.key()
        if not key:
            continue
        current = merged.get(key)
        if current is None:
            merged[key] = RawEntityRow(
                name=row.name,
                row_id=row.row_id,
                total_minutes=row.total_minutes,
                days=list(row.days),
                email=row.email,
                client=row.client,
                complete=row.complete,
                last_active=row.last_active,
                source=row.source,
            )
            continue
        current.days.extend(row.days)
        if row.total_minutes is not None:
            current.total_minutes = (current.total_minutes or 0) + row.total_minutes
        current.email = current.email or row.email
        current.client = current.client or row.client
        current.complete = current.complete and row.complete
        if row.last_active and (current.last_active is None or row.last_active > current.last_active):
            current.last_active = row.last_active
    return list(merged.values())


class _ActivityIndex:
    def __init__(self, rows: Iterable[RawEntityRow]) -> None:
        self.rows = merge_rows(rows)
        self.by_id = {row.row_id: row for row in self.rows if row.row_id}
        self.by_name = {normalize_name(row.name): row for row in self.rows if row.name}
        self.matched: set = set()

    def match(self, entity: RawEntityRow) -> Optional[RawEntityRow]:
        found = self.by_id.get(entity.row_id) if entity.row_id else None
        if found is None:
            found = self.by_name.get(normalize_name(entity.name))
        if found is not None:
            self.matched.add(id(found))
        return found

    def unmatched(self) -> List[RawEntityRow]:
        return [row for row in self.rows if id(row) not in self.matched]


def build_absence_entries(
    roster: Iterable[RawEntityRow],
    activity: Iterable[RawEntityRow],
    absence_window: DateWindow,
    trailing: DateWindow,
    today: date,
) -> List[EntityWithoutActivity]:
    """Entities with zero hours in absence_window, with trailing-window context.

    Roster rows carry absence-window totals; activity rows carry per-day breakdowns.
    A roster entity missing from the activity rows logged nothing at all.
    """
    index = _ActivityIndex(activity)
    entities: List[tuple] = [(entity, index.match(entity), True) for entity in merge_rows(roster)]
    entities.extend((row, row, False) for row in index.unmatched())

    result: List[EntityWithoutActivity] = []
    for entity, row, from_roster in entities:
        if from_roster and (entity.total_minutes or 0) > 0:
            continue
        if row is not None and not row.complete:
            if (entity.total_minutes or 0) > 0 or (row is not entity and row.has_activity()):
                continue
            result.append(
                EntityWithoutActivity(
                    id=entity.row_id or row.row_id or normalize_name(entity.name),
                    name=entity.name,
                    email=entity.email or row.email,
                    last_activity_date=None,
                    total_hours_trailing_window=UNKNOWN_DURATION,
                    days_since_last_activity=None,
                )
            )
            continue

        absence_series = series_from_raw(row, absence_window)
        if hours_in_absence_window(absence_series, absence_window) > 0:
            continue

        trailing_series = series_from_raw(row, trailing)
        last_day = last_activity_date(trailing_series)
        if row is not None and row.last_active and trailing.contains(row.last_active):
            last_day = max(last_day, row.last_active) if last_day else row.last_active
        result.append(
            EntityWithoutActivity(
                id=entity.row_id or (row.row_id if row else "") or normalize_name(entity.name),
                name=entity.name,
                email=entity.email or (row.email if row else ""),
                last_activity_date=format_iso(last_day) if last_day else None,
                total_hours_trailing_window=format_duration(trailing_total_minutes(row, trailing)),
                days_since_last_activity=business_days_since(last_day, today),
                daily_hours=trailing_series,
            )
        )
    return result


def build_chart_series(
    rows: Iterable[RawEntityRow],
    window: DateWindow,
    projects: bool = False,
) -> List[EntityChartSeries]:
    series: List[EntityChartSeries] = []
    for row in merge_rows(rows):
        daily = series_from_raw(row, window)
        has_days = any(item.hours > 0 for item in daily)
        if not has_days and not (not row.complete and row.has_activity()):
            continue
        total = trailing_total_minutes(row, window) if row.complete else row.total_minutes
        fields = {
            "id": row.row_id or normalize_name(row.name),
            "name": row.name,
            "email": row.email,
            "daily_hours": daily,
            "total_hours_trailing_window": format_duration(total),
        }
        if projects:
            series.append(ProjectChartSeries(client=row.client or None, **fields))
        else:
            series.append(EntityChartSeries(**fields))
    return series
