"""Structural extraction of report rows from the rendered tracker pages.

Rows are read through Playwright locators. Two row-state readers exist: one
reads the AngularJS scope bound to the row node (machine-readable durations in
milliseconds and ISO days), the other parses the rendered text. Which ones are
used is decided by probing the page, and they are tried in order for every row.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple

from agents.tracker_agent.aggregator import format_report_date, parse_report_date
from agents.tracker_agent.errors import ExtractionMismatchError
from agents.tracker_agent.records import RawDay, RawEntityRow


_HOURS_RE = re.compile(r"(\d+(?:[.,]\d+)?)\s*h(?:ours?|rs?)?(?![a-z])", re.IGNORECASE)
_MINUTES_RE = re.compile(r"(\d+)\s*m(?:in(?:utes?|s)?)?(?![a-z])", re.IGNORECASE)
_DATE_RE = re.compile(r"\b(\d{4}-\d{2}-\d{2}|\d{2}/\d{2}/\d{4})\b")
_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
_ID_FROM_HREF_RE = re.compile(r"(?:user|project|member|id)[=/](\d+)", re.IGNORECASE)

GROUP_ROW_SELECTORS = (
    "tbody[ng-repeat*='group']",
    ".report-group",
    "tr.report-group-row",
    "tr.group-row",
)
ROSTER_ROW_SELECTORS = (
    "table.report-table tbody tr",
    ".report-table [role='row']",
    "table tbody tr",
)
DETAIL_ROW_SELECTORS = (
    "table.report-table tbody tr",
    ".time-entries tr",
    "table tbody tr",
)
NAME_ATTRIBUTES = ("data-name", "title", "aria-label")
NAME_ELEMENT_SELECTORS = (".group-name", ".user-name", ".project-name", "[data-name]", "[title]")
ID_ATTRIBUTES = ("data-id", "data-user-id", "data-project-id", "data-key")
CLIENT_SELECTORS = (".client-name", ".project-client")
SUMMARY_ROW_NAMES = {"total", "totals", "sum", "grand total"}

INTROSPECTION_PROBE_JS = """
() => {
  const ng = window.angular;
  return !!(ng && typeof ng.element === 'function'
    && typeof ng.element(document.body).scope === 'function');
}
"""

SCOPE_STATE_JS = """
(node) => {
  const ng = window.angular;
  if (!ng || typeof ng.element !== 'function') return null;
  let scope = null;
  try { scope = ng.element(node).scope(); } catch (e) { return null; }
  if (!scope) return null;

  const pick = (obj, keys) => {
    if (!obj || typeof obj !== 'object') return undefined;
    for (const key of keys) {
      if (obj[key] !== undefined && obj[key] !== null) return obj[key];
    }
    return undefined;
  };
  const durationOf = (obj) => {
    const value = pick(obj, ['duration', 'totalDuration', 'time', 'total']);
    return typeof value === 'number' ? value : null;
  };
  const dayOf = (obj) => {
    const value = pick(obj, ['day', 'date', 'key', 'startTime', 'name']);
    if (typeof value === 'number') return new Date(value).toISOString().slice(0, 10);
    return value === undefined ? null : String(value);
  };

  const candidates = [];
  for (const key of ['group', 'row', 'item', 'entry', 'node']) {
    if (scope[key]) candidates.push(scope[key]);
  }
  if (scope.$ctrl) {
    for (const key of ['group', 'row', 'item']) {
      if (scope.$ctrl[key]) candidates.push(scope.$ctrl[key]);
    }
  }
  const target = candidates.find((c) => c && typeof c === 'object' && durationOf(c) !== null);
  if (!target) return null;

  const children = pick(target, ['items', 'children', 'subGroups', 'groups', 'rows']);
  const days = [];
  for (const child of Array.isArray(children) ? children : []) {
    const day = dayOf(child);
    const ms = durationOf(child);
    if (day === null || ms === null) continue;
    days.push({ day: day, durationMs: ms });
  }
  const entity = pick(target, ['user', 'project', 'entity', 'account']) || {};
  const client = pick(target, ['client']) || pick(entity, ['client']) || {};
  const text = (value) => (value === undefined || value === null ? '' : String(value));
  return {
    totalMs: durationOf(target),
    id: text(pick(target, ['id', 'userProfileId', 'projectId', 'accountMemberId'])
      ?? pick(entity, ['id', 'userProfileId', 'projectId'])),
    name: text(pick(target, ['name', 'title', 'userName', 'projectName'])
      ?? pick(entity, ['name', 'userName', 'projectName'])),
    email: text(pick(target, ['email']) ?? pick(entity, ['email'])),
    client: text(pick(target, ['clientName']) ?? pick(entity, ['clientName']) ?? pick(client, ['name'])),
    days: days,
  };
}
"""


def parse_duration_minutes(text: Any) -> Optional[int]:
    """Minutes from "2 h 30 min" style text; None when no hour/minute token is present."""
    raw = str(text or "")
    hours_match = _HOURS_RE.search(raw)
    minutes_match = _MINUTES_RE.search(raw[hours_match.end():] if hours_match else raw)
    if hours_match is None and minutes_match is None:
        return None
    minutes = 0.0
    if hours_match is not None:
        minutes += float(hours_match.group(1).replace(",", ".")) * 60
    if minutes_match is not None:
        minutes += int(minutes_match.group(1))
    return int(round(minutes))


def first_success(strategies: Iterable[Callable[..., Any]], *args: Any) -> Any:
    """Try each strategy in order; the first non-empty result wins."""
    for strategy in strategies:
        try:
            result = strategy(*args)
        except Exception:
            continue
        if result not in (None, "", []):
            return result
    return None


def _clean(text: Any) -> str:
    return re.sub(r"\s+", " ", str(text or "")).strip()


def _is_name_candidate(text: str) -> bool:
    if not text or text.casefold() in SUMMARY_ROW_NAMES:
        return False
    return parse_duration_minutes(text) is None and _DATE_RE.search(text) is None


@dataclass
class RowState:
    total_minutes: Optional[int] = None
    days: List[RawDay] = field(default_factory=list)
    row_id: str = ""
    name: str = ""
    email: str = ""
    client: str = ""


def parse_group_text(text: str) -> Optional[RowState]:
    """Read a group's total and per-day lines ("05/10/2025 Sunday 2 h 30 min") from its text."""
    state = RowState()
    for line in str(text or "").splitlines():
        line = line.strip()
        if not line:
            continue
        date_match = _DATE_RE.search(line)
        if date_match is not None:
            minutes = parse_duration_minutes(line[date_match.end():])
            if minutes is not None:
                state.days.append(RawDay(date_text=date_match.group(1), minutes=minutes))
            continue
        if state.total_minutes is None:
            state.total_minutes = parse_duration_minutes(line)
    if state.total_minutes is None and not state.days:
        return None
    if state.total_minutes is None:
        state.total_minutes = sum(day.minutes for day in state.days)
    return state


class RowStateReader:
    name = "base"

    def read(self, row) -> Optional[RowState]:
        raise NotImplementedError


class StructuredStateReader(RowStateReader):
    """Reads the client-framework state bound to a row node."""

    name = "structured_state"

    def __init__(self, logger, timeout_ms: int = 5_000) -> None:
        self.logger = logger
        self.timeout_ms = timeout_ms

    def read(self, row) -> Optional[RowState]:
        try:
            payload = row.evaluate(SCOPE_STATE_JS, timeout=self.timeout_ms)
        except Exception as err:
            self.logger.debug("Structured state unavailable for row: %s", err)
            return None
        return self.to_state(payload)

    @staticmethod
    def to_state(payload: Any) -> Optional[RowState]:
        if not isinstance(payload, dict) or not isinstance(payload.get("totalMs"), (int, float)):
            return None
        days: List[RawDay] = []
        for item in payload.get("days") or []:
            if not isinstance(item, dict):
                continue
            day = parse_report_date(item.get("day"))
            duration_ms = item.get("durationMs")
            if day is None or not isinstance(duration_ms, (int, float)):
                continue
            days.append(RawDay(date_text=day.isoformat(), minutes=int(round(duration_ms / 60_000))))
        return RowState(
            total_minutes=int(round(payload["totalMs"] / 60_000)),
            days=days,
            row_id=str(payload.get("id") or "").strip(),
            name=_clean(payload.get("name")),
            email=str(payload.get("email") or "").strip(),
            client=_clean(payload.get("client")),
        )


class TextPatternReader(RowStateReader):
    name = "text_pattern"

    def __init__(self, logger, timeout_ms: int = 5_000) -> None:
        self.logger = logger
        self.timeout_ms = timeout_ms

    def read(self, row) -> Optional[RowState]:
        try:
            text = row.inner_text(timeout=self.timeout_ms)
        except Exception as err:
            self.logger.debug("Row text unavailable: %s", err)
            return None
        return parse_group_text(text)


def select_state_readers(page, logger, timeout_ms: int = 5_000) -> List[RowStateReader]:
    text_reader = TextPatternReader(logger, timeout_ms=timeout_ms)
    try:
        has_introspection = bool(page.evaluate(INTROSPECTION_PROBE_JS))
    except Exception as err:
        logger.debug("Introspection probe failed: %s", err)
        has_introspection = False
    if has_introspection:
        logger.info("Client framework introspection available; reading structured row state")
        return [StructuredStateReader(logger, timeout_ms=timeout_ms), text_reader]
    logger.info("Client framework introspection not available; parsing rendered text")
    return [text_reader]


def find_rows(page, selectors: Sequence[str]) -> Tuple[str, Any]:
    """First selector with at least one match, with its locator group."""
    for selector in selectors:
        try:
            group = page.locator(selector)
            if group.count() > 0:
                return selector, group
        except Exception:
            continue
    return "", None


class _RowReading:
    """Shared per-row helpers; every lookup is an ordered fallback list."""

    def __init__(self, logger, timeout_ms: int = 5_000) -> None:
        self.logger = logger
        self.timeout_ms = timeout_ms

    def _text(self, element) -> str:
        return str(element.inner_text(timeout=self.timeout_ms) or "")

    def _attr(self, element, name: str) -> str:
        return str(element.get_attribute(name, timeout=self.timeout_ms) or "").strip()

    def name_from_first_cell(self, row) -> Optional[str]:
        cells = row.locator("td, th")
        if cells.count() == 0:
            return None
        for line in self._text(cells.nth(0)).splitlines():
            line = _clean(line)
            if _is_name_candidate(line):
                return line
        return None

    def name_from_attributes(self, row) -> Optional[str]:
        for attr in NAME_ATTRIBUTES:
            value = _clean(self._attr(row, attr))
            if _is_name_candidate(value):
                return value
        for selector in NAME_ELEMENT_SELECTORS:
            group = row.locator(selector)
            if group.count() == 0:
                continue
            element = group.nth(0)
            for attr in NAME_ATTRIBUTES:
                value = _clean(self._attr(element, attr))
                if _is_name_candidate(value):
                    return value
            value = _clean(self._text(element))
            if _is_name_candidate(value):
                return value
        return None

    def name_from_row_text(self, row) -> Optional[str]:
        for line in self._text(row).splitlines():
            line = _clean(line)
            if _is_name_candidate(line):
                return line
        return None

    def resolve_name(self, row) -> Optional[str]:
        return first_success(
            (self.name_from_first_cell, self.name_from_attributes, self.name_from_row_text),
            row,
        )

    def resolve_row_id(self, row) -> str:
        for attr in ID_ATTRIBUTES:
            try:
                value = self._attr(row, attr)
            except Exception:
                continue
            if value:
                return value
        try:
            links = row.locator("a[href]")
            if links.count() > 0:
                match = _ID_FROM_HREF_RE.search(self._attr(links.nth(0), "href"))
                if match:
                    return match.group(1)
        except Exception:
            pass
        return ""

    def resolve_email(self, row) -> str:
        try:
            match = _EMAIL_RE.search(self._text(row))
        except Exception:
            return ""
        return match.group(0) if match else ""

    def resolve_client(self, row) -> str:
        for selector in CLIENT_SELECTORS:
            try:
                group = row.locator(selector)
                if group.count() > 0:
                    value = _clean(self._text(group.nth(0)))
                    if value:
                        return value
            except Exception:
                continue
        return ""

    def _cell_duration(self, row, offset: int) -> Optional[int]:
        cells = row.locator("td")
        index = cells.count() - offset
        if index < 0:
            return None
        return parse_duration_minutes(self._text(cells.nth(index)))

    def duration_from_last_cell(self, row) -> Optional[int]:
        return self._cell_duration(row, 1)

    def duration_from_second_to_last_cell(self, row) -> Optional[int]:
        return self._cell_duration(row, 2)

    def resolve_duration(self, row) -> Optional[int]:
        # 0 is a valid reading, so first_success (which skips empties) is not used here.
        for strategy in (self.duration_from_last_cell, self.duration_from_second_to_last_cell):
            try:
                minutes = strategy(row)
            except Exception:
                continue
            if minutes is not None:
                return minutes
        return None


class GroupedReportExtractor(_RowReading):
    """Reads a report grouped by {entity, day}: one group per entity, days nested."""

    def __init__(self, logger, readers: Optional[List[RowStateReader]] = None, timeout_ms: int = 5_000) -> None:
        super().__init__(logger, timeout_ms=timeout_ms)
        self.readers = readers

    def extract(self, page) -> List[RawEntityRow]:
        readers = self.readers or select_state_readers(page, self.logger, timeout_ms=self.timeout_ms)
        selector, rows = find_rows(page, GROUP_ROW_SELECTORS)
        if rows is None:
            self.logger.info("Grouped report has no group rows")
            return []
        total = rows.count()
        self.logger.info("Grouped report: %s group rows via %s", total, selector)
        result: List[RawEntityRow] = []
        for index in range(total):
            try:
                result.append(self._read_group(rows.nth(index), index, readers))
            except ExtractionMismatchError as err:
                self.logger.warning("Skipping group row %s: %s", err.row_index, err)
        return result

    def _read_group(self, row, index: int, readers: Sequence[RowStateReader]) -> RawEntityRow:
        state, reader_name = None, ""
        for reader in readers:
            state = reader.read(row)
            if state is not None:
                reader_name = reader.name
                break
        if state is None:
            raise ExtractionMismatchError("no reader understood the row", row_index=index)
        name = self.resolve_name(row) or state.name
        if not name:
            raise ExtractionMismatchError("row has no resolvable name", row_index=index)
        return RawEntityRow(
            name=name,
            row_id=self.resolve_row_id(row) or state.row_id,
            total_minutes=state.total_minutes,
            days=list(state.days),
            email=state.email or self.resolve_email(row),
            client=state.client or self.resolve_client(row) or None,
            source=f"grouped:{reader_name}",
        )


class RosterExtractor(_RowReading):
    """Flat summary: one entity per row, total duration in one of the trailing cells."""

    def extract(self, page) -> List[RawEntityRow]:
        selector, rows = find_rows(page, ROSTER_ROW_SELECTORS)
        if rows is None:
            self.logger.info("Roster report has no rows")
            return []
        result: List[RawEntityRow] = []
        for index in range(rows.count()):
            row = rows.nth(index)
            try:
                result.append(self._read_row(row, index))
            except ExtractionMismatchError as err:
                self.logger.warning("Skipping roster row %s: %s", err.row_index, err)
        self.logger.info("Roster report: %s entities via %s", len(result), selector)
        return result

    def _read_row(self, row, index: int) -> RawEntityRow:
        name = self.resolve_name(row)
        if not name:
            raise ExtractionMismatchError("row has no resolvable name", row_index=index)
        total = self.resolve_duration(row)
        if total is None:
            self.logger.debug("Roster row %s (%s) has no duration cell", index, name)
        return RawEntityRow(
            name=name,
            row_id=self.resolve_row_id(row),
            total_minutes=total,
            email=self.resolve_email(row),
            client=self.resolve_client(row) or None,
            source="roster",
        )


class DrillDownExtractor(_RowReading):
    """Detailed per-entity report: date/duration pairs parsed from table cells."""

    def _cell_texts(self, row) -> List[str]:
        cells = row.locator("td")
        if cells.count() == 0:
            return [self._text(row)]
        return [str(text or "") for text in cells.all_inner_texts()]

    def _read_pair(self, row) -> Optional[RawDay]:
        texts = self._cell_texts(row)
        joined = " ".join(texts)
        date_match = _DATE_RE.search(joined)
        if date_match is None:
            return None
        minutes = None
        for text in texts[-1:] + texts[-2:-1]:
            if _DATE_RE.search(text):
                continue
            minutes = parse_duration_minutes(text)
            if minutes is not None:
                break
        if minutes is None:
            minutes = parse_duration_minutes(joined[date_match.end():])
        if minutes is None:
            return None
        return RawDay(date_text=date_match.group(1), minutes=minutes)

    def extract(self, page, entity: RawEntityRow) -> RawEntityRow:
        _, rows = find_rows(page, DETAIL_ROW_SELECTORS)
        days: List[RawDay] = []
        latest = None
        if rows is not None:
            for index in range(rows.count()):
                try:
                    pair = self._read_pair(rows.nth(index))
                except Exception as err:
                    self.logger.warning("Skipping detail row %s for %s: %s", index, entity.name, err)
                    continue
                if pair is None:
                    continue
                days.append(pair)
                day = parse_report_date(pair.date_text)
                if pair.minutes > 0 and day is not None and (latest is None or day > latest):
                    latest = day
        total = sum(day.minutes for day in days)
        self.logger.info(
            "Drill-down %s: %s entries, %s min, last active %s",
            entity.name,
            len(days),
            total,
            format_report_date(latest) if latest else "-",
        )
        return RawEntityRow(
            name=entity.name,
            row_id=entity.row_id,
            total_minutes=total,
            days=days,
            email=entity.email,
            client=entity.client,
            last_active=latest,
            source="drilldown",
        )
