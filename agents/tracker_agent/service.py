import time
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from agents.tracker_agent.aggregator import build_absence_entries, build_chart_series
from agents.tracker_agent.business_days import (
    DateWindow,
    format_iso,
    last_workdays_range,
    trailing_window,
)
from agents.tracker_agent.diagnostics import ArtifactDiagnostics, Diagnostics
from agents.tracker_agent.errors import ConfigurationError, NavigationTimeoutError, TrackerError
from agents.tracker_agent.extractor import DrillDownExtractor, GroupedReportExtractor, RosterExtractor
from agents.tracker_agent.models import (
    AbsenceData,
    ChartData,
    ChartsResponse,
    CheckHoursResponse,
    Credentials,
    DateRange,
    ProjectChartData,
    ProjectChartsResponse,
)
from agents.tracker_agent.navigator import ReportNavigator
from agents.tracker_agent.records import RawEntityRow
from agents.tracker_agent.session import SessionManager, TrackerSession


AGENT_NAME = "tracker_agent"
RUN_STATES = ("idle", "session_established", "navigated", "extracted", "normalized", "closed")


class _Run:
    """Linear per-call state: idle -> session_established -> navigated -> extracted -> normalized -> closed."""

    def __init__(self, job: str, run_id: str, logger) -> None:
        self.job = job
        self.run_id = run_id
        self.logger = logger
        self.state = "idle"

    def advance(self, state: str, **meta: Any) -> None:
        if state not in RUN_STATES:
            raise ValueError(f"Unknown run state: {state}")
        if state != "closed" and RUN_STATES.index(state) < RUN_STATES.index(self.state):
            raise ValueError(f"Run state cannot go back from {self.state} to {state}")
        suffix = " | " + ", ".join(f"{k}={v}" for k, v in meta.items()) if meta else ""
        self.logger.info("[%s:%s] %s -> %s%s", self.job, self.run_id, self.state, state, suffix)
        self.state = state


class TrackerAgentService:
    """Extracts per-entity activity from the time-tracking web app through one browser session per call."""

    def __init__(
        self,
        data_dir: Path,
        base_url: str,
        logger,
        *,
        headless: bool = True,
        step_timeout_ms: int = 30_000,
        trailing_days: int = 30,
        absence_workdays: int = 2,
        locale: str = "en-US",
        timezone_id: str = "",
        debug_snapshots: bool = False,
        session_manager_factory: Optional[Callable[[Diagnostics], Any]] = None,
        navigator_factory: Optional[Callable[[Diagnostics], Any]] = None,
        clock: Callable[[], date] = date.today,
    ) -> None:
        self.data_dir = data_dir
        self.base_url = base_url.rstrip("/")
        self.logger = logger
        self.headless = headless
        self.step_timeout_ms = step_timeout_ms
        self.trailing_days = trailing_days
        self.absence_workdays = absence_workdays
        self.locale = locale
        self.timezone_id = timezone_id
        self.debug_snapshots = debug_snapshots
        self.session_manager_factory = session_manager_factory or self._default_session_manager
        self.navigator_factory = navigator_factory or self._default_navigator
        self.clock = clock
        self._debug(
            "Service initialized",
            base_url=self.base_url,
            headless=headless,
            trailing_days=trailing_days,
            debug_snapshots=debug_snapshots,
        )

    def _debug(self, message: str, **meta: Any) -> None:
        suffix = " | " + ", ".join(f"{k}={v}" for k, v in meta.items()) if meta else ""
        self.logger.debug(f"[DEBUG][{AGENT_NAME}] {message}{suffix}")

    @staticmethod
    def now_id() -> str:
        return time.strftime("%Y%m%d-%H%M%S")

    def list_jobs(self) -> Dict[str, Callable[..., Any]]:
        return {
            "check_hours": self.find_entities_without_activity,
            "charts": self.collect_entity_chart_series,
            "project_charts": self.collect_project_chart_series,
        }

    def _default_session_manager(self, diagnostics: Diagnostics) -> SessionManager:
        return SessionManager(
            self.base_url,
            self.logger,
            headless=self.headless,
            timeout_ms=self.step_timeout_ms,
            locale=self.locale,
            timezone_id=self.timezone_id,
            diagnostics=diagnostics,
        )

    def _default_navigator(self, diagnostics: Diagnostics) -> ReportNavigator:
        return ReportNavigator(
            self.base_url,
            self.logger,
            timeout_ms=self.step_timeout_ms,
            diagnostics=diagnostics,
        )

    def _diagnostics(self, job: str, run_id: str) -> Diagnostics:
        if not self.debug_snapshots:
            return Diagnostics()
        return ArtifactDiagnostics(self.data_dir, job, run_id, self.logger)

    def default_absence_window(self) -> DateWindow:
        return last_workdays_range(self.absence_workdays, today=self.clock())

    def default_chart_window(self) -> DateWindow:
        return trailing_window(self.trailing_days, end=self.clock())

    def trailing_window_for(self, window: DateWindow) -> DateWindow:
        trailing = trailing_window(self.trailing_days, end=window.end)
        return DateWindow(start=min(trailing.start, window.start), end=window.end)

    @staticmethod
    def _date_range(window: DateWindow) -> DateRange:
        return DateRange(from_=format_iso(window.start), to=format_iso(window.end))

    def _execute(self, job: str, credentials: Optional[Credentials], work, response_cls):
        run = _Run(job, self.now_id(), self.logger)
        try:
            if credentials is None or not credentials.is_complete():
                raise ConfigurationError("Tracker credentials are not configured")
            diagnostics = self._diagnostics(job, run.run_id)
            manager = self.session_manager_factory(diagnostics)
            navigator = self.navigator_factory(diagnostics)
            with manager.session(credentials) as session:
                run.advance("session_established", workspace_id=session.workspace_id)
                try:
                    data = work(session, navigator, run)
                    diagnostics.dump(f"{job}_result", data.model_dump(by_alias=True))
                except Exception:
                    diagnostics.snapshot(session.page, f"{job}_failed")
                    raise
            run.advance("closed", outcome="success")
            return response_cls(success=True, data=data)
        except TrackerError as err:
            self.logger.error("[%s:%s] %s: %s", job, run.run_id, type(err).__name__, err)
            run.advance("closed", outcome="failure")
            return response_cls(success=False, error=str(err))
        except Exception as err:
            self.logger.exception("Execution error job=%s run_id=%s", job, run.run_id)
            run.advance("closed", outcome="failure")
            return response_cls(success=False, error=str(err) or type(err).__name__)

    def _grouped_rows(
        self,
        session: TrackerSession,
        navigator,
        window: DateWindow,
        dimension: str,
    ) -> Optional[List[RawEntityRow]]:
        """Preferred strategy. None means the grouped report is unavailable or empty."""
        try:
            navigator.open_report(session.page, session.workspace_id, window, [dimension, "day"])
        except NavigationTimeoutError as err:
            self.logger.warning("Grouped report unavailable for %s: %s", dimension, err)
            return None
        rows = GroupedReportExtractor(self.logger).extract(session.page)
        if not rows:
            self.logger.info("Grouped report returned no %s groups; falling back to drill-down", dimension)
            return None
        return rows

    def _roster_rows(self, session: TrackerSession, navigator, window: DateWindow, dimension: str) -> List[RawEntityRow]:
        navigator.open_report(session.page, session.workspace_id, window, [dimension])
        return RosterExtractor(self.logger).extract(session.page)

    def _drill_down(
        self,
        session: TrackerSession,
        navigator,
        entities: Sequence[RawEntityRow],
        window: DateWindow,
        dimension: str,
    ) -> List[RawEntityRow]:
        """Fallback strategy: one detailed report per entity, processed sequentially on the same page."""
        extractor = DrillDownExtractor(self.logger)
        rows: List[RawEntityRow] = []
        for entity in entities:
            placeholder = RawEntityRow(
                name=entity.name,
                row_id=entity.row_id,
                total_minutes=entity.total_minutes,
                email=entity.email,
                client=entity.client,
                complete=False,
                source="drilldown:placeholder",
            )
            if not entity.row_id:
                self.logger.warning("No row identifier for %s; cannot drill down", entity.name)
                rows.append(placeholder)
                continue
            try:
                navigator.open_report(
                    session.page,
                    session.workspace_id,
                    window,
                    ["day"],
                    report="detailed",
                    filters={dimension: entity.row_id},
                )
            except NavigationTimeoutError as err:
                self.logger.warning("Drill-down failed for %s: %s", entity.name, err)
                rows.append(placeholder)
                continue
            rows.append(extractor.extract(session.page, entity))
        return rows

    def find_entities_without_activity(
        self,
        credentials: Optional[Credentials],
        window: Optional[DateWindow] = None,
    ) -> CheckHoursResponse:
        window = window or self.default_absence_window()

        def work(session: TrackerSession, navigator, run: _Run) -> AbsenceData:
            trailing = self.trailing_window_for(window)
            roster = self._roster_rows(session, navigator, window, "user")
            activity = self._grouped_rows(session, navigator, trailing, "user")
            run.advance("navigated", roster=len(roster), grouped=activity is not None)
            if activity is None:
                flagged = [row for row in roster if not row.total_minutes]
                activity = self._drill_down(session, navigator, flagged, trailing, "user")
            run.advance("extracted", roster=len(roster), activity=len(activity))
            entities = build_absence_entries(roster, activity, window, trailing, self.clock())
            run.advance("normalized", without_activity=len(entities))
            return AbsenceData(
                date_range=self._date_range(window),
                entities_without_activity=entities,
                total_count=len(entities),
                checked_at=datetime.now().isoformat(),
            )

        return self._execute("check_hours", credentials, work, CheckHoursResponse)

    def _chart_rows(self, session: TrackerSession, navigator, run: _Run, window: DateWindow, dimension: str):
        rows = self._grouped_rows(session, navigator, window, dimension)
        run.advance("navigated", grouped=rows is not None)
        if rows is None:
            roster = self._roster_rows(session, navigator, window, dimension)
            active = [row for row in roster if row.total_minutes is None or row.total_minutes > 0]
            rows = self._drill_down(session, navigator, active, window, dimension)
        run.advance("extracted", rows=len(rows))
        return rows

    def collect_entity_chart_series(
        self,
        credentials: Optional[Credentials],
        window: Optional[DateWindow] = None,
    ) -> ChartsResponse:
        window = window or self.default_chart_window()

        def work(session: TrackerSession, navigator, run: _Run) -> ChartData:
            rows = self._chart_rows(session, navigator, run, window, "user")
            series = build_chart_series(rows, window)
            run.advance("normalized", series=len(series))
            return ChartData(
                date_range=self._date_range(window),
                series=series,
                total_count=len(series),
                checked_at=datetime.now().isoformat(),
            )

        return self._execute("charts", credentials, work, ChartsResponse)

    def collect_project_chart_series(
        self,
        credentials: Optional[Credentials],
        window: Optional[DateWindow] = None,
    ) -> ProjectChartsResponse:
        window = window or self.default_chart_window()

        def work(session: TrackerSession, navigator, run: _Run) -> ProjectChartData:
            rows = self._chart_rows(session, navigator, run, window, "project")
            series = build_chart_series(rows, window, projects=True)
            run.advance("normalized", series=len(series))
            return ProjectChartData(
                date_range=self._date_range(window),
                series=series,
                total_count=len(series),
                checked_at=datetime.now().isoformat(),
            )

        return self._execute("project_charts", credentials, work, ProjectChartsResponse)
