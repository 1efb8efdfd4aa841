import json
import logging
import tempfile
import unittest
from contextlib import contextmanager
from datetime import date
from pathlib import Path

try:
    from agents.tracker_agent.business_days import DateWindow
    from agents.tracker_agent.errors import AuthenticationError, NavigationTimeoutError
    from agents.tracker_agent.models import Credentials
    from agents.tracker_agent.service import TrackerAgentService
    from agents.tracker_agent.session import TrackerSession

    DEPS_AVAILABLE = True
except ModuleNotFoundError:  # pragma: no cover - depends on local environment
    DEPS_AVAILABLE = False


ROSTER = ("summary", ("user",), ())
GROUPED = ("summary", ("user", "day"), ())
PROJECT_ROSTER = ("summary", ("project",), ())


def _detailed(dimension: str, row_id: str):
    return ("detailed", ("day",), ((dimension, row_id),))


class _FakeElement:
    def __init__(self, text: str = "", *, attrs=None, children=None):
        self._text = text
        self._attrs = dict(attrs or {})
        self._children = dict(children or {})

    def inner_text(self, timeout=None):
        return self._text

    def get_attribute(self, name: str, timeout=None):
        return self._attrs.get(name)

    def locator(self, selector: str):
        return _FakeGroup(self._children.get(selector, []))

    def evaluate(self, script: str, arg=None, timeout=None):
        return None


class _FakeGroup:
    def __init__(self, elements):
        self._elements = list(elements)

    def count(self):
        return len(self._elements)

    def nth(self, index: int):
        return self._elements[index]

    def all_inner_texts(self):
        return [element.inner_text() for element in self._elements]


def _table_row(*cells: str, row_id: str = "", client: str = "") -> _FakeElement:
    elements = [_FakeElement(text) for text in cells]
    children = {"td": elements, "td, th": elements}
    if client:
        children[".client-name"] = [_FakeElement(client)]
    attrs = {"data-id": row_id} if row_id else {}
    return _FakeElement("\n".join(cells), attrs=attrs, children=children)


class _FakeReportPage:
    """Renders whatever report the fake navigator last opened."""

    def __init__(self, reports):
        self.reports = reports
        self.current = None

    def locator(self, selector: str):
        return _FakeGroup(self.reports.get(self.current, {}).get(selector, []))

    def evaluate(self, script: str, arg=None):
        return False


class _FakeNavigator:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    def open_report(self, page, workspace_id, window, group_by, report="summary", filters=None):
        key = (report, tuple(group_by), tuple(sorted((filters or {}).items())))
        self.calls.append((key, window))
        page.current = key
        if key in self.failing:
            raise NavigationTimeoutError(f"Report page did not settle: {key}")
        return f"https://app.tmetric.com/#/reports/{workspace_id}/{report}"


class _FakeSessionManager:
    def __init__(self, page, error=None):
        self.page = page
        self.error = error
        self.opened = 0
        self.closed = 0

    @contextmanager
    def session(self, credentials):
        if self.error is not None:
            raise self.error
        self.opened += 1
        try:
            yield TrackerSession(playwright=None, browser=None, context=None, page=self.page, workspace_id="123")
        finally:
            self.closed += 1


def _roster_page_rows():
    return {
        "table.report-table tbody tr": [
            _table_row("Ana Ruiz", "2 h 0 min", row_id="1"),
            _table_row("Bob Stone", "0 min", row_id="2"),
            _table_row("Carla Diaz", "0 min", row_id="3"),
        ]
    }


@unittest.skipUnless(DEPS_AVAILABLE, "tracker dependencies are not installed in this environment")
class TrackerServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.logger = logging.getLogger("tests.tracker.service")
        self.credentials = Credentials(email="ops@example.test", password="pw")
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def _service(self, manager, navigator, **kwargs) -> TrackerAgentService:
        return TrackerAgentService(
            Path(self.tmp.name),
            "https://app.tmetric.com",
            self.logger,
            session_manager_factory=lambda diagnostics: manager,
            navigator_factory=lambda diagnostics: navigator,
            clock=lambda: date(2025, 10, 8),
            **kwargs,
        )

    def test_absence_from_grouped_report(self) -> None:
        page = _FakeReportPage(
            {
                ROSTER: _roster_page_rows(),
                GROUPED: {
                    ".report-group": [
                        _FakeElement("Ana Ruiz\n2 h 0 min\n07/10/2025 Tuesday 2 h 0 min"),
                        _FakeElement("Carla Diaz\n12 h 0 min\n26/09/2025 Friday 12 h 0 min"),
                    ]
                },
            }
        )
        manager, navigator = _FakeSessionManager(page), _FakeNavigator()
        response = self._service(manager, navigator).find_entities_without_activity(self.credentials)

        self.assertTrue(response.success, response.error)
        payload = response.model_dump(by_alias=True)["data"]
        self.assertEqual(payload["dateRange"], {"from": "2025-10-06", "to": "2025-10-07"})
        self.assertEqual(payload["totalCount"], 2)
        bob, carla = payload["entitiesWithoutActivity"]
        self.assertEqual((bob["id"], bob["totalHoursTrailingWindow"], bob["lastActivityDate"]), ("2", "0 h 0 min", None))
        self.assertEqual(carla["lastActivityDate"], "2025-09-26")
        self.assertEqual(carla["totalHoursTrailingWindow"], "12 h 0 min")
        self.assertEqual(carla["daysSinceLastActivity"], 8)

        (roster_key, roster_window), (grouped_key, grouped_window) = navigator.calls
        self.assertEqual(roster_key, ROSTER)
        self.assertEqual(roster_window, DateWindow.from_iso("2025-10-06", "2025-10-07"))
        self.assertEqual(grouped_key, GROUPED)
        self.assertEqual(grouped_window, DateWindow.from_iso("2025-09-07", "2025-10-07"))
        self.assertEqual((manager.opened, manager.closed), (1, 1))

    def test_absence_falls_back_to_drill_down(self) -> None:
        page = _FakeReportPage(
            {
                ROSTER: _roster_page_rows(),
                _detailed("user", "3"): {
                    "table.report-table tbody tr": [_table_row("26/09/2025", "Support", "12 h 0 min")]
                },
            }
        )
        navigator = _FakeNavigator(failing={GROUPED, _detailed("user", "2")})
        response = self._service(_FakeSessionManager(page), navigator).find_entities_without_activity(
            self.credentials
        )

        self.assertTrue(response.success, response.error)
        entities = {entity.id: entity for entity in response.data.entities_without_activity}
        self.assertEqual(sorted(entities), ["2", "3"])
        self.assertEqual(entities["2"].total_hours_trailing_window, "n/a")
        self.assertIsNone(entities["2"].days_since_last_activity)
        self.assertEqual(entities["3"].days_since_last_activity, 8)
        drilled = [key for key, _ in navigator.calls if key[0] == "detailed"]
        self.assertEqual(drilled, [_detailed("user", "2"), _detailed("user", "3")])

    def test_entity_charts(self) -> None:
        page = _FakeReportPage(
            {
                GROUPED: {
                    ".report-group": [
                        _FakeElement("Ana Ruiz\n3 h 0 min\n01/10/2025 Wednesday 3 h 0 min"),
                        _FakeElement("Bob Stone\n0 min"),
                    ]
                }
            }
        )
        response = self._service(_FakeSessionManager(page), _FakeNavigator()).collect_entity_chart_series(
            self.credentials
        )
        self.assertTrue(response.success, response.error)
        self.assertEqual(response.data.date_range.from_, "2025-09-08")
        self.assertEqual([series.name for series in response.data.series], ["Ana Ruiz"])
        series = response.data.series[0]
        self.assertEqual(len(series.daily_hours), 31)
        self.assertEqual(series.total_hours_trailing_window, "3 h 0 min")

    def test_project_charts_fall_back_when_grouped_report_is_empty(self) -> None:
        page = _FakeReportPage(
            {
                PROJECT_ROSTER: {
                    "table.report-table tbody tr": [
                        _table_row("Website", "3 h 0 min", row_id="9", client="Acme"),
                        _table_row("Idle", "0 min", row_id="10"),
                    ]
                },
                _detailed("project", "9"): {
                    "table.report-table tbody tr": [_table_row("02/10/2025", "Design", "3 h 0 min")]
                },
            }
        )
        navigator = _FakeNavigator()
        window = DateWindow.from_iso("2025-10-01", "2025-10-07")
        response = self._service(_FakeSessionManager(page), navigator).collect_project_chart_series(
            self.credentials, window
        )
        self.assertTrue(response.success, response.error)
        self.assertEqual(response.data.total_count, 1)
        series = response.data.series[0]
        self.assertEqual((series.id, series.name, series.client), ("9", "Website", "Acme"))
        self.assertEqual(len(series.daily_hours), 7)
        self.assertEqual(navigator.calls[-1][0], _detailed("project", "9"))

    def test_missing_credentials_never_open_a_session(self) -> None:
        manager = _FakeSessionManager(_FakeReportPage({}))
        response = self._service(manager, _FakeNavigator()).find_entities_without_activity(
            Credentials(email="", password="")
        )
        self.assertFalse(response.success)
        self.assertIn("credentials", response.error)
        self.assertEqual(manager.opened, 0)

    def test_login_failure_is_a_failed_result(self) -> None:
        manager = _FakeSessionManager(_FakeReportPage({}), error=AuthenticationError("Login failed"))
        response = self._service(manager, _FakeNavigator()).collect_entity_chart_series(self.credentials)
        self.assertFalse(response.success)
        self.assertEqual(response.error, "Login failed")
        self.assertIsNone(response.data)

    def test_unexpected_error_still_closes_session(self) -> None:
        class _BrokenNavigator(_FakeNavigator):
            def open_report(self, *args, **kwargs):
                raise RuntimeError("page crashed")

        manager = _FakeSessionManager(_FakeReportPage({}))
        response = self._service(manager, _BrokenNavigator()).find_entities_without_activity(self.credentials)
        self.assertFalse(response.success)
        self.assertEqual(response.error, "page crashed")
        self.assertEqual((manager.opened, manager.closed), (1, 1))

    def test_run_states_are_logged_in_order(self) -> None:
        page = _FakeReportPage({ROSTER: _roster_page_rows()})
        service = self._service(_FakeSessionManager(page), _FakeNavigator())
        with self.assertLogs(self.logger, level="INFO") as logs:
            service.find_entities_without_activity(self.credentials)
        transitions = [line.split("] ", 1)[1].split(" | ")[0] for line in logs.output if "->" in line]
        self.assertEqual(
            transitions,
            [
                "idle -> session_established",
                "session_established -> navigated",
                "navigated -> extracted",
                "extracted -> normalized",
                "normalized -> closed",
            ],
        )

    def test_debug_snapshots_dump_result(self) -> None:
        page = _FakeReportPage({ROSTER: _roster_page_rows()})
        service = self._service(_FakeSessionManager(page), _FakeNavigator(), debug_snapshots=True)
        response = service.find_entities_without_activity(self.credentials)
        self.assertTrue(response.success, response.error)
        dumps = list((Path(self.tmp.name) / "runs" / "check_hours").glob("*/check_hours_result.json"))
        self.assertEqual(len(dumps), 1)
        payload = json.loads(dumps[0].read_text(encoding="utf-8"))
        self.assertEqual(payload["totalCount"], 2)


if __name__ == "__main__":
    unittest.main()
