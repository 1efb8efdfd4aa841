import unittest

try:
    from fastapi import FastAPI
    from fastapi.testclient import TestClient

    from agents.tracker_agent.models import (
        AbsenceData,
        ChartData,
        ChartsResponse,
        CheckHoursResponse,
        Credentials,
        DateRange,
        EntityWithoutActivity,
        ProjectChartData,
        ProjectChartsResponse,
    )
    from routers.tracker_agent import create_tracker_router

    DEPS_AVAILABLE = True
except ModuleNotFoundError:  # pragma: no cover - depends on local environment
    DEPS_AVAILABLE = False


class _FakeTrackerService:
    def __init__(self) -> None:
        self.calls = []

    def _range(self, window):
        if window is None:
            return DateRange(from_="2025-10-06", to="2025-10-07")
        return DateRange(from_=window.start.isoformat(), to=window.end.isoformat())

    def find_entities_without_activity(self, credentials, window=None):
        self.calls.append(("check_hours", credentials, window))
        entity = EntityWithoutActivity(id="2", name="Bob Stone")
        return CheckHoursResponse(
            success=True,
            data=AbsenceData(
                date_range=self._range(window),
                entities_without_activity=[entity],
                total_count=1,
                checked_at="2025-10-08T09:00:00",
            ),
        )

    def collect_entity_chart_series(self, credentials, window=None):
        self.calls.append(("charts", credentials, window))
        return ChartsResponse(
            success=True,
            data=ChartData(date_range=self._range(window), series=[], total_count=0, checked_at="now"),
        )

    def collect_project_chart_series(self, credentials, window=None):
        self.calls.append(("project_charts", credentials, window))
        return ProjectChartsResponse(success=False, error="Login failed")


class _FakeNotifier:
    def __init__(self) -> None:
        self.sent = []

    def send(self, entities, date_range, manual=False):
        self.sent.append({"names": [entity.name for entity in entities], "range": date_range, "manual": manual})
        return {"ok": True}


@unittest.skipUnless(DEPS_AVAILABLE, "fastapi is not installed in this environment")
class TrackerRouterTests(unittest.TestCase):
    def _build_client(self, *, job_secret="top-secret", missing=None):
        service, notifier = _FakeTrackerService(), _FakeNotifier()
        app = FastAPI()
        app.include_router(
            create_tracker_router(
                service=service,
                job_secret=job_secret,
                credentials_fn=lambda: Credentials(email="ops@example.test", password="pw"),
                notifier=notifier,
                missing_config_fn=lambda: list(missing or []),
            ),
            prefix="/api",
        )
        return TestClient(app), service, notifier

    def test_check_hours_defaults_to_service_window(self) -> None:
        client, service, notifier = self._build_client()
        response = client.post("/api/check-hours?secret=top-secret")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"]["dateRange"], {"from": "2025-10-06", "to": "2025-10-07"})
        self.assertEqual(body["data"]["entitiesWithoutActivity"][0]["totalHoursTrailingWindow"], "0 h 0 min")
        self.assertIsNone(service.calls[0][2])
        self.assertEqual(notifier.sent, [])

    def test_check_hours_custom_range_and_notify(self) -> None:
        client, service, notifier = self._build_client()
        response = client.post(
            "/api/check-hours",
            headers={"Authorization": "Bearer top-secret"},
            json={"from": "2025-10-01", "to": "2025-10-03", "notify": True},
        )
        self.assertEqual(response.status_code, 200)
        window = service.calls[0][2]
        self.assertEqual((window.start.isoformat(), window.end.isoformat()), ("2025-10-01", "2025-10-03"))
        self.assertEqual(response.json()["notification"], {"ok": True})
        self.assertEqual(notifier.sent[0]["names"], ["Bob Stone"])
        self.assertEqual(notifier.sent[0]["range"], {"from": "2025-10-01", "to": "2025-10-03"})
        self.assertTrue(notifier.sent[0]["manual"])

    def test_partial_or_invalid_range_is_rejected(self) -> None:
        client, service, _ = self._build_client()
        response = client.post("/api/charts?secret=top-secret", json={"from": "2025-10-01"})
        self.assertEqual(response.status_code, 400)
        response = client.post("/api/charts?secret=top-secret", json={"from": "01/10/2025", "to": "2025-10-03"})
        self.assertEqual(response.status_code, 400)
        response = client.post("/api/charts?secret=top-secret", json={"from": "2000-01-01", "to": "2025-12-31"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("366 days", response.json()["detail"])
        self.assertEqual(service.calls, [])

    def test_full_year_range_is_accepted(self) -> None:
        client, service, _ = self._build_client()
        response = client.post("/api/charts?secret=top-secret", json={"from": "2024-01-01", "to": "2024-12-31"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(service.calls[0][2].day_count(), 366)

    def test_secret_in_body_is_accepted(self) -> None:
        client, service, _ = self._build_client()
        response = client.post("/api/charts", json={"secret": "top-secret"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(service.calls[0][0], "charts")

    def test_unauthorized(self) -> None:
        client, service, _ = self._build_client()
        response = client.post("/api/check-hours", headers={"Authorization": "Bearer wrong"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(service.calls, [])

    def test_missing_config(self) -> None:
        client, _, _ = self._build_client(missing=["tracker_password"])
        response = client.post("/api/check-hours?secret=top-secret")
        self.assertEqual(response.status_code, 400)
        self.assertIn("tracker_password", response.json()["detail"])

    def test_failed_extraction_is_a_500_with_result_shape(self) -> None:
        client, _, _ = self._build_client(job_secret="")
        response = client.post("/api/project-charts")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"success": False, "data": None, "error": "Login failed"})

    def test_cron_requires_configured_secret(self) -> None:
        client, service, _ = self._build_client(job_secret="")
        response = client.post("/api/cron/check-hours")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(service.calls, [])

    def test_cron_runs_check_and_notifies(self) -> None:
        client, service, notifier = self._build_client()
        response = client.post("/api/cron/check-hours", headers={"Authorization": "Bearer top-secret"})
        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.json(), {"accepted": True})
        self.assertEqual(service.calls[0][0], "check_hours")
        self.assertEqual(len(notifier.sent), 1)
        self.assertFalse(notifier.sent[0]["manual"])


if __name__ == "__main__":
    unittest.main()
