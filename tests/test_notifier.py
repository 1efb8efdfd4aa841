import logging
import unittest
from datetime import datetime
from unittest import mock

try:
    import httpx

    from agents.tracker_agent.models import EntityWithoutActivity
    from agents.tracker_agent.notifier import AbsenceNotifier

    DEPS_AVAILABLE = True
except ModuleNotFoundError:  # pragma: no cover - depends on local environment
    DEPS_AVAILABLE = False


RANGE = {"from": "2025-10-06", "to": "2025-10-07"}


def _entities(count: int):
    return [
        EntityWithoutActivity(
            id=str(idx),
            name=f"Person {idx}",
            last_activity_date="2025-09-26" if idx % 2 else None,
            total_hours_trailing_window="12 h 0 min",
            days_since_last_activity=8 if idx % 2 else None,
        )
        for idx in range(count)
    ]


@unittest.skipUnless(DEPS_AVAILABLE, "httpx/pydantic are not installed in this environment")
class AbsenceNotifierTests(unittest.TestCase):
    def setUp(self) -> None:
        self.logger = logging.getLogger("tests.tracker.notifier")
        self.notifier = AbsenceNotifier("https://hooks.example.test/T000/B000", self.logger, trailing_days=30)

    def test_all_ok_message(self) -> None:
        message = self.notifier.build_message([], RANGE, manual=True)
        self.assertIn("Everyone logged hours", message["text"])
        fields = message["blocks"][1]["fields"]
        self.assertIn("Manual check", fields[0]["text"])
        self.assertIn("2025-10-06 → 2025-10-07", fields[1]["text"])

    def test_warning_lists_entities_with_overflow(self) -> None:
        message = self.notifier.build_message(_entities(12), RANGE, now=datetime(2025, 10, 8, 9, 30))
        self.assertIn("12 employees without hours", message["text"])
        details = message["blocks"][2]["text"]["text"]
        self.assertIn("*Person 0*", details)
        self.assertIn("*Person 9*", details)
        self.assertNotIn("*Person 10*", details)
        self.assertIn("...and 2 more", details)
        self.assertIn("? workdays without entries | Last: no entries | 30d: 12 h 0 min", details)
        self.assertIn("8 workdays without entries | Last: 2025-09-26", details)
        self.assertIn("2025-10-08 09:30", message["blocks"][1]["fields"][3]["text"])

    def test_send_skipped_without_webhook(self) -> None:
        notifier = AbsenceNotifier("", self.logger)
        with mock.patch("agents.tracker_agent.notifier.httpx.post") as post:
            result = notifier.send(_entities(1), RANGE)
        post.assert_not_called()
        self.assertFalse(result["ok"])

    def test_send_posts_payload(self) -> None:
        response = httpx.Response(200, text="ok")
        with mock.patch("agents.tracker_agent.notifier.httpx.post", return_value=response) as post:
            result = self.notifier.send(_entities(1), RANGE)
        self.assertEqual(result, {"ok": True})
        args, kwargs = post.call_args
        self.assertEqual(args[0], "https://hooks.example.test/T000/B000")
        self.assertIn("blocks", kwargs["json"])
        self.assertEqual(kwargs["timeout"], 15.0)

    def test_send_reports_rejections_and_errors(self) -> None:
        with mock.patch(
            "agents.tracker_agent.notifier.httpx.post",
            return_value=httpx.Response(404, text="no_service"),
        ):
            result = self.notifier.send(_entities(1), RANGE)
        self.assertFalse(result["ok"])
        self.assertIn("404", result["error"])

        with mock.patch(
            "agents.tracker_agent.notifier.httpx.post",
            side_effect=httpx.ConnectError("refused"),
        ):
            result = self.notifier.send(_entities(1), RANGE)
        self.assertEqual(result, {"ok": False, "error": "refused"})


if __name__ == "__main__":
    unittest.main()
