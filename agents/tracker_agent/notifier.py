from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import httpx

from agents.tracker_agent.models import EntityWithoutActivity
from agents.tracker_agent.session import sanitize_url_for_log


MAX_LISTED_ENTITIES = 10


class AbsenceNotifier:
    """Posts the absence result to a Slack-compatible incoming webhook."""

    def __init__(self, webhook_url: str, logger, timeout_seconds: float = 15.0, trailing_days: int = 30) -> None:
        self.webhook_url = str(webhook_url or "").strip()
        self.logger = logger
        self.timeout_seconds = timeout_seconds
        self.trailing_days = trailing_days

    def _entity_line(self, entity: EntityWithoutActivity) -> str:
        days = entity.days_since_last_activity if entity.days_since_last_activity is not None else "?"
        last = entity.last_activity_date or "no entries"
        return (
            f"• *{entity.name}*\n"
            f"  └ {days} workdays without entries | Last: {last} | {self.trailing_days}d: {entity.total_hours_trailing_window}"
        )

    def build_message(
        self,
        entities: Sequence[EntityWithoutActivity],
        date_range: Dict[str, str],
        manual: bool = False,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        trigger = "Manual check" if manual else "Scheduled check"
        period = f"{date_range.get('from', '')} → {date_range.get('to', '')}"
        if not entities:
            return {
                "text": ":white_check_mark: Everyone logged hours",
                "blocks": [
                    {
                        "type": "header",
                        "text": {"type": "plain_text", "text": ":white_check_mark: All employees OK", "emoji": True},
                    },
                    {
                        "type": "section",
                        "fields": [
                            {"type": "mrkdwn", "text": f"*Trigger:*\n{trigger}"},
                            {"type": "mrkdwn", "text": f"*Period:*\n{period}"},
                        ],
                    },
                ],
            }

        listed = "\n\n".join(self._entity_line(entity) for entity in entities[:MAX_LISTED_ENTITIES])
        overflow = len(entities) - MAX_LISTED_ENTITIES
        if overflow > 0:
            listed += f"\n\n_...and {overflow} more_"
        checked = (now or datetime.now()).strftime("%Y-%m-%d %H:%M")
        blocks: List[Dict[str, Any]] = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f":warning: {len(entities)} employees without hours",
                    "emoji": True,
                },
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Trigger:*\n{trigger}"},
                    {"type": "mrkdwn", "text": f"*Period:*\n{period}"},
                    {"type": "mrkdwn", "text": f"*Affected:*\n{len(entities)}"},
                    {"type": "mrkdwn", "text": f"*Checked at:*\n{checked}"},
                ],
            },
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*Details:*\n\n{listed}"}},
            {"type": "divider"},
        ]
        return {"text": f":warning: {len(entities)} employees without hours", "blocks": blocks}

    def send(
        self,
        entities: Sequence[EntityWithoutActivity],
        date_range: Dict[str, str],
        manual: bool = False,
    ) -> Dict[str, Any]:
        if not self.webhook_url:
            self.logger.info("Notification skipped: webhook URL not configured")
            return {"ok": False, "error": "webhook URL not configured"}
        payload = self.build_message(entities, date_range, manual=manual)
        try:
            response = httpx.post(self.webhook_url, json=payload, timeout=self.timeout_seconds)
        except Exception as err:
            self.logger.exception("Notification send failed")
            return {"ok": False, "error": str(err)}
        if response.status_code >= 400:
            self.logger.error(
                "Notification rejected by %s: %s",
                sanitize_url_for_log(self.webhook_url),
                response.status_code,
            )
            return {"ok": False, "error": f"webhook returned {response.status_code}: {response.text[:200]}"}
        self.logger.info("Notification sent (%s entities)", len(entities))
        return {"ok": True}
