import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI

from agents.tracker_agent.models import Credentials
from agents.tracker_agent.notifier import AbsenceNotifier
from agents.tracker_agent.service import TrackerAgentService
from routers.tracker_agent import create_tracker_router


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger("tracker_runner")

APP = FastAPI(title="Tracker Runner")


DATA_DIR = Path(os.getenv("DATA_DIR", "/data")).resolve()
DATA_DIR.mkdir(parents=True, exist_ok=True)


def _load_options() -> Dict[str, Any]:
    """Load persisted options from <DATA_DIR>/options.json."""
    options_path = DATA_DIR / "options.json"
    if not options_path.exists():
        logger.info("No options.json; using environment variables or defaults")
        return {}
    try:
        options = json.loads(options_path.read_text(encoding="utf-8"))
        logger.info("Options loaded from %s", options_path)
        return options
    except Exception:
        logger.exception("Could not parse %s; using defaults", options_path)
        return {}


OPTIONS = _load_options()


def _setting(name: str, default: str = "") -> str:
    """Read a setting from the environment first, then options.json."""
    env_name = name.upper()
    if env_name in os.environ:
        return os.getenv(env_name, default)
    return str(OPTIONS.get(name.lower(), default))


def _int_setting(name: str, default: int) -> int:
    raw = _setting(name, str(default)).strip()
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r; using %s", name, raw, default)
        return default


def _bool_setting(name: str, default: bool) -> bool:
    raw = _setting(name, "true" if default else "false").strip().lower()
    return raw in {"1", "true", "yes", "on"}


# === Security ===
JOB_SECRET = _setting("job_secret", "")

# === Target application ===
TRACKER_BASE_URL = _setting("tracker_base_url", "https://app.tmetric.com").rstrip("/")
TRACKER_EMAIL = _setting("tracker_email", "")
TRACKER_PASSWORD = _setting("tracker_password", "")

# === Notifications ===
NOTIFY_WEBHOOK_URL = _setting("notify_webhook_url", "")

# === Behaviour ===
HEADLESS = _bool_setting("headless", True)
TRAILING_DAYS = _int_setting("trailing_days", 30)
ABSENCE_WORKDAYS = _int_setting("absence_workdays", 2)
STEP_TIMEOUT_MS = _int_setting("step_timeout_ms", 30_000)
DEBUG_SNAPSHOTS = _bool_setting("debug_snapshots", False)
BROWSER_LOCALE = _setting("browser_locale", "en-US")
BROWSER_TIMEZONE = _setting("browser_timezone", "")


def _apply_timezone() -> None:
    """Align the process clock with the browser timezone so workday math uses the same calendar."""
    if not BROWSER_TIMEZONE:
        return
    os.environ["TZ"] = BROWSER_TIMEZONE
    if hasattr(time, "tzset"):
        time.tzset()
    logger.info("Timezone applied: %s", BROWSER_TIMEZONE)


_apply_timezone()


def missing_config() -> List[str]:
    missing = []
    if not TRACKER_EMAIL:
        missing.append("tracker_email")
    if not TRACKER_PASSWORD:
        missing.append("tracker_password")
    if not TRACKER_BASE_URL:
        missing.append("tracker_base_url")
    return missing


def load_credentials() -> Optional[Credentials]:
    if not TRACKER_EMAIL or not TRACKER_PASSWORD:
        return None
    return Credentials(email=TRACKER_EMAIL, password=TRACKER_PASSWORD)


SERVICE = TrackerAgentService(
    DATA_DIR,
    TRACKER_BASE_URL,
    logging.getLogger("tracker_runner.tracker_agent"),
    headless=HEADLESS,
    step_timeout_ms=STEP_TIMEOUT_MS,
    trailing_days=TRAILING_DAYS,
    absence_workdays=ABSENCE_WORKDAYS,
    locale=BROWSER_LOCALE,
    timezone_id=BROWSER_TIMEZONE,
    debug_snapshots=DEBUG_SNAPSHOTS,
)
NOTIFIER = AbsenceNotifier(
    NOTIFY_WEBHOOK_URL,
    logging.getLogger("tracker_runner.notifier"),
    trailing_days=TRAILING_DAYS,
)

APP.include_router(
    create_tracker_router(SERVICE, JOB_SECRET, load_credentials, NOTIFIER, missing_config),
    prefix="/api",
)


@APP.get("/health")
def health():
    """Health and effective configuration, without secret values."""
    return {
        "ok": True,
        "data_dir": str(DATA_DIR),
        "base_url": TRACKER_BASE_URL,
        "has_job_secret": bool(JOB_SECRET),
        "has_credentials": load_credentials() is not None,
        "has_notify_webhook": bool(NOTIFY_WEBHOOK_URL),
        "missing_config": missing_config(),
        "headless": HEADLESS,
        "trailing_days": TRAILING_DAYS,
        "absence_workdays": ABSENCE_WORKDAYS,
        "jobs": sorted(SERVICE.list_jobs().keys()),
    }
