import re
import subprocess
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional, Sequence
from urllib.parse import urlsplit, urlunsplit

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from agents.tracker_agent.diagnostics import Diagnostics
from agents.tracker_agent.errors import AuthenticationError, ConfigurationError, SessionTeardownError
from agents.tracker_agent.models import Credentials


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
DEFAULT_VIEWPORT = {"width": 1366, "height": 768}
WORKSPACE_RE = re.compile(r"/tracker/(\d+)(?=/|\?|#|$)")
IDENTITY_HOST_MARKERS = ("id.tmetric.com",)
IDENTITY_PATH_MARKERS = ("/login", "/signin", "/sign-in", "/account/login", "/connect/authorize")
EMAIL_SELECTORS = ("input[type='email']", "input[name='email']", "input[name='Email']", "input#email")
PASSWORD_SELECTORS = ("input[type='password']", "input[name='password']", "input[name='Password']")
SUBMIT_SELECTORS = (
    "button[type='submit']",
    "button:has-text('Sign in')",
    "button:has-text('Log in')",
    "input[type='submit']",
)
BOT_CHALLENGE_SELECTORS = (
    "iframe[src*='captcha']",
    "iframe[title*='challenge' i]",
    "#challenge-form",
    ".g-recaptcha",
    "[data-sitekey]",
)
BOT_CHALLENGE_TITLES = ("just a moment", "attention required", "verify you are human")
STEALTH_INIT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', {get: () => undefined});
Object.defineProperty(navigator, 'languages', {get: () => ['en-US', 'en']});
Object.defineProperty(navigator, 'plugins', {get: () => [1, 2, 3, 4, 5]});
"""


@dataclass
class TrackerSession:
    """One authenticated browser session, owned by a single extraction run."""

    playwright: Any
    browser: Any
    context: Any
    page: Any
    workspace_id: str = ""


def sanitize_url_for_log(raw_url: str) -> str:
    if not raw_url:
        return raw_url
    try:
        parts = urlsplit(raw_url)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except Exception:
        return raw_url


class SessionManager:
    def __init__(
        self,
        base_url: str,
        logger,
        *,
        login_url: str = "",
        headless: bool = True,
        timeout_ms: int = 30_000,
        locale: str = "en-US",
        timezone_id: str = "",
        user_agent: str = DEFAULT_USER_AGENT,
        playwright_factory: Callable[[], Any] = sync_playwright,
        diagnostics: Optional[Diagnostics] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.login_url = login_url or f"{self.base_url}/login"
        self.logger = logger
        self.headless = headless
        self.timeout_ms = timeout_ms
        self.locale = locale
        self.timezone_id = timezone_id
        self.user_agent = user_agent
        self.playwright_factory = playwright_factory
        self.diagnostics = diagnostics or Diagnostics()

    def _debug(self, message: str, **meta: Any) -> None:
        suffix = " | " + ", ".join(f"{k}={v}" for k, v in meta.items()) if meta else ""
        self.logger.debug("[DEBUG][session] %s%s", message, suffix)

    def _ensure_playwright_browsers(self) -> bool:
        command = [sys.executable, "-m", "playwright", "install", "chromium"]
        self.logger.warning("Chromium not found; attempting automatic install")
        try:
            subprocess.run(command, check=True, timeout=900, text=True, capture_output=True)
            self.logger.info("Automatic Chromium install completed")
            return True
        except Exception:
            self.logger.exception("Could not install Chromium at runtime")
            return False

    @staticmethod
    def _is_playwright_executable_error(error: Exception) -> bool:
        return "Executable doesn't exist" in str(error)

    def _launch_browser(self, playwright):
        launch_kwargs = {
            "headless": self.headless,
            "args": ["--disable-blink-features=AutomationControlled"],
        }
        try:
            return playwright.chromium.launch(**launch_kwargs)
        except Exception as err:
            if not self._is_playwright_executable_error(err):
                raise
            if not self._ensure_playwright_browsers():
                raise
            return playwright.chromium.launch(**launch_kwargs)

    def _context_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "viewport": dict(DEFAULT_VIEWPORT),
            "user_agent": self.user_agent,
            "locale": self.locale,
            "extra_http_headers": {"Accept-Language": f"{self.locale},en;q=0.8"},
        }
        if self.timezone_id:
            kwargs["timezone_id"] = self.timezone_id
        return kwargs

    def _new_context(self, browser):
        context = browser.new_context(**self._context_kwargs())
        try:
            context.add_init_script(STEALTH_INIT_SCRIPT)
        except Exception:
            self.logger.warning("Could not register anti-automation init script")
        context.set_default_timeout(self.timeout_ms)
        context.set_default_navigation_timeout(self.timeout_ms)
        return context

    def establish(self, credentials: Credentials) -> TrackerSession:
        """Launch an isolated browser context and log in. Returns the session with its workspace id."""
        if credentials is None or not credentials.is_complete():
            raise ConfigurationError("Tracker credentials are not configured")

        playwright = self.playwright_factory().start()
        session = TrackerSession(playwright=playwright, browser=None, context=None, page=None)
        try:
            session.browser = self._launch_browser(playwright)
            session.context = self._new_context(session.browser)
            session.page = session.context.new_page()
            session.workspace_id = self.login(session.page, credentials)
        except Exception:
            if session.page is not None:
                self.diagnostics.snapshot(session.page, "login_failed")
            self.close(session)
            raise
        self.logger.info("Session established workspace_id=%s", session.workspace_id)
        return session

    @contextmanager
    def session(self, credentials: Credentials) -> Iterator[TrackerSession]:
        session = self.establish(credentials)
        try:
            yield session
        finally:
            self.close(session)

    def close(self, session: Optional[TrackerSession]) -> bool:
        if session is None:
            return True
        failed = []
        steps = (
            ("context", session.context, "close"),
            ("browser", session.browser, "close"),
            ("playwright", session.playwright, "stop"),
        )
        for label, target, method in steps:
            if target is None:
                continue
            try:
                getattr(target, method)()
            except Exception:
                failed.append(label)
                self.logger.exception("Error closing Playwright %s", label)
        if failed:
            self.logger.warning("%s", SessionTeardownError(f"Session teardown incomplete: {', '.join(failed)}"))
            return False
        self.logger.info("Playwright resources closed")
        return True

    def _fill_first(self, page, selectors: Sequence[str], value: str, label: str) -> None:
        combined = ", ".join(selectors)
        try:
            page.wait_for_selector(combined, timeout=self.timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise AuthenticationError(f"Login form did not render the {label} field") from exc
        for selector in selectors:
            try:
                if page.locator(selector).count() == 0:
                    continue
                page.fill(selector, value)
                return
            except Exception:
                continue
        raise AuthenticationError(f"Could not fill the {label} field")

    def _click_first(self, page, selectors: Sequence[str]) -> None:
        for selector in selectors:
            try:
                if page.locator(selector).count() == 0:
                    continue
                page.click(selector)
                return
            except Exception:
                continue
        # No clickable submit control: submit with Enter from the password field.
        page.keyboard.press("Enter")

    def is_identity_url(self, url: str) -> bool:
        parts = urlsplit(str(url or "").lower())
        if any(marker in parts.netloc for marker in IDENTITY_HOST_MARKERS):
            return True
        route = parts.path + ("#" + parts.fragment if parts.fragment else "")
        return any(marker in route for marker in IDENTITY_PATH_MARKERS)

    def _is_selector_visible(self, page, selector: str) -> bool:
        group = page.locator(selector)
        for idx in range(group.count()):
            try:
                if group.nth(idx).is_visible():
                    return True
            except Exception:
                continue
        return False

    def detect_bot_challenge(self, page) -> bool:
        try:
            title = str(page.title() or "").lower()
        except Exception:
            title = ""
        if any(marker in title for marker in BOT_CHALLENGE_TITLES):
            return True
        for selector in BOT_CHALLENGE_SELECTORS:
            try:
                if self._is_selector_visible(page, selector):
                    return True
            except Exception:
                continue
        return False

    def login(self, page, credentials: Credentials) -> str:
        self.logger.info("Opening login page: %s", sanitize_url_for_log(self.login_url))
        try:
            page.goto(self.login_url, wait_until="networkidle", timeout=self.timeout_ms)
        except PlaywrightTimeoutError:
            # Long-polling pages never reach network idle; the form wait below is the real gate.
            self.logger.warning("Login page did not reach network idle; continuing")

        if self.detect_bot_challenge(page):
            raise AuthenticationError("Bot challenge detected on the login page")

        self._fill_first(page, EMAIL_SELECTORS, credentials.email, "email")
        self._fill_first(page, PASSWORD_SELECTORS, credentials.password, "password")
        self._click_first(page, SUBMIT_SELECTORS)
        self._debug("Credentials submitted", url=sanitize_url_for_log(page.url))

        try:
            page.wait_for_url(lambda url: not self.is_identity_url(url), timeout=self.timeout_ms)
        except PlaywrightTimeoutError:
            self.logger.warning("Still on identity host after login submission")

        if self.detect_bot_challenge(page):
            raise AuthenticationError("Bot challenge detected after login submission")
        if self.is_identity_url(page.url):
            raise AuthenticationError("Login failed: still on the login page after submitting credentials")

        return self.discover_workspace_id(page)

    def discover_workspace_id(self, page) -> str:
        match = WORKSPACE_RE.search(str(page.url or ""))
        if match is None:
            self._debug("Workspace id not in URL yet; waiting", url=sanitize_url_for_log(page.url))
            try:
                page.wait_for_url(lambda url: bool(WORKSPACE_RE.search(url)), timeout=self.timeout_ms)
            except PlaywrightTimeoutError:
                pass
            match = WORKSPACE_RE.search(str(page.url or ""))
        if match is None:
            raise AuthenticationError(
                f"Could not determine workspace id from {sanitize_url_for_log(page.url)}"
            )
        return match.group(1)
