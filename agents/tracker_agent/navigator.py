from typing import Any, Dict, Optional, Sequence
from urllib.parse import urlencode

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from agents.tracker_agent.business_days import DateWindow
from agents.tracker_agent.diagnostics import Diagnostics
from agents.tracker_agent.errors import NavigationTimeoutError


GROUP_DIMENSIONS = {"user", "project", "client", "day"}
REPORT_KINDS = {"summary", "detailed"}
REPORT_READY_SELECTORS = (
    "table.report-table",
    ".report-group",
    ".report-empty",
    ".no-data",
    "table tbody tr",
)
OVERLAY_CLOSE_SELECTORS = (
    "#onetrust-reject-all-handler",
    ".modal-dialog button.close",
    ".modal .btn-close",
    "button[aria-label='Close']",
    "button:has-text('Got it')",
    "button:has-text('Not now')",
    "button:has-text('Skip')",
)

# Fragment-only navigations keep the document, so the previous view is stamped
# and the new report counts as ready only once every stamped node is gone.
MARK_STALE_JS = """
(selectors) => {
  let marked = 0;
  for (const selector of selectors) {
    document.querySelectorAll(selector).forEach((node) => {
      node.setAttribute("data-runner-stale", "1");
      marked += 1;
    });
  }
  return marked;
}
"""
STALE_GONE_JS = """() => !document.querySelector("[data-runner-stale]")"""

CLIENT_ROUTE_JS = """
(path) => {
  const ng = window.angular;
  if (!ng || typeof ng.element !== 'function') return false;
  try {
    const injector = ng.element(document.body).injector();
    if (!injector) return false;
    const location = injector.get('$location');
    const rootScope = injector.get('$rootScope');
    location.url(path);
    rootScope.$apply();
    return true;
  } catch (e) {
    return false;
  }
}
"""


class ReportNavigator:
    """Builds report URLs and drives the single-page app to them with bounded settle waits."""

    def __init__(
        self,
        base_url: str,
        logger,
        *,
        timeout_ms: int = 30_000,
        idle_timeout_ms: int = 10_000,
        settle_delay_ms: int = 2_000,
        diagnostics: Optional[Diagnostics] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.logger = logger
        self.timeout_ms = timeout_ms
        self.idle_timeout_ms = min(idle_timeout_ms, timeout_ms)
        self.settle_delay_ms = settle_delay_ms
        self.diagnostics = diagnostics or Diagnostics()

    def report_path(
        self,
        workspace_id: str,
        window: DateWindow,
        group_by: Sequence[str],
        report: str = "summary",
        filters: Optional[Dict[str, Any]] = None,
    ) -> str:
        if not str(workspace_id or "").strip():
            raise ValueError("workspace_id is required to build a report URL")
        if report not in REPORT_KINDS:
            raise ValueError(f"Unknown report kind: {report}")
        dimensions = [str(item).strip().lower() for item in group_by if str(item).strip()]
        unknown = [item for item in dimensions if item not in GROUP_DIMENSIONS]
        if not dimensions or unknown:
            raise ValueError(f"Invalid grouping: {list(group_by)}")
        query: Dict[str, Any] = {"range": window.token(), "groupby": ",".join(dimensions)}
        for key, value in (filters or {}).items():
            if value not in (None, ""):
                query[key] = value
        return f"/reports/{workspace_id}/{report}?{urlencode(query, safe=',')}"

    def build_report_url(
        self,
        workspace_id: str,
        window: DateWindow,
        group_by: Sequence[str],
        report: str = "summary",
        filters: Optional[Dict[str, Any]] = None,
    ) -> str:
        return f"{self.base_url}/#{self.report_path(workspace_id, window, group_by, report, filters)}"

    def open_report(
        self,
        page,
        workspace_id: str,
        window: DateWindow,
        group_by: Sequence[str],
        report: str = "summary",
        filters: Optional[Dict[str, Any]] = None,
    ) -> str:
        path = self.report_path(workspace_id, window, group_by, report, filters)
        url = f"{self.base_url}/#{path}"
        last_error: Optional[Exception] = None
        for attempt in (1, 2):
            try:
                stale = self._mark_stale(page)
                if attempt == 1:
                    page.goto(url, wait_until="domcontentloaded", timeout=self.timeout_ms)
                elif not self._route_via_client(page, path):
                    page.goto(url, wait_until="domcontentloaded", timeout=self.timeout_ms)
                    page.reload(wait_until="domcontentloaded", timeout=self.timeout_ms)
                self._settle(page)
                if stale:
                    page.wait_for_function(STALE_GONE_JS, timeout=self.timeout_ms)
                page.wait_for_selector(", ".join(REPORT_READY_SELECTORS), timeout=self.timeout_ms)
                self.dismiss_overlays(page)
                self.logger.info("Report ready: %s (attempt %s)", path, attempt)
                return url
            except PlaywrightTimeoutError as err:
                last_error = err
                self.logger.warning("Report did not settle on attempt %s: %s", attempt, path)
                self.diagnostics.snapshot(page, f"navigation_timeout_{report}_{attempt}")
        raise NavigationTimeoutError(f"Report page did not settle: {path}") from last_error

    def _settle(self, page) -> None:
        # Content renders after the route change; load events alone fire too early.
        try:
            page.wait_for_load_state("networkidle", timeout=self.idle_timeout_ms)
        except PlaywrightTimeoutError:
            self.logger.debug("Network never idle; using fixed settle delay")
            page.wait_for_timeout(self.settle_delay_ms)

    def _mark_stale(self, page) -> int:
        try:
            marked = int(page.evaluate(MARK_STALE_JS, list(REPORT_READY_SELECTORS)) or 0)
        except Exception as err:
            self.logger.debug("Could not mark the previous view: %s", err)
            return 0
        if marked:
            self.logger.debug("Waiting for %s nodes of the previous view to detach", marked)
        return marked

    def _route_via_client(self, page, path: str) -> bool:
        try:
            routed = bool(page.evaluate(CLIENT_ROUTE_JS, path))
        except Exception as err:
            self.logger.debug("Client-side routing unavailable: %s", err)
            return False
        if routed:
            self.logger.info("Retrying navigation through the client router")
        return routed

    def dismiss_overlays(self, page) -> int:
        dismissed = 0
        for selector in OVERLAY_CLOSE_SELECTORS:
            try:
                group = page.locator(selector)
                if group.count() == 0:
                    continue
                group.first.click(timeout=1_500)
                dismissed += 1
                self.logger.info("Overlay dismissed with selector: %s", selector)
            except Exception:
                continue
        return dismissed
