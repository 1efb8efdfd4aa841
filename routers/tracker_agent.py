import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from agents.tracker_agent.business_days import DateWindow
from agents.tracker_agent.models import Credentials
from agents.tracker_agent.notifier import AbsenceNotifier
from agents.tracker_agent.service import TrackerAgentService
from routers.auth import ensure_request_authorized

logger = logging.getLogger("tracker_runner.tracker_router")

MAX_RANGE_DAYS = 366


class RangeRequest(BaseModel):
    """Optional explicit date range; both bounds or neither."""

    model_config = ConfigDict(populate_by_name=True)

    from_: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    notify: bool = False
    secret: Optional[str] = None


def _respond(response) -> Any:
    body = response.model_dump(by_alias=True)
    if not response.success:
        return JSONResponse(status_code=500, content=body)
    return body


def _window_from(req: Optional[RangeRequest]) -> Optional[DateWindow]:
    if req is None or (not req.from_ and not req.to):
        return None
    if not req.from_ or not req.to:
        raise HTTPException(status_code=400, detail="Both 'from' and 'to' are required for a custom range")
    try:
        window = DateWindow.from_iso(req.from_, req.to)
    except ValueError as err:
        raise HTTPException(status_code=400, detail=f"Invalid date range: {err}") from err
    if window.day_count() > MAX_RANGE_DAYS:
        raise HTTPException(status_code=400, detail=f"Date range longer than {MAX_RANGE_DAYS} days")
    return window


def create_tracker_router(
    service: TrackerAgentService,
    job_secret: str,
    credentials_fn: Callable[[], Optional[Credentials]],
    notifier: AbsenceNotifier,
    missing_config_fn: Callable[[], List[str]],
) -> APIRouter:
    """HTTP surface over the tracker service; every extraction runs synchronously on its own session."""
    router = APIRouter(tags=["tracker-agent"])

    def _guard(request: Request, req: Optional[RangeRequest]) -> Credentials:
        ensure_request_authorized(request, job_secret, logger, body_secret=req.secret if req else None)
        missing = missing_config_fn()
        if missing:
            raise HTTPException(
                status_code=400,
                detail=f"Tracker config invalid. Missing: {', '.join(sorted(missing))}",
            )
        return credentials_fn()

    @router.post("/check-hours")
    def check_hours(request: Request, req: Optional[RangeRequest] = None) -> Any:
        """Entities without logged time over the absence window."""
        credentials = _guard(request, req)
        window = _window_from(req)
        response = service.find_entities_without_activity(credentials, window)
        if not response.success:
            return _respond(response)
        body = response.model_dump(by_alias=True)
        if req is not None and req.notify and response.data is not None:
            data = response.data
            body["notification"] = notifier.send(
                data.entities_without_activity,
                data.date_range.model_dump(by_alias=True),
                manual=True,
            )
        return body

    @router.post("/charts")
    def charts(request: Request, req: Optional[RangeRequest] = None) -> Any:
        credentials = _guard(request, req)
        return _respond(service.collect_entity_chart_series(credentials, _window_from(req)))

    @router.post("/project-charts")
    def project_charts(request: Request, req: Optional[RangeRequest] = None) -> Any:
        credentials = _guard(request, req)
        return _respond(service.collect_project_chart_series(credentials, _window_from(req)))

    def _scheduled_check(credentials: Credentials) -> None:
        response = service.find_entities_without_activity(credentials)
        if not response.success or response.data is None:
            logger.error("Scheduled check failed: %s", response.error)
            return
        data = response.data
        result = notifier.send(data.entities_without_activity, data.date_range.model_dump(by_alias=True))
        logger.info("Scheduled check done: %s without activity, notified=%s", data.total_count, result.get("ok"))

    @router.post("/cron/check-hours", status_code=202)
    def cron_check_hours(request: Request, background_tasks: BackgroundTasks) -> Dict[str, Any]:
        """Scheduler entrypoint. Requires the shared secret even when other routes are open."""
        if not job_secret:
            logger.warning("Rejected %s: no job secret configured", request.url.path)
            raise HTTPException(status_code=401, detail="Unauthorized")
        credentials = _guard(request, None)
        background_tasks.add_task(_scheduled_check, credentials)
        logger.info("Scheduled check accepted")
        return {"accepted": True}

    return router
