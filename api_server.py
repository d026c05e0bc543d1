"""
Browser Automation API Server

FastAPI server exposing the automation engine over HTTP: register
workflows, record them, validate recorded selectors, start/stop runs and
stream their logs as Server-Sent Events, manage cron schedules, cached
sessions and domain scope.

Usage:
    python -m uvicorn api_server:app --host 0.0.0.0 --port 8080
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

import automation_config
from automation_errors import AutomationError, ErrorCode
from login_orchestrator import LoginOrchestrator
from page_driver import BrowserManager, PageFactory
from persistence import JSONRecordStore
from run_stream import EVENT_END, RunLogBroadcaster, StreamEvent
from scheduler import Scheduler, next_run_time, upcoming_run_times, validate_cron_expression
from scope_guard import DomainScopeGuard
from selector_strategy import SelectorKind, SelectorOptions
from session_vault import SessionVault
from workflow_engine import RunOrchestrator
from workflow_models import DomainScopeConfig, LogicSpec, Schedule, Workflow
from workflow_recorder import CaptureEngine
from workflow_validator import ReplayValidator

logger = logging.getLogger(__name__)


# --- Engine state ---


class AutomationState:
    """Everything the endpoints share: store, vault, orchestrators, live captures."""

    def __init__(self, data_dir: Optional[str] = None, page_factory: Optional[PageFactory] = None,
                 step_delay: Optional[float] = None, validation_delay: Optional[float] = None):
        self.data_dir = Path(data_dir or automation_config.DATA_DIR)
        self.store = JSONRecordStore(str(self.data_dir))
        self.browser = None if page_factory else BrowserManager()
        self.page_factory = page_factory or self.browser.new_page
        self.sessions_file = self.data_dir / "sessions.json"
        self.vault = SessionVault()
        self.login = LoginOrchestrator(self.vault, self.page_factory)
        self.broadcaster = RunLogBroadcaster()
        self.orchestrator = RunOrchestrator(
            page_factory=self.page_factory,
            record_store=self.store,
            login=self.login,
            broadcaster=self.broadcaster,
            step_delay=step_delay,
        )
        self.scheduler = Scheduler(self.store, self.fire_schedule)
        self.validation_delay = validation_delay

        # Workflow definitions live with the caller; this is a working registry
        self.workflows: dict[str, Workflow] = {}
        self.guards: dict[str, DomainScopeGuard] = {}
        self.captures: dict[str, CaptureEngine] = {}
        self.validators: dict[str, ReplayValidator] = {}

    def guard_for(self, workflow_id: str) -> DomainScopeGuard:
        if workflow_id not in self.guards:
            workflow = self.workflows.get(workflow_id)
            self.guards[workflow_id] = DomainScopeGuard(workflow.domain_scope if workflow else None)
        return self.guards[workflow_id]

    def workflow_for(self, workflow_id: str, run_config: Optional[dict[str, Any]] = None) -> Workflow:
        workflow = self.workflows.get(workflow_id)
        if workflow is not None:
            return workflow
        run_config = run_config or {}
        return Workflow(id=workflow_id, start_url=run_config.get("start_url"))

    async def fire_schedule(self, schedule: Schedule) -> None:
        workflow = self.workflow_for(schedule.workflow_id, schedule.run_config)
        logic_spec = LogicSpec.model_validate(schedule.run_config["logic_spec"]) \
            if schedule.run_config.get("logic_spec") else None
        await self.orchestrator.start_run(workflow, variables=schedule.variables,
                                          logic_spec=logic_spec, trigger="schedule")

    async def startup(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.vault.load(str(self.sessions_file))
        self.scheduler.start()

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.orchestrator.shutdown()
        for engine in list(self.captures.values()):
            await engine.cleanup()
            await engine.page.close()
        self.captures.clear()
        for validator in list(self.validators.values()):
            await validator.page.close()
        self.validators.clear()
        self.vault.save(str(self.sessions_file))
        await self.login.cleanup()
        if self.browser is not None:
            await self.browser.close()


state: Optional[AutomationState] = None


def get_state() -> AutomationState:
    global state
    if state is None:
        state = AutomationState()
    return state


@asynccontextmanager
async def lifespan(app):
    current = get_state()
    await current.startup()
    yield
    await current.shutdown()


app = FastAPI(
    title="Browser Automation API",
    description="Record, validate, run and schedule browser workflows",
    version="1.0.0",
    lifespan=lifespan,
)


# --- Request/Response models ---


class CaptureStartRequest(BaseModel):
    url: str
    strategy: SelectorKind = SelectorKind.HYBRID
    fallback: bool = True
    capture_network: bool = False
    capture_console: bool = False
    capture_screenshots: Optional[bool] = None


class RunRequest(BaseModel):
    variables: dict[str, Any] = Field(default_factory=dict)
    logic_spec: Optional[LogicSpec] = None


class ScheduleCreate(BaseModel):
    cron_expression: str
    timezone: str = "UTC"
    is_active: bool = True
    run_config: dict[str, Any] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ScheduleUpdate(BaseModel):
    cron_expression: Optional[str] = None
    timezone: Optional[str] = None
    is_active: Optional[bool] = None
    run_config: Optional[dict[str, Any]] = None
    variables: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = None


class CronRequest(BaseModel):
    cron_expression: str
    timezone: str = "UTC"


class DomainRequest(BaseModel):
    domain: str


class ScopeUpdateRequest(BaseModel):
    domain_scope: Optional[DomainScopeConfig] = None


# --- Helpers ---

_STATUS_BY_CODE = {
    ErrorCode.LOGIN_FAILED: 401,
    ErrorCode.SESSION_EXTRACTION_FAILED: 500,
    ErrorCode.SCOPE_BLOCKED: 403,
    ErrorCode.NAVIGATION_FAILED: 502,
    ErrorCode.SELECTOR_RESOLUTION_FAILED: 422,
    ErrorCode.PAGE_DISCONNECTED: 409,
    ErrorCode.CRON_PARSE_FAILED: 400,
}


def automation_http_error(e: AutomationError) -> HTTPException:
    return HTTPException(status_code=_STATUS_BY_CODE.get(e.code, 500), detail=e.to_dict())


def require_workflow(workflow_id: str) -> Workflow:
    workflow = get_state().workflows.get(workflow_id)
    if workflow is None:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return workflow


def check_cron(cron_expression: str, tz: str) -> None:
    validation = validate_cron_expression(cron_expression)
    if not validation.is_valid:
        raise HTTPException(status_code=400, detail={"code": validation.code, "error": validation.error})
    if next_run_time(cron_expression, tz) is None:
        raise HTTPException(status_code=400, detail={
            "code": ErrorCode.CRON_PARSE_FAILED.value,
            "error": f"Invalid timezone or schedule never fires: {tz}",
        })


def schedule_view(schedule: Schedule) -> dict:
    data = schedule.model_dump(mode="json")
    due = next_run_time(schedule.cron_expression, schedule.timezone)
    data["next_run_time"] = due.isoformat() if due else None
    return data


# --- Endpoints ---


@app.get("/health")
async def health():
    current = get_state()
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "scheduler_running": current.scheduler.running,
        "active_captures": sum(1 for c in current.captures.values() if c.is_active()),
    }


# --- Workflows ---


@app.post("/workflows", status_code=201)
async def register_workflow(workflow: Workflow):
    """Register (or replace) a workflow definition for this server process."""
    current = get_state()
    current.workflows[workflow.id] = workflow
    current.guards[workflow.id] = DomainScopeGuard(workflow.domain_scope)
    return workflow.model_dump(mode="json")


@app.get("/workflows")
async def list_workflows():
    return {"workflows": [w.model_dump(mode="json") for w in get_state().workflows.values()]}


@app.get("/workflows/{workflow_id}")
async def get_workflow(workflow_id: str):
    return require_workflow(workflow_id).model_dump(mode="json")


@app.get("/workflows/{workflow_id}/actions")
async def get_actions(workflow_id: str):
    actions = get_state().store.get_actions(workflow_id)
    return {"workflow_id": workflow_id, "actions": [a.model_dump(mode="json") for a in actions]}


# --- Capture ---


async def _dispose_capture(engine: CaptureEngine) -> None:
    """Tear down a capture engine and close its page."""
    try:
        await engine.cleanup()
    finally:
        if not engine.page.is_closed():
            await engine.page.close()


@app.post("/workflows/{workflow_id}/capture/start")
async def start_capture(workflow_id: str, req: CaptureStartRequest):
    current = get_state()
    existing = current.captures.get(workflow_id)
    if existing is not None and existing.is_active():
        raise HTTPException(status_code=409, detail="Capture already active for this workflow")
    if existing is not None:
        del current.captures[workflow_id]
        await _dispose_capture(existing)

    page = await current.page_factory()
    engine = CaptureEngine(
        page,
        scope_guard=current.guard_for(workflow_id),
        record_store=current.store,
        selector_options=SelectorOptions(strategy=req.strategy, fallback=req.fallback),
        capture_screenshots=req.capture_screenshots,
        capture_network=req.capture_network,
        capture_console=req.capture_console,
        screenshot_dir=str(current.data_dir / "screenshots"),
    )
    try:
        session = await engine.start_capture(workflow_id, req.url)
    except AutomationError as e:
        await _dispose_capture(engine)
        raise automation_http_error(e)
    except Exception:
        await _dispose_capture(engine)
        raise
    current.captures[workflow_id] = engine
    return session


@app.get("/workflows/{workflow_id}/capture")
async def capture_status(workflow_id: str):
    current = get_state()
    engine = current.captures.get(workflow_id)
    if engine is None:
        raise HTTPException(status_code=404, detail="No capture session for this workflow")
    return {
        "session": engine.get_session(),
        "recording_state": current.guard_for(workflow_id).recording_state(),
        "actions": [a.model_dump(mode="json") for a in engine.get_actions()],
    }


@app.post("/workflows/{workflow_id}/capture/resume")
async def resume_capture(workflow_id: str):
    engine = get_state().captures.get(workflow_id)
    if engine is None or not engine.is_active():
        raise HTTPException(status_code=404, detail="No active capture for this workflow")
    await engine.resume_capture()
    return engine.get_session()


@app.post("/workflows/{workflow_id}/capture/stop")
async def stop_capture(workflow_id: str):
    current = get_state()
    engine = current.captures.pop(workflow_id, None)
    if engine is None or not engine.is_active():
        if engine is not None:
            await _dispose_capture(engine)
        raise HTTPException(status_code=404, detail="No active capture for this workflow")
    try:
        actions = await engine.stop_capture()
    finally:
        await _dispose_capture(engine)
    return {
        "workflow_id": workflow_id,
        "session": engine.get_session(),
        "actions": [a.model_dump(mode="json") for a in actions],
    }


# --- Validation ---


async def _validator_for(workflow_id: str) -> ReplayValidator:
    current = get_state()
    validator = current.validators.get(workflow_id)
    if validator is None or validator.page.is_closed():
        page = await current.page_factory()
        validator = ReplayValidator(page, record_store=current.store,
                                    scope_guard=current.guard_for(workflow_id),
                                    step_delay=current.validation_delay)
        current.validators[workflow_id] = validator
    await validator.load(workflow_id)
    return validator


@app.post("/workflows/{workflow_id}/validate")
async def validate_workflow(workflow_id: str):
    """Check every recorded selector against the live page."""
    validator = await _validator_for(workflow_id)
    try:
        await validator.play_all()
    except AutomationError as e:
        raise automation_http_error(e)
    return validator.summary()


@app.post("/workflows/{workflow_id}/validate/highlight/{action_id}")
async def highlight_action(workflow_id: str, action_id: str):
    current = get_state()
    validator = current.validators.get(workflow_id) or await _validator_for(workflow_id)
    try:
        outcome = await validator.highlight_step(action_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Action not found")
    except AutomationError as e:
        raise automation_http_error(e)
    return outcome.to_dict()


@app.delete("/workflows/{workflow_id}/validate")
async def close_validator(workflow_id: str):
    validator = get_state().validators.pop(workflow_id, None)
    if validator is None:
        raise HTTPException(status_code=404, detail="No validator for this workflow")
    await validator.page.close()
    return {"status": "closed"}


# --- Runs ---


@app.post("/workflows/{workflow_id}/runs", status_code=202)
async def start_run(workflow_id: str, req: RunRequest):
    current = get_state()
    workflow = require_workflow(workflow_id)
    run = await current.orchestrator.start_run(workflow, variables=req.variables, logic_spec=req.logic_spec)
    return run.model_dump(mode="json")


@app.get("/workflows/{workflow_id}/runs")
async def list_runs(workflow_id: str):
    runs = get_state().orchestrator.list_runs(workflow_id)
    return {"runs": [r.model_dump(mode="json", exclude={"logs"}) for r in runs]}


@app.get("/runs/{run_id}")
async def get_run(run_id: str):
    run = get_state().orchestrator.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run.model_dump(mode="json")


@app.post("/runs/{run_id}/stop")
async def stop_run(run_id: str):
    current = get_state()
    run = current.orchestrator.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    stopped = await current.orchestrator.stop(run_id)
    return {"run_id": run_id, "stopping": stopped, "status": run.status.value}


@app.get("/runs/{run_id}/stream")
async def stream_run(run_id: str):
    """Stream run log events as SSE, ending with an ``end`` event."""
    current = get_state()
    run = current.orchestrator.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")

    async def event_generator():
        if run.status.terminal and not current.orchestrator.tracks(run_id):
            # Finished before this process started; nothing left to stream
            yield StreamEvent(EVENT_END, {"run_id": run_id, "status": run.status.value}).to_sse()
            return
        sub = current.orchestrator.subscribe(run_id)
        try:
            async for event in sub:
                yield event.to_sse()
        finally:
            sub.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# --- Schedules ---


@app.get("/workflows/{workflow_id}/schedules")
async def list_schedules(workflow_id: str):
    schedules = get_state().store.list_schedules(workflow_id)
    return {"schedules": [schedule_view(s) for s in schedules]}


@app.post("/workflows/{workflow_id}/schedules", status_code=201)
async def create_schedule(workflow_id: str, req: ScheduleCreate):
    check_cron(req.cron_expression, req.timezone)
    schedule = Schedule(workflow_id=workflow_id, **req.model_dump())
    get_state().store.create_schedule(schedule)
    return schedule_view(schedule)


@app.put("/schedules/{schedule_id}")
async def update_schedule(schedule_id: str, req: ScheduleUpdate):
    current = get_state()
    existing = current.store.get_schedule(schedule_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="Schedule not found")
    changes = req.model_dump(exclude_none=True)
    if "cron_expression" in changes or "timezone" in changes:
        check_cron(changes.get("cron_expression", existing.cron_expression),
                   changes.get("timezone", existing.timezone))
    return schedule_view(current.store.update_schedule(schedule_id, changes))


@app.delete("/schedules/{schedule_id}")
async def delete_schedule(schedule_id: str):
    if not get_state().store.delete_schedule(schedule_id):
        raise HTTPException(status_code=404, detail="Schedule not found")
    return {"status": "deleted", "schedule_id": schedule_id}


@app.get("/schedules/{schedule_id}/next-run")
async def schedule_next_run(schedule_id: str, count: int = 1):
    schedule = get_state().store.get_schedule(schedule_id)
    if schedule is None:
        raise HTTPException(status_code=404, detail="Schedule not found")
    times = upcoming_run_times(schedule.cron_expression, schedule.timezone, count=max(1, min(count, 20)))
    return {
        "schedule_id": schedule_id,
        "next_run_time": times[0].isoformat() if times else None,
        "upcoming": [t.isoformat() for t in times],
    }


@app.post("/schedules/validate")
async def validate_cron(req: CronRequest):
    result = validate_cron_expression(req.cron_expression).to_dict()
    due = next_run_time(req.cron_expression, req.timezone)
    result["next_run_time"] = due.isoformat() if due else None
    return result


# --- Sessions ---


@app.get("/sessions")
async def list_sessions():
    sessions = get_state().login.get_all_sessions()
    return {"sessions": [s.model_dump(mode="json", exclude={"encrypted"}) for s in sessions]}


@app.delete("/sessions")
async def clear_sessions():
    current = get_state()
    count = len(current.vault.list_sessions())
    current.vault.clear()
    return {"status": "cleared", "count": count}


@app.delete("/sessions/{key}")
async def delete_session(key: str):
    if not get_state().vault.invalidate(key):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"status": "deleted", "key": key}


# --- Domain scope ---


def scope_view(workflow_id: str) -> dict:
    current = get_state()
    guard = current.guard_for(workflow_id)
    config = guard.config
    # Runs build their guard from the workflow, so keep it in step
    workflow = current.workflows.get(workflow_id)
    if workflow is not None:
        current.workflows[workflow_id] = workflow.model_copy(update={"domain_scope": config})
    return {
        "workflow_id": workflow_id,
        "domain_scope": config.model_dump(mode="json") if config else None,
        "stats": guard.domain_stats(),
    }


@app.get("/workflows/{workflow_id}/scope")
async def get_scope(workflow_id: str):
    return scope_view(workflow_id)


@app.put("/workflows/{workflow_id}/scope")
async def update_scope(workflow_id: str, req: ScopeUpdateRequest):
    get_state().guard_for(workflow_id).update_domain_scope(req.domain_scope)
    return scope_view(workflow_id)


@app.post("/workflows/{workflow_id}/scope/domains")
async def add_domain(workflow_id: str, req: DomainRequest):
    try:
        get_state().guard_for(workflow_id).add_allowed_domain(req.domain)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return scope_view(workflow_id)


@app.delete("/workflows/{workflow_id}/scope/domains/{domain}")
async def remove_domain(workflow_id: str, domain: str):
    get_state().guard_for(workflow_id).remove_allowed_domain(domain)
    return scope_view(workflow_id)


@app.get("/workflows/{workflow_id}/scope/check")
async def check_scope(workflow_id: str, url: str):
    return get_state().guard_for(workflow_id).classify(url).model_dump(mode="json")


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    uvicorn.run(app, host="0.0.0.0", port=automation_config.API_PORT)
