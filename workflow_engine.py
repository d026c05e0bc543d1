"""
Run Orchestrator: executes a recorded workflow end to end on a live page.

Acquires an authenticated page when the workflow needs one, performs
each Action in order (navigate, click, type, ...) with per-step retries,
and pushes every RunLog entry to stream subscribers as it is produced.
A run always ends SUCCESS or FAILED; a stopped run is FAILED with
``cancelled`` set.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import deque
from pathlib import Path
from typing import Any, Optional

import automation_config
from automation_errors import (
    AutomationError,
    ErrorCode,
    LoginFailedError,
    NavigationFailedError,
    RunCancelledError,
    ScopeBlockedError,
)
from login_orchestrator import LoginOrchestrator
from page_driver import ControllablePage, PageFactory
from persistence import RecordStore
from retry_policy import RetryPolicy
from run_stream import EVENT_STATUS, RunLogBroadcaster, Subscription
from scope_guard import DomainScopeGuard
from selector_strategy import resolve_on_page
from workflow_models import (
    Action,
    ActionType,
    LogicSpec,
    LogLevel,
    Run,
    RunLog,
    RunStatus,
    Workflow,
    check_action_order,
    resolve_variables,
    utcnow,
)

logger = logging.getLogger(__name__)

# Template patterns: {{name}} and {{input.name}}
_TEMPLATE_RE = re.compile(r"\{\{\s*(?:input\.)?(\w+)\s*\}\}")

_LOG_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def interpolate(value: str, inputs: dict[str, str]) -> str:
    """Replace {{name}} / {{input.name}} placeholders; unknown names are left as-is."""
    def replacer(m: re.Match) -> str:
        key = m.group(1)
        return inputs.get(key, m.group(0))
    return _TEMPLATE_RE.sub(replacer, value)


def interpolate_params(params: dict[str, Any], inputs: dict[str, str]) -> dict[str, Any]:
    """Deep-interpolate all string values in a params dict."""
    result = {}
    for k, v in params.items():
        if isinstance(v, str):
            result[k] = interpolate(v, inputs)
        elif isinstance(v, dict):
            result[k] = interpolate_params(v, inputs)
        elif isinstance(v, list):
            result[k] = [
                interpolate(item, inputs) if isinstance(item, str) else item
                for item in v
            ]
        else:
            result[k] = v
    return result


def substitute_action(action: Action, inputs: dict[str, str]) -> Action:
    """Copy of ``action`` with variables applied to value, url, selector and metadata."""
    if not inputs:
        return action
    update: dict[str, Any] = {
        "selector": interpolate(action.selector, inputs),
        "metadata": interpolate_params(action.metadata, inputs),
    }
    for name in ("value", "url", "wait_for"):
        current = getattr(action, name)
        if isinstance(current, str):
            update[name] = interpolate(current, inputs)
    return action.model_copy(update=update)


class RunOrchestrator:
    """Starts, tracks, streams and cancels workflow runs."""

    def __init__(
        self,
        page_factory: Optional[PageFactory] = None,
        record_store: Optional[RecordStore] = None,
        login: Optional[LoginOrchestrator] = None,
        broadcaster: Optional[RunLogBroadcaster] = None,
        retry_policy: Optional[RetryPolicy] = None,
        step_delay: Optional[float] = None,
        navigation_timeout_ms: Optional[int] = None,
        step_timeout_ms: Optional[int] = None,
        screenshot_dir: Optional[str] = None,
        max_finished_runs: Optional[int] = None,
    ):
        self.page_factory = page_factory
        self.record_store = record_store
        self.login = login
        self.broadcaster = broadcaster or RunLogBroadcaster()
        self.retry_policy = retry_policy or RetryPolicy.default()
        self.step_delay = automation_config.RUN_STEP_DELAY if step_delay is None else step_delay
        self.navigation_timeout_ms = navigation_timeout_ms or automation_config.NAVIGATION_TIMEOUT_MS
        self.step_timeout_ms = step_timeout_ms or automation_config.STEP_TIMEOUT_MS
        self.screenshot_dir = Path(screenshot_dir or Path(automation_config.DATA_DIR) / "screenshots")
        self.max_finished_runs = max_finished_runs or automation_config.MAX_FINISHED_RUNS

        self._runs: dict[str, Run] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel: dict[str, asyncio.Event] = {}
        self._pages: dict[str, ControllablePage] = {}
        # Finished run ids, oldest first
        self._retired: deque[str] = deque()

    # --- Public API ---

    def create_run(self, workflow_id: str, trigger: str = "manual") -> Run:
        run = Run(workflow_id=workflow_id, trigger=trigger)
        self._runs[run.id] = run
        self._cancel[run.id] = asyncio.Event()
        return run

    async def start_run(self, workflow: Workflow, variables: Optional[dict[str, Any]] = None,
                        logic_spec: Optional[LogicSpec] = None, trigger: str = "manual") -> Run:
        """Schedule a run in the background and return it while still PENDING."""
        run = self.create_run(workflow.id, trigger)
        task = asyncio.create_task(self.execute(workflow, variables, logic_spec, run=run))
        self._tasks[run.id] = task
        task.add_done_callback(lambda _t, run_id=run.id: self._tasks.pop(run_id, None))
        logger.info(f"Run {run.id} queued for workflow {workflow.id} ({trigger})")
        return run

    async def execute(self, workflow: Workflow, variables: Optional[dict[str, Any]] = None,
                      logic_spec: Optional[LogicSpec] = None, trigger: str = "manual",
                      run: Optional[Run] = None) -> Run:
        """Run a workflow to completion. Never raises; failures end up on the Run."""
        run = run or self.create_run(workflow.id, trigger)
        cancel = self._cancel.setdefault(run.id, asyncio.Event())

        run.status = RunStatus.RUNNING
        run.started_at = utcnow()
        self.broadcaster.publish(run.id, EVENT_STATUS, {"run_id": run.id, "status": run.status.value})
        self._log(run, LogLevel.INFO, f"Starting workflow: {workflow.name or workflow.id}")

        completed = 0
        tolerated: list[str] = []
        page: Optional[ControllablePage] = None
        try:
            inputs = resolve_variables(workflow.variables, variables or {})
            if workflow.credential is not None:
                inputs.setdefault("username", workflow.credential.username)
                inputs.setdefault("password", workflow.credential.password.get_secret_value())

            actions = self._load_actions(workflow)
            guard = DomainScopeGuard(workflow.domain_scope)
            policy = self.retry_policy.with_attempts(logic_spec.max_retries if logic_spec else None)
            self._log(run, LogLevel.INFO, f"Steps: {len(actions)}, retry budget: {policy.max_attempts}")

            self._check_cancel(run)
            page = await self._acquire_page(run, workflow, policy, cancel)
            self._pages[run.id] = page
            self._check_cancel(run)

            if workflow.start_url and (not actions or actions[0].type is not ActionType.NAVIGATE):
                await self._navigate(page, guard, workflow.start_url)

            timeout = (logic_spec.step_timeout_ms if logic_spec and logic_spec.step_timeout_ms
                       else self.step_timeout_ms)
            for index, action in enumerate(actions):
                self._check_cancel(run)
                if index > 0 and self.step_delay > 0:
                    await self._sleep(cancel, self.step_delay)
                ok = await self._run_step(run, page, guard, action, inputs, policy, logic_spec, timeout, cancel)
                if ok:
                    completed += 1
                else:
                    tolerated.append(action.id)

            run.result = {"steps_total": len(actions), "steps_completed": completed, "tolerated_failures": tolerated}
            self._finish(run, RunStatus.SUCCESS)

        except RunCancelledError as e:
            self._finish_cancelled(run, e, completed)
        except AutomationError as e:
            if cancel.is_set():
                self._finish_cancelled(run, RunCancelledError(cause=e), completed)
            else:
                run.result = {"steps_completed": completed}
                self._finish(run, RunStatus.FAILED, error=e.message, code=e.code)
        except Exception as e:
            if cancel.is_set():
                self._finish_cancelled(run, RunCancelledError(cause=e), completed)
            else:
                run.result = {"steps_completed": completed}
                self._finish(run, RunStatus.FAILED, error=str(e), code=ErrorCode.STEP_FAILED)
        finally:
            self._pages.pop(run.id, None)
            if page is not None:
                await self._release_page(page, workflow)
            self._save(run)
            self._retire(run)

        return run

    async def stop(self, run_id: str) -> bool:
        """Request cancellation. Returns False if the run is unknown or already finished."""
        run = self._runs.get(run_id)
        if run is None or run.status.terminal:
            return False
        cancel = self._cancel.setdefault(run_id, asyncio.Event())
        if cancel.is_set():
            return True
        cancel.set()
        self._log(run, LogLevel.WARN, "Stop requested")
        page = self._pages.get(run_id)
        if page is not None:
            await self._close_page(page)
        return True

    async def wait(self, run_id: str) -> Optional[Run]:
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get_run(run_id)

    def subscribe(self, run_id: str) -> Subscription:
        return self.broadcaster.subscribe(run_id)

    def tracks(self, run_id: str) -> bool:
        """Whether the run was started by this orchestrator (and so has a live stream)."""
        return run_id in self._runs

    def get_run(self, run_id: str) -> Optional[Run]:
        run = self._runs.get(run_id)
        if run is None and self.record_store is not None:
            run = self.record_store.get_run(run_id)
        return run

    def list_runs(self, workflow_id: Optional[str] = None) -> list[Run]:
        runs = list(self._runs.values())
        if workflow_id is not None:
            runs = [r for r in runs if r.workflow_id == workflow_id]
        return sorted(runs, key=lambda r: r.started_at or utcnow(), reverse=True)

    async def shutdown(self) -> None:
        """Stop every active run and wait for them to settle."""
        for run_id in list(self._tasks):
            await self.stop(run_id)
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # --- Steps ---

    def _load_actions(self, workflow: Workflow) -> list[Action]:
        if workflow.actions is not None:
            actions = sorted(workflow.actions, key=lambda a: a.order)
        elif self.record_store is not None:
            actions = self.record_store.get_actions(workflow.id)
        else:
            raise ValueError(f"Workflow {workflow.id} has no actions and no record store is configured")
        check_action_order(actions)
        return actions

    async def _acquire_page(self, run: Run, workflow: Workflow, policy: RetryPolicy,
                            cancel: asyncio.Event) -> ControllablePage:
        if not workflow.requires_login:
            if self.page_factory is None:
                raise RuntimeError("No page factory configured")
            return await self.page_factory()

        if self.login is None:
            raise LoginFailedError("Login failed: no login orchestrator configured")

        def on_retry(error, attempt, delay):
            self._check_cancel(run)
            self._log(run, LogLevel.WARN,
                      f"Login attempt {attempt}/{policy.max_attempts} failed: {error}; retrying in {delay:.1f}s",
                      metadata={"event": "retry", "attempt": attempt, "phase": "login"})

        self._log(run, LogLevel.INFO, f"Authenticating as {workflow.credential.username}")
        page = await policy.execute(
            lambda: self.login.get_authenticated_page(workflow.credential),
            on_retry=on_retry,
            sleep=lambda d: self._sleep(cancel, d),
        )
        self._log(run, LogLevel.INFO, "Authenticated")
        return page

    async def _run_step(self, run: Run, page: ControllablePage, guard: DomainScopeGuard, action: Action,
                        inputs: dict[str, str], policy: RetryPolicy, logic_spec: Optional[LogicSpec],
                        timeout: int, cancel: asyncio.Event) -> bool:
        """Execute one action with its retry budget. Returns False for a tolerated failure."""
        budget = policy.with_attempts(action.retries)
        # Described from the recorded action so substituted secrets never reach the log
        description = action.metadata.get("description") or f"{action.type.value} {action.selector}"
        resolved = substitute_action(action, inputs)

        self._log(run, LogLevel.INFO, f"[Step {action.order}] {description}", action.id,
                  {"event": "step_start", "type": action.type.value})

        def on_retry(error, attempt, delay):
            self._check_cancel(run)
            self._log(run, LogLevel.WARN,
                      f"[Step {action.order}] attempt {attempt}/{budget.max_attempts} failed: {error}; "
                      f"retrying in {delay:.1f}s",
                      action.id, {"event": "retry", "attempt": attempt})

        try:
            await budget.execute(
                lambda: self._execute_step(run, page, guard, resolved, resolved.timeout or timeout),
                on_retry=on_retry,
                sleep=lambda d: self._sleep(cancel, d),
            )
        except RunCancelledError:
            raise
        except Exception as e:
            if cancel.is_set():
                raise RunCancelledError(cause=e) from e
            message = e.message if isinstance(e, AutomationError) else str(e)
            if logic_spec is not None and action.id in logic_spec.continue_on_error:
                self._log(run, LogLevel.WARN, f"[Step {action.order}] failed, continuing: {message}",
                          action.id, {"event": "step_end", "ok": False, "tolerated": True})
                return False
            self._log(run, LogLevel.ERROR, f"ERROR at step {action.order}: {message}", action.id,
                      {"event": "step_end", "ok": False})
            raise

        self._log(run, LogLevel.INFO, f"[Step {action.order}] done", action.id, {"event": "step_end", "ok": True})
        return True

    async def _execute_step(self, run: Run, page: ControllablePage, guard: DomainScopeGuard,
                            action: Action, timeout: int) -> None:
        """Execute a single action against the page."""
        kind = action.type

        if kind is ActionType.NAVIGATE:
            url = action.url or action.value
            if not url:
                raise AutomationError(f"Navigate action {action.id} has no url")
            await self._navigate(page, guard, url)

        elif kind is ActionType.CLICK:
            await resolve_on_page(page, action.selector, timeout)
            await page.click(action.selector, timeout=timeout)

        elif kind is ActionType.TYPE:
            await resolve_on_page(page, action.selector, timeout)
            await page.fill(action.selector, action.value or "", timeout=timeout)

        elif kind is ActionType.SELECT:
            await resolve_on_page(page, action.selector, timeout)
            await page.select_option(action.selector, action.value or "", timeout=timeout)

        elif kind is ActionType.HOVER:
            await resolve_on_page(page, action.selector, timeout)
            await page.hover(action.selector, timeout=timeout)

        elif kind is ActionType.KEY_PRESS:
            await page.press(action.value or "Enter")

        elif kind is ActionType.SCROLL:
            coords = action.coordinates
            await page.scroll(coords.x if coords else 0, coords.y if coords else 0)

        elif kind is ActionType.WAIT:
            if action.value:
                await asyncio.sleep(float(action.value))
            elif action.selector not in ("", "body"):
                await resolve_on_page(page, action.selector, timeout)

        elif kind is ActionType.SCREENSHOT:
            data = await page.screenshot()
            target = self.screenshot_dir / run.id
            target.mkdir(parents=True, exist_ok=True)
            path = target / f"{action.order:04d}_{action.id}.png"
            path.write_bytes(data)
            self._log(run, LogLevel.INFO, f"Saved screenshot {path}", action.id)

        elif kind is ActionType.CUSTOM:
            if action.value:
                await page.evaluate(action.value)

        if action.wait_for:
            await resolve_on_page(page, action.wait_for, timeout)

    async def _navigate(self, page: ControllablePage, guard: DomainScopeGuard, url: str) -> None:
        scope = guard.classify(url)
        if not scope.allowed:
            raise ScopeBlockedError(f"Navigation blocked by domain scope: {scope.host or url}")
        try:
            await page.navigate(url, timeout=self.navigation_timeout_ms)
        except Exception as e:
            raise NavigationFailedError(f"Navigation to {url} failed: {e}", retryable=True, cause=e) from e

    # --- Bookkeeping ---

    def _log(self, run: Run, level: LogLevel, message: str, action_id: Optional[str] = None,
             metadata: Optional[dict[str, Any]] = None) -> None:
        entry = RunLog(level=level, message=message, action_id=action_id, metadata=metadata or {})
        run.logs.append(entry)
        logger.log(_LOG_LEVELS[level], f"[{run.id}] {message}")
        self.broadcaster.publish_log(run.id, entry)

    def _check_cancel(self, run: Run) -> None:
        cancel = self._cancel.get(run.id)
        if cancel is not None and cancel.is_set():
            raise RunCancelledError()

    async def _sleep(self, cancel: asyncio.Event, delay: float) -> None:
        """Sleep that wakes up early, with RunCancelledError, on stop()."""
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise RunCancelledError()

    def _finish(self, run: Run, status: RunStatus, error: Optional[str] = None,
                code: Optional[ErrorCode] = None, cancelled: bool = False) -> None:
        if run.status.terminal:
            return
        run.status = status
        run.finished_at = utcnow()
        run.error = error
        run.error_code = code.value if code else None
        run.cancelled = cancelled
        if status is RunStatus.SUCCESS:
            self._log(run, LogLevel.INFO, "Workflow finished: success")
        else:
            self._log(run, LogLevel.ERROR, f"Workflow finished: failed ({run.error_code}: {error})")
        self.broadcaster.close(run.id, status.value, error=error, code=run.error_code, cancelled=cancelled)

    def _finish_cancelled(self, run: Run, error: RunCancelledError, completed: int) -> None:
        run.result = {"steps_completed": completed}
        self._finish(run, RunStatus.FAILED, error=error.message, code=ErrorCode.RUN_CANCELLED, cancelled=True)

    async def _release_page(self, page: ControllablePage, workflow: Workflow) -> None:
        if workflow.requires_login and self.login is not None:
            await self.login.release(page)
        else:
            await self._close_page(page)

    async def _close_page(self, page: ControllablePage) -> None:
        try:
            if not page.is_closed():
                await page.close()
        except Exception as e:
            logger.debug(f"Could not close page: {e}")

    def _save(self, run: Run) -> None:
        if self.record_store is None:
            return
        try:
            self.record_store.save_run(run)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not save run {run.id}: {e}")

    def _retire(self, run: Run) -> None:
        """Drop the oldest finished runs from memory beyond max_finished_runs."""
        self._cancel.pop(run.id, None)
        self._retired.append(run.id)
        while len(self._retired) > self.max_finished_runs:
            self._runs.pop(self._retired.popleft(), None)
