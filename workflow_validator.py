"""
Replay validator: steps through a recorded workflow on a live page and
checks that each action's selector still resolves to exactly one
element, highlighting it as it goes.

Unlike a run, validation does not click or type. Navigate steps are
followed so later selectors are checked on the right page.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Optional

import automation_config
from automation_errors import ReplayEngineError, SelectorResolutionError
from page_driver import ControllablePage
from persistence import RecordStore
from scope_guard import DomainScopeGuard
from selector_strategy import resolve_on_page
from workflow_models import Action, ActionType, check_action_order

logger = logging.getLogger(__name__)


class ValidatorStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    VALIDATING = "validating"
    ERROR = "error"


@dataclass
class StepOutcome:
    action_id: str
    order: int
    selector: str
    ok: bool
    matches: int = 0
    used_selector: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ReplayValidator:
    """Highlights recorded steps one by one, or all of them with a fixed delay."""

    def __init__(
        self,
        page: ControllablePage,
        record_store: Optional[RecordStore] = None,
        scope_guard: Optional[DomainScopeGuard] = None,
        step_delay: Optional[float] = None,
        timeout_ms: Optional[int] = None,
    ):
        self.page = page
        self.record_store = record_store
        self.scope_guard = scope_guard or DomainScopeGuard()
        self.step_delay = automation_config.PLAYBACK_STEP_DELAY if step_delay is None else step_delay
        self.timeout_ms = timeout_ms or automation_config.STEP_TIMEOUT_MS

        self.status = ValidatorStatus.IDLE
        self.workflow_id: Optional[str] = None
        self.actions: list[Action] = []
        self.current_index = -1
        self.outcomes: dict[str, StepOutcome] = {}
        self.last_error: Optional[str] = None

    async def load(self, workflow_id: str, actions: Optional[list[Action]] = None) -> list[Action]:
        """Load a workflow's actions, from the record store unless given."""
        self.status = ValidatorStatus.LOADING
        try:
            if actions is None:
                if self.record_store is None:
                    raise ValueError("No actions given and no record store configured")
                actions = self.record_store.get_actions(workflow_id)
            actions = sorted(actions, key=lambda a: a.order)
            check_action_order(actions)
        except Exception as e:
            self.status = ValidatorStatus.ERROR
            self.last_error = str(e)
            raise

        self.workflow_id = workflow_id
        self.actions = actions
        self.reset()
        logger.info(f"Loaded {len(actions)} actions for validation of workflow {workflow_id}")
        return actions

    def reset(self) -> None:
        """
        Back to idle at the start of the workflow.

        ``current_index`` is the last validated step, so -1 means step 0
        is the next one ``step_forward()`` validates.
        """
        self.current_index = -1
        self.outcomes = {}
        self.last_error = None
        self.status = ValidatorStatus.IDLE

    async def highlight_step(self, action_id: str) -> StepOutcome:
        for index, action in enumerate(self.actions):
            if action.id == action_id:
                self.current_index = index
                return await self._run_step(action)
        raise KeyError(f"Unknown action: {action_id}")

    async def step_forward(self) -> Optional[StepOutcome]:
        """Validate the next step. No-op (returns None) at the last step."""
        if self.current_index >= len(self.actions) - 1:
            return None
        self.current_index += 1
        return await self._run_step(self.actions[self.current_index])

    async def play_all(self) -> list[StepOutcome]:
        """Validate every step in order with a fixed delay between them."""
        self.reset()
        results = []
        for index, action in enumerate(self.actions):
            if index > 0 and self.step_delay > 0:
                await asyncio.sleep(self.step_delay)
            self.current_index = index
            results.append(await self._run_step(action))
        passed = sum(1 for r in results if r.ok)
        logger.info(f"Validation finished: {passed}/{len(results)} steps resolved")
        return results

    def summary(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "current_index": self.current_index,
            "total": len(self.actions),
            "passed": sum(1 for o in self.outcomes.values() if o.ok),
            "failed": sum(1 for o in self.outcomes.values() if not o.ok),
            "outcomes": [o.to_dict() for o in self.outcomes.values()],
            "error": self.last_error,
        }

    # --- Internals ---

    async def _run_step(self, action: Action) -> StepOutcome:
        if self.page.is_closed():
            self.status = ValidatorStatus.ERROR
            self.last_error = "Page is closed"
            raise ReplayEngineError("Page is closed or disconnected")

        self.status = ValidatorStatus.VALIDATING
        try:
            if action.type is ActionType.NAVIGATE:
                outcome = await self._follow_navigation(action)
            else:
                outcome = await self._resolve(action)
        finally:
            if self.status is ValidatorStatus.VALIDATING:
                self.status = ValidatorStatus.IDLE

        self.outcomes[action.id] = outcome
        if outcome.ok:
            logger.info(f"Step {action.order} OK: {outcome.used_selector}")
        else:
            # Reported, not raised; reset() clears it
            self.status = ValidatorStatus.ERROR
            self.last_error = outcome.error
            logger.warning(f"Step {action.order} failed: {outcome.error}")
        return outcome

    async def _follow_navigation(self, action: Action) -> StepOutcome:
        url = action.url or action.value
        outcome = StepOutcome(action.id, action.order, action.selector, ok=True, used_selector=url)
        if not url:
            return outcome
        scope = self.scope_guard.classify(url)
        if not scope.allowed:
            outcome.ok = False
            outcome.code = "SCOPE_BLOCKED"
            outcome.error = f"Navigation outside domain scope: {scope.host}"
            return outcome
        try:
            await self.page.navigate(url, timeout=automation_config.NAVIGATION_TIMEOUT_MS)
        except Exception as e:
            outcome.ok = False
            outcome.code = "NAVIGATION_FAILED"
            outcome.error = str(e)
        return outcome

    async def _resolve(self, action: Action) -> StepOutcome:
        timeout = action.timeout or self.timeout_ms
        candidates = [action.selector] + [
            s for s in action.metadata.get("alternatives", []) if s != action.selector
        ]
        first_error: Optional[SelectorResolutionError] = None
        for selector in candidates:
            try:
                matches = await resolve_on_page(self.page, selector, timeout)
            except SelectorResolutionError as e:
                first_error = first_error or e
                continue
            try:
                await self.page.highlight(selector)
            except Exception as e:
                logger.debug(f"Highlight failed for {selector}: {e}")
            return StepOutcome(action.id, action.order, action.selector, ok=True,
                               matches=matches, used_selector=selector)

        return StepOutcome(
            action.id, action.order, action.selector, ok=False,
            reason=first_error.reason, error=first_error.message, code=first_error.code.value,
        )
