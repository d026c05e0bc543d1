"""
Capture Engine: records live browser interactions as an ordered list
of replayable Actions.

Browser events arrive asynchronously (an exposed binding for DOM events,
page listeners for navigation, network and console). Every event is
normalized and pushed onto a bounded queue; a single appender task
consumes the queue, applies domain scope, and assigns a gapless
``order`` to each Action.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import automation_config
from automation_errors import NavigationFailedError, ScopeBlockedError
from page_driver import EVENT_CONSOLE, EVENT_NAVIGATED, EVENT_REQUEST, ControllablePage
from persistence import RecordStore
from scope_guard import DomainScopeGuard
from selector_strategy import ElementInfo, SelectorOptions, generate_selector
from workflow_models import (
    Action,
    ActionType,
    Coordinates,
    ScopeDecision,
    ScopeResult,
    check_action_order,
    new_id,
)

logger = logging.getLogger(__name__)

CAPTURE_BINDING = "__captureEvent"

# Event types reported but not recorded: a submit fires alongside the
# click or Enter key that caused it
_SKIP_EVENTS = {"submit"}

_RECORDED_KEYS = {"Enter", "Escape", "Tab"}

# Cap on network/console entries attached to a single action
_MAX_ATTACHED = 20

CAPTURE_SCRIPT = """
(() => {
    if (window.__captureInstalled) return;
    window.__captureInstalled = true;

    const q = (v) => String(v).replace(/\\\\/g, '\\\\\\\\').replace(/"/g, '\\\\"');
    const count = (sel) => { try { return document.querySelectorAll(sel).length; } catch (e) { return 0; } };
    const position = (el) => {
        let i = 1;
        for (let s = el.previousElementSibling; s; s = s.previousElementSibling) {
            if (s.nodeName === el.nodeName) i++;
        }
        return i;
    };
    const xpathOf = (el) => {
        const parts = [];
        for (; el && el.nodeType === 1; el = el.parentNode) {
            parts.unshift(el.nodeName.toLowerCase() + '[' + position(el) + ']');
        }
        return '/' + parts.join('/');
    };
    const nthPath = (el) => {
        const parts = [];
        for (; el && el.nodeType === 1 && el !== document.documentElement; el = el.parentElement) {
            parts.unshift(el.nodeName.toLowerCase() + ':nth-of-type(' + position(el) + ')');
        }
        return 'html > ' + parts.join(' > ');
    };
    const labelOf = (el) => {
        if (el.getAttribute('aria-label')) return el.getAttribute('aria-label');
        if (el.labels && el.labels.length) return el.labels[0].innerText;
        return el.getAttribute('placeholder') || '';
    };
    const describe = (el) => {
        const tag = el.tagName.toLowerCase();
        const testId = el.getAttribute('data-testid') || '';
        const name = el.getAttribute('name') || '';
        const role = el.getAttribute('role') || '';
        const classes = Array.from(el.classList).slice(0, 3);
        const text = (el.innerText || '').trim().slice(0, 100);
        const counts = {};
        if (el.id) counts['id'] = count('[id="' + q(el.id) + '"]');
        if (testId) counts['test-id'] = count('[data-testid="' + q(testId) + '"]');
        if (name) counts['name'] = count(tag + '[name="' + q(name) + '"]');
        if (role) counts['role'] = count('[role="' + q(role) + '"]');
        if (classes.length) counts['class'] = count(tag + classes.map((c) => '.' + CSS.escape(c)).join(''));
        if (text) {
            counts['text'] = Array.from(document.getElementsByTagName(tag))
                .filter((o) => (o.innerText || '').trim() === text).length;
        }
        return {
            tag, id: el.id || '', testId, name, role, classes, text,
            label: labelOf(el), inputType: el.getAttribute('type') || '',
            xpath: xpathOf(el), nthPath: nthPath(el), counts,
        };
    };
    const sent = new WeakMap();
    const send = (type, el, extra) => {
        try {
            window.__captureEvent(Object.assign({
                type, url: location.href, timestamp: Date.now(),
                element: el && el.nodeType === 1 ? describe(el) : null,
            }, extra || {}));
        } catch (e) {}
    };
    const isTextual = (el) => el.tagName === 'TEXTAREA' ||
        (el.tagName === 'INPUT' && !['checkbox', 'radio', 'submit', 'button', 'file'].includes(el.type));
    const sendValue = (el) => {
        if (sent.get(el) === el.value) return;
        sent.set(el, el.value);
        send('input', el, {value: el.value});
    };

    document.addEventListener('click', (e) => {
        const el = e.target.closest('a,button,input,select,textarea,label,[role],[onclick]') || e.target;
        send('click', el);
    }, true);
    document.addEventListener('change', (e) => {
        const el = e.target;
        if (el.tagName === 'SELECT') send('change', el, {value: el.value});
        else if (isTextual(el)) sendValue(el);
    }, true);
    document.addEventListener('submit', (e) => send('submit', e.target), true);
    document.addEventListener('keydown', (e) => {
        if (!['Enter', 'Escape', 'Tab'].includes(e.key)) return;
        if (isTextual(e.target)) sendValue(e.target);
        send('keydown', e.target, {key: e.key});
    }, true);
    let scrollTimer = null;
    window.addEventListener('scroll', () => {
        clearTimeout(scrollTimer);
        scrollTimer = setTimeout(() => send('scroll', null, {x: window.scrollX, y: window.scrollY}), 250);
    }, true);
})();
"""


@dataclass
class CaptureSession:
    workflow_id: str
    start_url: str
    id: str = field(default_factory=lambda: new_id("capture"))
    status: str = "recording"  # recording, paused, stopping, stopped
    started_at: float = field(default_factory=time.time)
    action_count: int = 0
    pause_reason: Optional[str] = None
    screenshots: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _build_description(action_type: ActionType, selector: str, value: Optional[str], info: Optional[ElementInfo]) -> str:
    """Build a human-readable description for an action."""
    target = (info.label or info.text or selector) if info else selector
    target = target[:60]
    if action_type is ActionType.NAVIGATE:
        return f"Navigate to {value or '?'}"
    if action_type is ActionType.CLICK:
        return f"Click {target}"
    if action_type is ActionType.TYPE:
        text = value or ""
        preview = text[:40] + ("..." if len(text) > 40 else "")
        return f"Type '{preview}' into {target}"
    if action_type is ActionType.SELECT:
        return f"Select '{value}' in {target}"
    if action_type is ActionType.KEY_PRESS:
        return f"Press {value or '?'}"
    if action_type is ActionType.SCROLL:
        return "Scroll page"
    return action_type.value


def _same_url(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return False
    return a.rstrip("/") == b.rstrip("/")


async def _notify(callback: Optional[Callable], *args) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning(f"Capture callback raised: {e}")


class CaptureEngine:
    """Records one page's interactions for one workflow at a time."""

    def __init__(
        self,
        page: ControllablePage,
        scope_guard: Optional[DomainScopeGuard] = None,
        record_store: Optional[RecordStore] = None,
        selector_options: Optional[SelectorOptions] = None,
        on_recording_paused: Optional[Callable[[ScopeResult], Any]] = None,
        on_recording_resumed: Optional[Callable[[ScopeResult], Any]] = None,
        capture_screenshots: Optional[bool] = None,
        capture_network: bool = False,
        capture_console: bool = False,
        screenshot_dir: Optional[str] = None,
        queue_size: Optional[int] = None,
        navigation_timeout_ms: Optional[int] = None,
    ):
        self.page = page
        self.scope_guard = scope_guard or DomainScopeGuard()
        self.record_store = record_store
        self.selector_options = selector_options or SelectorOptions()
        self.on_recording_paused = on_recording_paused
        self.on_recording_resumed = on_recording_resumed
        self.capture_screenshots = (automation_config.CAPTURE_SCREENSHOTS
                                    if capture_screenshots is None else capture_screenshots)
        self.capture_network = capture_network
        self.capture_console = capture_console
        self.screenshot_dir = Path(screenshot_dir or Path(automation_config.DATA_DIR) / "screenshots")
        self.queue_size = queue_size or automation_config.CAPTURE_QUEUE_SIZE
        self.navigation_timeout_ms = navigation_timeout_ms or automation_config.NAVIGATION_TIMEOUT_MS

        self._session: Optional[CaptureSession] = None
        self._actions: list[Action] = []
        self._queue: Optional[asyncio.Queue] = None
        self._appender: Optional[asyncio.Task] = None
        self._pending_screenshots: set[asyncio.Task] = set()
        self._listeners: list[tuple[str, Callable]] = []
        self._cdp = None
        self._active = False
        self._stopping = False
        self._paused = False
        self._in_sso = False
        self._last_nav_url: Optional[str] = None

    # --- Public API ---

    async def start_capture(self, workflow_id: str, url: str) -> dict[str, Any]:
        """Navigate to ``url`` and begin recording. Returns the capture session."""
        if self._active:
            raise RuntimeError("A capture session is already active")

        start = self.scope_guard.classify(url)
        if not start.allowed:
            raise ScopeBlockedError(f"Start URL is outside the domain scope: {url}")

        self._reset_state()
        self._session = CaptureSession(workflow_id=workflow_id, start_url=url)
        self._queue = asyncio.Queue(maxsize=self.queue_size)

        await self.page.add_init_script(CAPTURE_SCRIPT)
        await self.page.expose_binding(CAPTURE_BINDING, self._on_dom_event)

        try:
            await self.page.navigate(url, timeout=self.navigation_timeout_ms)
        except Exception as e:
            self._session = None
            raise NavigationFailedError(str(e), cause=e) from e

        self._active = True
        self._appender = asyncio.create_task(self._append_loop())
        self._queue.put_nowait(("navigation", url))
        await self._attach_listeners()

        logger.info(f"Capture {self._session.id} started for workflow {workflow_id} at {url}")
        return self._session.to_dict()

    async def stop_capture(self) -> list[Action]:
        """Drain pending events, flush every action in one batch, and return them."""
        if not self._active or self._session is None:
            raise RuntimeError("No active capture session")

        # Latch first: anything arriving from here on is dropped
        self._stopping = True
        self._session.status = "stopping"

        await self._queue.put(None)
        await self._appender

        if self._pending_screenshots:
            done, pending = await asyncio.wait(
                self._pending_screenshots, timeout=automation_config.SCREENSHOT_FLUSH_TIMEOUT
            )
            if pending:
                logger.info(f"{len(pending)} screenshot(s) still pending at flush; skipping them")

        await self._detach()

        actions = list(self._actions)
        check_action_order(actions)
        if self.record_store is not None:
            self.record_store.batch_create_actions(self._session.workflow_id, actions)

        self._active = False
        self._session.status = "stopped"
        self._session.action_count = len(actions)
        logger.info(f"Capture {self._session.id} stopped with {len(actions)} actions")
        return actions

    async def resume_capture(self) -> None:
        """Operator resume after a scope pause (needed when auto_resume is off)."""
        if not self._paused:
            return
        self._paused = False
        self._in_sso = False
        self._session.status = "recording"
        self._session.pause_reason = None
        logger.info("Capture resumed by operator")
        await _notify(self.on_recording_resumed, self.scope_guard.classify(self.page.url))

    def is_active(self) -> bool:
        return self._active and not self._stopping

    def get_session(self) -> Optional[dict[str, Any]]:
        if self._session is None:
            return None
        self._session.action_count = len(self._actions)
        return self._session.to_dict()

    def get_actions(self) -> list[Action]:
        return list(self._actions)

    async def cleanup(self) -> None:
        """Tear down without flushing. Safe to call at any time, any number of times."""
        self._stopping = True
        if self._appender is not None and not self._appender.done():
            self._appender.cancel()
            try:
                await self._appender
            except asyncio.CancelledError:
                pass
        for task in list(self._pending_screenshots):
            task.cancel()
        self._pending_screenshots.clear()
        await self._detach()
        self._active = False
        if self._session is not None and self._session.status != "stopped":
            self._session.status = "stopped"

    # --- Producers ---

    async def _on_dom_event(self, payload: Any) -> None:
        if not self._active or self._stopping or not isinstance(payload, dict):
            return
        await self._queue.put(("dom", payload))

    def _enqueue(self, kind: str, payload: Any) -> None:
        if not self._active or self._stopping:
            return
        try:
            self._queue.put_nowait((kind, payload))
        except asyncio.QueueFull:
            logger.warning(f"Capture queue full; dropped {kind} event")

    def _on_navigated(self, url: str) -> None:
        self._enqueue("navigation", url)

    def _on_request(self, data: dict) -> None:
        self._enqueue("network", data)

    def _on_console(self, data: dict) -> None:
        self._enqueue("console", data)

    async def _attach_listeners(self) -> None:
        self._listen(EVENT_NAVIGATED, self._on_navigated)
        if self.capture_network:
            self._listen(EVENT_REQUEST, self._on_request)
            self._cdp = await self.page.open_cdp_session()
            if self._cdp is not None:
                # Uncached loads so every request is observed
                await self._cdp.send("Network.enable")
                await self._cdp.send("Network.setCacheDisabled", {"cacheDisabled": True})
        if self.capture_console:
            self._listen(EVENT_CONSOLE, self._on_console)

    def _listen(self, event: str, handler: Callable) -> None:
        self.page.on(event, handler)
        self._listeners.append((event, handler))

    async def _detach(self) -> None:
        for event, handler in self._listeners:
            try:
                self.page.remove_listener(event, handler)
            except Exception as e:
                logger.debug(f"Could not remove {event} listener: {e}")
        self._listeners.clear()
        if self._cdp is not None:
            try:
                await self._cdp.detach()
            except Exception as e:
                logger.debug(f"Could not detach CDP session: {e}")
            self._cdp = None

    # --- Appender ---

    async def _append_loop(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                break
            kind, payload = item
            try:
                if kind == "navigation":
                    await self._handle_navigation(payload)
                elif kind == "dom":
                    self._handle_dom(payload)
                elif kind in ("network", "console"):
                    self._attach_to_last(kind, payload)
            except Exception as e:
                logger.warning(f"Dropped {kind} capture event: {e}")

    async def _handle_navigation(self, url: str) -> None:
        result = self.scope_guard.record_navigation(url)

        if not result.allowed:
            if not self._paused:
                self._paused = True
                self._session.status = "paused"
                self._session.pause_reason = f"Recording paused: outside target system ({result.host or url})"
                logger.info(f"{self._session.pause_reason}")
                await _notify(self.on_recording_paused, result)
            return

        if self._paused:
            if not self.scope_guard.auto_resume:
                return
            # Returning to scope ends the pause; that navigation is not recorded
            self._paused = False
            self._session.status = "recording"
            self._session.pause_reason = None
            self._last_nav_url = url
            self._in_sso = result.decision is ScopeDecision.SSO_ALLOWED
            logger.info(f"Capture resumed at {result.host}")
            await _notify(self.on_recording_resumed, result)
            return

        self._in_sso = result.decision is ScopeDecision.SSO_ALLOWED
        if _same_url(url, self._last_nav_url):
            return
        self._last_nav_url = url

        metadata: dict[str, Any] = {"page_url": url, "scope_reason": result.reason}
        if self._in_sso:
            metadata["scope"] = "sso"
        self._append(ActionType.NAVIGATE, "body", value=None, url=url, metadata=metadata,
                     description=_build_description(ActionType.NAVIGATE, "body", url, None))

    def _handle_dom(self, payload: dict[str, Any]) -> None:
        if self._paused:
            return
        event_type = payload.get("type")
        if event_type in _SKIP_EVENTS:
            return

        if event_type == "scroll":
            coords = Coordinates(x=float(payload.get("x") or 0), y=float(payload.get("y") or 0))
            last = self._actions[-1] if self._actions else None
            if last is not None and last.type is ActionType.SCROLL:
                last.coordinates = coords
                return
            self._append(ActionType.SCROLL, "body", coordinates=coords,
                         metadata={"page_url": payload.get("url")},
                         description=_build_description(ActionType.SCROLL, "body", None, None))
            return

        info = ElementInfo.from_payload(payload.get("element"))
        if event_type == "click":
            action_type, value = ActionType.CLICK, None
        elif event_type == "input":
            action_type, value = ActionType.TYPE, str(payload.get("value") or "")
        elif event_type == "change":
            action_type, value = ActionType.SELECT, str(payload.get("value") or "")
        elif event_type == "keydown" and payload.get("key") in _RECORDED_KEYS:
            action_type, value = ActionType.KEY_PRESS, payload["key"]
        else:
            return

        chosen = generate_selector(info, self.selector_options)
        if chosen is None:
            logger.info(f"No selector for {event_type} on <{info.tag}>; event not recorded")
            return

        metadata: dict[str, Any] = {
            "page_url": payload.get("url"),
            "strategy": chosen.strategy,
            "confidence": round(chosen.confidence, 2),
            "unique": chosen.unique,
            "alternatives": chosen.alternatives,
            "tag": info.tag,
        }
        if info.text:
            metadata["text"] = info.text[:80]
        if self._in_sso:
            metadata["scope"] = "sso"
        if action_type is ActionType.TYPE and info.input_type == "password":
            value = "{{password}}"
            metadata["sensitive"] = True

        last = self._actions[-1] if self._actions else None
        if (action_type is ActionType.TYPE and last is not None
                and last.type is ActionType.TYPE and last.selector == chosen.selector):
            last.value = value
            last.metadata["description"] = _build_description(action_type, chosen.selector, value, info)
            return

        self._append(action_type, chosen.selector, value=value, metadata=metadata,
                     description=_build_description(action_type, chosen.selector, value, info))

    def _append(self, action_type: ActionType, selector: str, value: Optional[str] = None,
                url: Optional[str] = None, coordinates: Optional[Coordinates] = None,
                metadata: Optional[dict[str, Any]] = None, description: str = "") -> Action:
        metadata = dict(metadata or {})
        metadata["description"] = description
        metadata["recorded_at"] = time.time()
        action = Action(
            type=action_type,
            selector=selector,
            value=value,
            url=url,
            coordinates=coordinates,
            order=len(self._actions),
            metadata=metadata,
        )
        self._actions.append(action)
        self._session.action_count = len(self._actions)
        logger.debug(f"Captured #{action.order}: {description}")
        self._schedule_screenshot(action)
        return action

    def _attach_to_last(self, kind: str, data: dict[str, Any]) -> None:
        if self._paused or not self._actions:
            return
        entries = self._actions[-1].metadata.setdefault(kind, [])
        if len(entries) < _MAX_ATTACHED:
            entries.append(data)

    # --- Screenshots ---

    def _schedule_screenshot(self, action: Action) -> None:
        if not self.capture_screenshots or self._session.screenshots >= automation_config.MAX_CAPTURE_SCREENSHOTS:
            return
        self._session.screenshots += 1
        task = asyncio.create_task(self._take_screenshot(action))
        self._pending_screenshots.add(task)
        task.add_done_callback(self._pending_screenshots.discard)

    async def _take_screenshot(self, action: Action) -> None:
        try:
            data = await self.page.screenshot()
            target_dir = self.screenshot_dir / self._session.workflow_id
            target_dir.mkdir(parents=True, exist_ok=True)
            path = target_dir / f"{action.order:04d}_{action.id}.png"
            path.write_bytes(data)
            action.metadata["screenshot"] = str(path)
        except Exception as e:
            logger.debug(f"Screenshot for action {action.id} failed: {e}")

    def _reset_state(self) -> None:
        self._actions = []
        self._pending_screenshots = set()
        self._listeners = []
        self._stopping = False
        self._paused = False
        self._in_sso = False
        self._last_nav_url = None
