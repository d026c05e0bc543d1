"""
Controllable page primitive.

The engine only talks to pages through the ControllablePage protocol
below. PlaywrightPage implements it over playwright.async_api, and
BrowserManager launches Chromium with a randomized viewport and the
webdriver flag hidden.
"""

from __future__ import annotations

import json
import logging
import random
from typing import Any, Awaitable, Callable, Optional, Protocol

from playwright.async_api import Browser, Page, Playwright, async_playwright

import automation_config

logger = logging.getLogger(__name__)

# Page events surfaced through on()/remove_listener()
EVENT_NAVIGATED = "navigated"  # handler(url: str), main frame only
EVENT_REQUEST = "request"      # handler({"url", "method", "resource_type"})
EVENT_CONSOLE = "console"      # handler({"type", "text"})

HIGHLIGHT_SCRIPT = """
el => {
    el.scrollIntoView({block: 'center', inline: 'center'});
    el.style.outline = '3px solid #ff6a00';
    el.style.outlineOffset = '2px';
    el.setAttribute('data-automation-highlight', '1');
}
"""

CLEAR_HIGHLIGHT_SCRIPT = """
() => document.querySelectorAll('[data-automation-highlight]').forEach(el => {
    el.style.outline = '';
    el.style.outlineOffset = '';
    el.removeAttribute('data-automation-highlight');
})
"""


class DebugSession(Protocol):
    async def send(self, method: str, params: Optional[dict[str, Any]] = None) -> Any:
        ...

    async def detach(self) -> None:
        ...


class ControllablePage(Protocol):
    """Narrow page contract the engine depends on."""

    @property
    def url(self) -> str:
        ...

    async def navigate(self, url: str, timeout: int) -> None:
        """Navigate and wait for DOMContentLoaded. timeout is in ms."""
        ...

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        ...

    async def content(self) -> str:
        ...

    async def cookies(self) -> list[dict[str, Any]]:
        ...

    async def add_cookies(self, cookies: list[dict[str, Any]]) -> None:
        ...

    async def set_user_agent(self, user_agent: str) -> None:
        ...

    async def add_init_script(self, script: str) -> None:
        ...

    async def expose_binding(self, name: str, callback: Callable[[Any], Awaitable[None]]) -> None:
        ...

    def on(self, event: str, handler: Callable[[Any], Any]) -> None:
        ...

    def remove_listener(self, event: str, handler: Callable[[Any], Any]) -> None:
        ...

    async def screenshot(self) -> bytes:
        ...

    async def count(self, selector: str) -> int:
        ...

    async def wait_for_selector(self, selector: str, timeout: int) -> None:
        ...

    async def click(self, selector: str, timeout: int) -> None:
        ...

    async def fill(self, selector: str, value: str, timeout: int) -> None:
        ...

    async def select_option(self, selector: str, value: str, timeout: int) -> None:
        ...

    async def hover(self, selector: str, timeout: int) -> None:
        ...

    async def press(self, key: str) -> None:
        ...

    async def scroll(self, x: float, y: float) -> None:
        ...

    async def highlight(self, selector: str) -> None:
        ...

    async def wait_for_load(self, timeout: int) -> None:
        ...

    async def open_cdp_session(self) -> Optional[DebugSession]:
        ...

    async def close(self) -> None:
        ...

    def is_closed(self) -> bool:
        ...


PageFactory = Callable[[], Awaitable[ControllablePage]]


class PlaywrightPage:
    """ControllablePage backed by a Playwright async Page."""

    def __init__(self, page: Page):
        self._page = page
        self._bindings: dict[str, Callable[[Any], Awaitable[None]]] = {}
        # (event, handler) -> wrapper registered with Playwright
        self._wrappers: dict[tuple[str, Callable], tuple[str, Callable]] = {}

    @property
    def raw(self) -> Page:
        return self._page

    @property
    def url(self) -> str:
        return self._page.url

    async def navigate(self, url: str, timeout: int) -> None:
        await self._page.goto(url, wait_until="domcontentloaded", timeout=timeout)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if arg is None:
            return await self._page.evaluate(script)
        return await self._page.evaluate(script, arg)

    async def content(self) -> str:
        return await self._page.content()

    async def cookies(self) -> list[dict[str, Any]]:
        return [dict(c) for c in await self._page.context.cookies()]

    async def add_cookies(self, cookies: list[dict[str, Any]]) -> None:
        if cookies:
            await self._page.context.add_cookies(cookies)

    async def set_user_agent(self, user_agent: str) -> None:
        if user_agent:
            await self._page.set_extra_http_headers({"User-Agent": user_agent})

    async def add_init_script(self, script: str) -> None:
        await self._page.add_init_script(script)

    async def expose_binding(self, name: str, callback: Callable[[Any], Awaitable[None]]) -> None:
        # Playwright refuses to expose a name twice; later callers swap the target
        first = name not in self._bindings
        self._bindings[name] = callback
        if not first:
            return

        async def trampoline(source, payload):
            target = self._bindings.get(name)
            if target is not None:
                await target(payload)

        await self._page.expose_binding(name, trampoline)

    def on(self, event: str, handler: Callable[[Any], Any]) -> None:
        if event == EVENT_NAVIGATED:
            def wrapper(frame):
                if frame.parent_frame is None:
                    handler(frame.url)
            pw_event = "framenavigated"
        elif event == EVENT_REQUEST:
            def wrapper(request):
                handler({"url": request.url, "method": request.method,
                         "resource_type": request.resource_type})
            pw_event = "request"
        elif event == EVENT_CONSOLE:
            def wrapper(message):
                handler({"type": message.type, "text": message.text})
            pw_event = "console"
        else:
            raise ValueError(f"Unsupported page event: {event}")
        self._wrappers[(event, handler)] = (pw_event, wrapper)
        self._page.on(pw_event, wrapper)

    def remove_listener(self, event: str, handler: Callable[[Any], Any]) -> None:
        registered = self._wrappers.pop((event, handler), None)
        if registered:
            pw_event, wrapper = registered
            self._page.remove_listener(pw_event, wrapper)

    async def screenshot(self) -> bytes:
        return await self._page.screenshot(type="png")

    async def count(self, selector: str) -> int:
        return await self._page.locator(selector).count()

    async def wait_for_selector(self, selector: str, timeout: int) -> None:
        await self._page.wait_for_selector(selector, state="attached", timeout=timeout)

    async def click(self, selector: str, timeout: int) -> None:
        await self._page.locator(selector).click(timeout=timeout)

    async def fill(self, selector: str, value: str, timeout: int) -> None:
        await self._page.locator(selector).fill(value, timeout=timeout)

    async def select_option(self, selector: str, value: str, timeout: int) -> None:
        await self._page.locator(selector).select_option(value, timeout=timeout)

    async def hover(self, selector: str, timeout: int) -> None:
        await self._page.locator(selector).hover(timeout=timeout)

    async def press(self, key: str) -> None:
        await self._page.keyboard.press(key)

    async def scroll(self, x: float, y: float) -> None:
        await self._page.evaluate("([x, y]) => window.scrollTo(x, y)", [x, y])

    async def highlight(self, selector: str) -> None:
        await self._page.evaluate(CLEAR_HIGHLIGHT_SCRIPT)
        await self._page.locator(selector).first.evaluate(HIGHLIGHT_SCRIPT)

    async def wait_for_load(self, timeout: int) -> None:
        await self._page.wait_for_load_state("domcontentloaded", timeout=timeout)

    async def open_cdp_session(self):
        try:
            return await self._page.context.new_cdp_session(self._page)
        except Exception as e:
            # Only Chromium speaks CDP
            logger.debug(f"CDP session unavailable: {e}")
            return None

    async def close(self) -> None:
        if not self._page.is_closed():
            await self._page.close()
            await self._page.context.close()

    def is_closed(self) -> bool:
        return self._page.is_closed()


class BrowserManager:
    """Owns one Chromium instance; hands out isolated pages."""

    def __init__(self, headless: Optional[bool] = None):
        self.headless = automation_config.HEADLESS if headless is None else headless
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    async def start(self) -> None:
        if self._browser is not None and self._browser.is_connected():
            return
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            args=automation_config.BROWSER_ARGS,
        )
        mode = "headless" if self.headless else "visible"
        logger.info(f"Playwright browser initialized ({mode} mode)")

    async def new_page(self) -> PlaywrightPage:
        """Fresh context + page with a randomized viewport and anti-detection."""
        await self.start()
        vw = 1920 + random.randint(-100, 100)
        vh = 1080 + random.randint(-100, 100)
        ctx = await self._browser.new_context(
            viewport={"width": vw, "height": vh},
            user_agent=automation_config.USER_AGENT,
            locale="en-US",
            timezone_id="America/New_York",
        )
        page = await ctx.new_page()
        await page.add_init_script(automation_config.ANTI_DETECT_SCRIPT)
        return PlaywrightPage(page)

    async def close(self) -> None:
        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as e:
                logger.debug(f"Could not close browser: {e}")
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


def describe_cookies(cookies: list[dict[str, Any]]) -> str:
    """Short, secret-free summary of a cookie jar for logs."""
    names = sorted({c.get("name", "?") for c in cookies})
    return json.dumps({"count": len(cookies), "names": names[:20]})
