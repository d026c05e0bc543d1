"""
Login Orchestrator.

Produces authenticated pages. A cached session from the vault is applied
when its probe passes; otherwise the login form is located, filled and
submitted, and the resulting browser state is snapshotted into the
vault.

Supported form shapes:
- traditional: username + password + submit on one page
- two_step: username first, password on the following screen
- sso: a "Sign in with ..." button that detours through a provider
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional

from bs4 import BeautifulSoup

import automation_config
from automation_errors import LoginFailedError
from page_driver import ControllablePage, PageFactory
from session_vault import SessionVault
from workflow_models import Credential, StoredSession

logger = logging.getLogger(__name__)

_USERNAME_HINT = re.compile(r"user|email|login|account|identifier", re.I)
_SUBMIT_HINT = re.compile(r"^\s*(sign\s*in|log\s*in|login|next|continue|submit)\s*$", re.I)
_SSO_HINT = re.compile(r"(sign|log)\s*in\s+with|continue\s+with|single\s+sign[- ]on|\bsso\b", re.I)


@dataclass
class LoginForm:
    kind: str  # traditional, two_step, sso, none
    username_selector: Optional[str] = None
    password_selector: Optional[str] = None
    submit_selector: Optional[str] = None
    sso_selector: Optional[str] = None


@dataclass
class LoginResult:
    success: bool
    error: Optional[str] = None
    retryable: bool = False


def _css_for(el) -> str:
    """Selector for a parsed element: id, then name, then tag + type."""
    tag = el.name
    if el.get("id"):
        return f'[id="{el["id"]}"]'
    if el.get("name"):
        return f'{tag}[name="{el["name"]}"]'
    if el.get("type"):
        return f'{tag}[type="{el["type"]}"]'
    text = el.get_text(strip=True)
    if text:
        return f'{tag}:has-text("{text}")'
    return tag


def _find_username(soup):
    for el in soup.find_all("input"):
        kind = (el.get("type") or "text").lower()
        if kind in ("hidden", "password", "submit", "button", "checkbox", "radio"):
            continue
        if kind == "email" or el.get("autocomplete") == "username":
            return el
        hints = " ".join(filter(None, [el.get("name"), el.get("id"), el.get("placeholder")]))
        if _USERNAME_HINT.search(hints):
            return el
    return soup.select_one('input[type="text"]')


def _find_submit(soup):
    found = soup.select_one('button[type="submit"], input[type="submit"]')
    if found:
        return found
    for el in soup.find_all(["button", "a"]):
        if _SUBMIT_HINT.match(el.get_text(" ", strip=True)):
            return el
    return None


def _find_sso(soup):
    for el in soup.find_all(["button", "a"]):
        label = el.get_text(" ", strip=True) or el.get("aria-label", "")
        if _SSO_HINT.search(label):
            return el
    return None


def detect_login_form(html: str) -> LoginForm:
    """Classify the login form on a page from its HTML."""
    soup = BeautifulSoup(html, "lxml")
    password = soup.select_one('input[type="password"]')
    username = _find_username(soup)
    submit = _find_submit(soup)

    if password is not None:
        return LoginForm(
            kind="traditional",
            username_selector=_css_for(username) if username is not None else None,
            password_selector=_css_for(password),
            submit_selector=_css_for(submit) if submit is not None else None,
        )

    sso = _find_sso(soup)
    if username is not None and submit is not None:
        return LoginForm(
            kind="two_step",
            username_selector=_css_for(username),
            submit_selector=_css_for(submit),
            sso_selector=_css_for(sso) if sso is not None else None,
        )
    if sso is not None:
        return LoginForm(kind="sso", sso_selector=_css_for(sso))
    return LoginForm(kind="none")


def _is_timeout(exc: BaseException) -> bool:
    return isinstance(exc, asyncio.TimeoutError) or "timeout" in type(exc).__name__.lower()


class LoginOrchestrator:
    """Hands out authenticated pages, reusing vault sessions when possible."""

    def __init__(self, vault: SessionVault, page_factory: Optional[PageFactory] = None,
                 navigation_timeout_ms: Optional[int] = None, login_timeout: Optional[float] = None):
        self.vault = vault
        self._page_factory = page_factory
        self.navigation_timeout_ms = navigation_timeout_ms or automation_config.NAVIGATION_TIMEOUT_MS
        self.login_timeout = login_timeout or automation_config.LOGIN_TIMEOUT
        self._current: Optional[StoredSession] = None
        self._pages: list[ControllablePage] = []
        self.login_count = 0

    def initialize(self, page_factory: PageFactory) -> None:
        self._page_factory = page_factory

    async def get_authenticated_page(self, credential: Credential) -> ControllablePage:
        """A page logged in as ``credential``; raises LoginFailedError on failure."""
        if self._page_factory is None:
            raise RuntimeError("LoginOrchestrator is not initialized with a page factory")

        snapshot = self.vault.lookup(credential)
        page = await self._page_factory()
        self._pages.append(page)

        if snapshot is not None:
            await self.vault.apply(page, snapshot, credential.url)
            self._current = self.vault.get(self.vault.cache_key(credential))
            logger.info(f"Reusing cached session for {credential.username}")
            return page

        try:
            await self.init_login(page, credential)
        except Exception:
            await self._close_page(page)
            raise
        return page

    async def init_login(self, page: Optional[ControllablePage], credential: Credential) -> StoredSession:
        """Log in on ``page`` and cache the resulting session."""
        if page is None:
            raise ValueError("Page is required for login initialization")

        self.login_count += 1
        logger.info(f"Logging in as {credential.username} at {credential.url}")
        # options.timeout is in milliseconds and also bounds each page action
        timeout_ms = credential.options.get("timeout")
        budget = timeout_ms / 1000 if timeout_ms else self.login_timeout
        nav_timeout_ms = timeout_ms or self.navigation_timeout_ms
        try:
            result = await asyncio.wait_for(self._perform_login(page, credential, nav_timeout_ms), timeout=budget)
        except asyncio.TimeoutError:
            raise LoginFailedError(f"Login failed: timed out after {budget:g}s", retryable=True)

        if not result.success:
            raise LoginFailedError(f"Login failed: {result.error}", retryable=result.retryable)

        snapshot = await self.vault.extract(page)
        self._current = self.vault.store(credential, snapshot)
        return self._current

    async def _perform_login(self, page: ControllablePage, credential: Credential,
                             timeout_ms: int) -> LoginResult:
        try:
            await page.navigate(credential.url, timeout=timeout_ms)
        except Exception as e:
            return LoginResult(False, f"could not reach {credential.url}: {e}", retryable=True)

        try:
            form = detect_login_form(await page.content())
            logger.info(f"Detected {form.kind} login form")

            if form.kind == "sso":
                await page.click(form.sso_selector, timeout=timeout_ms)
                await page.wait_for_load(timeout_ms)
                form = detect_login_form(await page.content())
                logger.info(f"SSO provider presented a {form.kind} login form")

            if form.kind == "two_step":
                await page.fill(form.username_selector, credential.username, timeout=timeout_ms)
                await page.click(form.submit_selector, timeout=timeout_ms)
                await page.wait_for_load(timeout_ms)
                form = detect_login_form(await page.content())
                if form.kind != "traditional":
                    return LoginResult(False, "password field did not appear after username step")
                form.username_selector = None

            if form.kind != "traditional":
                return LoginResult(False, "no login form detected")

            if form.username_selector:
                await page.fill(form.username_selector, credential.username, timeout=timeout_ms)
            await page.fill(form.password_selector, credential.password.get_secret_value(),
                            timeout=timeout_ms)
            if form.submit_selector:
                await page.click(form.submit_selector, timeout=timeout_ms)
            else:
                await page.press("Enter")
            await page.wait_for_load(timeout_ms)
        except Exception as e:
            return LoginResult(False, str(e), retryable=_is_timeout(e))

        return await self._verify(page, credential)

    async def _verify(self, page: ControllablePage, credential: Credential) -> LoginResult:
        success_selector = credential.options.get("success_selector")
        if success_selector:
            if await page.count(success_selector) > 0:
                return LoginResult(True)
            return LoginResult(False, f"success marker {success_selector} not found")
        # Still looking at a password field means the credentials were rejected
        if detect_login_form(await page.content()).kind == "traditional":
            return LoginResult(False, "credentials rejected")
        return LoginResult(True)

    def get_current_session(self) -> Optional[StoredSession]:
        return self._current

    def clear_session(self, credential: Optional[Credential] = None) -> None:
        """Drop the cached session for ``credential`` (or the current one)."""
        if credential is not None:
            key = self.vault.cache_key(credential)
        elif self._current is not None:
            key = self._current.key
        else:
            return
        self.vault.invalidate(key)
        if self._current is not None and self._current.key == key:
            self._current = None

    def get_all_sessions(self) -> list[StoredSession]:
        return self.vault.list_sessions()

    async def _close_page(self, page: ControllablePage) -> None:
        try:
            await page.close()
        except Exception as e:
            logger.debug(f"Could not close page: {e}")
        if page in self._pages:
            self._pages.remove(page)

    async def release(self, page: ControllablePage) -> None:
        """Close a page handed out by get_authenticated_page and stop tracking it."""
        await self._close_page(page)

    async def cleanup(self) -> None:
        """Close pages handed out and forget every session. Safe to call repeatedly."""
        for page in list(self._pages):
            await self._close_page(page)
        self._pages.clear()
        self.vault.clear()
        self._current = None
