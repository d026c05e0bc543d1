"""
Session Vault.

Caches authenticated browser state (cookies, web storage, user agent)
per credential identity so repeated runs skip the login form. Snapshots
are Fernet-encrypted at rest, in memory and on disk alike.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup
from cryptography.fernet import Fernet, InvalidToken
from curl_cffi import requests
from curl_cffi.requests import exceptions as requests_exceptions

import automation_config
from automation_errors import SessionExtractionError
from page_driver import ControllablePage, describe_cookies
from scope_guard import host_of
from workflow_models import Credential, SessionSnapshot, StoredSession, utcnow

logger = logging.getLogger(__name__)

STORAGE_SNAPSHOT_SCRIPT = """
() => {
    const dump = (store) => {
        const out = {};
        for (let i = 0; i < store.length; i++) {
            const k = store.key(i);
            out[k] = store.getItem(k);
        }
        return out;
    };
    return {
        local: dump(window.localStorage),
        session: dump(window.sessionStorage),
        userAgent: navigator.userAgent,
    };
}
"""

# Seeds web storage on the first document of the session's origin
STORAGE_SEED_TEMPLATE = """
(() => {
    if (location.origin !== %(origin)s) return;
    const seed = (store, items) => {
        for (const [k, v] of Object.entries(items)) {
            try { store.setItem(k, v); } catch (e) {}
        }
    };
    seed(window.localStorage, %(local)s);
    seed(window.sessionStorage, %(session)s);
})();
"""


def derive_fernet_key(passphrase: str) -> bytes:
    """Stretch an arbitrary passphrase into a urlsafe 32-byte Fernet key."""
    return base64.urlsafe_b64encode(hashlib.sha256(passphrase.encode("utf-8")).digest())


def origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}" if parsed.scheme and parsed.netloc else ""


class SessionVault:
    """In-memory, encrypted session cache keyed by credential identity."""

    def __init__(self, passphrase: Optional[str] = None, ttl_hours: Optional[float] = None,
                 clock: Callable[[], datetime] = utcnow):
        self._fernet = Fernet(derive_fernet_key(passphrase or automation_config.SESSION_ENCRYPTION_KEY))
        self.ttl = timedelta(hours=ttl_hours if ttl_hours is not None else automation_config.SESSION_TTL_HOURS)
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, StoredSession] = {}

    # --- Keys and crypto ---

    @staticmethod
    def cache_key(credential: Credential) -> str:
        """Identity of a credential against a target. Never includes the password."""
        identity = "|".join([
            credential.username.strip().lower(),
            host_of(credential.url),
            (credential.tenant or "").strip().lower(),
        ])
        return hashlib.sha256(identity.encode("utf-8")).hexdigest()

    def encrypt(self, snapshot: SessionSnapshot) -> str:
        return self._fernet.encrypt(snapshot.model_dump_json().encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> SessionSnapshot:
        return SessionSnapshot.model_validate_json(self._fernet.decrypt(token.encode("ascii")))

    # --- Cache ---

    def store(self, credential: Credential, snapshot: SessionSnapshot,
              metadata: Optional[dict[str, Any]] = None) -> StoredSession:
        """Encrypt and cache a snapshot, replacing any session for the same key."""
        key = self.cache_key(credential)
        now = self._clock()
        stored = StoredSession(
            key=key,
            encrypted=self.encrypt(snapshot),
            created_at=now,
            expires_at=now + self.ttl,
            metadata={
                "login_url": credential.url,
                "username": credential.username,
                "tenant": credential.tenant,
                "cookie_names": sorted({c.get("name", "") for c in snapshot.cookies}),
                "user_agent": snapshot.user_agent,
                **(metadata or {}),
            },
        )
        with self._lock:
            replaced = key in self._sessions
            self._sessions[key] = stored
        logger.info(f"{'Replaced' if replaced else 'Stored'} session {stored.id} "
                    f"for {credential.username}@{host_of(credential.url)}")
        return stored

    def get(self, key: str) -> Optional[StoredSession]:
        with self._lock:
            return self._sessions.get(key)

    def probe(self, stored: StoredSession) -> bool:
        """
        Cheap validity check without touching the network.

        The session must not be past ``expires_at`` and at least one
        cookie must still be live. Cookies without an expiry (-1) are
        browser-session cookies and count as live. A snapshot with no
        cookies is live only if it carries web storage.
        """
        now = self._clock()
        if stored.expires_at <= now:
            return False
        try:
            snapshot = self.decrypt(stored.encrypted)
        except (InvalidToken, ValueError) as e:
            logger.warning(f"Session {stored.id} could not be decrypted: {e}")
            return False
        if not snapshot.cookies:
            return bool(snapshot.local_storage or snapshot.session_storage)
        ts = now.timestamp()
        for cookie in snapshot.cookies:
            expires = cookie.get("expires")
            if expires is None or expires < 0 or expires > ts:
                return True
        return False

    def lookup(self, credential: Credential) -> Optional[SessionSnapshot]:
        """Cached snapshot for a credential, or None. A failed probe evicts the entry."""
        key = self.cache_key(credential)
        stored = self.get(key)
        if stored is None:
            return None
        if not self.probe(stored):
            logger.info(f"Cached session {stored.id} failed validity probe; discarding")
            self.invalidate(key)
            return None
        return self.decrypt(stored.encrypted)

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._sessions.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def list_sessions(self) -> list[StoredSession]:
        with self._lock:
            return list(self._sessions.values())

    # --- Page state ---

    async def extract(self, page: ControllablePage) -> SessionSnapshot:
        """Snapshot cookies, storage and user agent from a logged-in page."""
        try:
            cookies = await page.cookies()
            storage = await page.evaluate(STORAGE_SNAPSHOT_SCRIPT) or {}
        except Exception as e:
            raise SessionExtractionError(cause=e) from e
        snapshot = SessionSnapshot(
            cookies=cookies,
            local_storage=storage.get("local") or {},
            session_storage=storage.get("session") or {},
            user_agent=storage.get("userAgent") or "",
            timestamp=self._clock().timestamp(),
        )
        logger.debug(f"Extracted session: {describe_cookies(cookies)}")
        return snapshot

    async def apply(self, page: ControllablePage, snapshot: SessionSnapshot, url: str) -> None:
        """Inject a cached snapshot into a fresh page. Does not navigate."""
        await page.add_cookies(snapshot.cookies)
        if snapshot.user_agent:
            await page.set_user_agent(snapshot.user_agent)
        origin = origin_of(url)
        if origin and (snapshot.local_storage or snapshot.session_storage):
            await page.add_init_script(STORAGE_SEED_TEMPLATE % {
                "origin": json.dumps(origin),
                "local": json.dumps(snapshot.local_storage),
                "session": json.dumps(snapshot.session_storage),
            })

    def probe_remote(self, snapshot: SessionSnapshot, verify_url: str, timeout: float = 15) -> bool:
        """
        Confirm a session against the live site.

        Fetches ``verify_url`` with the cached cookies using Chrome
        impersonation. A redirect to a page with a password field means
        the server no longer honors the session.
        """
        cookies = {c["name"]: c.get("value", "") for c in snapshot.cookies if c.get("name")}
        headers = {"User-Agent": snapshot.user_agent or automation_config.USER_AGENT}
        try:
            response = requests.get(
                verify_url,
                cookies=cookies,
                headers=headers,
                impersonate="chrome120",
                timeout=timeout,
                allow_redirects=True,
            )
        except requests_exceptions.RequestException as e:
            logger.warning(f"Remote session probe failed for {verify_url}: {e}")
            return False

        if response.status_code in (401, 403) or response.status_code >= 500:
            return False
        soup = BeautifulSoup(response.text, "lxml")
        return soup.select_one('input[type="password"]') is None

    # --- Disk persistence ---

    def save(self, path: str) -> int:
        """Write all sessions (still encrypted) to a JSON file."""
        sessions = self.list_sessions()
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8") as f:
            json.dump([s.model_dump(mode="json") for s in sessions], f, indent=2)
        logger.info(f"Saved {len(sessions)} sessions to {target}")
        return len(sessions)

    def load(self, path: str) -> int:
        """Load sessions from a JSON file, skipping expired entries."""
        source = Path(path)
        if not source.exists():
            return 0
        try:
            with open(source, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not load sessions from {source}: {e}")
            return 0

        now = self._clock()
        loaded = 0
        with self._lock:
            for item in raw:
                stored = StoredSession.model_validate(item)
                if stored.expires_at > now:
                    self._sessions[stored.key] = stored
                    loaded += 1
        logger.info(f"Loaded {loaded} sessions from {source}")
        return loaded
