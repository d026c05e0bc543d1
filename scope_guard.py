"""
Domain Scope Guard.

Decides whether a URL is inside the recording/replay boundary of a
workflow: its base domain (and subdomains), an explicit allowlist, or a
known SSO provider that the site detours through during login.

With no scope configured every URL is allowed. Scoping is opt-in per
workflow; an unconfigured guard is not a fail-closed default.
"""

from __future__ import annotations

import fnmatch
import logging
import threading
import time
from typing import Any, Optional
from urllib.parse import urlparse

import automation_config
from workflow_models import DomainScopeConfig, ScopeDecision, ScopeResult

logger = logging.getLogger(__name__)


def host_of(url: str) -> str:
    """Lower-cased hostname of a URL, or '' when it has none."""
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def matches_domain_pattern(host: str, pattern: str) -> bool:
    """
    Match a host against a domain or glob pattern.

    ``*.auth0.com`` matches ``login.auth0.com`` and ``auth0.com`` itself.
    """
    host = host.lower()
    pattern = pattern.strip().lower()
    if host == pattern:
        return True
    if pattern.startswith("*."):
        bare = pattern[2:]
        if host == bare or host.endswith("." + bare):
            return True
    return fnmatch.fnmatchcase(host, pattern)


class DomainScopeGuard:
    """Classifies URLs against a mutable DomainScopeConfig."""

    def __init__(self, config: Optional[DomainScopeConfig] = None):
        self._lock = threading.Lock()
        self._config = self._with_default_sso(config) if config else None
        self._history: list[dict[str, Any]] = []
        self._paused = False
        self._pause_reason: Optional[str] = None

    @staticmethod
    def _with_default_sso(config: DomainScopeConfig) -> DomainScopeConfig:
        if config.sso_providers:
            return config.model_copy(deep=True)
        return config.model_copy(
            update={"sso_providers": list(automation_config.DEFAULT_SSO_PROVIDERS)},
            deep=True,
        )

    @classmethod
    def from_login_metadata(cls, login_metadata: dict[str, Any]) -> "DomainScopeGuard":
        base_domain = login_metadata.get("baseDomain") or login_metadata.get("base_domain")
        if not base_domain:
            raise ValueError("Base domain is required in login metadata")
        config = DomainScopeConfig(
            base_domain=base_domain,
            allowed_domains=login_metadata.get("allowedDomains")
            or login_metadata.get("allowed_domains") or [],
            sso_providers=login_metadata.get("ssoProviders")
            or login_metadata.get("sso_providers") or [],
            metadata=login_metadata,
        )
        return cls(config)

    @property
    def configured(self) -> bool:
        return self._config is not None

    @property
    def config(self) -> Optional[DomainScopeConfig]:
        with self._lock:
            return self._config.model_copy(deep=True) if self._config else None

    @property
    def auto_resume(self) -> bool:
        with self._lock:
            return self._config.auto_resume if self._config else True

    def classify(self, url: str) -> ScopeResult:
        host = host_of(url)

        with self._lock:
            config = self._config

        if config is None:
            return ScopeResult(decision=ScopeDecision.ALLOWED, reason="no_scope", host=host, url=url)

        if not host:
            return ScopeResult(decision=ScopeDecision.BLOCKED, reason="invalid_url", host="", url=url)

        base = config.base_domain
        if host == base:
            return ScopeResult(decision=ScopeDecision.ALLOWED, reason="base_domain", host=host, url=url)
        if host.endswith("." + base):
            return ScopeResult(decision=ScopeDecision.ALLOWED, reason="subdomain", host=host, url=url)
        if host in config.allowed_domains:
            return ScopeResult(decision=ScopeDecision.ALLOWED, reason="explicit_allowlist", host=host, url=url)
        if any(matches_domain_pattern(host, p) for p in config.sso_providers):
            return ScopeResult(decision=ScopeDecision.SSO_ALLOWED, reason="sso_provider", host=host, url=url)

        return ScopeResult(decision=ScopeDecision.BLOCKED, reason="denied", host=host, url=url)

    def is_allowed(self, url: str) -> bool:
        return self.classify(url).allowed

    # --- Mutation ---

    def add_allowed_domain(self, domain: str) -> None:
        domain = domain.strip().lower()
        if not domain:
            raise ValueError("Domain must be a non-empty string")
        with self._lock:
            if self._config is None:
                raise ValueError("Cannot add a domain: no domain scope configured")
            self._config.allowed_domains.add(domain)
        logger.info(f"Domain scope: allowed {domain}")

    def remove_allowed_domain(self, domain: str) -> None:
        domain = domain.strip().lower()
        with self._lock:
            if self._config is None:
                return
            self._config.allowed_domains.discard(domain)
        logger.info(f"Domain scope: removed {domain}")

    def update_domain_scope(self, config: Optional[DomainScopeConfig]) -> None:
        """Replace the whole scope. ``None`` turns scoping off."""
        new_config = self._with_default_sso(config) if config else None
        with self._lock:
            self._config = new_config
        logger.info(f"Domain scope updated: {new_config.base_domain if new_config else 'disabled'}")

    # --- Navigation history ---

    def record_navigation(self, url: str) -> ScopeResult:
        """Classify a navigation and remember it for audit and pause state."""
        result = self.classify(url)
        with self._lock:
            self._history.append({
                "url": url,
                "host": result.host,
                "decision": result.decision.value,
                "reason": result.reason,
                "timestamp": time.time(),
            })
            self._paused = not result.allowed
            self._pause_reason = (
                None if result.allowed
                else f"Recording paused: outside target system ({result.host or url})"
            )
        return result

    def recording_state(self) -> dict[str, Any]:
        with self._lock:
            last = self._history[-1] if self._history else None
            return {
                "is_paused": self._paused,
                "reason": self._pause_reason,
                "current_host": last["host"] if last else None,
            }

    def navigation_history(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._history)

    def domain_stats(self) -> dict[str, Any]:
        with self._lock:
            history = list(self._history)
        return {
            "total_navigations": len(history),
            "allowed_navigations": sum(1 for e in history if e["decision"] != ScopeDecision.BLOCKED.value),
            "blocked_navigations": sum(1 for e in history if e["decision"] == ScopeDecision.BLOCKED.value),
            "sso_navigations": sum(1 for e in history if e["decision"] == ScopeDecision.SSO_ALLOWED.value),
            "hosts_visited": sorted({e["host"] for e in history if e["host"]}),
        }

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()
            self._paused = False
            self._pause_reason = None
