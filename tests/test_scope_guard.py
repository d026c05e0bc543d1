"""
Unit tests for domain scope classification.
"""

import unittest

from scope_guard import DomainScopeGuard, host_of, matches_domain_pattern
from workflow_models import DomainScopeConfig, ScopeDecision


def make_guard(**overrides):
    data = {"base_domain": "example.com"}
    data.update(overrides)
    return DomainScopeGuard(DomainScopeConfig(**data))


class TestMatchesDomainPattern(unittest.TestCase):
    """Test host pattern matching."""

    def test_exact(self):
        """Identical hosts match."""
        self.assertTrue(matches_domain_pattern("login.microsoftonline.com", "login.microsoftonline.com"))

    def test_wildcard_subdomain(self):
        """*.domain matches subdomains and the bare domain."""
        self.assertTrue(matches_domain_pattern("acme.okta.com", "*.okta.com"))
        self.assertTrue(matches_domain_pattern("okta.com", "*.okta.com"))
        self.assertFalse(matches_domain_pattern("notokta.com", "*.okta.com"))

    def test_case_insensitive(self):
        """Matching ignores case."""
        self.assertTrue(matches_domain_pattern("ACME.Okta.com", "*.okta.COM"))


class TestClassify(unittest.TestCase):
    """Test URL classification against a scope."""

    def test_no_scope_allows_everything(self):
        """An unconfigured guard allows any URL."""
        result = DomainScopeGuard().classify("https://anything.test/page")
        self.assertEqual(result.decision, ScopeDecision.ALLOWED)
        self.assertEqual(result.reason, "no_scope")

    def test_base_domain(self):
        """The base domain itself is allowed."""
        result = make_guard().classify("https://example.com/dashboard")
        self.assertEqual(result.decision, ScopeDecision.ALLOWED)
        self.assertEqual(result.reason, "base_domain")

    def test_subdomain(self):
        """Subdomains of the base domain are allowed."""
        result = make_guard().classify("https://app.eu.example.com/")
        self.assertEqual(result.reason, "subdomain")
        self.assertTrue(result.allowed)

    def test_lookalike_blocked(self):
        """A host that only ends with the base string is not a subdomain."""
        result = make_guard().classify("https://badexample.com/")
        self.assertEqual(result.decision, ScopeDecision.BLOCKED)
        self.assertEqual(result.reason, "denied")

    def test_explicit_allowlist(self):
        """Hosts in allowed_domains are allowed."""
        result = make_guard(allowed_domains=["cdn.partner.net"]).classify("https://cdn.partner.net/x.js")
        self.assertEqual(result.reason, "explicit_allowlist")

    def test_default_sso_providers(self):
        """Well-known identity providers are allowed as SSO without configuration."""
        result = make_guard().classify("https://login.microsoftonline.com/common/oauth2")
        self.assertEqual(result.decision, ScopeDecision.SSO_ALLOWED)
        self.assertEqual(result.reason, "sso_provider")

    def test_custom_sso_providers_replace_defaults(self):
        """Configured providers are used instead of the built-in list."""
        guard = make_guard(sso_providers=["*.corp-idp.com"])
        self.assertEqual(guard.classify("https://sso.corp-idp.com/").decision, ScopeDecision.SSO_ALLOWED)
        self.assertFalse(guard.is_allowed("https://login.microsoftonline.com/"))

    def test_invalid_url_blocked(self):
        """URLs without a host are blocked when a scope is configured."""
        result = make_guard().classify("not a url")
        self.assertEqual(result.decision, ScopeDecision.BLOCKED)
        self.assertEqual(result.reason, "invalid_url")

    def test_host_case_insensitive(self):
        """Host comparison ignores case."""
        self.assertTrue(make_guard().is_allowed("https://APP.Example.COM/"))


class TestScopeMutation(unittest.TestCase):
    """Test runtime changes to the scope."""

    def test_add_allowed_domain(self):
        """A newly allowed domain is allowed on the next check."""
        guard = make_guard()
        self.assertFalse(guard.is_allowed("https://x.com/"))
        guard.add_allowed_domain("X.com")
        result = guard.classify("https://x.com/")
        self.assertEqual(result.decision, ScopeDecision.ALLOWED)
        self.assertEqual(result.reason, "explicit_allowlist")

    def test_remove_allowed_domain(self):
        """A removed domain is blocked again."""
        guard = make_guard(allowed_domains=["x.com"])
        guard.remove_allowed_domain("x.com")
        self.assertFalse(guard.is_allowed("https://x.com/"))

    def test_add_without_scope(self):
        """Adding a domain to an unconfigured guard is an error."""
        with self.assertRaises(ValueError):
            DomainScopeGuard().add_allowed_domain("x.com")
        with self.assertRaises(ValueError):
            make_guard().add_allowed_domain("  ")

    def test_update_scope(self):
        """Replacing the scope takes effect immediately; None disables it."""
        guard = make_guard()
        guard.update_domain_scope(DomainScopeConfig(base_domain="other.org"))
        self.assertFalse(guard.is_allowed("https://example.com/"))
        self.assertTrue(guard.is_allowed("https://www.other.org/"))
        guard.update_domain_scope(None)
        self.assertEqual(guard.classify("https://example.com/").reason, "no_scope")

    def test_config_is_a_copy(self):
        """Mutating the returned config does not change the guard."""
        guard = make_guard()
        guard.config.allowed_domains.add("x.com")
        self.assertFalse(guard.is_allowed("https://x.com/"))

    def test_from_login_metadata(self):
        """Scope can be built from camelCase login metadata."""
        guard = DomainScopeGuard.from_login_metadata({
            "baseDomain": "Example.com",
            "allowedDomains": ["static.cdn.net"],
        })
        self.assertEqual(guard.config.base_domain, "example.com")
        self.assertTrue(guard.is_allowed("https://static.cdn.net/app.js"))
        with self.assertRaises(ValueError):
            DomainScopeGuard.from_login_metadata({})


class TestNavigationHistory(unittest.TestCase):
    """Test recorded navigation and pause state."""

    def test_pause_and_resume_state(self):
        """A blocked navigation pauses; an allowed one clears the pause."""
        guard = make_guard()
        guard.record_navigation("https://app.example.com/")
        guard.record_navigation("https://evil.test/")
        state = guard.recording_state()
        self.assertTrue(state["is_paused"])
        self.assertIn("evil.test", state["reason"])
        guard.record_navigation("https://app.example.com/back")
        self.assertFalse(guard.recording_state()["is_paused"])

    def test_domain_stats(self):
        """Stats count allowed, blocked and SSO navigations."""
        guard = make_guard()
        for url in ("https://app.example.com/", "https://acme.okta.com/", "https://evil.test/"):
            guard.record_navigation(url)
        stats = guard.domain_stats()
        self.assertEqual(stats["total_navigations"], 3)
        self.assertEqual(stats["allowed_navigations"], 2)
        self.assertEqual(stats["blocked_navigations"], 1)
        self.assertEqual(stats["sso_navigations"], 1)
        self.assertEqual(stats["hosts_visited"], ["acme.okta.com", "app.example.com", "evil.test"])

    def test_clear_history(self):
        """Clearing history resets pause state."""
        guard = make_guard()
        guard.record_navigation("https://evil.test/")
        guard.clear_history()
        self.assertEqual(guard.navigation_history(), [])
        self.assertFalse(guard.recording_state()["is_paused"])

    def test_host_of(self):
        """host_of lower-cases and tolerates garbage."""
        self.assertEqual(host_of("https://App.Example.com:8080/x"), "app.example.com")
        self.assertEqual(host_of("mailto:someone"), "")


if __name__ == '__main__':
    unittest.main()
