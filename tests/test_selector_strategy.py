"""
Unit tests for selector generation and live resolution.
"""

import unittest

from bs4 import BeautifulSoup

from automation_errors import SelectorResolutionError
from selector_strategy import (
    ElementInfo,
    SelectorKind,
    SelectorOptions,
    css_escape,
    fallback_selectors,
    generate_selector,
    resolve_on_page,
)

from fakes import FakePage


def button(**overrides):
    data = {
        "tag": "button",
        "id": "login",
        "testId": "login-btn",
        "name": "go",
        "classes": ["btn", "primary"],
        "text": "Sign in",
        "nthPath": "html > body:nth-of-type(1) > button:nth-of-type(2)",
        "counts": {"test-id": 1, "name": 1, "class": 3, "text": 1},
    }
    data.update(overrides)
    return ElementInfo.from_payload(data)


class TestElementInfo(unittest.TestCase):
    """Test parsing of capture payloads."""

    def test_from_payload(self):
        """camelCase keys and string class lists are accepted."""
        info = ElementInfo.from_payload({"tag": "INPUT", "testId": "q", "classes": "a b", "inputType": "email"})
        self.assertEqual(info.tag, "input")
        self.assertEqual(info.test_id, "q")
        self.assertEqual(info.classes, ["a", "b"])
        self.assertEqual(info.input_type, "email")

    def test_empty_payload(self):
        """A missing element describes the body."""
        self.assertEqual(ElementInfo.from_payload(None).tag, "body")


class TestHybrid(unittest.TestCase):
    """Test the default priority-based strategy."""

    def test_prefers_unique_id(self):
        """A unique id wins over every other attribute."""
        result = generate_selector(button())
        self.assertEqual(result.selector, "#login")
        self.assertEqual(result.strategy, "id")
        self.assertTrue(result.unique)
        self.assertIn('[data-testid="login-btn"]', result.alternatives)

    def test_skips_duplicate_id(self):
        """A non-unique id falls through to the next unique attribute."""
        info = button(counts={"id": 2, "test-id": 1})
        result = generate_selector(info)
        self.assertEqual(result.selector, '[data-testid="login-btn"]')
        self.assertEqual(result.strategy, "test-id")

    def test_odd_id_is_attribute_quoted(self):
        """Ids that are not valid CSS identifiers use attribute syntax."""
        result = generate_selector(button(id="1:main"))
        self.assertEqual(result.selector, '[id="1:main"]')

    def test_id_with_special_characters(self):
        """Ids with '/', '(' or '@' are attribute quoted too."""
        for odd in ("user@example/1", "row(2)", "a.b"):
            with self.subTest(id=odd):
                self.assertEqual(generate_selector(button(id=odd)).selector, f'[id="{odd}"]')
        self.assertEqual(generate_selector(button(id="main-nav_2")).selector, "#main-nav_2")

    def test_utility_classes_are_escaped(self):
        """Tailwind-style class names produce a selector that still parses and matches."""
        info = ElementInfo(tag="div", classes=["md:flex", "w-1/2"], counts={"class": 1})
        result = generate_selector(info)
        self.assertEqual(result.selector, "div.md\\:flex.w-1\\/2")

        html = '<div class="md:flex w-1/2">one</div><div class="md flex">two</div>'
        matches = BeautifulSoup(html, "lxml").select(result.selector)
        self.assertEqual([m.get_text() for m in matches], ["one"])

    def test_css_escape(self):
        """Leading digits become hex escapes and punctuation is backslashed."""
        self.assertEqual(css_escape("primary"), "primary")
        self.assertEqual(css_escape("2xl:p-4"), "\\32 xl\\:p-4")
        self.assertEqual(css_escape("-1"), "-\\31 ")
        self.assertEqual(css_escape("w-[10px]"), "w-\\[10px\\]")

    def test_nth_path_fallback(self):
        """With nothing unique, the structural path is used."""
        info = ElementInfo.from_payload({
            "tag": "div", "classes": ["row"], "nthPath": "html > body > div:nth-of-type(3)",
            "counts": {"class": 5},
        })
        result = generate_selector(info)
        self.assertEqual(result.strategy, "nth-path")
        self.assertLess(result.confidence, 0.5)

    def test_first_candidate_fallback(self):
        """Without a path, the first non-unique candidate is used with low confidence."""
        info = ElementInfo.from_payload({"tag": "div", "classes": ["row"], "counts": {"class": 5}})
        result = generate_selector(info)
        self.assertEqual(result.selector, "div.row")
        self.assertFalse(result.unique)

    def test_no_fallback_returns_none(self):
        """With fallback disabled and nothing unique, no selector is produced."""
        info = ElementInfo.from_payload({"tag": "div", "classes": ["row"], "counts": {"class": 5}})
        self.assertIsNone(generate_selector(info, SelectorOptions(fallback=False)))

    def test_custom_priority(self):
        """The priority list controls which attribute is tried first."""
        options = SelectorOptions(priority=("name", "id"))
        self.assertEqual(generate_selector(button(), options).selector, 'button[name="go"]')


class TestOtherStrategies(unittest.TestCase):
    """Test the css, xpath, text and ai strategies."""

    def test_css(self):
        options = SelectorOptions(strategy=SelectorKind.CSS)
        self.assertEqual(generate_selector(button(), options).selector, "#login")

    def test_xpath(self):
        options = SelectorOptions(strategy=SelectorKind.XPATH)
        self.assertEqual(generate_selector(button(), options).selector, 'xpath=//*[@id="login"]')

    def test_text(self):
        """Visible text is preferred when it is unique."""
        options = SelectorOptions(strategy=SelectorKind.TEXT)
        result = generate_selector(button(), options)
        self.assertEqual(result.selector, 'text="Sign in"')
        self.assertEqual(result.strategy, "text")

    def test_ai_role_and_name(self):
        """The ai strategy targets the accessible role and name."""
        options = SelectorOptions(strategy=SelectorKind.AI)
        self.assertEqual(generate_selector(button(), options).selector, 'role=button[name="Sign in"]')

    def test_ai_uses_label_for_inputs(self):
        """Inputs are named by their label."""
        info = ElementInfo.from_payload({"tag": "input", "inputType": "email", "label": "Work email"})
        options = SelectorOptions(strategy=SelectorKind.AI)
        self.assertEqual(generate_selector(info, options).selector, 'role=textbox[name="Work email"]')

    def test_ai_falls_back_to_hybrid(self):
        """Without a role and name, ai behaves like hybrid."""
        info = ElementInfo.from_payload({"tag": "div", "id": "panel"})
        options = SelectorOptions(strategy=SelectorKind.AI)
        self.assertEqual(generate_selector(info, options).selector, "#panel")

    def test_fallback_selectors(self):
        """All attribute candidates are listed most specific first."""
        self.assertEqual(fallback_selectors(button()), [
            "#login", '[data-testid="login-btn"]', 'button[name="go"]', "button.btn.primary",
        ])


class TestResolveOnPage(unittest.IsolatedAsyncioTestCase):
    """Test live selector resolution."""

    def setUp(self):
        self.page = FakePage(counts={"#one": 1, ".many": 3, "#gone": 0})

    async def test_single_match(self):
        """Exactly one match resolves."""
        self.assertEqual(await resolve_on_page(self.page, "#one", 100), 1)

    async def test_ambiguous(self):
        """More than one match is rejected."""
        with self.assertRaises(SelectorResolutionError) as ctx:
            await resolve_on_page(self.page, ".many", 100)
        self.assertEqual(ctx.exception.reason, "ambiguous")

    async def test_not_found(self):
        """Zero matches after the wait is not_found."""
        with self.assertRaises(SelectorResolutionError) as ctx:
            await resolve_on_page(self.page, "#gone", 100)
        self.assertEqual(ctx.exception.reason, "not_found")

    async def test_timeout(self):
        """A wait timeout is reported as such and is retryable."""
        with self.assertRaises(SelectorResolutionError) as ctx:
            await resolve_on_page(self.page, "#missing", 100)
        self.assertEqual(ctx.exception.reason, "timeout")
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.to_dict()["selector"], "#missing")


if __name__ == '__main__':
    unittest.main()
