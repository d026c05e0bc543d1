"""
Selector strategies.

A strategy turns an element descriptor captured in the browser into a
selector string that Playwright understands:

    css      #login / [name="email"] / button.primary
    xpath    xpath=//*[@id="login"]
    text     text="Sign in"
    hybrid   first unique candidate from a priority list
    ai       accessible role + name, e.g. role=button[name="Sign in"]

Each strategy is a plain resolver function keyed by SelectorKind. The
hybrid strategy composes the per-attribute builders in priority order.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from automation_errors import SelectorResolutionError


class SelectorKind(str, Enum):
    CSS = "css"
    XPATH = "xpath"
    TEXT = "text"
    HYBRID = "hybrid"
    AI = "ai"


# Attribute candidates in the order hybrid tries them
HYBRID_PRIORITY = ("id", "test-id", "name", "role", "class")

# Base confidence per candidate kind
_CONFIDENCE = {
    "id": 0.95,
    "test-id": 0.9,
    "name": 0.8,
    "role": 0.75,
    "class": 0.7,
    "text": 0.75,
    "xpath": 0.6,
    "css": 0.5,
    "nth-path": 0.4,
}


@dataclass
class ElementInfo:
    """Element descriptor reported by the capture script."""

    tag: str = "body"
    id: str = ""
    test_id: str = ""
    name: str = ""
    role: str = ""
    classes: list[str] = field(default_factory=list)
    text: str = ""
    label: str = ""
    input_type: str = ""
    xpath: str = ""
    nth_path: str = ""
    # How many elements in the document share each attribute value
    counts: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: Optional[dict[str, Any]]) -> "ElementInfo":
        data = data or {}
        classes = data.get("classes") or []
        if isinstance(classes, str):
            classes = classes.split()
        return cls(
            tag=(data.get("tag") or "body").lower(),
            id=data.get("id") or "",
            test_id=data.get("testId") or data.get("test_id") or "",
            name=data.get("name") or "",
            role=data.get("role") or "",
            classes=[c for c in classes if c],
            text=(data.get("text") or "").strip(),
            label=(data.get("label") or "").strip(),
            input_type=data.get("inputType") or data.get("input_type") or "",
            xpath=data.get("xpath") or "",
            nth_path=data.get("nthPath") or data.get("nth_path") or "",
            counts=dict(data.get("counts") or {}),
        )


@dataclass
class SelectorOptions:
    strategy: SelectorKind = SelectorKind.HYBRID
    priority: tuple[str, ...] = HYBRID_PRIORITY
    fallback: bool = True


@dataclass
class SelectorResult:
    selector: str
    strategy: str
    confidence: float
    unique: bool
    alternatives: list[str] = field(default_factory=list)


@dataclass
class _Candidate:
    kind: str
    selector: str
    unique: bool


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


_PLAIN_IDENT = re.compile(r"^-?[A-Za-z_][A-Za-z0-9_-]*$")


def css_escape(ident: str) -> str:
    """Escape a CSS identifier the way the browser's CSS.escape does."""
    out = []
    for i, ch in enumerate(ident):
        if "0" <= ch <= "9" and (i == 0 or (i == 1 and ident[0] == "-")):
            out.append(f"\\{ord(ch):x} ")
        elif ("a" <= ch.lower() <= "z") or ("0" <= ch <= "9") or ch in "_-" or ord(ch) >= 0x80:
            out.append(ch)
        else:
            out.append("\\" + ch)
    return "".join(out)


def _is_unique(info: ElementInfo, kind: str) -> bool:
    # Unknown counts are treated as unique only for ids
    count = info.counts.get(kind)
    if count is None:
        return kind == "id"
    return count == 1


# --- Per-attribute builders ---


def _by_id(info: ElementInfo) -> Optional[_Candidate]:
    if not info.id:
        return None
    if _PLAIN_IDENT.match(info.id):
        sel = f"#{info.id}"
    else:
        sel = f'[id="{_quote(info.id)}"]'
    return _Candidate("id", sel, _is_unique(info, "id"))


def _by_test_id(info: ElementInfo) -> Optional[_Candidate]:
    if not info.test_id:
        return None
    return _Candidate("test-id", f'[data-testid="{_quote(info.test_id)}"]', _is_unique(info, "test-id"))


def _by_name(info: ElementInfo) -> Optional[_Candidate]:
    if not info.name:
        return None
    return _Candidate("name", f'{info.tag}[name="{_quote(info.name)}"]', _is_unique(info, "name"))


def _by_role(info: ElementInfo) -> Optional[_Candidate]:
    if not info.role:
        return None
    return _Candidate("role", f'[role="{_quote(info.role)}"]', _is_unique(info, "role"))


def _by_class(info: ElementInfo) -> Optional[_Candidate]:
    if not info.classes:
        return None
    selector = info.tag + "".join(f".{css_escape(c)}" for c in info.classes)
    return _Candidate("class", selector, _is_unique(info, "class"))


ATTRIBUTE_BUILDERS: dict[str, Callable[[ElementInfo], Optional[_Candidate]]] = {
    "id": _by_id,
    "test-id": _by_test_id,
    "name": _by_name,
    "role": _by_role,
    "class": _by_class,
}


def _nth_path(info: ElementInfo) -> Optional[_Candidate]:
    if info.nth_path:
        return _Candidate("nth-path", info.nth_path, True)
    return None


# --- Strategy resolvers ---


def _pick(candidates: list[Optional[_Candidate]], options: SelectorOptions) -> Optional[SelectorResult]:
    found = [c for c in candidates if c is not None]
    unique = [c for c in found if c.unique]
    best = unique[0] if unique else (found[0] if found and options.fallback else None)
    if best is None:
        return None
    return SelectorResult(
        selector=best.selector,
        strategy=best.kind,
        confidence=_CONFIDENCE.get(best.kind, 0.5) * (1.0 if best.unique else 0.6),
        unique=best.unique,
        alternatives=[c.selector for c in found if c is not best],
    )


def css_selector(info: ElementInfo, options: SelectorOptions) -> Optional[SelectorResult]:
    return _pick(
        [_by_id(info), _by_test_id(info), _by_name(info), _by_class(info), _nth_path(info)],
        options,
    )


def xpath_selector(info: ElementInfo, options: SelectorOptions) -> Optional[SelectorResult]:
    candidates: list[Optional[_Candidate]] = []
    if info.id:
        candidates.append(_Candidate("xpath", f'xpath=//*[@id="{_quote(info.id)}"]', _is_unique(info, "id")))
    if info.xpath:
        candidates.append(_Candidate("xpath", f"xpath={info.xpath}", True))
    if info.text and len(info.text) < 50:
        candidates.append(_Candidate("xpath", f'xpath=//{info.tag}[normalize-space()="{_quote(info.text)}"]',
                                     _is_unique(info, "text")))
    return _pick(candidates, options)


def text_selector(info: ElementInfo, options: SelectorOptions) -> Optional[SelectorResult]:
    candidates: list[Optional[_Candidate]] = [_by_id(info), _by_test_id(info)]
    if info.text and len(info.text) < 50:
        candidates.insert(0, _Candidate("text", f'text="{_quote(info.text)}"', _is_unique(info, "text")))
    candidates.append(_by_name(info))
    return _pick(candidates, options)


def hybrid_selector(info: ElementInfo, options: SelectorOptions) -> Optional[SelectorResult]:
    candidates = [ATTRIBUTE_BUILDERS[kind](info) for kind in options.priority if kind in ATTRIBUTE_BUILDERS]
    if any(c is not None and c.unique for c in candidates):
        return _pick(candidates, options)
    if not options.fallback:
        return None
    # Structural path first, then the first non-unique attribute candidate
    return _pick([_nth_path(info)] + candidates, options)


def ai_selector(info: ElementInfo, options: SelectorOptions) -> Optional[SelectorResult]:
    accessible_name = info.label or (info.text if len(info.text) < 80 else "")
    role = info.role or _implicit_role(info)
    if role and accessible_name:
        return SelectorResult(
            selector=f'role={role}[name="{_quote(accessible_name)}"]',
            strategy="ai",
            confidence=0.85,
            unique=_is_unique(info, "text"),
            alternatives=[],
        )
    return hybrid_selector(info, options)


def _implicit_role(info: ElementInfo) -> str:
    if info.tag == "button" or (info.tag == "input" and info.input_type in ("submit", "button")):
        return "button"
    if info.tag == "a":
        return "link"
    if info.tag == "select":
        return "combobox"
    if info.tag == "textarea" or (info.tag == "input" and info.input_type in ("", "text", "email", "search", "tel", "url", "password")):
        return "textbox"
    if info.tag == "input" and info.input_type in ("checkbox", "radio"):
        return info.input_type
    return ""


RESOLVERS: dict[SelectorKind, Callable[[ElementInfo, SelectorOptions], Optional[SelectorResult]]] = {
    SelectorKind.CSS: css_selector,
    SelectorKind.XPATH: xpath_selector,
    SelectorKind.TEXT: text_selector,
    SelectorKind.HYBRID: hybrid_selector,
    SelectorKind.AI: ai_selector,
}


def generate_selector(info: ElementInfo, options: Optional[SelectorOptions] = None) -> Optional[SelectorResult]:
    """Best selector for an element, or None when fallback is off and nothing is unique."""
    options = options or SelectorOptions()
    return RESOLVERS[options.strategy](info, options)


def fallback_selectors(info: ElementInfo) -> list[str]:
    """All attribute-based candidates, most specific first, without duplicates."""
    seen: list[str] = []
    for kind in HYBRID_PRIORITY:
        cand = ATTRIBUTE_BUILDERS[kind](info)
        if cand and cand.selector not in seen:
            seen.append(cand.selector)
    return seen


# --- Live resolution ---


async def resolve_on_page(page, selector: str, timeout_ms: int) -> int:
    """
    Wait for a selector and require exactly one match.

    Returns the match count (always 1). Raises SelectorResolutionError
    with reason ``timeout``, ``not_found`` or ``ambiguous``.
    """
    try:
        await page.wait_for_selector(selector, timeout=timeout_ms)
    except Exception as e:
        # playwright.async_api.TimeoutError and asyncio.TimeoutError alike
        if isinstance(e, asyncio.TimeoutError) or "timeout" in type(e).__name__.lower():
            raise SelectorResolutionError(
                f"Timed out after {timeout_ms}ms waiting for selector: {selector}",
                selector=selector, reason="timeout", cause=e,
            )
        raise SelectorResolutionError(
            f"Invalid or unresolvable selector {selector}: {e}",
            selector=selector, reason="not_found", cause=e,
        )

    count = await page.count(selector)
    if count == 0:
        raise SelectorResolutionError(f"Element not found: {selector}", selector=selector, reason="not_found")
    if count > 1:
        raise SelectorResolutionError(
            f"Selector is ambiguous ({count} matches): {selector}",
            selector=selector, reason="ambiguous",
        )
    return count
