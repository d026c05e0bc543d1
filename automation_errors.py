"""
Error taxonomy for the automation engine.

Every raised error carries a machine-readable ``code`` so callers can
branch without matching on message text.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    LOGIN_FAILED = "LOGIN_FAILED"
    SESSION_EXTRACTION_FAILED = "SESSION_EXTRACTION_FAILED"
    # Control-flow marker for a paused recording; never raised
    SCOPE_VIOLATION_PAUSE = "SCOPE_VIOLATION_PAUSE"
    SELECTOR_RESOLUTION_FAILED = "SELECTOR_RESOLUTION_FAILED"
    NAVIGATION_FAILED = "NAVIGATION_FAILED"
    # Returned by cron validation; never raised
    CRON_PARSE_FAILED = "CRON_PARSE_FAILED"
    SCOPE_BLOCKED = "SCOPE_BLOCKED"
    PAGE_DISCONNECTED = "PAGE_DISCONNECTED"
    RUN_CANCELLED = "RUN_CANCELLED"
    STEP_FAILED = "STEP_FAILED"


class AutomationError(Exception):
    """Base class for structured engine errors."""

    code: ErrorCode = ErrorCode.STEP_FAILED
    retryable: bool = False

    def __init__(self, message: str, *, code: Optional[ErrorCode] = None,
                 retryable: Optional[bool] = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code.value, "error": self.message}


class LoginFailedError(AutomationError):
    """Authentication rejected, timed out, or login page unreachable."""

    code = ErrorCode.LOGIN_FAILED


class SessionExtractionError(AutomationError):
    """Logged in, but the cookie/storage snapshot could not be taken."""

    code = ErrorCode.SESSION_EXTRACTION_FAILED

    def __init__(self, message: str = "Session extraction failed", **kwargs):
        super().__init__(message, **kwargs)


class SelectorResolutionError(AutomationError):
    """Selector not found, ambiguous, or timed out. Recoverable per step."""

    code = ErrorCode.SELECTOR_RESOLUTION_FAILED
    retryable = True

    def __init__(self, message: str, *, selector: str = "", reason: str = "not_found", **kwargs):
        super().__init__(message, **kwargs)
        self.selector = selector
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({"selector": self.selector, "reason": self.reason})
        return data


class NavigationFailedError(AutomationError):
    code = ErrorCode.NAVIGATION_FAILED


class ScopeBlockedError(AutomationError):
    """A replayed navigation targeted a host outside the domain scope."""

    code = ErrorCode.SCOPE_BLOCKED


class ReplayEngineError(AutomationError):
    """Fatal engine failure, e.g. the page was closed or disconnected."""

    code = ErrorCode.PAGE_DISCONNECTED


class RunCancelledError(AutomationError):
    code = ErrorCode.RUN_CANCELLED

    def __init__(self, message: str = "Run cancelled", **kwargs):
        super().__init__(message, **kwargs)
