"""
Workflow data models.

Defines the JSON structure for recorded actions, credentials, cached
sessions, domain scope, runs, run logs and schedules.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# --- Actions ---


class ActionType(str, Enum):
    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"
    SELECT = "select"
    SCROLL = "scroll"
    WAIT = "wait"
    HOVER = "hover"
    KEY_PRESS = "key_press"
    SCREENSHOT = "screenshot"
    CUSTOM = "custom"


class Coordinates(BaseModel):
    x: float
    y: float


class Action(BaseModel):
    id: str = Field(default_factory=lambda: new_id("action"))
    type: ActionType
    selector: str = Field(min_length=1)
    value: Optional[str] = None
    url: Optional[str] = None  # navigation target for "navigate"
    coordinates: Optional[Coordinates] = None
    wait_for: Optional[str] = None
    timeout: Optional[int] = Field(default=None, gt=0)  # ms
    retries: Optional[int] = Field(default=None, ge=1)
    order: int = Field(ge=0)
    dependencies: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v):
        # Recorders and older payloads use "key-press" / "input"
        if isinstance(v, str):
            v = v.strip().lower().replace("-", "_")
            if v == "input":
                return "type"
            if v == "change":
                return "select"
        return v


def check_action_order(actions: list[Action]) -> None:
    """Raise ValueError unless orders are exactly 0..N-1 in sequence."""
    for expected, action in enumerate(actions):
        if action.order != expected:
            raise ValueError(
                f"Action {action.id} has order {action.order}, expected {expected}"
            )


# --- Credentials and sessions ---


class Credential(BaseModel):
    username: str = Field(min_length=1)
    password: SecretStr
    url: str = Field(min_length=1)
    tenant: Optional[str] = None
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def _require_http(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("Credential url must start with http:// or https://")
        return v


class SessionSnapshot(BaseModel):
    cookies: list[dict[str, Any]] = Field(default_factory=list)
    local_storage: dict[str, str] = Field(default_factory=dict)
    session_storage: dict[str, str] = Field(default_factory=dict)
    user_agent: str = ""
    timestamp: float = 0.0


class StoredSession(BaseModel):
    id: str = Field(default_factory=lambda: new_id("session"))
    key: str
    encrypted: str
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


# --- Domain scope ---


class ScopeDecision(str, Enum):
    ALLOWED = "allowed"
    SSO_ALLOWED = "sso_allowed"
    BLOCKED = "blocked"


class DomainScopeConfig(BaseModel):
    base_domain: str = Field(min_length=1)
    allowed_domains: set[str] = Field(default_factory=set)
    sso_providers: list[str] = Field(default_factory=list)
    auto_resume: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("base_domain")
    @classmethod
    def _lower_base(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("allowed_domains", mode="before")
    @classmethod
    def _lower_allowed(cls, v):
        if v is None:
            return set()
        return {d.strip().lower() for d in v if d and d.strip()}


class ScopeResult(BaseModel):
    decision: ScopeDecision
    reason: str
    host: str
    url: str

    @property
    def allowed(self) -> bool:
        return self.decision is not ScopeDecision.BLOCKED


# --- Variables and logic ---


class VariableKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    URL = "url"
    EMAIL = "email"


class WorkflowVariable(BaseModel):
    name: str = Field(pattern=r"^\w+$")
    kind: VariableKind = VariableKind.STRING
    default: Optional[str] = None
    required: bool = False
    description: str = ""

    def coerce(self, raw: Any) -> str:
        """Validate a supplied value for this kind and return its string form."""
        if self.kind is VariableKind.NUMBER:
            try:
                float(raw)
            except (TypeError, ValueError):
                raise ValueError(f"Variable '{self.name}' expects a number, got {raw!r}")
        elif self.kind is VariableKind.BOOLEAN:
            if isinstance(raw, bool):
                return "true" if raw else "false"
            if str(raw).lower() not in ("true", "false"):
                raise ValueError(f"Variable '{self.name}' expects true/false, got {raw!r}")
            return str(raw).lower()
        elif self.kind is VariableKind.DATE:
            try:
                datetime.fromisoformat(str(raw))
            except ValueError:
                raise ValueError(f"Variable '{self.name}' expects an ISO date, got {raw!r}")
        elif self.kind is VariableKind.URL:
            if not str(raw).startswith(("http://", "https://")):
                raise ValueError(f"Variable '{self.name}' expects a URL, got {raw!r}")
        elif self.kind is VariableKind.EMAIL:
            if "@" not in str(raw):
                raise ValueError(f"Variable '{self.name}' expects an email, got {raw!r}")
        return str(raw)


def resolve_variables(declared: list[WorkflowVariable], supplied: dict[str, Any]) -> dict[str, str]:
    """Merge supplied values with declared defaults, validating each kind."""
    resolved: dict[str, str] = {}
    by_name = {v.name: v for v in declared}
    for var in declared:
        if var.name in supplied and supplied[var.name] is not None:
            resolved[var.name] = var.coerce(supplied[var.name])
        elif var.default is not None:
            resolved[var.name] = var.coerce(var.default)
        elif var.required:
            raise ValueError(f"Missing required variable: {var.name}")
    # Undeclared values pass through as plain strings
    for name, value in supplied.items():
        if name not in by_name and value is not None:
            resolved[name] = str(value)
    return resolved


class LogicSpec(BaseModel):
    """Compiled rule set produced by the external logic compiler."""

    rules: list[dict[str, Any]] = Field(default_factory=list)
    max_retries: Optional[int] = Field(default=None, ge=1)
    step_timeout_ms: Optional[int] = Field(default=None, gt=0)
    continue_on_error: list[str] = Field(default_factory=list)


class Workflow(BaseModel):
    id: str
    name: str = ""
    start_url: Optional[str] = None
    actions: Optional[list[Action]] = None
    requires_login: bool = False
    credential: Optional[Credential] = None
    domain_scope: Optional[DomainScopeConfig] = None
    variables: list[WorkflowVariable] = Field(default_factory=list)

    @model_validator(mode="after")
    def _login_needs_credential(self):
        if self.requires_login and self.credential is None:
            raise ValueError("Workflow requires login but no credential was given")
        return self


# --- Runs ---


class RunStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILED)


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class RunLog(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel = LogLevel.INFO
    message: str
    action_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Run(BaseModel):
    id: str = Field(default_factory=lambda: new_id("run"))
    workflow_id: str
    status: RunStatus = RunStatus.PENDING
    trigger: str = "manual"
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    logs: list[RunLog] = Field(default_factory=list)
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    cancelled: bool = False


# --- Schedules ---


class Schedule(BaseModel):
    id: str = Field(default_factory=lambda: new_id("schedule"))
    workflow_id: str
    cron_expression: str = Field(min_length=1)
    timezone: str = "UTC"
    is_active: bool = True
    run_config: dict[str, Any] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
