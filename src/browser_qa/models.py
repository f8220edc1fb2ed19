"""Shared models used across browser-qa."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Commands -------------------------------------------------------------------


class CommandMode(str, enum.Enum):
    """Execution modes a parsed command can be dispatched to."""

    EXTRACT = "extract"
    ACT = "act"
    TASK = "task"
    OBSERVE = "observe"
    SEARCH = "search"
    ASK = "ask"
    GOTO = "goto"
    LEARN = "learn"
    CHAT = "chat"
    TEST = "test"
    AUTO = "auto"


class ParsedCommand(BaseModel):
    """A user instruction resolved to a mode and an optional browser/tab target."""

    mode: Union[CommandMode, str]
    instruction: str = ""
    raw: str = ""
    target_browser: Optional[str] = None
    target_tab: Optional[Union[int, str]] = None


class UsageData(BaseModel):
    """Token usage reported by an LLM call."""

    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: Optional["UsageData"]) -> "UsageData":
        if other is None:
            return UsageData(input_tokens=self.input_tokens, output_tokens=self.output_tokens)
        return UsageData(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


def merge_usage(*items: Optional[UsageData]) -> Optional[UsageData]:
    """Sum usage records, returning ``None`` when none were provided."""

    present = [item for item in items if item is not None]
    if not present:
        return None
    total = UsageData()
    for item in present:
        total = total + item
    return total


class ModeResult(BaseModel):
    """Uniform result returned by every execution mode."""

    message: str
    success: bool
    usage: Optional[UsageData] = None
    actions: list[dict[str, Any]] = Field(default_factory=list)
    streamed: bool = Field(
        default=False,
        description="True when the message was already written to the sink.",
    )


class CostSnapshot(BaseModel):
    """Tokens and derived cost for one recorded action or a running total."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0


# Agent loop -----------------------------------------------------------------


class BrowserActionType(str, enum.Enum):
    """Low-level browser commands the agent loop can execute."""

    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"
    PRESS = "press"
    WAIT_FOR_SELECTOR = "wait_for_selector"
    WAIT = "wait"
    SCROLL = "scroll"


class BrowserAction(BaseModel):
    """An instruction for the bound page to execute."""

    type: BrowserActionType
    selector: Optional[str] = None
    text: Optional[str] = None
    url: Optional[str] = None
    key: Optional[str] = None
    seconds: Optional[float] = None
    description: Optional[str] = None
    timeout: Optional[float] = Field(default=None, description="Optional timeout for waits")
    scroll_by: Optional[int] = Field(
        default=None,
        description="Number of pixels to scroll vertically (positive = down).",
    )


class DirectiveStatus(str, enum.Enum):
    """Status returned by the LLM after producing a directive."""

    CONTINUE = "continue"
    WAIT = "wait"
    FINISHED = "finished"
    FAILED = "failed"


class LLMDirective(BaseModel):
    """Structured response from the LLM planner."""

    status: DirectiveStatus = DirectiveStatus.CONTINUE
    actions: list[BrowserAction] = Field(default_factory=list)
    wait_seconds: Optional[float] = None
    message: Optional[str] = Field(default=None, description="Human-readable summary of the step.")
    failure_reason: Optional[str] = None


# Output events ----------------------------------------------------------------


class NotificationLevel(str, enum.Enum):
    """Severity of output events."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class NotificationEvent(BaseModel):
    """Event emitted to an output sink."""

    type: str
    message: str
    level: NotificationLevel = NotificationLevel.INFO
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)


# Knowledge and history ----------------------------------------------------------


class LearningCategory(str, enum.Enum):
    NAVIGATION = "navigation"
    RECIPE = "recipe"
    GOTCHA = "gotcha"
    GENERAL = "general"


class Learning(BaseModel):
    """A reusable observation about a site."""

    domain: str
    category: LearningCategory = LearningCategory.GENERAL
    pattern: str
    confidence: float = 0.5
    source_task_id: str = ""
    created: datetime = Field(default_factory=_utcnow)


class PageKnowledge(BaseModel):
    url: str
    path: str
    title: Optional[str] = None
    description: Optional[str] = None
    page_type: Optional[str] = None
    navigation: list[str] = Field(default_factory=list)
    interactive_elements: list[str] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    last_visited: datetime = Field(default_factory=_utcnow)


class SiteKnowledge(BaseModel):
    """Accumulated knowledge about one domain."""

    domain: str
    last_updated: datetime = Field(default_factory=_utcnow)
    site_description: Optional[str] = None
    pages: dict[str, PageKnowledge] = Field(default_factory=dict)
    site_map: list[str] = Field(default_factory=list)
    common_flows: list[str] = Field(default_factory=list)
    known_issues: list[str] = Field(default_factory=list)
    tips: list[str] = Field(default_factory=list)


class TaskRecord(BaseModel):
    """History record persisted for task and test commands."""

    id: str
    timestamp: datetime = Field(default_factory=_utcnow)
    command: str
    instruction: str
    mode: str
    domain: Optional[str] = None
    steps: list[str] = Field(default_factory=list)
    outcome: str
    result: Optional[str] = None
    duration_ms: int = 0
    cost_usd: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0


class SessionEntry(BaseModel):
    """One line of the session transcript."""

    role: str
    content: str
    mode: Optional[str] = None
    cost_usd: Optional[float] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class BillingLedger(BaseModel):
    """Persisted spend for the current billing cycle."""

    cycle_start: datetime = Field(default_factory=_utcnow)
    cycle_day_of_month: int = 1
    total_cost_usd: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    session_count: int = 0


# QA tests ---------------------------------------------------------------------


class TestStep(BaseModel):
    """One planned step of a QA test."""

    __test__ = False

    action: str
    expected: str = ""
    critical: bool = True
    setup: bool = Field(
        default=False,
        description="Prerequisite step: aborts on failure but is excluded from the verdict.",
    )
    browser: Optional[str] = None


class TestPlan(BaseModel):
    __test__ = False

    title: str
    steps: list[TestStep] = Field(default_factory=list)


class StepVerdict(str, enum.Enum):
    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"


class TestVerdict(str, enum.Enum):
    PASS = "pass"
    FAIL = "fail"
    PARTIAL = "partial"


class StepResult(BaseModel):
    step: TestStep
    verdict: StepVerdict
    actual: str = ""
    evidence: str = ""
    screenshot_before: Optional[str] = None
    screenshot_after: Optional[str] = None
    duration_ms: int = 0


class TestReport(BaseModel):
    __test__ = False

    title: str
    timestamp: datetime = Field(default_factory=_utcnow)
    domain: str = "unknown"
    steps: list[StepResult] = Field(default_factory=list)
    verdict: TestVerdict
    summary: str = ""
    duration_ms: int = 0
    cost_usd: float = 0.0
