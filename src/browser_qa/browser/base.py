"""Browser capability abstractions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from ..models import UsageData

StepCallback = Callable[[str], None]
UsageCallback = Callable[[int, int], None]


@dataclass
class BrowserState:
    """Snapshot of the browser state used for prompting the LLM."""

    url: Optional[str] = None
    title: Optional[str] = None
    last_action: Optional[str] = None


@dataclass
class ActResult:
    success: bool
    message: str = ""


@dataclass
class ObservedElement:
    description: str
    selector: Optional[str] = None


@dataclass
class AgentTaskResult:
    """Outcome of a multi-step agent run."""

    success: bool
    message: str = ""
    actions: list[dict[str, Any]] = field(default_factory=list)
    usage: Optional[UsageData] = None


class BrowserCapability(ABC):
    """AI-backed primitives that operate on a bound Playwright page.

    ``on_step`` receives progress lines while an agent task runs and
    ``on_usage`` receives token counts for calls made outside an explicit
    usage report. Both are optional hooks set by the owner of the capability.
    """

    def __init__(self) -> None:
        self._page: Any = None
        self.on_step: Optional[StepCallback] = None
        self.on_usage: Optional[UsageCallback] = None

    @property
    def page(self) -> Any:
        return self._page

    def use_page(self, page: Any) -> None:
        """Make ``page`` the primary page for subsequent calls."""

        self._page = page

    @abstractmethod
    async def act(self, instruction: str) -> ActResult:
        """Perform a single interaction described in natural language."""

    @abstractmethod
    async def extract(self, prompt: str) -> Union[str, dict[str, Any]]:
        """Read information from the page."""

    @abstractmethod
    async def observe(self, instruction: str) -> list[ObservedElement]:
        """Describe the elements relevant to ``instruction``."""

    @abstractmethod
    async def run_agent_task(
        self,
        instruction: str,
        *,
        max_steps: int = 30,
        system_prompt: Optional[str] = None,
    ) -> AgentTaskResult:
        """Run a multi-step task until the agent reports completion."""

    def report_step(self, line: str) -> None:
        if self.on_step is not None:
            self.on_step(line)

    def report_usage(self, input_tokens: int, output_tokens: int) -> None:
        if self.on_usage is not None:
            self.on_usage(input_tokens, output_tokens)
