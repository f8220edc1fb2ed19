"""Turn a ticket or test description into an ordered test plan."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Optional, Sequence

from ..errors import AbortedError
from ..llm.base import LLMClient
from ..models import Learning, SiteKnowledge, TestPlan, TestStep
from ..orchestrator.prompt_builder import PromptBuilder

LOGGER = logging.getLogger(__name__)

FALLBACK_EXPECTATION = "Task completes successfully"

PLANNER_RULES = """\
Respond with EXACTLY one JSON object (no markdown, no backticks):
{
  "title": "short test title",
  "steps": [
    {"action": "what to do", "expected": "what should happen", "critical": true, "setup": false, "browser": null}
  ]
}

Rules:
- Each step should be a single, verifiable action.
- "action" should be specific enough for a browser agent to execute (e.g. "Navigate to /account").
- "expected" should be a concrete, observable outcome (e.g. "Page shows 'Account Settings' heading").
- "critical" means remaining steps cannot proceed if this step fails.
- "setup" marks prerequisites such as navigation or login; they do not count toward the verdict.
- "browser" names the browser a step runs in when the test involves several users; omit it otherwise.
- Include 3-10 steps and finish with a verification step for the overall goal."""


def parse_structured_plan(text: str) -> Optional[TestPlan]:
    """Return the plan when ``text`` already is a JSON plan, else ``None``."""

    trimmed = text.strip()
    if not trimmed.startswith("{"):
        return None
    try:
        data = json.loads(trimmed)
    except json.JSONDecodeError:
        return None
    if isinstance(data, dict) and data.get("title") and isinstance(data.get("steps"), list):
        return _plan_from_mapping(data, str(data["title"]))
    return None


def parse_plan_response(raw: str, fallback_title: str) -> TestPlan:
    cleaned = re.sub(r"^```(?:json)?\s*", "", raw.strip(), flags=re.IGNORECASE)
    cleaned = re.sub(r"\s*```$", "", cleaned).strip()
    candidates = [cleaned]
    match = re.search(r"\{[\s\S]*\}", cleaned)
    if match:
        candidates.append(match.group(0))
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict) and isinstance(data.get("steps"), list) and data["steps"]:
            return _plan_from_mapping(data, fallback_title)
    return fallback_plan(fallback_title)


def fallback_plan(instruction: str) -> TestPlan:
    return TestPlan(
        title=instruction[:80],
        steps=[TestStep(action=instruction, expected=FALLBACK_EXPECTATION, critical=True)],
    )


class TestPlanner:
    """Decomposes free-form descriptions with the utility model."""

    __test__ = False

    def __init__(
        self,
        llm: LLMClient,
        *,
        prompt_builder: Optional[PromptBuilder] = None,
        on_usage: Optional[Callable[[int, int], None]] = None,
    ) -> None:
        self._llm = llm
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._on_usage = on_usage

    async def plan(
        self,
        instruction: str,
        *,
        knowledge: Optional[SiteKnowledge] = None,
        learnings: Sequence[Learning] = (),
        current_url: str = "about:blank",
        active_browsers: Sequence[str] = (),
    ) -> TestPlan:
        structured = parse_structured_plan(instruction)
        if structured is not None:
            return structured

        context = self._prompt_builder.build_system_prompt(
            knowledge, learnings, include_base=False
        )
        lines = [
            "You are a senior QA test planner. Given a ticket or test description, "
            "decompose it into precise, ordered test steps.",
            f"The browser is currently on: {current_url}",
        ]
        if active_browsers:
            lines.append(f"Running browsers: {', '.join(active_browsers)}")
        if context:
            lines.append(context)
        lines += ["", PLANNER_RULES]
        system = "\n".join(lines)
        try:
            response = await self._llm.complete(instruction, system=system)
        except AbortedError:
            raise
        except Exception as exc:
            LOGGER.warning("Test planning failed, running the description as one step: %s", exc)
            return fallback_plan(instruction)
        if self._on_usage is not None:
            self._on_usage(response.usage.input_tokens, response.usage.output_tokens)
        return parse_plan_response(response.text, instruction)


def _plan_from_mapping(data: dict[str, Any], fallback_title: str) -> TestPlan:
    steps = []
    for raw_step in data["steps"]:
        if not isinstance(raw_step, dict):
            continue
        browser = raw_step.get("browser")
        steps.append(
            TestStep(
                action=str(raw_step.get("action") or ""),
                expected=str(raw_step.get("expected") or ""),
                critical=raw_step.get("critical") is not False,
                setup=raw_step.get("setup") is True,
                browser=str(browser) if browser else None,
            )
        )
    if not steps:
        return fallback_plan(fallback_title)
    return TestPlan(title=str(data.get("title") or fallback_title)[:200], steps=steps)
