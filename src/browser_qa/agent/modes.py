"""Execution modes: each turns one instruction into a :class:`ModeResult`."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Sequence
from urllib.parse import quote_plus

from ..browser.base import BrowserCapability
from ..models import Learning, ModeResult, SiteKnowledge, merge_usage
from ..notifications.base import OutputSink
from ..orchestrator.control import CancellationToken, race_cancellation, raise_if_cancelled
from .recovery import RecoveryCascade

LOGGER = logging.getLogger(__name__)

TASK_MAX_STEPS = 30
RESUME_MAX_STEPS = 20
DEFAULT_OBSERVE_PROMPT = "What can I interact with on this page?"
SEARCH_EXTRACT_PROMPT = (
    "Extract the top 5 search results from this Google search page. "
    "For each result, get the title, URL, and snippet/description."
)


def unwrap_extraction(result: Any) -> str:
    """Return plain text for single-string results such as ``{"extraction": "..."}``."""

    if isinstance(result, str):
        return result
    if isinstance(result, dict) and len(result) == 1:
        (value,) = result.values()
        if isinstance(value, str):
            return value
    return json.dumps(result, indent=2, default=str)


async def run_extract(capability: BrowserCapability, instruction: str) -> ModeResult:
    result = await capability.extract(instruction)
    return ModeResult(message=unwrap_extraction(result), success=True)


async def run_act(capability: BrowserCapability, instruction: str) -> ModeResult:
    result = await capability.act(instruction)
    if result.success:
        message = f"Action completed: {instruction}"
    else:
        message = f"Action may not have completed: {instruction}"
    return ModeResult(message=message, success=result.success)


async def run_observe(capability: BrowserCapability, instruction: str) -> ModeResult:
    elements = await capability.observe(instruction or DEFAULT_OBSERVE_PROMPT)
    formatted = "\n".join(f"  - {element.description}" for element in elements)
    return ModeResult(message=f"Observable elements:\n{formatted}", success=True)


async def run_goto(page: Any, url: str) -> ModeResult:
    await page.goto(url, wait_until="domcontentloaded")
    title = await page.title()
    return ModeResult(message=f"Navigated to: {url}\nPage title: {title}", success=True)


async def run_search(capability: BrowserCapability, page: Any, query: str) -> ModeResult:
    await page.goto(
        f"https://www.google.com/search?q={quote_plus(query)}",
        wait_until="domcontentloaded",
    )
    result = await capability.extract(SEARCH_EXTRACT_PROMPT)
    rendered = result if isinstance(result, str) else json.dumps(result, indent=2, default=str)
    return ModeResult(message=f'Search results for "{query}":\n{rendered}', success=True)


async def run_ask(
    capability: BrowserCapability,
    question: str,
    knowledge: Optional[SiteKnowledge],
    learnings: Sequence[Learning],
) -> ModeResult:
    context = ""
    if knowledge is not None:
        context += f"Site knowledge for {knowledge.domain}:\n"
        context += knowledge.model_dump_json(indent=2) + "\n\n"
    if learnings:
        context += "Learnings:\n"
        context += "".join(
            f"  - [{learning.domain}] {learning.pattern}\n" for learning in learnings
        )
    prompt = (
        f"Based on what you see on the page and this context:\n{context}\nAnswer: {question}"
        if context
        else question
    )
    result = await capability.extract(prompt)
    return ModeResult(message=unwrap_extraction(result), success=True)


async def run_task(
    capability: BrowserCapability,
    page: Any,
    instruction: str,
    *,
    system_prompt: Optional[str] = None,
    cascade: Optional[RecoveryCascade] = None,
    sink: Optional[OutputSink] = None,
    token: Optional[CancellationToken] = None,
    max_steps: int = TASK_MAX_STEPS,
) -> ModeResult:
    """Run a multi-step agent task, retrying a stuck click once if the agent reports one."""

    result = await race_cancellation(
        capability.run_agent_task(instruction, max_steps=max_steps, system_prompt=system_prompt),
        token,
    )
    message = result.message or "Task completed."
    actions = list(result.actions)
    usage = result.usage

    cascade = cascade or RecoveryCascade(capability)
    if not cascade.classifier.is_stuck(message):
        return ModeResult(message=message, success=result.success, usage=usage, actions=actions)

    raise_if_cancelled(token)
    outcome = await cascade.recover(page, message, token)
    if outcome is None or not outcome.success:
        return ModeResult(message=message, success=result.success, usage=usage, actions=actions)

    if sink is not None:
        sink.info(f'[auto-retry] Clicked "{outcome.target}" via fallback. Resuming task...')
    actions.extend(outcome.actions)
    raise_if_cancelled(token)

    resume_instruction = (
        f'A previous automated retry just clicked "{outcome.target}" successfully. '
        "The page should now show the content for that element. "
        f"Continue with the original task: {instruction}"
    )
    resumed = await race_cancellation(
        capability.run_agent_task(
            resume_instruction,
            max_steps=RESUME_MAX_STEPS,
            system_prompt=system_prompt,
        ),
        token,
    )
    actions.extend(resumed.actions)
    resumed_message = resumed.message or "Task resumed and completed."
    return ModeResult(
        message=f'[Auto-retry fixed stuck click on "{outcome.target}"]\n{resumed_message}',
        success=resumed.success,
        usage=merge_usage(usage, resumed.usage),
        actions=actions,
    )
