"""Browser capabilities: an LLM-driven implementation and a scripted one."""

from __future__ import annotations

import json
import logging
from collections import deque
from typing import Any, Iterable, Optional, Union

from playwright.async_api import Error as PlaywrightError
from pydantic import ValidationError

from ..errors import ExecutionError
from ..llm.base import LLMClient
from ..llm.json_parser import extract_json_array, extract_json_object, parse_directive
from ..models import (
    BrowserAction,
    BrowserActionType,
    DirectiveStatus,
    LLMDirective,
    UsageData,
)
from ..orchestrator.prompt_builder import PromptBuilder
from .base import (
    ActResult,
    AgentTaskResult,
    BrowserCapability,
    BrowserState,
    ObservedElement,
)

LOGGER = logging.getLogger(__name__)

MAX_PAGE_TEXT = 20_000
MAX_ELEMENTS = 150

# Tags visible interactive elements with a data-qa-ref attribute and describes them.
COLLECT_ELEMENTS_SCRIPT = """
(limit) => {
  const selector = 'a, button, input, select, textarea, [role], [onclick], [tabindex], summary, label';
  const out = [];
  let ref = 0;
  for (const el of document.querySelectorAll(selector)) {
    const rect = el.getBoundingClientRect();
    if (rect.width === 0 || rect.height === 0) continue;
    const style = getComputedStyle(el);
    if (style.visibility === 'hidden' || style.display === 'none') continue;
    el.setAttribute('data-qa-ref', String(ref));
    out.push({
      ref: ref,
      tag: el.tagName.toLowerCase(),
      role: el.getAttribute('role') || '',
      type: el.getAttribute('type') || '',
      text: (el.innerText || el.value || el.getAttribute('aria-label') || el.getAttribute('placeholder') || '').trim().slice(0, 80),
    });
    ref += 1;
    if (ref >= limit) break;
  }
  return out;
}
"""

PAGE_TEXT_SCRIPT = "() => document.body ? document.body.innerText : ''"
FOCUSED_ELEMENT_SCRIPT = "() => document.activeElement ? document.activeElement.outerHTML.slice(0, 200) : null"


class LLMBrowserCapability(BrowserCapability):
    """Capability that asks an LLM for JSON directives and runs them with Playwright."""

    def __init__(
        self,
        llm: LLMClient,
        *,
        prompt_builder: Optional[PromptBuilder] = None,
    ) -> None:
        super().__init__()
        self._llm = llm
        self._prompt_builder = prompt_builder or PromptBuilder()

    async def act(self, instruction: str) -> ActResult:
        elements = await self._collect_elements()
        if not elements:
            return ActResult(success=False, message="No interactive elements on the page")
        prompt = "\n".join(
            [
                f'Choose the single interaction that performs: "{instruction}".',
                "Interactive elements (ref, tag, role, text):",
                *(self._describe(element) for element in elements),
                'Reply with JSON: {"ref": <number>, "action": "click" | "type" | "press", '
                '"text": "<text to type or key to press>", "description": "<short summary>"}.',
                'If nothing matches reply {"ref": null, "description": "<why>"}.',
            ]
        )
        reply = await self._complete(prompt)
        try:
            choice = extract_json_object(reply)
        except ValueError:
            return ActResult(
                success=False, message=f"Could not interpret the choice: {reply[:200]}"
            )
        ref = choice.get("ref")
        description = str(choice.get("description") or instruction)
        if ref is None:
            return ActResult(success=False, message=description)

        selector = f'[data-qa-ref="{ref}"]'
        action = str(choice.get("action") or "click").lower()
        text = str(choice.get("text") or "")
        try:
            if action == "type":
                await self._page.fill(selector, text)
            elif action == "press":
                await self._page.press(selector, text or "Enter")
            else:
                await self._page.click(selector)
        except PlaywrightError as exc:
            return ActResult(success=False, message=f"{description}: {exc}")
        self.report_step(f"[act] {description}")
        return ActResult(success=True, message=description)

    async def extract(self, prompt: str) -> Union[str, dict[str, Any]]:
        text = await self._page_text()
        reply = await self._complete(
            "\n".join(
                [
                    f"Page URL: {self._require_page().url}",
                    "Page text:",
                    text,
                    "",
                    f"Task: {prompt}",
                    'Reply with JSON: {"extraction": <the answer>}.',
                ]
            )
        )
        try:
            return extract_json_object(reply)
        except (ValueError, json.JSONDecodeError):
            return reply.strip()

    async def observe(self, instruction: str) -> list[ObservedElement]:
        elements = await self._collect_elements()
        if not elements:
            return []
        reply = await self._complete(
            "\n".join(
                [
                    f'List the elements relevant to: "{instruction}".',
                    "Interactive elements (ref, tag, role, text):",
                    *(self._describe(element) for element in elements),
                    'Reply with a JSON array of {"ref": <number>, "description": "<what it is>"}.',
                ]
            )
        )
        try:
            chosen = extract_json_array(reply)
        except (ValueError, json.JSONDecodeError):
            return [ObservedElement(description=self._describe(element)) for element in elements]
        observed = []
        for item in chosen:
            if not isinstance(item, dict) or not item.get("description"):
                continue
            ref = item.get("ref")
            selector = f'[data-qa-ref="{ref}"]' if ref is not None else None
            observed.append(
                ObservedElement(description=str(item["description"]), selector=selector)
            )
        return observed

    async def run_agent_task(
        self,
        instruction: str,
        *,
        max_steps: int = 30,
        system_prompt: Optional[str] = None,
    ) -> AgentTaskResult:
        usage = UsageData()
        steps: list[str] = []
        actions: list[dict[str, Any]] = []
        for step_number in range(1, max_steps + 1):
            state = await self._snapshot()
            prompt = self._prompt_builder.build(
                instruction, state, steps, step_number=step_number, max_steps=max_steps
            )
            response = await self._llm.complete(prompt, system=system_prompt)
            usage = usage + response.usage
            try:
                directive = parse_directive(response.text)
            except (ValueError, ValidationError) as exc:
                LOGGER.debug("Unparseable directive at step %d: %s", step_number, exc)
                steps.append("(previous reply was not valid JSON; answer with JSON only)")
                continue

            summary = directive.message or directive.status.value
            self.report_step(f"[step {step_number}/{max_steps}] {summary}")
            steps.append(await self._run_directive(directive, actions))

            if directive.status == DirectiveStatus.FINISHED:
                return AgentTaskResult(
                    success=True,
                    message=directive.message or "Task completed",
                    actions=actions,
                    usage=usage,
                )
            if directive.status == DirectiveStatus.FAILED:
                return AgentTaskResult(
                    success=False,
                    message=directive.failure_reason or directive.message or "Task failed",
                    actions=actions,
                    usage=usage,
                )
        return AgentTaskResult(
            success=False,
            message=f"Stopped after reaching the limit of {max_steps} steps",
            actions=actions,
            usage=usage,
        )

    async def _run_directive(self, directive: LLMDirective, actions: list[dict[str, Any]]) -> str:
        notes = [directive.message or directive.status.value]
        for action in directive.actions:
            record = action.model_dump(mode="json", exclude_none=True)
            try:
                await self._execute(action)
            except ExecutionError as exc:
                record["error"] = str(exc)
                notes.append(f"{action.type.value} failed: {exc}")
                actions.append(record)
                break
            actions.append(record)
            notes.append(f"{action.type.value} ok")
        if directive.wait_seconds:
            await self._require_page().wait_for_timeout(directive.wait_seconds * 1000)
        return "; ".join(notes)

    async def _execute(self, action: BrowserAction) -> None:
        page = self._require_page()
        LOGGER.debug("Executing browser action %s", action)
        try:
            if action.type == BrowserActionType.NAVIGATE:
                if not action.url:
                    raise ExecutionError("Navigate action requires a URL")
                await page.goto(action.url, wait_until="domcontentloaded")
            elif action.type == BrowserActionType.CLICK:
                if not action.selector:
                    raise ExecutionError("Click action requires a selector")
                await page.click(action.selector, timeout=_to_timeout(action.timeout))
            elif action.type == BrowserActionType.TYPE:
                if not action.selector:
                    raise ExecutionError("Type action requires a selector")
                if action.text is None:
                    raise ExecutionError("Type action requires text")
                await page.fill(action.selector, action.text, timeout=_to_timeout(action.timeout))
            elif action.type == BrowserActionType.PRESS:
                await page.keyboard.press(action.key or "Enter")
            elif action.type == BrowserActionType.WAIT_FOR_SELECTOR:
                if not action.selector:
                    raise ExecutionError("Wait action requires a selector")
                await page.wait_for_selector(action.selector, timeout=_to_timeout(action.timeout))
            elif action.type == BrowserActionType.WAIT:
                await page.wait_for_timeout((action.seconds or 0.0) * 1000)
            elif action.type == BrowserActionType.SCROLL:
                await page.mouse.wheel(0, action.scroll_by or 0)
            else:
                raise ExecutionError(f"Unsupported action type: {action.type}")
        except PlaywrightError as exc:
            raise ExecutionError(str(exc)) from exc

    async def _snapshot(self) -> BrowserState:
        page = self._require_page()
        try:
            return BrowserState(
                url=page.url,
                title=await page.title(),
                last_action=await page.evaluate(FOCUSED_ELEMENT_SCRIPT),
            )
        except PlaywrightError as exc:
            LOGGER.debug("Snapshot failed: %s", exc)
            return BrowserState(url=page.url)

    async def _complete(self, prompt: str) -> str:
        response = await self._llm.complete(prompt)
        self.report_usage(response.usage.input_tokens, response.usage.output_tokens)
        return response.text

    async def _collect_elements(self) -> list[dict[str, Any]]:
        try:
            return list(await self._require_page().evaluate(COLLECT_ELEMENTS_SCRIPT, MAX_ELEMENTS))
        except PlaywrightError as exc:
            raise ExecutionError(f"Could not inspect the page: {exc}") from exc

    async def _page_text(self) -> str:
        try:
            text = await self._require_page().evaluate(PAGE_TEXT_SCRIPT)
        except PlaywrightError as exc:
            raise ExecutionError(f"Could not read the page: {exc}") from exc
        return str(text or "")[:MAX_PAGE_TEXT]

    def _require_page(self) -> Any:
        if self._page is None:
            raise ExecutionError("No page is bound to the browser capability")
        return self._page

    @staticmethod
    def _describe(element: dict[str, Any]) -> str:
        role = f" role={element['role']}" if element.get("role") else ""
        kind = f" type={element['type']}" if element.get("type") else ""
        return f"[{element['ref']}] <{element['tag']}{role}{kind}> {element.get('text', '')}"


class ScriptedCapability(BrowserCapability):
    """Capability that replays queued results; used offline and in tests.

    Each primitive pops the next queued value, falling back to a default when
    its queue is empty. Calls are recorded in ``calls`` as ``(name, argument)``.
    """

    def __init__(
        self,
        *,
        act_results: Iterable[ActResult] = (),
        extract_results: Iterable[Union[str, dict[str, Any], Exception]] = (),
        observe_results: Iterable[list[ObservedElement]] = (),
        agent_results: Iterable[Union[AgentTaskResult, Exception]] = (),
    ) -> None:
        super().__init__()
        self.act_results: deque[ActResult] = deque(act_results)
        self.extract_results: deque[Union[str, dict[str, Any], Exception]] = deque(extract_results)
        self.observe_results: deque[list[ObservedElement]] = deque(observe_results)
        self.agent_results: deque[Union[AgentTaskResult, Exception]] = deque(agent_results)
        self.calls: list[tuple[str, str]] = []
        self.bound_pages: list[Any] = []

    def use_page(self, page: Any) -> None:
        super().use_page(page)
        self.bound_pages.append(page)

    async def act(self, instruction: str) -> ActResult:
        self.calls.append(("act", instruction))
        if self.act_results:
            return self.act_results.popleft()
        return ActResult(success=True, message=f"Performed: {instruction}")

    async def extract(self, prompt: str) -> Union[str, dict[str, Any]]:
        self.calls.append(("extract", prompt))
        if not self.extract_results:
            return ""
        result = self.extract_results.popleft()
        if isinstance(result, Exception):
            raise result
        return result

    async def observe(self, instruction: str) -> list[ObservedElement]:
        self.calls.append(("observe", instruction))
        if self.observe_results:
            return self.observe_results.popleft()
        return []

    async def run_agent_task(
        self,
        instruction: str,
        *,
        max_steps: int = 30,
        system_prompt: Optional[str] = None,
    ) -> AgentTaskResult:
        self.calls.append(("agent", instruction))
        self.report_step(f"[agent] {instruction}")
        if not self.agent_results:
            return AgentTaskResult(success=True, message="Task completed")
        result = self.agent_results.popleft()
        if isinstance(result, Exception):
            raise result
        return result


def _to_timeout(timeout: Optional[float]) -> Optional[int]:
    if timeout is None:
        return None
    return int(timeout * 1000)
