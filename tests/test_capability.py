import asyncio

import pytest

from browser_qa.browser.capability import (
    COLLECT_ELEMENTS_SCRIPT,
    PAGE_TEXT_SCRIPT,
    LLMBrowserCapability,
)
from browser_qa.errors import ExecutionError
from browser_qa.llm.base import LLMResponse
from browser_qa.llm.mock import ScriptedLLM
from browser_qa.models import UsageData

from fakes import FakePage

ELEMENTS = [
    {"ref": 0, "tag": "button", "role": "", "type": "", "text": "Save"},
    {"ref": 1, "tag": "input", "role": "", "type": "email", "text": "Email"},
]


def _capability(responses, page=None):
    llm = ScriptedLLM(responses)
    capability = LLMBrowserCapability(llm)
    if page is not None:
        capability.use_page(page)
    return capability, llm


def test_act_clicks_chosen_element_and_reports_usage():
    page = FakePage(url="https://app.test/profile")
    page.evaluate_results[COLLECT_ELEMENTS_SCRIPT] = ELEMENTS
    capability, llm = _capability(
        [
            LLMResponse(
                text='{"ref": 0, "action": "click", "description": "Clicked Save"}',
                usage=UsageData(input_tokens=40, output_tokens=6),
            )
        ],
        page,
    )
    usage: list[tuple[int, int]] = []
    steps: list[str] = []
    capability.on_usage = lambda i, o: usage.append((i, o))
    capability.on_step = steps.append

    result = asyncio.run(capability.act("click Save"))

    assert result.success and result.message == "Clicked Save"
    assert page.clicked == ['[data-qa-ref="0"]']
    assert usage == [(40, 6)]
    assert steps == ["[act] Clicked Save"]
    assert "[1] <input type=email> Email" in llm.prompts[0]


def test_act_types_into_element():
    page = FakePage()
    page.evaluate_results[COLLECT_ELEMENTS_SCRIPT] = ELEMENTS
    capability, _ = _capability(['{"ref": 1, "action": "type", "text": "qa@example.com"}'], page)

    result = asyncio.run(capability.act("type qa@example.com into email"))

    assert result.success
    assert page.filled == [('[data-qa-ref="1"]', "qa@example.com")]


def test_act_without_match_or_elements():
    page = FakePage()
    capability, llm = _capability([], page)
    empty = asyncio.run(capability.act("click Save"))
    assert not empty.success
    assert llm.prompts == []

    page.evaluate_results[COLLECT_ELEMENTS_SCRIPT] = ELEMENTS
    capability, _ = _capability(['{"ref": null, "description": "No export button"}'], page)
    missing = asyncio.run(capability.act("click Export"))
    assert not missing.success and missing.message == "No export button"


def test_extract_returns_json_or_text():
    page = FakePage(url="https://app.test/")
    page.evaluate_results[PAGE_TEXT_SCRIPT] = "Welcome back, Ana"
    capability, llm = _capability(['{"extraction": "Ana"}', "Just text"], page)

    assert asyncio.run(capability.extract("who is logged in?")) == {"extraction": "Ana"}
    assert asyncio.run(capability.extract("anything else?")) == "Just text"
    assert "Welcome back, Ana" in llm.prompts[0]
    assert "Page URL: https://app.test/" in llm.prompts[0]


def test_observe_maps_refs_to_selectors():
    page = FakePage()
    page.evaluate_results[COLLECT_ELEMENTS_SCRIPT] = ELEMENTS
    capability, _ = _capability(['[{"ref": 0, "description": "Save button"}, {"ref": 1}]'], page)

    observed = asyncio.run(capability.observe("buttons"))

    assert len(observed) == 1
    assert observed[0].selector == '[data-qa-ref="0"]'


def test_agent_task_runs_directives_until_finished():
    page = FakePage(url="https://app.test/")
    capability, llm = _capability(
        [
            "not json at all",
            LLMResponse(
                text='{"status": "continue", "message": "Opening billing", '
                '"actions": [{"type": "navigate", "url": "https://app.test/billing"}]}',
                usage=UsageData(input_tokens=100, output_tokens=10),
            ),
            LLMResponse(
                text='{"status": "finished", "message": "Billing shows 3 invoices"}',
                usage=UsageData(input_tokens=120, output_tokens=12),
            ),
        ],
        page,
    )
    steps: list[str] = []
    capability.on_step = steps.append

    result = asyncio.run(capability.run_agent_task("open billing", max_steps=5, system_prompt="sys"))

    assert result.success
    assert result.message == "Billing shows 3 invoices"
    assert result.actions == [{"type": "navigate", "url": "https://app.test/billing"}]
    assert result.usage == UsageData(input_tokens=220, output_tokens=22)
    assert page.visits == ["https://app.test/billing"]
    assert steps == ["[step 2/5] Opening billing", "[step 3/5] Billing shows 3 invoices"]
    assert "not valid JSON" in llm.prompts[1]


def test_agent_task_failure_and_step_limit():
    page = FakePage()
    capability, _ = _capability(
        ['{"status": "failed", "failure_reason": "The Save button did not respond"}'], page
    )
    failed = asyncio.run(capability.run_agent_task("save", max_steps=3))
    assert not failed.success
    assert failed.message == "The Save button did not respond"

    capability, _ = _capability(['{"status": "continue"}', '{"status": "continue"}'], page)
    limited = asyncio.run(capability.run_agent_task("wander", max_steps=2))
    assert not limited.success
    assert limited.message == "Stopped after reaching the limit of 2 steps"


def test_unbound_capability_raises():
    capability, _ = _capability([])
    with pytest.raises(ExecutionError, match="No page is bound"):
        asyncio.run(capability.extract("title"))
