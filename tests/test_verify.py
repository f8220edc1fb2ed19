import asyncio

from browser_qa.agent.verify import (
    VerificationEngine,
    heuristic_verify,
    is_interaction,
    parse_verify_response,
)
from browser_qa.browser.capability import ScriptedCapability
from browser_qa.llm.base import LLMResponse
from browser_qa.llm.mock import ScriptedLLM
from browser_qa.models import UsageData

REPORT = "I clicked Save and a green banner reading 'Profile updated' appeared at the top."


def test_parse_verify_response_variants():
    fenced = parse_verify_response('```json\n{"passed": true, "actual": "ok", "evidence": "banner"}\n```')
    assert fenced.passed and fenced.evidence == "banner"

    prose = parse_verify_response('Here is my verdict: {"passed": false, "actual": "nothing"} hope it helps')
    assert not prose.passed and prose.actual == "nothing"

    broken = parse_verify_response('"passed": true but not json')
    assert broken.passed
    assert broken.evidence == "Could not parse structured response"


def test_heuristic_verify():
    assert not heuristic_verify("short", "anything").passed
    result = heuristic_verify(
        "The dashboard shows the revenue chart for last month.",
        "Revenue chart is shown on the dashboard",
    )
    assert result.passed
    assert result.evidence.startswith("Heuristic: ")
    failed = heuristic_verify("Unable to find the revenue chart anywhere.", "Revenue chart is shown")
    assert not failed.passed
    assert "failure signals" in failed.evidence


def test_live_pass_on_interaction_skips_judge():
    capability = ScriptedCapability(
        extract_results=[{"passed": True, "actual": "Banner visible", "evidence": "Profile updated"}]
    )
    judge = ScriptedLLM([])
    engine = VerificationEngine(capability, judge)

    result = asyncio.run(engine.verify("Click Save", "A success banner appears", REPORT))

    assert is_interaction("Click Save")
    assert result.passed
    assert result.evidence == "Profile updated"
    assert judge.prompts == []


def test_judge_pass_is_trusted_and_usage_reported():
    usage: list[tuple[int, int]] = []
    capability = ScriptedCapability(extract_results=[{"passed": False, "actual": "?"}])
    judge = ScriptedLLM(
        [
            LLMResponse(
                text='{"passed": true, "actual": "Banner shown", "evidence": "agent saw it"}',
                usage=UsageData(input_tokens=120, output_tokens=30),
            )
        ]
    )
    engine = VerificationEngine(capability, judge, on_usage=lambda i, o: usage.append((i, o)))

    result = asyncio.run(engine.verify("Click Save", "A success banner appears", REPORT))

    assert result.passed and result.actual == "Banner shown"
    assert usage == [(120, 30)]
    assert len(judge.prompts) == 1
    assert "INTERACTION" in judge.prompts[0]


def test_judge_failure_on_observation_gets_live_recheck():
    capability = ScriptedCapability(
        extract_results=[{"result": {"passed": True, "actual": "Title matches", "evidence": "h1"}}]
    )
    judge = ScriptedLLM(['{"passed": false, "actual": "not mentioned", "evidence": ""}'])
    engine = VerificationEngine(capability, judge)

    result = asyncio.run(
        engine.verify("Verify the page title", "Title reads Dashboard", "The agent looked at the page header area.")
    )

    assert result.passed and result.evidence == "h1"
    assert [name for name, _ in capability.calls] == ["extract"]


def test_falls_back_to_heuristic_when_everything_fails():
    capability = ScriptedCapability(extract_results=[RuntimeError("page crashed")])
    judge = ScriptedLLM([])
    engine = VerificationEngine(capability, judge)

    result = asyncio.run(engine.verify("Verify the footer", "Footer shows copyright", "too short"))

    assert not result.passed
    assert result.actual == "No response from agent"
