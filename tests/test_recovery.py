import asyncio

from browser_qa.agent.modes import run_task
from browser_qa.agent.recovery import (
    EXACT_TEXT_CLICK_SCRIPT,
    ClickTargetExtractor,
    RecoveryCascade,
    StuckClickClassifier,
)
from browser_qa.browser.base import ActResult, AgentTaskResult
from browser_qa.browser.capability import ScriptedCapability
from browser_qa.models import UsageData
from browser_qa.notifications.base import CollectingSink

from fakes import FakePage

STUCK = 'I clicked the "Settings" tab but it did not respond, the view still shows the same content.'


def test_classifier_and_extractor():
    classifier = StuckClickClassifier()
    extractor = ClickTargetExtractor()
    assert classifier.is_stuck(STUCK)
    assert classifier.is_stuck("The Export button is not clickable")
    assert not classifier.is_stuck("Opened the settings page and saved the form.")
    assert extractor.extract(STUCK) == "Settings"
    assert extractor.extract("Unable to click the Billing History tab") == "Billing History"
    assert extractor.extract("nothing happened") is None


def test_only_exact_text_strategy_succeeds():
    page = FakePage(url="https://app.test/")
    page.evaluate_results[EXACT_TEXT_CLICK_SCRIPT] = True
    capability = ScriptedCapability(act_results=[ActResult(success=False, message="no element")])
    cascade = RecoveryCascade(capability)

    outcome = asyncio.run(cascade.recover(page, STUCK))

    assert outcome is not None and outcome.success
    assert outcome.strategy == "text-click"
    assert [attempt.strategy for attempt in outcome.attempts] == [
        "locator",
        "dom-events",
        "act",
        "text-click",
    ]
    assert [attempt.success for attempt in outcome.attempts] == [False, False, False, True]
    assert outcome.actions == [{"type": "textclick-retry", "target": "Settings"}]
    assert capability.calls == [("act", 'Click on "Settings"')]


def test_raising_strategy_counts_as_failure():
    page = FakePage()

    def broken_locator(selector: str):
        raise RuntimeError("locator exploded")

    page.locator = broken_locator
    capability = ScriptedCapability(act_results=[ActResult(success=True)])

    outcome = asyncio.run(RecoveryCascade(capability).recover(page, STUCK))

    assert outcome is not None
    assert outcome.strategy == "act"
    assert outcome.attempts[0].success is False
    assert "locator exploded" in (outcome.attempts[0].error or "")


def test_no_recovery_without_stuck_message_or_label():
    cascade = RecoveryCascade(ScriptedCapability())
    page = FakePage()
    assert asyncio.run(cascade.recover(page, "All done, the form was saved.")) is None
    assert asyncio.run(cascade.recover(page, "The page did not change at all")) is None


def test_total_failure_returns_outcome_without_strategy():
    capability = ScriptedCapability(act_results=[ActResult(success=False)])
    outcome = asyncio.run(RecoveryCascade(capability).recover(FakePage(), STUCK))
    assert outcome is not None
    assert outcome.success is False
    assert len(outcome.attempts) == 4


def test_task_resumes_after_recovery_and_sums_usage():
    page = FakePage(url="https://app.test/")
    page.locator_count = 1
    capability = ScriptedCapability(
        agent_results=[
            AgentTaskResult(
                success=False,
                message=STUCK,
                actions=[{"type": "click", "selector": "#settings"}],
                usage=UsageData(input_tokens=10, output_tokens=5),
            ),
            AgentTaskResult(
                success=True,
                message="Settings page shows the profile form.",
                usage=UsageData(input_tokens=3, output_tokens=2),
            ),
        ]
    )
    sink = CollectingSink()

    result = asyncio.run(run_task(capability, page, "open settings", sink=sink))

    assert result.success is True
    assert result.message.startswith('[Auto-retry fixed stuck click on "Settings"]')
    assert result.usage == UsageData(input_tokens=13, output_tokens=7)
    assert {"type": "locator-retry", "target": "Settings"} in result.actions
    assert any("[auto-retry]" in message for message in sink.messages("info"))
    assert capability.calls[1][0] == "agent"
    assert "Continue with the original task: open settings" in capability.calls[1][1]
