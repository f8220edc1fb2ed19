from browser_qa.agent.report import (
    aggregate_verdict,
    build_summary_message,
    count_verdicts,
    print_report_summary,
)
from browser_qa.models import StepResult, StepVerdict, TestReport, TestStep, TestVerdict
from browser_qa.notifications.base import CollectingSink


def _result(verdict: str, *, setup: bool = False, action: str = "step") -> StepResult:
    return StepResult(
        step=TestStep(action=action, expected="it works", setup=setup),
        verdict=StepVerdict(verdict),
        actual="observed" if verdict == "fail" else "",
    )


def test_setup_failure_fails_the_test():
    results = [_result("fail", setup=True), _result("pass"), _result("pass")]
    assert aggregate_verdict(results) == TestVerdict.FAIL


def test_passing_setup_does_not_count():
    results = [_result("pass", setup=True), _result("pass"), _result("skip")]
    assert aggregate_verdict(results) == TestVerdict.PASS


def test_mixed_assertions_are_partial():
    results = [_result("pass", setup=True), _result("pass"), _result("fail")]
    assert aggregate_verdict(results) == TestVerdict.PARTIAL


def test_all_assertions_failed_or_skipped():
    assert aggregate_verdict([_result("fail"), _result("skip")]) == TestVerdict.FAIL


def test_setup_only_run_falls_back_to_any_failure():
    assert aggregate_verdict([_result("pass", setup=True)]) == TestVerdict.PASS
    assert aggregate_verdict([]) == TestVerdict.PASS


def test_summary_and_console_rendering():
    steps = [
        _result("pass", setup=True, action="Open settings"),
        _result("fail", action="Click Save"),
        _result("skip", action="Check banner"),
    ]
    report = TestReport(
        title="Save profile",
        domain="app.test",
        steps=steps,
        verdict=aggregate_verdict(steps),
        duration_ms=2500,
        cost_usd=0.0123,
    )
    assert count_verdicts(steps) == (1, 1, 1)

    summary = build_summary_message(report)
    assert "Verdict: FAIL" in summary
    assert "Steps: 1 passed, 1 failed, 1 skipped" in summary
    assert "  2. [FAIL] Click Save" in summary
    assert "     Actual: observed" in summary
    assert "Duration: 2.5s" in summary

    sink = CollectingSink()
    print_report_summary(report, sink)
    lines = sink.messages("log")
    assert "  [1/3] PASS [setup] Open settings" in lines
    assert "\n  VERDICT: FAIL" in lines
    assert lines[-1] == "\n  Duration: 2.5s | Cost: $0.0123"
