"""Test verdict aggregation and report rendering."""

from __future__ import annotations

from typing import Sequence

from ..models import StepResult, StepVerdict, TestReport, TestVerdict
from ..notifications.base import OutputSink


def aggregate_verdict(results: Sequence[StepResult]) -> TestVerdict:
    """Overall verdict from step results.

    Setup steps only count when they fail. A run made only of setup steps
    falls back to "any failure fails the test".
    """

    if any(result.step.setup and result.verdict == StepVerdict.FAIL for result in results):
        return TestVerdict.FAIL
    assertions = [result for result in results if not result.step.setup]
    if not assertions:
        failed = any(result.verdict == StepVerdict.FAIL for result in results)
        return TestVerdict.FAIL if failed else TestVerdict.PASS
    failed = sum(1 for result in assertions if result.verdict == StepVerdict.FAIL)
    passed = sum(1 for result in assertions if result.verdict == StepVerdict.PASS)
    if failed == 0:
        return TestVerdict.PASS
    if passed == 0:
        return TestVerdict.FAIL
    return TestVerdict.PARTIAL


def count_verdicts(results: Sequence[StepResult]) -> tuple[int, int, int]:
    passed = sum(1 for result in results if result.verdict == StepVerdict.PASS)
    failed = sum(1 for result in results if result.verdict == StepVerdict.FAIL)
    skipped = sum(1 for result in results if result.verdict == StepVerdict.SKIP)
    return passed, failed, skipped


def build_summary_message(report: TestReport) -> str:
    passed, failed, skipped = count_verdicts(report.steps)
    lines = [
        f"Test: {report.title}",
        f"Verdict: {report.verdict.value.upper()}",
        f"Steps: {passed} passed, {failed} failed, {skipped} skipped",
        f"Duration: {report.duration_ms / 1000:.1f}s",
        "",
    ]
    for index, result in enumerate(report.steps, start=1):
        lines.append(f"  {index}. [{result.verdict.value.upper()}] {result.step.action}")
        if result.verdict == StepVerdict.FAIL:
            lines.append(f"     Expected: {result.step.expected}")
            lines.append(f"     Actual: {result.actual}")
    return "\n".join(lines)


def print_report_summary(report: TestReport, sink: OutputSink) -> None:
    passed, failed, skipped = count_verdicts(report.steps)
    sink.log(f"\n  Test: {report.title}")
    sink.log(f"  Domain: {report.domain}")
    sink.log(f"  Time: {report.timestamp.isoformat()}\n")
    total = len(report.steps)
    for index, result in enumerate(report.steps, start=1):
        tag = " [setup]" if result.step.setup else ""
        action = result.step.action
        if len(action) > 70:
            action = action[:67] + "..."
        sink.log(f"  [{index}/{total}] {result.verdict.value.upper()}{tag} {action}")
        if result.verdict == StepVerdict.FAIL:
            sink.log(f"         Expected: {result.step.expected}")
            sink.log(f"         Actual:   {result.actual}")
            if result.evidence:
                sink.log(f"         Evidence: {result.evidence}")
    sink.log(f"\n  VERDICT: {report.verdict.value.upper()}")
    sink.log(f"  {passed} passed  {failed} failed  {skipped} skipped")
    sink.log(f"\n  Duration: {report.duration_ms / 1000:.1f}s | Cost: ${report.cost_usd:.4f}")
