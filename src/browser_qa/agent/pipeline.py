"""End-to-end QA test runs: plan, execute, verify and report."""

from __future__ import annotations

import logging
import re
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from ..browser.instance import BrowserInstance
from ..browser.pool import ISOLATED_PROFILE, BrowserPool, SpawnOptions
from ..browser.screenshots import try_screenshot
from ..cost.tracker import CostTracker
from ..errors import AbortedError, BrowserQAError
from ..llm.base import LLMClient
from ..memory.base import KnowledgeStore
from ..models import (
    Learning,
    ModeResult,
    SiteKnowledge,
    StepResult,
    StepVerdict,
    TestPlan,
    TestReport,
    TestStep,
    UsageData,
    merge_usage,
)
from ..notifications.base import OutputSink
from ..orchestrator.control import (
    CancellationToken,
    fire_and_forget,
    race_cancellation,
    raise_if_cancelled,
)
from ..orchestrator.prompt_builder import PromptBuilder
from .learning import extract_test_run_learnings, extract_test_step_learning
from .modes import run_act
from .planner import TestPlanner
from .report import aggregate_verdict, build_summary_message, print_report_summary
from .verify import VerificationEngine

LOGGER = logging.getLogger(__name__)

SIMPLE_ACTION = re.compile(
    r"^(click|type|press|scroll|check|uncheck|select|toggle)\b", re.IGNORECASE
)
SIMPLE_ACTION_MAX_LENGTH = 120
STEP_MAX_STEPS = 15
SETTLE_MS = 1500
SKIPPED_MESSAGE = "Skipped — earlier critical step failed"


class TestRunResult(ModeResult):
    """Mode result of a test command, carrying the saved report."""

    __test__ = False

    report: TestReport
    report_id: str


def is_simple_action(action: str) -> bool:
    return bool(SIMPLE_ACTION.match(action)) and len(action) < SIMPLE_ACTION_MAX_LENGTH


class TestPipeline:
    """Runs a test description against the browser pool.

    A failed critical step skips every later step. Reports are saved before
    the run returns; learnings are recorded in the background.
    """

    __test__ = False

    def __init__(
        self,
        pool: BrowserPool,
        store: KnowledgeStore,
        planner: TestPlanner,
        judge: LLMClient,
        *,
        cost_tracker: Optional[CostTracker] = None,
        screenshot_dir: Path = Path("data/screenshots"),
        settle_ms: int = SETTLE_MS,
        prompt_builder: Optional[PromptBuilder] = None,
    ) -> None:
        self._pool = pool
        self._store = store
        self._planner = planner
        self._judge = judge
        self._cost_tracker = cost_tracker
        self._screenshot_dir = screenshot_dir
        self._settle_ms = settle_ms
        self._prompt_builder = prompt_builder or PromptBuilder()

    async def run(
        self,
        instance: BrowserInstance,
        instruction: str,
        *,
        sink: OutputSink,
        knowledge: Optional[SiteKnowledge] = None,
        learnings: Sequence[Learning] = (),
        token: Optional[CancellationToken] = None,
    ) -> TestRunResult:
        started = time.monotonic()
        domain = instance.domain
        task_id = f"test-{uuid.uuid4().hex[:8]}"
        usage: Optional[UsageData] = None

        sink.info("Planning test steps...")
        plan = await race_cancellation(
            self._planner.plan(
                instruction,
                knowledge=knowledge,
                learnings=learnings,
                current_url=instance.url,
                active_browsers=[item.name for item in self._pool.list()],
            ),
            token,
        )
        self._announce_plan(plan, sink)

        results: list[StepResult] = []
        aborted = False
        total = len(plan.steps)
        for index, step in enumerate(plan.steps):
            if aborted:
                sink.test_step(index, total, step.action, "skip")
                results.append(
                    StepResult(step=step, verdict=StepVerdict.SKIP, actual=SKIPPED_MESSAGE)
                )
                continue
            raise_if_cancelled(token)
            sink.test_step(index, total, step.action, "running")
            result, step_usage, step_domain = await self._run_step(
                instance, plan, index, step, sink, knowledge, learnings, token
            )
            usage = merge_usage(usage, step_usage)
            results.append(result)
            sink.test_step(index, total, step.action, result.verdict.value)
            fire_and_forget(
                extract_test_step_learning(
                    self._store,
                    domain=step_domain if step_domain != "unknown" else domain,
                    task_id=task_id,
                    step=step,
                    verdict=result.verdict,
                    actual=result.actual,
                    duration_ms=result.duration_ms,
                ),
                name=f"step-learning-{task_id}-{index}",
            )
            if result.verdict == StepVerdict.FAIL and step.critical:
                sink.warn(f"Critical step {index + 1} failed — skipping remaining steps")
                aborted = True

        raise_if_cancelled(token)
        verdict = aggregate_verdict(results)
        cost = self._cost_tracker.session_total().cost_usd if self._cost_tracker else 0.0
        report = TestReport(
            title=plan.title,
            timestamp=datetime.now(timezone.utc),
            domain=domain,
            steps=results,
            verdict=verdict,
            duration_ms=int((time.monotonic() - started) * 1000),
            cost_usd=cost,
        )
        report.summary = build_summary_message(report)
        report_id = await self._store.save_test_report(report)
        print_report_summary(report, sink)
        sink.info(f"Report saved: {report_id}")

        fire_and_forget(
            extract_test_run_learnings(
                self._store,
                instance.capability,
                domain=domain,
                title=plan.title,
                results=results,
                verdict=verdict,
                task_id=task_id,
            ),
            name=f"run-learning-{task_id}",
        )
        return TestRunResult(
            message=report.summary,
            success=verdict.value == "pass",
            usage=usage,
            report=report,
            report_id=report_id,
        )

    async def _run_step(
        self,
        default_instance: BrowserInstance,
        plan: TestPlan,
        index: int,
        step: TestStep,
        sink: OutputSink,
        knowledge: Optional[SiteKnowledge],
        learnings: Sequence[Learning],
        token: Optional[CancellationToken],
    ) -> tuple[StepResult, Optional[UsageData], str]:
        started = time.monotonic()
        instance = await self._resolve_instance(default_instance, step, sink)
        with instance.attach_sink(sink):
            if instance is not default_instance:
                await instance.focus_active_tab()
            before = await race_cancellation(
                try_screenshot(
                    instance.active_tab(), f"step{index + 1}_before", self._screenshot_dir
                ),
                token,
            )
            try:
                executed = await self._execute_step(
                    instance, plan, index, step, knowledge, learnings, token
                )
            except AbortedError:
                raise
            except Exception as exc:
                LOGGER.warning("Step %d failed to execute: %s", index + 1, exc)
                return (
                    StepResult(
                        step=step,
                        verdict=StepVerdict.FAIL,
                        actual=f"Step execution failed: {exc}",
                        evidence="Execution error",
                        screenshot_before=before,
                        duration_ms=int((time.monotonic() - started) * 1000),
                    ),
                    None,
                    instance.domain,
                )

            page = instance.active_tab()
            try:
                await race_cancellation(page.wait_for_timeout(self._settle_ms), token)
            except AbortedError:
                raise
            except Exception as exc:
                LOGGER.debug("Settle wait failed: %s", exc)
            after = await race_cancellation(
                try_screenshot(page, f"step{index + 1}_after", self._screenshot_dir), token
            )

            engine = VerificationEngine(
                instance.capability,
                self._judge,
                on_usage=self._cost_tracker.add_tokens if self._cost_tracker else None,
            )
            verification = await engine.verify(step.action, step.expected, executed.message, token)

        return (
            StepResult(
                step=step,
                verdict=StepVerdict.PASS if verification.passed else StepVerdict.FAIL,
                actual=verification.actual,
                evidence=verification.evidence,
                screenshot_before=before,
                screenshot_after=after,
                duration_ms=int((time.monotonic() - started) * 1000),
            ),
            executed.usage,
            instance.domain,
        )

    async def _resolve_instance(
        self, default_instance: BrowserInstance, step: TestStep, sink: OutputSink
    ) -> BrowserInstance:
        if not step.browser:
            return default_instance
        if not self._pool.has(step.browser):
            sink.info(f'Spawning browser "{step.browser}" for this test...')
            try:
                await self._pool.spawn(step.browser, SpawnOptions(profile=ISOLATED_PROFILE))
            except BrowserQAError as exc:
                sink.warn(f'Failed to spawn browser "{step.browser}": {exc}')
        if self._pool.has(step.browser):
            return self._pool.get(step.browser)
        return default_instance

    async def _execute_step(
        self,
        instance: BrowserInstance,
        plan: TestPlan,
        index: int,
        step: TestStep,
        knowledge: Optional[SiteKnowledge],
        learnings: Sequence[Learning],
        token: Optional[CancellationToken],
    ) -> ModeResult:
        capability = instance.capability
        if is_simple_action(step.action):
            try:
                return await race_cancellation(run_act(capability, step.action), token)
            except AbortedError:
                raise
            except Exception as exc:
                LOGGER.debug("act failed for %r, falling back to the agent: %s", step.action, exc)

        site_context = self._prompt_builder.build_system_prompt(
            knowledge, learnings, include_base=False
        )
        lines = [
            f'You are executing step {index + 1} of {len(plan.steps)} in a QA test: "{plan.title}".',
            "Your ONLY job is to perform the action described below. Do NOT do anything else.",
            "Do NOT explore, test, or navigate to pages unrelated to this step.",
            "Do NOT invent or substitute a different goal.",
            "",
            f"ACTION: {step.action}",
            f"EXPECTED OUTCOME: {step.expected}",
            "",
            "Once the action is complete, stop immediately and report what happened.",
        ]
        if site_context:
            lines.append(f"\nSite reference (use ONLY for navigation help):\n{site_context}")
        instruction = (
            f"{step.action}\n\nAfter completing this action, stop and describe what you see. "
            f"The expected outcome is: {step.expected}"
        )
        result = await race_cancellation(
            capability.run_agent_task(
                instruction, max_steps=STEP_MAX_STEPS, system_prompt="\n".join(lines)
            ),
            token,
        )
        return ModeResult(
            message=result.message or "Step completed.",
            success=result.success,
            usage=result.usage,
            actions=result.actions,
        )

    @staticmethod
    def _announce_plan(plan: TestPlan, sink: OutputSink) -> None:
        setup = sum(1 for step in plan.steps if step.setup)
        sink.info(
            f"Test: {plan.title} ({len(plan.steps)} steps — {setup} setup, "
            f"{len(plan.steps) - setup} assertion)"
        )
        for number, step in enumerate(plan.steps, start=1):
            kind = "setup" if step.setup else "assert" if step.critical else "optional"
            browser = f" [{step.browser}]" if step.browser else ""
            sink.log(f"  {number}. [{kind}]{browser} {step.action}")
            sink.log(f"     Expected: {step.expected}")
        sink.log("")
