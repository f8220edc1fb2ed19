"""Main orchestrator that routes commands to browsers and execution modes."""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from typing import Optional, Sequence, TypeVar

from ..agent.chat import ChatAgent, handoff_summary_prompt
from ..agent.learning import extract_post_command_learnings, run_learn
from ..agent.modes import (
    run_act,
    run_ask,
    run_extract,
    run_goto,
    run_observe,
    run_search,
    run_task,
)
from ..agent.pipeline import TestPipeline
from ..browser.instance import BrowserInstance
from ..browser.pool import ISOLATED_PROFILE, SHARED_PROFILE, BrowserPool, SpawnOptions
from ..cost.tracker import CostTracker
from ..errors import AbortedError, BrowserQAError
from ..memory.base import KnowledgeStore
from ..models import (
    CommandMode,
    Learning,
    ModeResult,
    ParsedCommand,
    SessionEntry,
    SiteKnowledge,
    TaskRecord,
    merge_usage,
)
from ..notifications.base import OutputSink
from ..parser import ManagementCommand
from .control import CancellationToken, fire_and_forget, race_cancellation, raise_if_cancelled
from .prompt_builder import PromptBuilder

LOGGER = logging.getLogger(__name__)

UTILITY_MODES = frozenset({"chat", "auto", "ask"})
CONVERSATIONAL_MODES = frozenset({"chat", "auto"})
RECORDED_MODES = frozenset({"task", "test"})
NO_LEARNING_MODES = frozenset({"goto", "learn", "chat"})
BARE_URL = re.compile(r"^https?://\S+$")

T = TypeVar("T")


def _mode_name(mode: object) -> str:
    return mode.value if isinstance(mode, CommandMode) else str(mode)


def _required(value: Optional[T], usage: str) -> T:
    if value is None:
        raise ValueError(f"Usage: {usage}")
    return value


class Orchestrator:
    """Runs parsed commands against the browser pool.

    Every command resolves its target browser first; a failure there returns
    a failed result and only adds the error to the session history. Dispatch
    failures are reported, recorded and returned as failed results.
    :class:`AbortedError` always propagates and skips all bookkeeping.
    """

    def __init__(
        self,
        pool: BrowserPool,
        store: KnowledgeStore,
        cost_tracker: CostTracker,
        *,
        chat: ChatAgent,
        pipeline: TestPipeline,
        utility_model: Optional[str] = None,
        target_url: Optional[str] = None,
        prompt_builder: Optional[PromptBuilder] = None,
    ) -> None:
        self._pool = pool
        self._store = store
        self._cost_tracker = cost_tracker
        self._chat = chat
        self._pipeline = pipeline
        self._utility_model = utility_model
        self._target_url = target_url
        self._prompt_builder = prompt_builder or PromptBuilder()

    @property
    def pool(self) -> BrowserPool:
        return self._pool

    async def execute(
        self,
        command: ParsedCommand,
        sink: OutputSink,
        token: Optional[CancellationToken] = None,
    ) -> ModeResult:
        started = time.monotonic()
        mode = _mode_name(command.mode)
        try:
            instance = await self._pool.route(command)
        except BrowserQAError as exc:
            sink.error(f"Command failed: {exc}")
            await self._store.add_session_entry(
                SessionEntry(role="agent", content=f"Error: {exc}", mode=mode)
            )
            return ModeResult(message=str(exc), success=False)

        raise_if_cancelled(token)
        await instance.focus_active_tab()
        with instance.attach_sink(sink), self._cost_tracker.command_scope():
            self._announce(command, mode, sink)
            domain = instance.domain
            knowledge = await self._store.get_knowledge(domain)
            learnings = await self._store.get_learnings(domain)
            raise_if_cancelled(token)

            failed = False
            try:
                result = await self._dispatch(
                    mode, command.instruction, instance, knowledge, learnings, sink, token
                )
            except AbortedError:
                raise
            except Exception as exc:
                LOGGER.debug("Command %r failed", command.raw, exc_info=True)
                sink.error(f"Command failed: {exc}")
                result = ModeResult(message=f"Error: {exc}", success=False)
                failed = True

            raise_if_cancelled(token)
            await self._record(command, mode, instance, domain, result, started, sink, failed)
        return result

    async def manage(self, command: ManagementCommand, sink: OutputSink) -> bool:
        """Apply a browser or tab management command. Returns ``False`` on failure."""

        try:
            if command.kind == "browser_list":
                sink.log(self._pool.format_list() or "No browsers running.")
            elif command.kind == "browser_spawn":
                name = _required(command.name, "browser:spawn <name> [--isolated]")
                sink.info(f'Spawning browser "{name}"...')
                await self._pool.spawn(
                    name,
                    SpawnOptions(
                        profile=ISOLATED_PROFILE if command.isolated else None,
                        start_url=self._target_url,
                    ),
                )
                sink.success(f'Browser "{name}" ready')
            elif command.kind == "browser_kill":
                name = _required(command.name, "browser:kill <name>")
                await self._pool.despawn(name)
                sink.success(f'Browser "{name}" closed')
            elif command.kind == "browser_switch":
                name = _required(command.name, "browser:switch <name>")
                self._pool.set_active(name)
                sink.success(f'Switched to browser "{name}"')
            elif command.kind == "tab_list":
                sink.log(self._format_tabs(self._pool.active()))
            elif command.kind == "tab_new":
                instance = self._pool.active()
                try:
                    await instance.new_tab(command.url)
                finally:
                    await instance.focus_active_tab()
                sink.success(f"Opened tab {instance.active_index}")
            elif command.kind == "tab_switch":
                target = _required(command.target, "tab:switch <index|url>")
                instance = self._pool.active()
                await instance.switch_tab(target)
                await instance.focus_active_tab()
                sink.success(f"Switched to tab {instance.active_index}: {instance.url}")
            elif command.kind == "tab_close":
                instance = self._pool.active()
                await instance.close_tab(command.index)
                await instance.focus_active_tab()
                sink.success(f"Closed tab; active tab is {instance.active_index}")
            else:
                sink.error(f"Unknown command: {command.kind}")
                return False
        except BrowserQAError as exc:
            sink.error(str(exc))
            return False
        except Exception as exc:
            LOGGER.debug("Management command %s failed", command.kind, exc_info=True)
            sink.error(f"{command.kind} failed: {exc}")
            return False
        return True

    async def _dispatch(
        self,
        mode: str,
        instruction: str,
        instance: BrowserInstance,
        knowledge: Optional[SiteKnowledge],
        learnings: Sequence[Learning],
        sink: OutputSink,
        token: Optional[CancellationToken],
    ) -> ModeResult:
        capability = instance.capability
        page = instance.active_tab()
        if mode == "extract":
            return await race_cancellation(run_extract(capability, instruction), token)
        if mode == "act":
            return await race_cancellation(run_act(capability, instruction), token)
        if mode == "observe":
            return await race_cancellation(run_observe(capability, instruction), token)
        if mode == "task":
            return await self._run_task(instance, instruction, knowledge, learnings, sink, token)
        if mode == "goto":
            return await race_cancellation(run_goto(page, instruction), token)
        if mode == "search":
            return await race_cancellation(run_search(capability, page, instruction), token)
        if mode == "ask":
            return await race_cancellation(
                run_ask(capability, instruction, knowledge, learnings), token
            )
        if mode == "learn":
            return await self._run_learn(instance, instruction, sink, token)
        if mode == "test":
            return await self._pipeline.run(
                instance,
                instruction,
                sink=sink,
                knowledge=knowledge,
                learnings=learnings,
                token=token,
            )
        if mode == "chat":
            return await self._run_smart(instance, instruction, knowledge, learnings, sink, token)
        if mode == "auto":
            if BARE_URL.match(instruction):
                return await race_cancellation(run_goto(page, instruction), token)
            return await self._run_smart(instance, instruction, knowledge, learnings, sink, token)
        return ModeResult(message=f"Unknown mode: {mode}", success=False)

    async def _run_task(
        self,
        instance: BrowserInstance,
        instruction: str,
        knowledge: Optional[SiteKnowledge],
        learnings: Sequence[Learning],
        sink: OutputSink,
        token: Optional[CancellationToken],
    ) -> ModeResult:
        return await run_task(
            instance.capability,
            instance.active_tab(),
            instruction,
            system_prompt=self._prompt_builder.build_system_prompt(knowledge, learnings),
            sink=sink,
            token=token,
        )

    async def _run_learn(
        self,
        instance: BrowserInstance,
        instruction: str,
        sink: OutputSink,
        token: Optional[CancellationToken],
    ) -> ModeResult:
        return await run_learn(
            instance.capability,
            self._store,
            url=instance.url,
            domain=instance.domain,
            instruction=instruction,
            sink=sink,
            token=token,
            prompt_builder=self._prompt_builder,
        )

    async def _run_smart(
        self,
        instance: BrowserInstance,
        instruction: str,
        knowledge: Optional[SiteKnowledge],
        learnings: Sequence[Learning],
        sink: OutputSink,
        token: Optional[CancellationToken],
    ) -> ModeResult:
        """Classify the message, then reply, mutate the pool or hand off to a mode."""

        decision = await race_cancellation(
            self._chat.route(
                instruction,
                current_url=instance.url,
                knowledge=knowledge,
                learnings=learnings,
                browsers=[item.name for item in self._pool.list()],
                active_browser=self._pool.active_name,
            ),
            token,
        )
        if not decision.is_handoff:
            message = decision.message or ""
            sink.agent_message(message)
            return ModeResult(message=message, success=True, usage=decision.usage, streamed=True)

        if decision.action == "spawn_browser":
            name = decision.instruction or f"browser-{self._pool.size() + 1}"
            profile = ISOLATED_PROFILE if decision.options.get("isolated") else SHARED_PROFILE
            try:
                sink.info(f'Spawning browser "{name}"...')
                await self._pool.spawn(
                    name, SpawnOptions(profile=profile, start_url=self._target_url)
                )
            except BrowserQAError as exc:
                return ModeResult(
                    message=f"Failed to spawn browser: {exc}", success=False, usage=decision.usage
                )
            sink.success(f'Browser "{name}" ready')
            return ModeResult(
                message=f'Spawned new browser "{name}"', success=True, usage=decision.usage
            )

        if decision.action == "switch_browser":
            name = decision.instruction or ""
            try:
                self._pool.set_active(name)
            except BrowserQAError as exc:
                return ModeResult(
                    message=f"Failed to switch browser: {exc}", success=False, usage=decision.usage
                )
            sink.success(f'Switched to browser "{name}"')
            return ModeResult(
                message=f'Switched to browser "{name}"', success=True, usage=decision.usage
            )

        handoff = decision.instruction or instruction
        sink.mode_switch("chat", decision.action, handoff)
        raise_if_cancelled(token)
        if decision.action == "task":
            outcome = await self._run_task(instance, handoff, knowledge, learnings, sink, token)
        elif decision.action == "goto":
            outcome = await race_cancellation(run_goto(instance.active_tab(), handoff), token)
        elif decision.action == "learn":
            outcome = await self._run_learn(instance, handoff, sink, token)
        elif decision.action in {"extract", "observe"}:
            outcome = await race_cancellation(run_extract(instance.capability, handoff), token)
        else:
            outcome = await race_cancellation(run_act(instance.capability, handoff), token)

        status = "completed" if outcome.success else "failed"
        self._chat.history.add("assistant", f"[{decision.action} {status}] {outcome.message[:500]}")
        if decision.action not in {"goto", "learn"}:
            self._schedule_learnings(
                instance, handoff, decision.action, outcome, f"chat-handoff-{uuid.uuid4().hex[:8]}"
            )

        domain = instance.domain
        knowledge_now = await self._store.get_knowledge(domain)
        learnings_now = await self._store.get_learnings(domain)
        raise_if_cancelled(token)
        follow_up = await race_cancellation(
            self._chat.reply(
                handoff_summary_prompt(decision.action, handoff, outcome.success, outcome.message),
                current_url=instance.url,
                knowledge=knowledge_now,
                learnings=learnings_now,
            ),
            token,
        )
        message = follow_up.message or outcome.message[:500]
        sink.agent_message(message)
        return ModeResult(
            message=message,
            success=outcome.success,
            usage=merge_usage(decision.usage, outcome.usage, follow_up.usage),
            actions=outcome.actions,
            streamed=True,
        )

    async def _record(
        self,
        command: ParsedCommand,
        mode: str,
        instance: BrowserInstance,
        domain: str,
        result: ModeResult,
        started: float,
        sink: OutputSink,
        failed: bool,
    ) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        model = self._utility_model if mode in UTILITY_MODES else None
        snapshot = self._cost_tracker.record(result.usage, model)

        quiet = mode == "test" or (mode in CONVERSATIONAL_MODES and result.streamed)
        if not quiet and not failed:
            sink.agent_message(result.message)
        sink.cost(self._cost_tracker.format_cost_line(snapshot))
        sink.info(f"Completed in {duration_ms / 1000:.1f}s")
        sink.separator()

        await self._store.add_session_entry(
            SessionEntry(role="user", content=command.raw, mode=mode)
        )
        await self._store.add_session_entry(
            SessionEntry(
                role="agent", content=result.message, mode=mode, cost_usd=snapshot.cost_usd
            )
        )
        if mode not in CONVERSATIONAL_MODES:
            self._chat.history.add("user", f"[{mode}] {command.instruction}")
            self._chat.history.add("assistant", f"[{mode}] {result.message[:300]}")

        task_id = uuid.uuid4().hex[:12]
        if mode in RECORDED_MODES:
            await self._store.save_task_record(
                TaskRecord(
                    id=task_id,
                    command=command.raw,
                    instruction=command.instruction,
                    mode=mode,
                    domain=domain,
                    steps=[json.dumps(action, default=str) for action in result.actions],
                    outcome="pass" if result.success else "fail",
                    result=result.message,
                    duration_ms=duration_ms,
                    cost_usd=snapshot.cost_usd,
                    tokens_in=snapshot.input_tokens,
                    tokens_out=snapshot.output_tokens,
                )
            )
        await self._store.save_session()

        if not failed and mode not in NO_LEARNING_MODES:
            self._schedule_learnings(instance, command.instruction, mode, result, task_id)

    def _schedule_learnings(
        self,
        instance: BrowserInstance,
        instruction: str,
        mode: str,
        result: ModeResult,
        task_id: str,
    ) -> None:
        fire_and_forget(
            extract_post_command_learnings(
                self._store,
                instance.capability,
                url=instance.url,
                domain=instance.domain,
                instruction=instruction,
                mode=mode,
                result=result,
                task_id=task_id,
            ),
            name=f"learnings-{task_id}",
        )

    @staticmethod
    def _announce(command: ParsedCommand, mode: str, sink: OutputSink) -> None:
        if command.target_browser:
            tab = f":{command.target_tab}" if command.target_tab is not None else ""
            sink.info(f"[→ {command.target_browser}{tab}] [{mode}] {command.instruction}")
        else:
            sink.info(f"[{mode}] {command.instruction}")

    @staticmethod
    def _format_tabs(instance: BrowserInstance) -> str:
        lines = [f"Tabs in {instance.name}:"]
        for index, page in enumerate(instance.tabs):
            arrow = "→" if index == instance.active_index else " "
            lines.append(f"  {arrow} [{index}] {page.url or 'about:blank'}")
        return "\n".join(lines)
