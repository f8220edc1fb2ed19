"""Factories for constructing components from configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .agent.chat import ChatAgent
from .agent.pipeline import TestPipeline
from .agent.planner import TestPlanner
from .browser.base import BrowserCapability
from .browser.capability import LLMBrowserCapability, ScriptedCapability
from .browser.launcher import ChromeLauncher, Launcher
from .browser.pool import SHARED_PROFILE, BrowserPool, CapabilityFactory, SpawnOptions
from .browser.vnc import VirtualDisplay
from .config import AppConfig, LLMConfig, NotificationConfig
from .cost.tracker import CostTracker
from .llm.base import LLMClient, StaticResponseLLM
from .llm.mock import ScriptedLLM
from .llm.openai_client import OpenAIChatLLM
from .memory.base import InMemoryStore, KnowledgeStore
from .memory.json_store import JsonFileStore
from .notifications.base import CompositeSink, ConsoleSink, LoggingSink, NullSink, OutputSink
from .orchestrator.control import drain_background
from .orchestrator.prompt_builder import PromptBuilder
from .orchestrator.runner import Orchestrator

LOGGER = logging.getLogger(__name__)

MOCK_REPLY = "Mock provider: no model is configured."


def build_llm(config: LLMConfig, *, model: Optional[str] = None) -> LLMClient:
    provider = config.provider.lower()
    if provider in {"openai", "azure", "openai-compatible"}:
        return OpenAIChatLLM(config, model=model)
    if provider == "mock":
        responses = config.parameters.get("responses")
        if responses:
            return ScriptedLLM([str(item) for item in responses], model=model or "mock")
        return StaticResponseLLM(str(config.parameters.get("reply", MOCK_REPLY)))
    raise ValueError(f"Unsupported LLM provider: {config.provider}")


def build_capability_factory(
    config: LLMConfig,
    agent_llm: LLMClient,
    cost_tracker: Optional[CostTracker] = None,
) -> CapabilityFactory:
    """Capabilities report their token usage to ``cost_tracker``."""

    offline = config.provider.lower() == "mock"

    def create(name: str) -> BrowserCapability:
        capability: BrowserCapability
        if offline:
            capability = ScriptedCapability()
        else:
            capability = LLMBrowserCapability(agent_llm)
        if cost_tracker is not None:
            capability.on_usage = cost_tracker.add_tokens
        LOGGER.debug("Created %s for browser %s", type(capability).__name__, name)
        return capability

    return create


def build_store(config: AppConfig) -> KnowledgeStore:
    backend = config.store.backend.lower()
    if backend == "memory":
        return InMemoryStore(max_learnings=config.store.max_learnings)
    if backend == "json":
        return JsonFileStore(config.data_dir, max_learnings=config.store.max_learnings)
    raise ValueError(f"Unsupported store backend: {config.store.backend}")


def build_sink(config: NotificationConfig) -> OutputSink:
    sinks: list[OutputSink] = []
    for channel in (item.strip().lower() for item in config.channel.split(",")):
        if channel == "console":
            sinks.append(ConsoleSink())
        elif channel == "log":
            sinks.append(LoggingSink())
        elif channel == "null":
            sinks.append(NullSink())
        else:
            raise ValueError(f"Unsupported notification channel: {channel}")
    if len(sinks) == 1:
        return sinks[0]
    return CompositeSink(sinks)


@dataclass
class Runtime:
    """Everything a CLI session needs, with startup and shutdown."""

    config: AppConfig
    sink: OutputSink
    pool: BrowserPool
    store: KnowledgeStore
    cost_tracker: CostTracker
    orchestrator: Orchestrator
    llms: list[LLMClient] = field(default_factory=list)
    display: Optional[VirtualDisplay] = None

    async def start(self) -> None:
        """Start the virtual display, load the ledger and spawn the default browser."""

        if self.display is not None:
            info = self.display.start()
            if info is not None:
                self.sink.info(info.describe())
        await self.cost_tracker.init()
        name = self.config.default_browser
        self.sink.info(f'Starting browser "{name}"...')
        await self.pool.spawn(
            name, SpawnOptions(profile=SHARED_PROFILE, start_url=self.config.target_url)
        )

    async def aclose(self) -> None:
        await self.pool.close_all()
        for llm in self.llms:
            await llm.aclose()
        await drain_background()
        if self.display is not None:
            self.display.stop()


def build_runtime(
    config: AppConfig,
    sink: Optional[OutputSink] = None,
    *,
    launcher: Optional[Launcher] = None,
) -> Runtime:
    sink = sink or build_sink(config.notifications)
    store = build_store(config)
    cost_tracker = CostTracker(config.agent_model, store, cycle_day=config.billing_cycle_day)

    agent_llm = build_llm(config.llm)
    utility_llm = build_llm(config.llm, model=config.llm.utility_model or config.llm.model)
    prompt_builder = PromptBuilder()

    pool = BrowserPool(
        launcher or ChromeLauncher(config.browser),
        build_capability_factory(config.llm, agent_llm, cost_tracker),
        data_dir=config.data_dir,
        headless=config.browser.headless,
    )
    planner = TestPlanner(
        utility_llm, prompt_builder=prompt_builder, on_usage=cost_tracker.add_tokens
    )
    pipeline = TestPipeline(
        pool,
        store,
        planner,
        utility_llm,
        cost_tracker=cost_tracker,
        screenshot_dir=config.data_dir / "screenshots",
        prompt_builder=prompt_builder,
    )
    orchestrator = Orchestrator(
        pool,
        store,
        cost_tracker,
        chat=ChatAgent(utility_llm, prompt_builder=prompt_builder),
        pipeline=pipeline,
        utility_model=config.utility_model,
        target_url=config.target_url,
        prompt_builder=prompt_builder,
    )
    return Runtime(
        config=config,
        sink=sink,
        pool=pool,
        store=store,
        cost_tracker=cost_tracker,
        orchestrator=orchestrator,
        llms=[agent_llm, utility_llm],
        display=VirtualDisplay.from_config(config.browser),
    )
