"""Named pool of browser instances with an active selection and routing."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from ..errors import DuplicateNameError, NoActiveInstanceError, NotFoundError
from ..models import ParsedCommand
from .base import BrowserCapability
from .instance import BrowserInstance
from .launcher import Launcher

LOGGER = logging.getLogger(__name__)

SHARED_PROFILE = "shared"
ISOLATED_PROFILE = "isolated"

CapabilityFactory = Callable[[str], BrowserCapability]


@dataclass
class SpawnOptions:
    """How to launch a new instance.

    ``profile`` is ``"shared"``, ``"isolated"`` or the name of a custom
    profile directory. When omitted the first instance gets the shared
    profile and later ones an isolated profile.
    """

    profile: Optional[str] = None
    headless: Optional[bool] = None
    start_url: Optional[str] = None


class BrowserPool:
    """Holds at most one instance per name and tracks the active one."""

    def __init__(
        self,
        launcher: Launcher,
        capability_factory: CapabilityFactory,
        *,
        data_dir: Path = Path("data"),
        headless: bool = False,
    ) -> None:
        self._launcher = launcher
        self._capability_factory = capability_factory
        self._data_dir = data_dir
        self._headless = headless
        self._instances: dict[str, BrowserInstance] = {}
        self._active_name: Optional[str] = None
        self._locks: dict[str, asyncio.Lock] = {}

    def profile_dir(self, name: str, profile: str) -> Path:
        if profile == SHARED_PROFILE:
            return (self._data_dir / ".browser-profile").resolve()
        if profile == ISOLATED_PROFILE:
            return (self._data_dir / f".browser-profile-{name}").resolve()
        return (self._data_dir / profile).resolve()

    async def spawn(self, name: str, options: Optional[SpawnOptions] = None) -> BrowserInstance:
        options = options or SpawnOptions()
        async with self._lock_for(name):
            if name in self._instances:
                raise DuplicateNameError(f'Browser "{name}" already exists')
            profile = options.profile or (
                SHARED_PROFILE if not self._instances else ISOLATED_PROFILE
            )
            profile_dir = self.profile_dir(name, profile)
            headless = self._headless if options.headless is None else options.headless
            launched = await self._launcher.launch(name, profile_dir, headless)
            instance = BrowserInstance(
                name,
                launched,
                self._capability_factory(name),
                profile_dir=profile_dir,
            )
            self._instances[name] = instance
            if self._active_name is None:
                self._active_name = name
            LOGGER.info("Spawned browser %s (%s profile)", name, profile)

        if options.start_url:
            page = instance.active_tab()
            try:
                await page.goto(options.start_url, wait_until="domcontentloaded")
            except Exception as exc:
                LOGGER.warning(
                    "Browser %s could not open %s: %s", name, options.start_url, exc
                )
        return instance

    async def despawn(self, name: str) -> None:
        async with self._lock_for(name):
            instance = self._instances.get(name)
            if instance is None:
                raise NotFoundError(f'Browser "{name}" not found')
            await instance.close()
            del self._instances[name]
            if self._active_name == name:
                self._active_name = next(iter(self._instances), None)
            LOGGER.info("Despawned browser %s", name)

    def get(self, name: str) -> BrowserInstance:
        try:
            return self._instances[name]
        except KeyError:
            raise NotFoundError(f'Browser "{name}" not found') from None

    def active(self) -> BrowserInstance:
        if self._active_name is None or self._active_name not in self._instances:
            raise NoActiveInstanceError("No active browser. Spawn one first.")
        return self._instances[self._active_name]

    @property
    def active_name(self) -> Optional[str]:
        return self._active_name

    def set_active(self, name: str) -> None:
        if name not in self._instances:
            raise NotFoundError(f'Browser "{name}" not found')
        self._active_name = name

    def list(self) -> list[BrowserInstance]:
        return list(self._instances.values())

    def has(self, name: str) -> bool:
        return name in self._instances

    def size(self) -> int:
        return len(self._instances)

    async def route(self, command: ParsedCommand) -> BrowserInstance:
        """Return the instance a command targets, switching tabs if requested."""

        instance = self.get(command.target_browser) if command.target_browser else self.active()
        if command.target_tab is not None:
            await instance.switch_tab(command.target_tab)
        return instance

    async def close_all(self) -> None:
        for instance in list(self._instances.values()):
            await instance.close()
        self._instances.clear()
        self._active_name = None
        await self._launcher.close()

    def format_list(self) -> str:
        lines: list[str] = []
        for instance in self._instances.values():
            marker = " *" if instance.name == self._active_name else "  "
            tabs = instance.tabs
            plural = "" if len(tabs) == 1 else "s"
            lines.append(f"{marker} {instance.name} ({len(tabs)} tab{plural})")
            active = instance.active_index
            for index, page in enumerate(tabs):
                url = page.url or ""
                short = url if len(url) <= 60 else url[:57] + "..."
                arrow = "→" if index == active else " "
                lines.append(f"    {arrow} [{index}] {short}")
        return "\n".join(lines)

    def _lock_for(self, name: str) -> asyncio.Lock:
        return self._locks.setdefault(name, asyncio.Lock())
