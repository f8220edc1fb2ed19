"""A single named browser: its process, automation context and tabs."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Any, Iterator, Optional, Union
from urllib.parse import urlparse

from ..errors import LastTabError, NoMatchError, OutOfRangeError
from ..notifications.base import OutputSink
from .base import BrowserCapability
from .launcher import LaunchedBrowser

LOGGER = logging.getLogger(__name__)


class BrowserInstance:
    """Handle for one browser process and the tabs of its context.

    Tab mutations are serialized per instance; reads never wait on the lock.
    """

    def __init__(
        self,
        name: str,
        launched: LaunchedBrowser,
        capability: BrowserCapability,
        profile_dir: Optional[Path] = None,
    ) -> None:
        self.name = name
        self.profile_dir = profile_dir
        self.capability = capability
        self._launched = launched
        self._active_index = 0
        self._sink: Optional[OutputSink] = None
        self._lock = asyncio.Lock()
        capability.on_step = self._log_step
        pages = self.tabs
        if pages:
            capability.use_page(pages[0])

    @property
    def context(self) -> Any:
        return self._launched.context

    @property
    def process(self) -> Any:
        return self._launched.process

    @property
    def tabs(self) -> list[Any]:
        return list(self._launched.context.pages)

    @property
    def active_index(self) -> int:
        count = len(self.tabs)
        if self._active_index >= count:
            self._active_index = max(0, count - 1)
        return self._active_index

    def active_tab(self) -> Any:
        pages = self.tabs
        return pages[self.active_index] if pages else None

    @property
    def url(self) -> str:
        page = self.active_tab()
        if page is None:
            return "about:blank"
        return page.url or "about:blank"

    @property
    def domain(self) -> str:
        return urlparse(self.url).hostname or "unknown"

    @property
    def sink(self) -> Optional[OutputSink]:
        return self._sink

    @contextlib.contextmanager
    def attach_sink(self, sink: OutputSink) -> Iterator[OutputSink]:
        """Route capability progress to ``sink`` for the duration of a command."""

        previous = self._sink
        self._sink = sink
        try:
            yield sink
        finally:
            self._sink = previous

    async def new_tab(self, url: Optional[str] = None) -> Any:
        """Open a tab and make it active; a failed navigation leaves it open."""

        async with self._lock:
            page = await self._launched.context.new_page()
            self._active_index = len(self.tabs) - 1
            LOGGER.debug("Browser %s opened tab %d", self.name, self._active_index)
            if url:
                await page.goto(url, wait_until="domcontentloaded")
            return page

    async def switch_tab(self, target: Union[int, str]) -> Any:
        async with self._lock:
            pages = self.tabs
            if isinstance(target, int):
                if target < 0 or target >= len(pages):
                    raise OutOfRangeError(
                        f"Tab index {target} out of range (0..{len(pages) - 1})"
                    )
                self._active_index = target
            else:
                needle = target.lower()
                for index, page in enumerate(pages):
                    if needle in (page.url or "").lower():
                        self._active_index = index
                        break
                else:
                    raise NoMatchError(f'No tab matching "{target}"')
            LOGGER.debug("Browser %s switched to tab %d", self.name, self._active_index)
            return pages[self._active_index]

    async def close_tab(self, index: Optional[int] = None) -> None:
        async with self._lock:
            pages = self.tabs
            target = self._active_index if index is None else index
            if target < 0 or target >= len(pages):
                raise OutOfRangeError(f"Tab index {target} out of range")
            if len(pages) <= 1:
                raise LastTabError("Cannot close the last tab")
            await pages[target].close()
            remaining = len(self.tabs)
            if self._active_index >= remaining:
                self._active_index = max(0, remaining - 1)
            LOGGER.debug("Browser %s closed tab %d", self.name, target)

    async def focus_active_tab(self) -> None:
        """Bring the active tab forward and bind it as the capability's page."""

        page = self.active_tab()
        if page is None:
            return
        try:
            await page.bring_to_front()
        except Exception as exc:
            LOGGER.debug("bring_to_front failed for %s: %s", self.name, exc)
        try:
            self.capability.use_page(page)
        except Exception as exc:
            LOGGER.debug("Could not bind active page for %s: %s", self.name, exc)

    async def close(self) -> None:
        """Close the context, then kill the process. Never raises."""

        try:
            browser = self._launched.browser
            if browser is not None:
                await browser.close()
            else:
                await self._launched.context.close()
        except Exception as exc:
            LOGGER.debug("Closing context of %s failed: %s", self.name, exc)
        try:
            self._launched.process.kill()
        except Exception as exc:
            LOGGER.debug("Killing process of %s failed: %s", self.name, exc)

    def _log_step(self, line: str) -> None:
        prefix = f"[{self.name}] " if self.name != "main" else ""
        if self._sink is not None:
            self._sink.log(f"{prefix}{line}")
        else:
            LOGGER.info("%s%s", prefix, line)
