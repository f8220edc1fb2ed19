"""Launch Chromium processes and attach Playwright to them over CDP."""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Playwright, async_playwright

from ..config import BrowserConfig
from ..errors import LaunchError
from ..orchestrator.control import fire_and_forget

LOGGER = logging.getLogger(__name__)

DEVTOOLS_PATTERN = re.compile(r"DevTools listening on (ws://\S+)")


@dataclass
class ChromeProcess:
    """A running Chromium process and its DevTools endpoint."""

    process: asyncio.subprocess.Process
    ws_url: str

    def kill(self) -> None:
        """Terminate the process; never raises."""

        if self.process.returncode is not None:
            return
        try:
            self.process.kill()
        except ProcessLookupError:
            LOGGER.debug("Chromium process %s already exited", self.process.pid)


@dataclass
class LaunchedBrowser:
    """Everything a browser instance owns after a successful launch."""

    process: Any
    context: Any
    browser: Any = None
    ws_url: str = ""


class Launcher(Protocol):
    async def launch(self, name: str, profile_dir: Path, headless: bool) -> LaunchedBrowser:
        ...

    async def close(self) -> None:
        ...


def find_chromium(executable_path: Optional[Path] = None) -> Path:
    """Locate the Chromium binary, preferring an explicit path."""

    if executable_path is not None:
        if not executable_path.exists():
            raise LaunchError(f"Chromium executable not found: {executable_path}")
        return executable_path
    cache_dir = Path(
        os.environ.get("PLAYWRIGHT_BROWSERS_PATH")
        or Path.home() / ".cache" / "ms-playwright"
    )
    candidates = sorted(cache_dir.glob("chromium-*"), reverse=True) if cache_dir.exists() else []
    for directory in candidates:
        for relative in ("chrome-linux64/chrome", "chrome-linux/chrome"):
            binary = directory / relative
            if binary.exists():
                return binary
    raise LaunchError(
        "Playwright Chromium not found",
        "Run: playwright install chromium",
    )


def build_chrome_args(config: BrowserConfig, profile_dir: Path, headless: bool) -> list[str]:
    args = [
        "--no-sandbox",
        "--disable-dev-shm-usage",
        "--remote-debugging-port=0",
        "--remote-allow-origins=*",
        "--no-first-run",
        "--no-default-browser-check",
        f"--window-size={config.viewport_width},{config.viewport_height}",
        f"--user-data-dir={profile_dir}",
        "--disable-blink-features=AutomationControlled",
        "--disable-infobars",
        "--disable-background-timer-throttling",
        "--disable-backgrounding-occluded-windows",
        "--disable-renderer-backgrounding",
        *config.extra_args,
    ]
    if headless:
        args.append("--headless=new")
    return args


async def launch_chrome(
    executable: Sequence[str] | str,
    args: Sequence[str],
    *,
    timeout: float = 15.0,
    env: Optional[dict[str, str]] = None,
) -> ChromeProcess:
    """Start Chromium and wait for it to print its DevTools endpoint.

    ``LaunchError`` carries whatever the process wrote to stderr when the
    endpoint does not appear within ``timeout`` seconds or the process exits
    first.
    """

    command = [executable] if isinstance(executable, str) else list(executable)
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
    except OSError as exc:
        raise LaunchError(f"Could not start browser: {exc}") from exc

    stderr = process.stderr
    if stderr is None:
        _terminate(process)
        raise LaunchError("Could not start browser: stderr is not captured")
    captured: list[str] = []

    async def wait_for_endpoint() -> Optional[str]:
        while True:
            line = await stderr.readline()
            if not line:
                return None
            text = line.decode("utf-8", errors="replace")
            captured.append(text)
            match = DEVTOOLS_PATTERN.search(text)
            if match:
                return match.group(1)

    try:
        ws_url = await asyncio.wait_for(wait_for_endpoint(), timeout=timeout)
    except asyncio.TimeoutError:
        _terminate(process)
        raise LaunchError("Chrome launch timed out", "".join(captured)) from None

    if ws_url is None:
        code = await process.wait()
        raise LaunchError(f"Chrome exited with code {code}", "".join(captured))

    # Chromium keeps writing to stderr; an undrained pipe would eventually block it.
    fire_and_forget(_drain(stderr), name=f"drain-stderr-{process.pid}")
    LOGGER.debug("Chromium %s listening on %s", process.pid, ws_url)
    return ChromeProcess(process=process, ws_url=ws_url)


class ChromeLauncher:
    """Launches Chromium per instance and connects a shared Playwright driver."""

    def __init__(self, config: BrowserConfig) -> None:
        self._config = config
        self._playwright: Optional[Playwright] = None
        self._playwright_lock = asyncio.Lock()

    async def launch(self, name: str, profile_dir: Path, headless: bool) -> LaunchedBrowser:
        profile_dir.mkdir(parents=True, exist_ok=True)
        executable = find_chromium(self._config.executable_path)
        env = dict(os.environ)
        env.setdefault("DISPLAY", ":0")
        LOGGER.debug("Launching browser %s with profile %s", name, profile_dir)
        chrome = await launch_chrome(
            str(executable),
            build_chrome_args(self._config, profile_dir, headless),
            timeout=self._config.launch_timeout,
            env=env,
        )
        playwright = await self._driver()
        try:
            browser = await playwright.chromium.connect_over_cdp(chrome.ws_url)
            context = browser.contexts[0] if browser.contexts else await browser.new_context()
            if not context.pages:
                await context.new_page()
        except PlaywrightError as exc:
            chrome.kill()
            raise LaunchError(f"Could not attach to browser {name}: {exc}") from exc
        return LaunchedBrowser(
            process=chrome, context=context, browser=browser, ws_url=chrome.ws_url
        )

    async def close(self) -> None:
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def _driver(self) -> Playwright:
        async with self._playwright_lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            return self._playwright


async def _drain(stream: Optional[asyncio.StreamReader]) -> None:
    if stream is None:
        return
    while await stream.readline():
        pass


def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
