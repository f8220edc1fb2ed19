import asyncio
import sys
from pathlib import Path

import pytest

from browser_qa.browser.launcher import build_chrome_args, find_chromium, launch_chrome
from browser_qa.config import BrowserConfig
from browser_qa.errors import LaunchError

ANNOUNCE = (
    "import sys, time\n"
    "sys.stderr.write('starting up\\n')\n"
    "sys.stderr.write('DevTools listening on ws://127.0.0.1:9222/devtools/browser/abc\\n')\n"
    "sys.stderr.flush()\n"
    "time.sleep(30)\n"
)
CRASH = "import sys\nsys.stderr.write('profile directory is locked\\n')\nsys.exit(3)\n"
SILENT = "import time\ntime.sleep(30)\n"


def test_build_chrome_args(tmp_path):
    config = BrowserConfig(viewport_width=1024, viewport_height=768, extra_args=["--lang=en"])
    args = build_chrome_args(config, tmp_path / "profile", headless=True)
    assert "--remote-debugging-port=0" in args
    assert "--window-size=1024,768" in args
    assert f"--user-data-dir={tmp_path / 'profile'}" in args
    assert args[-2:] == ["--lang=en", "--headless=new"]
    assert "--headless=new" not in build_chrome_args(config, tmp_path, headless=False)


def test_find_chromium_explicit_path(tmp_path):
    binary = tmp_path / "chrome"
    binary.write_text("")
    assert find_chromium(binary) == binary
    with pytest.raises(LaunchError, match="not found"):
        find_chromium(tmp_path / "missing")


def test_launch_reads_devtools_endpoint():
    async def scenario():
        chrome = await launch_chrome([sys.executable, "-c", ANNOUNCE], [], timeout=10)
        try:
            assert chrome.ws_url == "ws://127.0.0.1:9222/devtools/browser/abc"
            assert chrome.process.returncode is None
        finally:
            chrome.kill()
            await chrome.process.wait()
        chrome.kill()

    asyncio.run(scenario())


def test_early_exit_carries_stderr():
    async def scenario():
        await launch_chrome([sys.executable, "-c", CRASH], [], timeout=10)

    with pytest.raises(LaunchError) as excinfo:
        asyncio.run(scenario())
    assert str(excinfo.value).startswith("Chrome exited with code 3")
    assert "profile directory is locked" in excinfo.value.diagnostics


def test_launch_timeout():
    async def scenario():
        await launch_chrome([sys.executable, "-c", SILENT], [], timeout=0.5)

    with pytest.raises(LaunchError, match="timed out"):
        asyncio.run(scenario())


def test_missing_executable():
    async def scenario():
        await launch_chrome(str(Path("/nonexistent/chrome")), [], timeout=1)

    with pytest.raises(LaunchError, match="Could not start browser"):
        asyncio.run(scenario())
