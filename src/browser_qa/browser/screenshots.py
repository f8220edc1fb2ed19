"""Screenshot capture for test evidence."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

LOGGER = logging.getLogger(__name__)


def screenshot_path(directory: Path, label: str, now: Optional[datetime] = None) -> Path:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    safe = re.sub(r"[^a-zA-Z0-9_-]", "_", label)[:60]
    return directory / f"{stamp}_{safe}.png"


async def capture_screenshot(page: Any, label: str, directory: Path) -> str:
    """Write a viewport PNG of ``page`` and return its path."""

    if page is None:
        raise RuntimeError("No active page for screenshot")
    directory.mkdir(parents=True, exist_ok=True)
    path = screenshot_path(directory, label)
    await page.screenshot(path=str(path), full_page=False)
    return str(path)


async def try_screenshot(page: Any, label: str, directory: Path) -> Optional[str]:
    """Like :func:`capture_screenshot` but returns ``None`` on failure."""

    try:
        return await capture_screenshot(page, label, directory)
    except Exception as exc:
        LOGGER.debug("Screenshot %s failed: %s", label, exc)
        return None
