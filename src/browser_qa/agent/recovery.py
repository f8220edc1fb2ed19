"""Detect agent runs that got stuck on a click and retry the click by other means."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence

from ..browser.base import BrowserCapability
from ..errors import AbortedError
from ..orchestrator.control import CancellationToken, race_cancellation, raise_if_cancelled

LOGGER = logging.getLogger(__name__)

STUCK_PATTERNS = (
    re.compile(
        r"tab.*(?:didn't|did not|doesn't|does not|won't|could not|couldn't).*(?:respond|work|change|switch|open)",
        re.IGNORECASE,
    ),
    re.compile(r"click.*(?:didn't|did not|doesn't|does not).*(?:work|change|anything|respond)", re.IGNORECASE),
    re.compile(r"(?:still|remains?).*(?:same|selected|unchanged|visible)", re.IGNORECASE),
    re.compile(
        r"(?:unable|failed|couldn't|could not).*(?:click|select|activate|switch|open).*(?:tab|button|link)",
        re.IGNORECASE,
    ),
    re.compile(r"(?:content|page|view).*(?:didn't|did not).*(?:change|update|switch)", re.IGNORECASE),
    re.compile(r"not (?:easily )?clickable|inaccessible", re.IGNORECASE),
)

TARGET_PATTERNS = (
    re.compile(r"[\"']([^\"'\n]{3,50})[\"']\s*tab", re.IGNORECASE),
    re.compile(
        r"(?:click|select|activate|switch to|open)\s+(?:on\s+)?(?:the\s+)?[\"']([^\"'\n]{3,50})[\"']",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:click|select|activate|switch to|open)\s+(?:on\s+)?(?:the\s+)?(\S+(?:\s+\S+){0,3})\s+(?:tab|button|link)",
        re.IGNORECASE,
    ),
)

# Clicks the shortest interactive-looking element containing the label by
# dispatching the full pointer and mouse event sequence.
RAW_EVENT_CLICK_SCRIPT = """
(txt) => {
  const needle = txt.toLowerCase();
  const walker = document.createTreeWalker(document.body, NodeFilter.SHOW_ELEMENT, null);
  let node = walker.currentNode;
  const candidates = [];
  while (node) {
    const text = (node.textContent || '').trim();
    if (
      text.toLowerCase().includes(needle) &&
      (node.tagName === 'BUTTON' ||
        node.tagName === 'A' ||
        node.getAttribute('role') === 'tab' ||
        node.getAttribute('data-tab') !== null ||
        node.classList.contains('tab') ||
        node.closest("[role='tablist']"))
    ) {
      candidates.push(node);
    }
    node = walker.nextNode();
  }
  candidates.sort((a, b) => (a.textContent || '').length - (b.textContent || '').length);
  const el = candidates[0];
  if (!el) return false;
  const rect = el.getBoundingClientRect();
  const opts = { bubbles: true, cancelable: true, clientX: rect.x + rect.width / 2, clientY: rect.y + rect.height / 2 };
  el.dispatchEvent(new PointerEvent('pointerdown', opts));
  el.dispatchEvent(new MouseEvent('mousedown', opts));
  el.dispatchEvent(new PointerEvent('pointerup', opts));
  el.dispatchEvent(new MouseEvent('mouseup', opts));
  el.dispatchEvent(new MouseEvent('click', opts));
  if (el instanceof HTMLElement) el.focus();
  return true;
}
"""

# Calls .click() on the first leaf element whose whole text equals the label.
EXACT_TEXT_CLICK_SCRIPT = """
(txt) => {
  const needle = txt.toLowerCase();
  for (const el of document.querySelectorAll('*')) {
    if (
      el.children.length === 0 &&
      (el.textContent || '').trim().toLowerCase() === needle &&
      el instanceof HTMLElement
    ) {
      el.click();
      return true;
    }
  }
  return false;
}
"""


class StuckClickClassifier:
    """Decides whether an agent's completion message describes a click that did nothing."""

    def __init__(self, patterns: Sequence[re.Pattern[str]] = STUCK_PATTERNS) -> None:
        self._patterns = tuple(patterns)

    def is_stuck(self, message: str) -> bool:
        return any(pattern.search(message) for pattern in self._patterns)


class ClickTargetExtractor:
    """Pulls the label of the element the agent failed to click out of its message."""

    def __init__(self, patterns: Sequence[re.Pattern[str]] = TARGET_PATTERNS) -> None:
        self._patterns = tuple(patterns)

    def extract(self, message: str) -> Optional[str]:
        for pattern in self._patterns:
            match = pattern.search(message)
            if match and match.group(1):
                return match.group(1).strip()
        return None


@dataclass
class RecoveryAttempt:
    strategy: str
    success: bool
    error: Optional[str] = None


@dataclass
class RecoveryOutcome:
    """What the cascade tried for one label and which strategy, if any, worked."""

    target: str
    attempts: list[RecoveryAttempt] = field(default_factory=list)
    strategy: Optional[str] = None
    message: str = ""
    actions: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.strategy is not None


class RecoveryCascade:
    """Retries a stuck click through four strategies, stopping at the first success.

    Every attempt is isolated: an exception counts as a failed attempt. Only
    cancellation escapes.
    """

    def __init__(
        self,
        capability: BrowserCapability,
        *,
        classifier: Optional[StuckClickClassifier] = None,
        extractor: Optional[ClickTargetExtractor] = None,
        settle_ms: int = 1000,
    ) -> None:
        self._capability = capability
        self.classifier = classifier or StuckClickClassifier()
        self.extractor = extractor or ClickTargetExtractor()
        self._settle_ms = settle_ms

    async def recover(
        self,
        page: Any,
        agent_message: str,
        token: Optional[CancellationToken] = None,
    ) -> Optional[RecoveryOutcome]:
        """Return ``None`` when there is nothing to recover, else the outcome."""

        if not self.classifier.is_stuck(agent_message):
            return None
        target = self.extractor.extract(agent_message)
        if not target:
            LOGGER.debug("Stuck click detected but no label found in %r", agent_message)
            return None

        outcome = RecoveryOutcome(target=target)
        strategies: list[tuple[str, str, Callable[[], Awaitable[bool]], str]] = [
            (
                "locator",
                "locator-retry",
                lambda: self._click_by_locator(page, target),
                f'[Retry: locator] Clicked "{target}" via Playwright locator.',
            ),
            (
                "dom-events",
                "dom-retry",
                lambda: self._evaluate_click(page, RAW_EVENT_CLICK_SCRIPT, target),
                f'[Retry: DOM events] Dispatched click events on "{target}" via DOM.',
            ),
            (
                "act",
                "act-retry",
                lambda: self._click_by_act(page, target),
                f'[Retry: act()] Clicked "{target}" via the act primitive.',
            ),
            (
                "text-click",
                "textclick-retry",
                lambda: self._evaluate_click(page, EXACT_TEXT_CLICK_SCRIPT, target),
                f'[Retry: direct .click()] Called .click() on exact-text element "{target}".',
            ),
        ]
        for name, action_type, attempt, message in strategies:
            raise_if_cancelled(token)
            try:
                clicked = await race_cancellation(attempt(), token)
            except AbortedError:
                raise
            except Exception as exc:
                LOGGER.debug("Recovery strategy %s failed for %r: %s", name, target, exc)
                outcome.attempts.append(RecoveryAttempt(name, False, str(exc)))
                continue
            outcome.attempts.append(RecoveryAttempt(name, bool(clicked)))
            if clicked:
                outcome.strategy = name
                outcome.message = message
                outcome.actions = [{"type": action_type, "target": target}]
                LOGGER.info("Recovered stuck click on %r with %s", target, name)
                return outcome
        LOGGER.info("No recovery strategy could click %r", target)
        return outcome

    async def _click_by_locator(self, page: Any, target: str) -> bool:
        locator = page.locator(
            f'[role="tab"]:has-text("{target}"), button:has-text("{target}"), '
            f'[data-tab]:has-text("{target}"), a:has-text("{target}")'
        )
        if await locator.count() == 0:
            return False
        await locator.first.click()
        await page.wait_for_timeout(self._settle_ms)
        return True

    async def _evaluate_click(self, page: Any, script: str, target: str) -> bool:
        clicked = await page.evaluate(script, target)
        if not clicked:
            return False
        await page.wait_for_timeout(self._settle_ms)
        return True

    async def _click_by_act(self, page: Any, target: str) -> bool:
        result = await self._capability.act(f'Click on "{target}"')
        if not result.success:
            return False
        await page.wait_for_timeout(self._settle_ms)
        return True
