"""Parsing of shell input into commands."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Union

from .models import CommandMode, ParsedCommand

PREFIX_MAP: tuple[tuple[str, CommandMode], ...] = (
    ("e:", CommandMode.EXTRACT),
    ("a:", CommandMode.ACT),
    ("t:", CommandMode.TASK),
    ("o:", CommandMode.OBSERVE),
    ("s:", CommandMode.SEARCH),
    ("?:", CommandMode.ASK),
    ("g:", CommandMode.GOTO),
    ("l:", CommandMode.LEARN),
    ("c:", CommandMode.CHAT),
    ("test:", CommandMode.TEST),
)

_TARGET = re.compile(r"^@(\S+)\s+(.+)$", re.DOTALL)
_SPAWN = re.compile(r"^browser[:\s]spawn\s+(\S+)(\s+--isolated)?$", re.IGNORECASE)
_KILL = re.compile(r"^browser[:\s]kill\s+(\S+)$", re.IGNORECASE)
_SWITCH = re.compile(r"^browser[:\s]switch\s+(\S+)$", re.IGNORECASE)
_TAB_NEW = re.compile(r"^tab[:\s]new(?:\s+(.+))?$", re.IGNORECASE)
_TAB_SWITCH = re.compile(r"^tab[:\s]switch\s+(.+)$", re.IGNORECASE)
_TAB_CLOSE = re.compile(r"^tab[:\s]close(?:\s+(\d+))?$", re.IGNORECASE)


@dataclass
class ManagementCommand:
    """A browser or tab management command handled outside mode dispatch."""

    kind: str
    name: Optional[str] = None
    isolated: bool = False
    url: Optional[str] = None
    target: Optional[Union[int, str]] = None
    index: Optional[int] = None


def parse_tab_target(value: str) -> Union[int, str]:
    """``"2"`` becomes the index 2; anything else is a URL fragment."""

    value = value.strip()
    if re.fullmatch(r"\d+", value) and str(int(value)) == value:
        return int(value)
    return value


def parse_management_command(text: str) -> Optional[ManagementCommand]:
    trimmed = text.strip()
    lower = trimmed.lower()

    if lower in {"browser", "browsers"}:
        return ManagementCommand(kind="browser_list")
    match = _SPAWN.match(trimmed)
    if match:
        return ManagementCommand(
            kind="browser_spawn", name=match.group(1), isolated=bool(match.group(2))
        )
    match = _KILL.match(trimmed)
    if match:
        return ManagementCommand(kind="browser_kill", name=match.group(1))
    match = _SWITCH.match(trimmed)
    if match:
        return ManagementCommand(kind="browser_switch", name=match.group(1))

    if lower in {"tab", "tabs"}:
        return ManagementCommand(kind="tab_list")
    match = _TAB_NEW.match(trimmed)
    if match:
        url = (match.group(1) or "").strip()
        return ManagementCommand(kind="tab_new", url=url or None)
    match = _TAB_SWITCH.match(trimmed)
    if match:
        return ManagementCommand(kind="tab_switch", target=parse_tab_target(match.group(1)))
    match = _TAB_CLOSE.match(trimmed)
    if match:
        index = int(match.group(1)) if match.group(1) is not None else None
        return ManagementCommand(kind="tab_close", index=index)
    return None


def parse_command(text: str) -> ParsedCommand:
    """Turn shell input into a :class:`ParsedCommand`.

    An ``@name`` or ``@name:tab`` prefix selects the browser (and tab) the
    command runs in. Without a mode prefix a bare URL navigates and
    anything else is routed automatically.
    """

    trimmed = text.strip()
    target_browser: Optional[str] = None
    target_tab: Optional[Union[int, str]] = None

    match = _TARGET.match(trimmed)
    if match:
        target, trimmed = match.group(1), match.group(2).strip()
        if ":" in target:
            target_browser, tab = target.split(":", 1)
            target_tab = parse_tab_target(tab)
        else:
            target_browser = target

    def build(mode: CommandMode, instruction: str) -> ParsedCommand:
        return ParsedCommand(
            mode=mode,
            instruction=instruction,
            raw=trimmed,
            target_browser=target_browser,
            target_tab=target_tab,
        )

    lower = trimmed.lower()
    for prefix, mode in PREFIX_MAP:
        if lower.startswith(prefix):
            return build(mode, trimmed[len(prefix) :].strip())
    if lower in {"l", "learn"}:
        return build(CommandMode.LEARN, "")
    if trimmed.startswith(("http://", "https://")):
        return build(CommandMode.GOTO, trimmed)
    return build(CommandMode.AUTO, trimmed)


HELP_TEXT = """\
Commands:
  e: <prompt>    Extract information from the current page
  a: <prompt>    Perform a single action (click, type, etc.)
  t: <prompt>    Execute a complex, multi-step task
  o: <prompt>    Observe what's available on the page
  s: <query>     Search the web using the browser
  ?: <question>  Ask the agent a question about the page
  c: <message>   Chat with the agent (uses site knowledge)
  g: <url>       Navigate to a URL (or just paste a URL)
  l / l: [focus] Learn the current website (pages, forms, flows)
  test: <ticket> Run a QA test: plan steps, execute, verify, report
  (no prefix)    The agent decides the best approach

  @name <cmd>      Target a specific browser (e.g. @userA t: go to settings)
  @name:tab <cmd>  Target a browser and tab (e.g. @userA:1 e: extract data)
                   Tab can be an index (0, 1, ...) or a URL fragment

Browser management:
  browser                            List all browsers and their tabs
  browser:spawn <name> [--isolated]  Launch a new browser instance
  browser:kill <name>                Close a browser instance
  browser:switch <name>              Switch the active browser

Tab management:
  tab                          List tabs in the active browser
  tab:new [url]                Open a new tab
  tab:switch <index or url>    Switch the active tab
  tab:close [index]            Close a tab

  help          Show this help text
  cost          Show the session cost summary
  history       Show recent task history
  knowledge     Show what the agent knows about this site
  quit / exit   Close all browsers and exit"""


def help_text() -> str:
    return HELP_TEXT
