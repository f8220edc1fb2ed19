"""Conversational replies and intent classification for chat/auto commands."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional, Sequence

from ..llm.base import ConversationTurn, LLMClient
from ..models import Learning, SessionEntry, SiteKnowledge, UsageData
from ..orchestrator.prompt_builder import PromptBuilder

LOGGER = logging.getLogger(__name__)

CHAT = "chat"
VALID_ACTIONS = (
    "chat",
    "task",
    "act",
    "goto",
    "learn",
    "extract",
    "observe",
    "spawn_browser",
    "switch_browser",
)
HISTORY_LIMIT = 40
HISTORY_KEEP = 30
CONTEXT_HINT_TURNS = 6

CHAT_IDENTITY = (
    "You are a QA engineer working in a web browser on the user's behalf. "
    "Answer briefly and concretely.\n"
    "Your site knowledge and learnings below persist across sessions. When the user asks "
    "a factual question about a site you have tested, answer from that knowledge first and "
    "only suggest browser work when the answer is not there.\n"
    "You can also give QA advice and help plan test scenarios."
)

CLASSIFY_PROMPT = """\
Classify the user's message. Respond with EXACTLY one short JSON object (no markdown, no backticks).

Actions:
  {"action": "chat"} for pure questions, greetings, opinions or advice requests
  {"action": "task", "instruction": "..."} for complex multi-step browser work
  {"action": "act", "instruction": "..."} for a single browser action (click, toggle, scroll)
  {"action": "goto", "instruction": "https://..."} to navigate to a URL
  {"action": "learn", "instruction": "..."} to explore and learn a page
  {"action": "extract", "instruction": "..."} to read live data from the page
  {"action": "spawn_browser", "instruction": "<name>", "options": {"isolated": true}} to open a new browser
  {"action": "switch_browser", "instruction": "<name>"} to switch to an existing browser

Rules:
- Any message that asks to DO, CHANGE, CLICK, SWITCH, TRY, OPEN, SET, TOGGLE or NAVIGATE is a browser action.
- "open a new browser", "spawn browser" mean spawn_browser.
- "switch to browser X" means switch_browser, only if a browser with that name exists.
- Questions answerable from site knowledge or learnings are "chat".
- Only use "extract" when the user wants LIVE data from the current page.
- Write browser instructions as if telling a browser agent, and omit the message field for them.
- For "try again" or "retry", infer the instruction from the MOST RECENT task only."""


@dataclass
class ChatDecision:
    """What the chat agent decided to do with a message."""

    action: str
    message: Optional[str] = None
    instruction: Optional[str] = None
    options: dict[str, Any] = field(default_factory=dict)
    usage: UsageData = field(default_factory=UsageData)

    @property
    def is_handoff(self) -> bool:
        return self.action != CHAT


class ChatHistory:
    """Rolling user/assistant transcript shared by chat calls.

    Turns alternate strictly and the transcript always starts with a user
    turn; consecutive turns of the same role are merged.
    """

    def __init__(self, limit: int = HISTORY_LIMIT, keep: int = HISTORY_KEEP) -> None:
        self._limit = limit
        self._keep = keep
        self._turns: list[ConversationTurn] = []

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def turns(self) -> list[ConversationTurn]:
        return list(self._turns)

    def reset(self) -> None:
        self._turns = []

    def add(self, role: str, text: str) -> None:
        self._turns.append(ConversationTurn(role=role, content=text))
        if len(self._turns) > self._limit:
            self._turns = self._turns[-self._keep :]
        self._sanitize()

    def inject(self, entries: Sequence[SessionEntry], limit: int = 20) -> None:
        """Seed the transcript from persisted session entries."""

        for entry in list(entries)[-limit:]:
            role = "user" if entry.role == "user" else "assistant"
            self._turns.append(ConversationTurn(role=role, content=entry.content))
        self._sanitize()

    def context_hint(self, count: int = CONTEXT_HINT_TURNS) -> str:
        lines = []
        for turn in self._turns[-count:]:
            speaker = "User" if turn.role == "user" else "Agent"
            lines.append(f"{speaker}: {turn.content[:150]}")
        return "\n".join(lines)

    def _sanitize(self) -> None:
        while self._turns and self._turns[0].role != "user":
            self._turns.pop(0)
        merged: list[ConversationTurn] = []
        for turn in self._turns:
            if merged and merged[-1].role == turn.role:
                merged[-1] = ConversationTurn(
                    role=turn.role, content=f"{merged[-1].content}\n{turn.content}"
                )
            else:
                merged.append(turn)
        self._turns = merged


def parse_action_json(raw: str) -> Optional[ChatDecision]:
    """Read a classifier decision, tolerating fences, raw newlines and prose."""

    cleaned = re.sub(r"^```(?:json)?\s*", "", raw.strip(), flags=re.IGNORECASE)
    cleaned = re.sub(r"\s*```$", "", cleaned).strip()

    escaped = re.sub(
        r'("(?:message|instruction)":\s*")([\s\S]*?)("\s*[,}])',
        lambda match: match.group(1)
        + match.group(2).replace("\n", "\\n").replace("\r", "\\r")
        + match.group(3),
        cleaned,
    )
    for candidate in (cleaned, escaped):
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict) and data.get("action") in VALID_ACTIONS:
            options = data.get("options")
            return ChatDecision(
                action=data["action"],
                message=data["message"] if isinstance(data.get("message"), str) else None,
                instruction=(
                    data["instruction"] if isinstance(data.get("instruction"), str) else None
                ),
                options=options if isinstance(options, dict) else {},
            )

    action = re.search(r'"action"\s*:\s*"(\w+)"', cleaned)
    if action is None or action.group(1) not in VALID_ACTIONS:
        return None
    message = re.search(r'"message"\s*:\s*"([\s\S]*?)"\s*[,}]', cleaned)
    instruction = re.search(r'"instruction"\s*:\s*"([\s\S]*?)"\s*[,}]', cleaned)
    return ChatDecision(
        action=action.group(1),
        message=message.group(1).replace("\\n", "\n") if message else None,
        instruction=instruction.group(1).replace("\\n", "\n") if instruction else None,
    )


def handoff_summary_prompt(action: str, instruction: str, success: bool, result: str) -> str:
    status = "completed" if success else "failed"
    return (
        f"[System: you just executed a {action} action for the user. "
        f'The instruction was: "{instruction}". '
        f"Result ({status}): {result[:500]}. "
        "Give a brief, friendly summary of what happened and ask if they need anything else.]"
    )


class ChatAgent:
    """Talks to the utility model on behalf of chat and auto commands."""

    def __init__(
        self,
        llm: LLMClient,
        *,
        history: Optional[ChatHistory] = None,
        prompt_builder: Optional[PromptBuilder] = None,
    ) -> None:
        self._llm = llm
        self.history = history or ChatHistory()
        self._prompt_builder = prompt_builder or PromptBuilder()

    def system_text(
        self,
        current_url: str,
        knowledge: Optional[SiteKnowledge],
        learnings: Sequence[Learning],
    ) -> str:
        context = self._prompt_builder.build_system_prompt(
            knowledge, learnings, include_base=False
        )
        return "\n\n".join(
            [
                f"{CHAT_IDENTITY}\nToday's date is {date.today().isoformat()}.",
                f"The browser is currently on: {current_url}",
                context or "You haven't learned any sites yet.",
            ]
        )

    async def reply(
        self,
        message: str,
        *,
        current_url: str,
        knowledge: Optional[SiteKnowledge] = None,
        learnings: Sequence[Learning] = (),
    ) -> ChatDecision:
        """Plain conversational reply without intent detection."""

        response = await self._llm.complete(
            message,
            system=self.system_text(current_url, knowledge, learnings),
            history=self.history.turns,
        )
        self.history.add("user", message)
        self.history.add("assistant", response.text)
        return ChatDecision(action=CHAT, message=response.text, usage=response.usage)

    async def route(
        self,
        message: str,
        *,
        current_url: str,
        knowledge: Optional[SiteKnowledge] = None,
        learnings: Sequence[Learning] = (),
        browsers: Sequence[str] = (),
        active_browser: Optional[str] = None,
    ) -> ChatDecision:
        """Classify ``message``; reply directly when no browser work is needed."""

        base = self.system_text(current_url, knowledge, learnings)
        parts = [base]
        names = ", ".join(f'"{name}"' for name in browsers) or "none"
        parts.append(f'Active browsers: {names}. Active: "{active_browser or "none"}".')
        parts.append(CLASSIFY_PROMPT)
        hint = self.history.context_hint()
        if hint:
            parts.append(
                'Recent conversation context (use this to resolve "again", "retry", "that"):\n'
                + hint
            )
        classified = await self._llm.complete(
            message, system="\n\n".join(parts), history=self.history.turns
        )
        decision = parse_action_json(classified.text)
        if decision is not None and decision.is_handoff:
            self.history.add("user", message)
            if decision.instruction is None:
                decision.instruction = message
            decision.usage = classified.usage
            return decision
        if decision is None:
            LOGGER.debug(
                "Unparseable classifier output, replying conversationally: %r", classified.text
            )

        answer = await self._llm.complete(message, system=base, history=self.history.turns)
        self.history.add("user", message)
        self.history.add("assistant", answer.text)
        return ChatDecision(
            action=CHAT,
            message=answer.text,
            usage=classified.usage + answer.usage,
        )
