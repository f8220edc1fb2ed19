"""Base classes and utilities for LLM integrations."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, Optional

from ..models import UsageData


@dataclass
class ConversationTurn:
    """Represents a single exchange between the agent and the LLM."""

    role: str
    content: str


@dataclass
class LLMResponse:
    """Raw completion text plus the tokens it consumed."""

    text: str
    usage: UsageData = field(default_factory=UsageData)


class LLMClient(ABC):
    """Abstract interface for LLM providers."""

    model: str = "unknown"

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        history: Iterable[ConversationTurn] = (),
    ) -> LLMResponse:
        """Return the model's reply to ``prompt``.

        ``history`` holds earlier turns of the same conversation and ``system``
        an optional system instruction placed before them.
        """

    async def aclose(self) -> None:
        """Release network resources held by the client."""


class StaticResponseLLM(LLMClient):
    """A trivial LLM client that always returns the same text.

    Useful for tests and for wiring components without calling a real LLM.
    """

    def __init__(self, text: str) -> None:
        self._text = text

    async def complete(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        history: Iterable[ConversationTurn] = (),
    ) -> LLMResponse:
        return LLMResponse(text=self._text)
