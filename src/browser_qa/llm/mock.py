"""Mock LLM clients for testing and offline use."""

from __future__ import annotations

from collections import deque
from typing import Deque, Iterable, Optional, Union

from ..models import UsageData
from .base import ConversationTurn, LLMClient, LLMResponse


class ScriptedLLM(LLMClient):
    """Return responses from a predefined sequence and remember every prompt."""

    def __init__(
        self,
        responses: Iterable[Union[str, LLMResponse]],
        *,
        model: str = "mock",
    ) -> None:
        self._responses: Deque[LLMResponse] = deque(
            item if isinstance(item, LLMResponse) else LLMResponse(text=item, usage=UsageData())
            for item in responses
        )
        self.model = model
        self.prompts: list[str] = []

    async def complete(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        history: Iterable[ConversationTurn] = (),
    ) -> LLMResponse:
        self.prompts.append(prompt)
        if not self._responses:
            raise RuntimeError("ScriptedLLM ran out of responses")
        return self._responses.popleft()
