"""LLM client for OpenAI-compatible chat completion endpoints."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

import httpx

from ..config import LLMConfig
from ..errors import ExecutionError
from ..models import UsageData
from .base import ConversationTurn, LLMClient, LLMResponse

LOGGER = logging.getLogger(__name__)

_RESERVED_PARAMETERS = {"timeout", "temperature"}


class OpenAIChatLLM(LLMClient):
    """Call an OpenAI-compatible chat completion API."""

    def __init__(self, config: LLMConfig, *, model: Optional[str] = None) -> None:
        resolved = model or config.model
        if not resolved:
            raise ValueError("LLM model must be specified for OpenAIChatLLM")
        self.model = resolved
        self._config = config
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        self._client = httpx.AsyncClient(
            base_url=config.base_url or "https://api.openai.com/v1",
            timeout=config.parameters.get("timeout", 60),
            headers=headers,
        )
        self._temperature = config.parameters.get("temperature", 0.0)

    async def complete(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        history: Iterable[ConversationTurn] = (),
    ) -> LLMResponse:
        payload = {
            "model": self.model,
            "messages": self._build_messages(prompt, system, history),
            "temperature": self._temperature,
        }
        payload.update(
            {
                k: v
                for k, v in self._config.parameters.items()
                if k not in _RESERVED_PARAMETERS
            }
        )
        try:
            response = await self._client.post("/chat/completions", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExecutionError(f"LLM request failed: {exc}") from exc
        data = response.json()
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError) as exc:
            raise ExecutionError(f"Unexpected response format: {data}") from exc
        usage = data.get("usage") or {}
        LOGGER.debug("LLM %s used %s tokens", self.model, usage.get("total_tokens"))
        return LLMResponse(
            text=content or "",
            usage=UsageData(
                input_tokens=int(usage.get("prompt_tokens", 0)),
                output_tokens=int(usage.get("completion_tokens", 0)),
            ),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _build_messages(
        prompt: str,
        system: Optional[str],
        history: Iterable[ConversationTurn],
    ) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        for turn in history:
            role = "assistant" if turn.role in {"model", "assistant"} else turn.role
            messages.append({"role": role, "content": turn.content})
        messages.append({"role": "user", "content": prompt})
        return messages
