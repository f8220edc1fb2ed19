"""Tests for LLM providers and the provider factory."""

import asyncio
import json

import httpx
import pytest

from browser_qa.config import LLMConfig
from browser_qa.errors import ExecutionError
from browser_qa.factory import MOCK_REPLY, build_llm
from browser_qa.llm.base import ConversationTurn, StaticResponseLLM
from browser_qa.llm.mock import ScriptedLLM
from browser_qa.llm.openai_client import OpenAIChatLLM
from browser_qa.models import UsageData


def _with_transport(llm: OpenAIChatLLM, handler) -> OpenAIChatLLM:  # type: ignore[no-untyped-def]
    llm._client = httpx.AsyncClient(
        base_url="https://llm.test/v1",
        transport=httpx.MockTransport(handler),
    )
    return llm


def test_build_llm_providers() -> None:
    assert isinstance(build_llm(LLMConfig(provider="openai", model="gpt-4o")), OpenAIChatLLM)
    assert isinstance(build_llm(LLMConfig(provider="mock")), StaticResponseLLM)
    scripted = build_llm(LLMConfig(provider="mock", parameters={"responses": ["one", "two"]}))
    assert isinstance(scripted, ScriptedLLM)
    with pytest.raises(ValueError, match="Unsupported LLM provider"):
        build_llm(LLMConfig(provider="carrier-pigeon"))
    with pytest.raises(ValueError, match="model must be specified"):
        build_llm(LLMConfig(provider="openai"))


def test_mock_reply_is_configurable() -> None:
    default = asyncio.run(build_llm(LLMConfig(provider="mock")).complete("hi"))
    assert default.text == MOCK_REPLY
    custom = build_llm(LLMConfig(provider="mock", parameters={"reply": "pong"}))
    assert asyncio.run(custom.complete("ping")).text == "pong"


def test_openai_client_sends_history_and_reads_usage() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"content": "Hello!"}}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
            },
        )

    config = LLMConfig(provider="openai", model="gpt-4o", parameters={"temperature": 0.2, "top_p": 0.9})
    llm = _with_transport(OpenAIChatLLM(config, model="gpt-4o-mini"), handler)

    async def scenario():
        try:
            return await llm.complete(
                "And now?",
                system="Be brief",
                history=[ConversationTurn("user", "hi"), ConversationTurn("model", "hello")],
            )
        finally:
            await llm.aclose()

    response = asyncio.run(scenario())

    assert response.text == "Hello!"
    assert response.usage == UsageData(input_tokens=12, output_tokens=3)
    body = seen["body"]
    assert seen["path"] == "/v1/chat/completions"
    assert body["model"] == "gpt-4o-mini"
    assert body["temperature"] == 0.2
    assert body["top_p"] == 0.9
    assert [message["role"] for message in body["messages"]] == ["system", "user", "assistant", "user"]


def test_openai_client_errors() -> None:
    def failing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "boom"})

    def malformed(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": []})

    config = LLMConfig(provider="openai", model="gpt-4o")
    with pytest.raises(ExecutionError, match="LLM request failed"):
        asyncio.run(_with_transport(OpenAIChatLLM(config), failing).complete("x"))
    with pytest.raises(ExecutionError, match="Unexpected response format"):
        asyncio.run(_with_transport(OpenAIChatLLM(config), malformed).complete("x"))


def test_scripted_llm_runs_out() -> None:
    llm = ScriptedLLM(["only"])
    assert asyncio.run(llm.complete("a")).text == "only"
    with pytest.raises(RuntimeError, match="ran out"):
        asyncio.run(llm.complete("b"))
    assert llm.prompts == ["a", "b"]
