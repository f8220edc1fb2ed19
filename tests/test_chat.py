import asyncio

from browser_qa.agent.chat import ChatAgent, ChatHistory, handoff_summary_prompt, parse_action_json
from browser_qa.llm.base import LLMResponse
from browser_qa.llm.mock import ScriptedLLM
from browser_qa.models import SessionEntry, UsageData


def test_parse_action_json_variants():
    fenced = parse_action_json('```json\n{"action": "task", "instruction": "Log in as admin"}\n```')
    assert fenced is not None
    assert fenced.action == "task" and fenced.instruction == "Log in as admin"
    assert fenced.is_handoff

    multiline = parse_action_json('{"action": "chat", "message": "First line\nSecond line"}')
    assert multiline is not None
    assert multiline.message == "First line\nSecond line"
    assert not multiline.is_handoff

    prose = parse_action_json('Sure: {"action": "goto", "instruction": "https://app.test"} done')
    assert prose is not None
    assert prose.action == "goto" and prose.instruction == "https://app.test"

    spawn = parse_action_json('{"action": "spawn_browser", "instruction": "admin", "options": {"isolated": true}}')
    assert spawn is not None and spawn.options == {"isolated": True}

    assert parse_action_json('{"action": "dance"}') is None
    assert parse_action_json("no json here") is None


def test_history_alternates_and_merges():
    history = ChatHistory()
    history.add("assistant", "orphan")
    assert len(history) == 0
    history.add("user", "a")
    history.add("user", "b")
    history.add("assistant", "c")
    assert [(turn.role, turn.content) for turn in history.turns] == [
        ("user", "a\nb"),
        ("assistant", "c"),
    ]
    assert history.context_hint() == "User: a\nb\nAgent: c"


def test_history_is_trimmed():
    history = ChatHistory(limit=10, keep=6)
    for index in range(8):
        history.add("user", f"question {index}")
        history.add("assistant", f"answer {index}")
    turns = history.turns
    assert len(turns) <= 10
    assert turns[0].role == "user"
    assert all(first.role != second.role for first, second in zip(turns, turns[1:]))
    assert turns[-1].content == "answer 7"


def test_inject_session_entries():
    history = ChatHistory()
    history.inject(
        [
            SessionEntry(role="agent", content="leftover"),
            SessionEntry(role="user", content="hi"),
            SessionEntry(role="agent", content="hello"),
        ]
    )
    assert [turn.role for turn in history.turns] == ["user", "assistant"]


def test_route_hands_off_browser_work():
    llm = ScriptedLLM(
        [LLMResponse(text='{"action": "act", "instruction": "Click Save"}', usage=UsageData(input_tokens=50, output_tokens=5))]
    )
    agent = ChatAgent(llm)

    decision = asyncio.run(
        agent.route("save it", current_url="https://app.test/", browsers=["main"], active_browser="main")
    )

    assert decision.action == "act"
    assert decision.instruction == "Click Save"
    assert decision.usage == UsageData(input_tokens=50, output_tokens=5)
    assert [turn.content for turn in agent.history.turns] == ["save it"]
    assert len(llm.prompts) == 1


def test_route_defaults_instruction_to_message():
    agent = ChatAgent(ScriptedLLM(['{"action": "task"}']))
    decision = asyncio.run(agent.route("book a meeting room", current_url="about:blank"))
    assert decision.instruction == "book a meeting room"


def test_route_replies_conversationally():
    llm = ScriptedLLM(
        [
            LLMResponse(text='{"action": "chat"}', usage=UsageData(input_tokens=10, output_tokens=1)),
            LLMResponse(text="The export lives under Reports.", usage=UsageData(input_tokens=20, output_tokens=8)),
        ]
    )
    agent = ChatAgent(llm)

    decision = asyncio.run(agent.route("where is export?", current_url="https://app.test/"))

    assert not decision.is_handoff
    assert decision.message == "The export lives under Reports."
    assert decision.usage == UsageData(input_tokens=30, output_tokens=9)
    assert [turn.role for turn in agent.history.turns] == ["user", "assistant"]


def test_unparseable_classification_falls_back_to_chat():
    agent = ChatAgent(ScriptedLLM(["I think you want to chat", "Happy to help."]))
    decision = asyncio.run(agent.route("hello", current_url="about:blank"))
    assert decision.action == "chat"
    assert decision.message == "Happy to help."


def test_handoff_summary_prompt():
    prompt = handoff_summary_prompt("task", "open billing", False, "Timeout")
    assert prompt.startswith("[System: you just executed a task action for the user.")
    assert "Result (failed): Timeout." in prompt
