import asyncio
from pathlib import Path

from browser_qa.memory.base import InMemoryStore
from browser_qa.memory.json_store import JsonFileStore
from browser_qa.models import (
    BillingLedger,
    Learning,
    LearningCategory,
    SessionEntry,
    SiteKnowledge,
    StepResult,
    StepVerdict,
    TaskRecord,
    TestReport,
    TestStep,
    TestVerdict,
)


def _learning(domain: str, idx: int) -> Learning:
    return Learning(domain=domain, pattern=f"pattern-{idx}", category=LearningCategory.GOTCHA)


def test_in_memory_store_prunes_learnings_per_domain():
    store = InMemoryStore(max_learnings=3)

    async def scenario() -> None:
        await store.add_learning(_learning("other.com", 0))
        for idx in range(5):
            await store.add_learning(_learning("app.com", idx))
        own = await store.get_learnings("app.com")
        assert [item.pattern for item in own] == ["pattern-2", "pattern-3", "pattern-4"]
        assert len(await store.get_learnings("other.com")) == 1

    asyncio.run(scenario())


def test_in_memory_store_returns_copies_of_knowledge():
    store = InMemoryStore()

    async def scenario() -> None:
        await store.save_knowledge(SiteKnowledge(domain="app.com", tips=["use search"]))
        knowledge = await store.get_knowledge("app.com")
        assert knowledge is not None
        knowledge.tips.append("mutated")
        again = await store.get_knowledge("app.com")
        assert again is not None and again.tips == ["use search"]
        assert await store.get_knowledge("missing.com") is None

    asyncio.run(scenario())


def test_json_store_round_trips_records(tmp_path: Path):
    store = JsonFileStore(tmp_path, max_learnings=2)
    report = TestReport(
        title="Login works",
        domain="app.com",
        verdict=TestVerdict.PASS,
        steps=[
            StepResult(
                step=TestStep(action="Open /login", expected="Login form", setup=True),
                verdict=StepVerdict.PASS,
            )
        ],
    )

    async def scenario() -> str:
        await store.save_knowledge(SiteKnowledge(domain="app.com", site_map=["/", "/login"]))
        for idx in range(3):
            await store.add_learning(_learning("app.com", idx))
        for idx in range(3):
            await store.save_task_record(
                TaskRecord(id=f"t{idx}", command="t: x", instruction="x", mode="task", outcome="pass")
            )
        await store.add_session_entry(SessionEntry(role="user", content="t: x", mode="task"))
        await store.save_session()
        await store.save_ledger(BillingLedger(total_cost_usd=1.5, session_count=2))
        return await store.save_test_report(report)

    report_id = asyncio.run(scenario())

    reopened = JsonFileStore(tmp_path, max_learnings=2)

    async def check() -> None:
        knowledge = await reopened.get_knowledge("app.com")
        assert knowledge is not None and knowledge.site_map == ["/", "/login"]
        learnings = await reopened.get_learnings("app.com")
        assert [item.pattern for item in learnings] == ["pattern-1", "pattern-2"]
        recent = await reopened.get_recent_tasks(2)
        assert [record.id for record in recent] == ["t2", "t1"]
        ledger = await reopened.load_ledger()
        assert ledger is not None and ledger.total_cost_usd == 1.5
        loaded = await reopened.get_test_report(report_id)
        assert loaded is not None
        assert loaded.title == "Login works"
        assert loaded.steps[0].step.setup is True
        assert await reopened.get_test_report("../ledger") is None

    asyncio.run(check())
    assert list((tmp_path / "sessions").glob("*.json"))


def test_json_store_ignores_corrupt_files(tmp_path: Path):
    store = JsonFileStore(tmp_path)
    (tmp_path / "learnings.json").write_text("{not json")
    (tmp_path / "knowledge" / "app.com.json").write_text('{"pages": 3}')

    async def scenario() -> None:
        assert await store.get_learnings("app.com") == []
        assert await store.get_knowledge("app.com") is None

    asyncio.run(scenario())
