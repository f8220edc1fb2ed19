import asyncio
from datetime import datetime, timezone

import pytest

from browser_qa.cost.pricing import get_pricing
from browser_qa.cost.tracker import CostTracker
from browser_qa.memory.base import InMemoryStore
from browser_qa.models import BillingLedger, UsageData
from browser_qa.orchestrator.control import drain_background

MODEL = "openai/gpt-4o"


def test_pricing_lookup():
    assert get_pricing(MODEL).cost(1_000_000, 1_000_000) == pytest.approx(12.5)
    assert get_pricing("gpt-4o-mini") == get_pricing("openai/gpt-4o-mini")
    assert get_pricing("my-local-model").cost(10_000, 10_000) == 0.0


def test_record_prices_pending_tokens_at_default_rate():
    tracker = CostTracker(MODEL)
    tracker.add_tokens(1_000_000, 0)

    snapshot = tracker.record(UsageData(input_tokens=0, output_tokens=1_000_000), "openai/gpt-4o-mini")

    assert snapshot.input_tokens == 1_000_000
    assert snapshot.output_tokens == 1_000_000
    assert snapshot.cost_usd == pytest.approx(2.5 + 0.6)
    assert tracker.flush().cost_usd == 0.0
    assert tracker.session_total().cost_usd == pytest.approx(3.1)
    assert tracker.billing_cycle_total().cost_usd == 0.0


def test_command_scope_keeps_pending_tokens_per_command():
    tracker = CostTracker(MODEL)
    with tracker.command_scope():
        tracker.add_tokens(1_000_000, 0)

    with tracker.command_scope():
        tracker.add_tokens(0, 100_000)
        snapshot = tracker.record(None)
        tracker.add_tokens(200_000, 0)

    assert snapshot.input_tokens == 0
    assert snapshot.output_tokens == 100_000
    assert snapshot.cost_usd == pytest.approx(1.0)
    total = tracker.session_total()
    assert (total.input_tokens, total.output_tokens) == (200_000, 100_000)
    assert total.cost_usd == pytest.approx(1.5)
    assert tracker.flush().input_tokens == 0


def test_ledger_is_loaded_updated_and_persisted():
    store = InMemoryStore()
    store.ledger = BillingLedger(
        cycle_start=datetime(2024, 5, 2, tzinfo=timezone.utc),
        total_cost_usd=1.0,
        session_count=3,
    )
    tracker = CostTracker(MODEL, store, cycle_day=1)

    async def scenario():
        await tracker.init(now=datetime(2024, 5, 20, tzinfo=timezone.utc))
        tracker.record(UsageData(input_tokens=400_000, output_tokens=0))
        await drain_background(timeout=1)

    asyncio.run(scenario())

    assert tracker.billing_cycle_total().cost_usd == pytest.approx(2.0)
    assert store.ledger.session_count == 4
    assert store.ledger.total_cost_usd == pytest.approx(2.0)
    assert store.ledger.total_input_tokens == 400_000


def test_new_cycle_resets_ledger():
    store = InMemoryStore()
    store.ledger = BillingLedger(
        cycle_start=datetime(2024, 4, 20, tzinfo=timezone.utc),
        total_cost_usd=9.0,
        total_input_tokens=5,
        session_count=7,
    )
    tracker = CostTracker(MODEL, store, cycle_day=15)
    now = datetime(2024, 5, 16, tzinfo=timezone.utc)

    asyncio.run(tracker.init(now=now))

    ledger = tracker.ledger
    assert ledger is not None
    assert ledger.cycle_start == now
    assert ledger.total_cost_usd == 0.0
    assert ledger.total_input_tokens == 0
    assert ledger.session_count == 1


def test_cycle_not_reset_before_reset_day():
    store = InMemoryStore()
    store.ledger = BillingLedger(
        cycle_start=datetime(2024, 4, 20, tzinfo=timezone.utc), total_cost_usd=9.0
    )
    tracker = CostTracker(MODEL, store, cycle_day=15)
    asyncio.run(tracker.init(now=datetime(2024, 5, 14, tzinfo=timezone.utc)))
    assert tracker.billing_cycle_total().cost_usd == 9.0


def test_format_cost_line():
    tracker = CostTracker(MODEL)
    action = tracker.record(UsageData(input_tokens=12_345, output_tokens=678))
    line = tracker.format_cost_line(action)
    assert line.startswith("[Cost] Action: $0.0376 | Session: $0.0376 | Billing cycle: $0.0000")
    assert line.endswith("Tokens: 12,345 in / 678 out")
